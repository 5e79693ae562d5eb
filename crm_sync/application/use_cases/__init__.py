"""Use cases: sync pass, webhook deltas, account connection."""
