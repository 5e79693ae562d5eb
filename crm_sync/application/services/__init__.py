"""Application services: token refresh, single-flight, keyed locks, reconciliation."""
