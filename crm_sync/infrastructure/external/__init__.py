"""Clients for external services: OAuth token endpoints and provider APIs."""
