"""Infrastructure: persistence, provider clients, cache, background services."""
