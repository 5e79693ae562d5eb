"""Core: settings, lifespan, exception handlers, rate limiting."""
