"""DTOs shared between use cases and repositories (no ORM or HTTP types)."""
