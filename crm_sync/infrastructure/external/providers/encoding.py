"""base64url helpers for Gmail raw messages and body parts."""

import base64


def b64url_encode(data: bytes) -> str:
    """Encode without padding, as Gmail expects for ``raw``."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def b64url_decode(data: str) -> bytes:
    """Decode base64url input with or without padding."""
    normalized = data.replace("-", "+").replace("_", "/")
    normalized += "=" * (-len(normalized) % 4)
    return base64.b64decode(normalized)


def b64url_decode_text(data: str) -> str:
    return b64url_decode(data).decode("utf-8", errors="replace")
