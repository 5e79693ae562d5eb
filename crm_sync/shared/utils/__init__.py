"""Datetime and identifier helpers."""

from crm_sync.shared.utils.datetime import (
    ensure_utc,
    from_timestamp_ms_utc,
    from_timestamp_utc,
    parse_iso_datetime,
    utc_now,
)
from crm_sync.shared.utils.generators import generate_cuid

__all__ = [
    "generate_cuid",
    "utc_now",
    "ensure_utc",
    "from_timestamp_utc",
    "from_timestamp_ms_utc",
    "parse_iso_datetime",
]
