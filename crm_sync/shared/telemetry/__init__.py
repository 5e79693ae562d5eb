"""Shared telemetry: logging setup, OpenTelemetry config, and tracing helpers."""

from crm_sync.shared.telemetry.logging import get_logger, setup_logging
from crm_sync.shared.telemetry.telemetry import TelemetryConfig
from crm_sync.shared.telemetry.tracing import add_span_attributes, traced

__all__ = [
    "setup_logging",
    "get_logger",
    "TelemetryConfig",
    "traced",
    "add_span_attributes",
]
