"""OpenTelemetry tracing for the sync service (console or OTLP exporter)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import SpanProcessor, TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from sqlalchemy.ext.asyncio import AsyncEngine

if TYPE_CHECKING:
    from crm_sync.core.config import Settings

logger = logging.getLogger(__name__)

# Provider webhooks and health checks arrive at a rate that would drown sync spans.
UNTRACED_URLS = "/api/v1/health,/api/v1/webhooks/.*"


class TelemetryConfig:
    """Tracer provider for one process, built from ``Settings``.

    Sync passes, token refreshes and webhook batches get spans through
    ``traced``. This class only owns the provider, the exporter and the
    FastAPI/SQLAlchemy instrumentation.
    """

    def __init__(
        self,
        service_name: str,
        service_version: str,
        environment: str = "development",
        exporter: str = "console",
        otlp_endpoint: str | None = None,
        sample_rate: float = 1.0,
    ) -> None:
        self.service_name = service_name
        self.service_version = service_version
        self.environment = environment
        self.exporter = exporter
        self.otlp_endpoint = otlp_endpoint
        self.sample_rate = sample_rate
        self.tracer_provider: TracerProvider | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> TelemetryConfig:
        return cls(
            service_name=settings.app_name,
            service_version=settings.app_version,
            environment=settings.telemetry_environment,
            exporter=settings.telemetry_exporter,
            otlp_endpoint=settings.telemetry_otlp_endpoint,
            sample_rate=settings.telemetry_sample_rate,
        )

    def _span_processor(self) -> SpanProcessor | None:
        if self.exporter == "none":
            return None
        if self.exporter == "otlp":
            if not self.otlp_endpoint:
                logger.warning("OTLP exporter selected without an endpoint; using console")
            else:
                logger.info("Exporting spans to %s", self.otlp_endpoint)
                return BatchSpanProcessor(
                    OTLPSpanExporter(
                        endpoint=self.otlp_endpoint,
                        insecure=self.otlp_endpoint.startswith("http://"),
                    )
                )
        elif self.exporter != "console":
            logger.warning("Unknown span exporter '%s'; using console", self.exporter)
        return BatchSpanProcessor(ConsoleSpanExporter())

    def start(self) -> bool:
        """Install the global tracer provider. Returns False if setup failed."""
        try:
            provider = TracerProvider(
                resource=Resource(
                    attributes={
                        SERVICE_NAME: self.service_name,
                        SERVICE_VERSION: self.service_version,
                        "deployment.environment": self.environment,
                    }
                ),
                sampler=TraceIdRatioBased(self.sample_rate),
            )
            processor = self._span_processor()
            if processor is not None:
                provider.add_span_processor(processor)
            trace.set_tracer_provider(provider)
        except Exception:
            logger.exception("Tracing setup failed; continuing without spans")
            return False
        self.tracer_provider = provider
        logger.info(
            "Tracing started: service=%s version=%s exporter=%s",
            self.service_name,
            self.service_version,
            self.exporter,
        )
        return True

    def instrument(self, app: FastAPI, engine: AsyncEngine | None = None) -> None:
        if self.tracer_provider is None:
            return
        FastAPIInstrumentor.instrument_app(
            app, tracer_provider=self.tracer_provider, excluded_urls=UNTRACED_URLS
        )
        if engine is not None:
            SQLAlchemyInstrumentor().instrument(
                engine=engine.sync_engine, tracer_provider=self.tracer_provider
            )

    def shutdown(self) -> None:
        """Flush pending spans."""
        if self.tracer_provider is not None:
            self.tracer_provider.shutdown()
            self.tracer_provider = None
