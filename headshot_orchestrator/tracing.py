"""
OpenTelemetry Distributed Tracing — tracing.py
===============================================
TracingConfig, configure_tracing(), get_tracer(), and one context-manager
helper per instrumentation point: a job's full lifetime, a single provider
call, and a health probe.

Until configure_tracing(enabled=True) runs, get_tracer() hands back the
OpenTelemetry API's own no-op tracer.

Usage:
    from headshot_orchestrator.tracing import configure_tracing, TracingConfig
    configure_tracing(TracingConfig(enabled=True))
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    ConsoleSpanExporter,
    SimpleSpanProcessor,
    SpanExporter,
)
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

logger = logging.getLogger("headshot_orchestrator.tracing")

# ── Module-level singletons (reset between tests) ──────────────────────────────
_tracer = None
_provider = None


@dataclass
class TracingConfig:
    enabled: bool = False
    service_name: str = "headshot-orchestrator"
    sample_rate: float = 1.0


def configure_tracing(cfg: TracingConfig, exporter: Optional[SpanExporter] = None) -> None:
    """Initialise the module TracerProvider. Safe to call multiple times."""
    global _tracer, _provider

    if not cfg.enabled:
        _provider = None
        _tracer = trace.get_tracer(__name__)
        return

    resource = Resource.create({"service.name": cfg.service_name})
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(cfg.sample_rate))
    provider.add_span_processor(SimpleSpanProcessor(exporter or ConsoleSpanExporter()))
    logger.info("OTEL tracing → %s", type(exporter).__name__ if exporter else "console (dev mode)")
    _provider = provider
    _tracer = provider.get_tracer(cfg.service_name)


def get_tracer():
    """Return the configured tracer (API no-op tracer if never configured)."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(__name__)
    return _tracer


# ── Context managers ───────────────────────────────────────────────────────────

@contextmanager
def traced_job(job_id: str, account_id: str, model_class: str) -> Iterator:
    """Span for a job from Queued to Settled."""
    tracer = get_tracer()
    with tracer.start_as_current_span(f"job:{job_id}") as span:
        span.set_attribute("job.id", job_id)
        span.set_attribute("job.account_id", account_id)
        span.set_attribute("job.model_class", model_class)
        yield span


@contextmanager
def traced_provider_call(provider: str, model_id: str, call_number: int) -> Iterator:
    """Span for one submit → poll cycle against a provider."""
    tracer = get_tracer()
    with tracer.start_as_current_span(f"provider_call:{provider}") as span:
        span.set_attribute("provider.id", provider)
        span.set_attribute("provider.model_id", model_id)
        span.set_attribute("provider.call_number", call_number)
        yield span


@contextmanager
def traced_probe(provider: str) -> Iterator:
    """Span for a single health probe."""
    tracer = get_tracer()
    with tracer.start_as_current_span("health_probe") as span:
        span.set_attribute("provider.id", provider)
        yield span
