"""
OpenTelemetry Tracing — tracing.py
==================================
TracingConfig, configure_tracing(), get_tracer() and context-manager helpers
for the three instrumentation points: LLM calls, decomposition runs and
audit duels.

Without configure_tracing(enabled=True) the OpenTelemetry API hands out its
built-in no-op tracer, so the helpers cost next to nothing.

Usage:
    from prism_orchestrator.tracing import configure_tracing, TracingConfig
    configure_tracing(TracingConfig(enabled=True, otlp_endpoint="http://localhost:4317"))
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from opentelemetry import trace

logger = logging.getLogger("prism_orchestrator.tracing")

# ── Module-level singletons (reset between tests) ──────────────────────────────
_tracer = None
_provider = None


@dataclass
class TracingConfig:
    enabled: bool = False
    service_name: str = "prism-orchestrator"
    otlp_endpoint: Optional[str] = None   # None → ConsoleSpanExporter (dev)
    sample_rate: float = 1.0


def configure_tracing(cfg: TracingConfig) -> None:
    """Initialise the TracerProvider. Safe to call multiple times."""
    global _tracer, _provider

    if not cfg.enabled:
        _tracer = trace.get_tracer(__name__)
        return

    try:
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
    except ImportError:
        logger.warning(
            "opentelemetry-sdk not installed. "
            "Run: pip install -e '.[tracing]'"
        )
        _tracer = trace.get_tracer(__name__)
        return

    provider = TracerProvider(
        resource=Resource.create({"service.name": cfg.service_name}),
        sampler=TraceIdRatioBased(cfg.sample_rate),
    )
    if cfg.otlp_endpoint:
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True))
        )
        logger.info(f"OTEL tracing → {cfg.otlp_endpoint}")
    else:
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("OTEL tracing → console (dev mode)")

    _provider = provider
    _tracer = provider.get_tracer(cfg.service_name)


def get_tracer():
    """Return the active tracer (the API no-op tracer if nothing was configured)."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer(__name__)
    return _tracer


# ── Context managers ───────────────────────────────────────────────────────────

@contextmanager
def traced_llm_call(endpoint_id: str, provider: str) -> Iterator:
    """Span for one endpoint attempt inside a dispatch."""
    with get_tracer().start_as_current_span("llm_call") as span:
        span.set_attribute("llm.endpoint", endpoint_id)
        span.set_attribute("llm.provider", provider)
        yield span


@contextmanager
def traced_decomposition(goal_len: int) -> Iterator:
    """Span for a full four-step decomposition run."""
    with get_tracer().start_as_current_span("decomposition") as span:
        span.set_attribute("prism.goal_length", goal_len)
        yield span


@contextmanager
def traced_duel(mode: str) -> Iterator:
    """Span for one auditor-vs-artifact duel."""
    with get_tracer().start_as_current_span("duel") as span:
        span.set_attribute("duel.mode", mode)
        yield span
