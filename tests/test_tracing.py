"""Tests for prism_orchestrator/tracing.py — OTEL span instrumentation."""
from __future__ import annotations

import asyncio

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from conftest import ScriptedTransport
from prism_orchestrator.dispatch import HydraDispatcher
from prism_orchestrator.models import ProviderEndpoint
from prism_orchestrator.tracing import (
    TracingConfig,
    configure_tracing,
    get_tracer,
    traced_decomposition,
    traced_duel,
    traced_llm_call,
)


@pytest.fixture(autouse=True)
def reset_tracing():
    """Reset global tracer state between tests."""
    import prism_orchestrator.tracing as t
    t._tracer = None
    t._provider = None
    yield
    t._tracer = None
    t._provider = None


@pytest.fixture
def span_exporter():
    """Returns an InMemorySpanExporter wired to a fresh TracerProvider."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    import prism_orchestrator.tracing as t
    t._provider = provider
    t._tracer = provider.get_tracer("test")
    return exporter


def test_tracing_config_defaults():
    cfg = TracingConfig()
    assert cfg.enabled is False
    assert cfg.service_name == "prism-orchestrator"
    assert cfg.otlp_endpoint is None
    assert cfg.sample_rate == 1.0


def test_disabled_tracing_produces_no_exception():
    configure_tracing(TracingConfig(enabled=False))
    with traced_decomposition(42):
        with traced_llm_call("openai:gpt-4o", "openai"):
            pass
    assert get_tracer() is not None


def test_enabled_tracing_sets_provider():
    import prism_orchestrator.tracing as t
    configure_tracing(TracingConfig(enabled=True))
    assert t._provider is not None


def test_llm_call_span_attributes(span_exporter):
    with traced_llm_call("openai:gpt-4o", "openai") as span:
        span.set_attribute("llm.tokens_total", 15)
    spans = span_exporter.get_finished_spans()
    assert len(spans) == 1
    assert spans[0].name == "llm_call"
    assert spans[0].attributes["llm.endpoint"] == "openai:gpt-4o"
    assert spans[0].attributes["llm.provider"] == "openai"
    assert spans[0].attributes["llm.tokens_total"] == 15


def test_decomposition_and_duel_spans(span_exporter):
    with traced_decomposition(120):
        with traced_duel("legal_research"):
            pass
    names = {s.name: s for s in span_exporter.get_finished_spans()}
    assert names["decomposition"].attributes["prism.goal_length"] == 120
    assert names["duel"].attributes["duel.mode"] == "legal_research"
    assert names["duel"].parent.span_id == names["decomposition"].context.span_id


def test_span_records_exception(span_exporter):
    with pytest.raises(ValueError):
        with traced_llm_call("x", "local"):
            raise ValueError("boom")
    span = span_exporter.get_finished_spans()[0]
    assert span.status.is_ok is False


def test_dispatch_emits_one_span_per_attempt(span_exporter):
    from conftest import http_error
    dispatcher = HydraDispatcher(ScriptedTransport([http_error(503), "ok"]))
    eps = [ProviderEndpoint("openai", "a"), ProviderEndpoint("openai", "b")]
    asyncio.run(dispatcher.dispatch(eps, "hi"))
    endpoints = [s.attributes["llm.endpoint"] for s in span_exporter.get_finished_spans()]
    assert endpoints == ["openai:a", "openai:b"]
