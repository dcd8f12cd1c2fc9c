"""Shared fakes: a scripted transport that replays canned responses in order."""
from __future__ import annotations

import asyncio
from typing import Optional

import pytest

from prism_orchestrator.api_clients import TransportError, TransportResponse
from prism_orchestrator.dispatch import HydraDispatcher
from prism_orchestrator.models import ProviderEndpoint, TokenUsage
from prism_orchestrator.settings import HydraSettings


class ScriptedTransport:
    """
    Each generate_content() call consumes the next scripted item:
    a str is returned as the completion text, an Exception is raised.
    Once the script runs out ``default`` is returned.
    """

    def __init__(self, responses=None, default: str = "", usage: Optional[TokenUsage] = None):
        self.responses = list(responses or [])
        self.default = default
        self.usage = usage
        self.calls: list[dict] = []

    async def generate_content(self, model, prompt, config=None):
        self.calls.append({"model": model, "prompt": prompt, "config": config or {}})
        await asyncio.sleep(0)
        item = self.responses.pop(0) if self.responses else self.default
        if isinstance(item, BaseException):
            raise item
        return TransportResponse(item, self.usage)


@pytest.fixture
def endpoint():
    return ProviderEndpoint("openai", "gpt-4o-mini")


@pytest.fixture
def make_dispatcher():
    """Build a HydraDispatcher over a ScriptedTransport; returns (dispatcher, transport)."""
    def _make(responses=None, default: str = "", **kwargs):
        transport = ScriptedTransport(responses, default=default)
        settings = kwargs.pop("settings", HydraSettings(timeout_seconds=5.0))
        return HydraDispatcher(transport, settings=settings, **kwargs), transport
    return _make


def http_error(status: int) -> TransportError:
    return TransportError(f"HTTP {status}", status=status, provider="openai")
