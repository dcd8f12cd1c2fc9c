"""Tests for prism_orchestrator/penalty_box.py."""
from __future__ import annotations

import asyncio

import pytest

from prism_orchestrator.penalty_box import DEFAULT_PENALTY_SECONDS, PenaltyBox


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def box(clock):
    return PenaltyBox(clock=clock)


def test_default_duration():
    assert PenaltyBox().default_duration == DEFAULT_PENALTY_SECONDS == 300.0


def test_unknown_endpoint_is_not_penalized(box):
    assert box.is_penalized("openai:gpt-4o") is False
    assert box.time_remaining("openai:gpt-4o") == 0.0


def test_add_returns_expiry_and_penalizes(box, clock):
    expiry = box.add("openai:gpt-4o")
    assert expiry == clock.now + 300.0
    assert box.is_penalized("openai:gpt-4o")
    assert box.time_remaining("openai:gpt-4o") == pytest.approx(300.0)


def test_expired_entry_is_released_lazily(box, clock):
    box.add("groq:llama", duration=10)
    clock.now += 10
    assert box.is_penalized("groq:llama") is False
    assert len(box) == 0


def test_re_adding_extends_the_penalty(box, clock):
    box.add("a", duration=10)
    clock.now += 5
    box.add("a", duration=10)
    clock.now += 7
    assert box.is_penalized("a")


def test_clear_one_and_all(box):
    box.add("a")
    box.add("b")
    box.clear("a")
    assert box.penalized_ids() == ["b"]
    box.clear()
    assert box.penalized_ids() == []


def test_async_variants_share_state(box):
    async def run():
        await box.async_add("a", 60)
        return await box.async_is_penalized("a"), box.is_penalized("a")

    assert asyncio.run(run()) == (True, True)
