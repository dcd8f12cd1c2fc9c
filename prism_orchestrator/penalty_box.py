"""
Penalty Box — time-boxed circuit breaker for provider endpoints.

An endpoint that hits a transient failure (rate limit, 5xx, 404, network
error, timeout) is parked for ``duration`` seconds. Expiry is checked lazily
on read; there is no eviction thread.

The sync methods are safe under single-threaded asyncio use. Concurrent
dispatches share one box and go through the ``async_*`` methods, which
serialize on an asyncio.Lock.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger("prism_orchestrator.penalty_box")

DEFAULT_PENALTY_SECONDS = 300.0


class PenaltyBox:

    def __init__(
        self,
        default_duration: float = DEFAULT_PENALTY_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._expiry: dict[str, float] = {}
        self.default_duration = default_duration
        self._clock = clock
        self._lock: Optional[asyncio.Lock] = None  # lazy, created inside the event loop

    def add(self, endpoint_id: str, duration: Optional[float] = None) -> float:
        """Penalize (or re-penalize) an endpoint; returns the expiry time."""
        seconds = self.default_duration if duration is None else duration
        expiry = self._clock() + seconds
        self._expiry[endpoint_id] = expiry
        logger.warning(f"Endpoint {endpoint_id} placed in penalty box for {seconds:.0f}s")
        return expiry

    def is_penalized(self, endpoint_id: str) -> bool:
        expiry = self._expiry.get(endpoint_id)
        if expiry is None:
            return False
        if self._clock() >= expiry:
            # cooldown elapsed
            del self._expiry[endpoint_id]
            return False
        return True

    def clear(self, endpoint_id: Optional[str] = None) -> None:
        """Release one endpoint, or every endpoint when ``endpoint_id`` is None."""
        if endpoint_id is None:
            self._expiry.clear()
            return
        if self._expiry.pop(endpoint_id, None) is not None:
            logger.info(f"Endpoint {endpoint_id} released from penalty box")

    def time_remaining(self, endpoint_id: str) -> float:
        expiry = self._expiry.get(endpoint_id)
        if expiry is None:
            return 0.0
        return max(0.0, expiry - self._clock())

    def penalized_ids(self) -> list[str]:
        return [eid for eid in list(self._expiry) if self.is_penalized(eid)]

    def __len__(self) -> int:
        return len(self.penalized_ids())

    # ── Lock-guarded variants ──────────────────────────────────────────────

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def async_add(self, endpoint_id: str, duration: Optional[float] = None) -> float:
        async with self._get_lock():
            return self.add(endpoint_id, duration)

    async def async_is_penalized(self, endpoint_id: str) -> bool:
        async with self._get_lock():
            return self.is_penalized(endpoint_id)
