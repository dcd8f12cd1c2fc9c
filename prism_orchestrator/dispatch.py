"""
Hydra Dispatcher — ordered multi-endpoint failover
==================================================
One logical request walks an ordered list of ProviderEndpoints:

  penalized      → skipped, no attempt counted
  success        → first one wins; usage observer fires once
  transient      → (429, 5xx, 404, network, timeout) endpoint is penalized,
                   retry observer fires, next endpoint tried immediately
  non-transient  → (400, 401, 403, 413, 422 …) raised at once, no penalty

With HydraSettings.auto_failover off, the first transient failure ends the walk.

Exhaustion is reported with two distinct errors so an operator layer can tell
"everything is cooling down" (wait and retry) from "everything we tried broke"
(pick an endpoint by hand).

The legacy single-endpoint path (dispatch_with_backoff) keeps its fixed
3/6/12/24/30 s schedule and widening timeout.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence

from .api_clients import LLMTransport, TransportError
from .extraction import extract_structured
from .hooks import EventType, HookRegistry, safe_call
from .models import CompletionResult, ExtractionResult, ProviderEndpoint
from .penalty_box import PenaltyBox
from .settings import HydraSettings
from .tracing import traced_llm_call

logger = logging.getLogger("prism_orchestrator.dispatch")

TRANSIENT_STATUSES = frozenset({404, 429})
BACKOFF_DELAYS = (3.0, 6.0, 12.0, 24.0, 30.0, 30.0)
BACKOFF_TIMEOUT_STEP = 60.0

RetryCallback = Callable[[ProviderEndpoint, Exception, int], Any]
UsageCallback = Callable[[ProviderEndpoint, Any], Any]


# ─────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────

class DispatchError(Exception):
    """Base class for every dispatch failure."""


class NonTransientDispatchError(DispatchError):
    """Malformed request or bad credentials; failover would not help."""

    def __init__(self, message: str, status: Optional[int] = None, endpoint_id: str = ""):
        super().__init__(message)
        self.status = status
        self.endpoint_id = endpoint_id


class EndpointsExhaustedError(DispatchError):
    def __init__(self, message: str, last_error: str = "", attempts: int = 0):
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts


class AllEndpointsExhaustedError(EndpointsExhaustedError):
    """No endpoint was attempted: the list was empty or every entry is penalized."""


class AllEndpointsFailedError(EndpointsExhaustedError):
    """At least one endpoint was attempted and every attempt failed transiently."""


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return True
    if isinstance(exc, TransportError):
        if exc.network:
            return True
        if exc.status is None:
            # unclassified SDK failure; let failover try the next endpoint
            return True
        return exc.status in TRANSIENT_STATUSES or exc.status >= 500
    return True


# ─────────────────────────────────────────────
# Dispatcher
# ─────────────────────────────────────────────

class HydraDispatcher:
    """
    ``transport`` is either a single LLMTransport used for every endpoint, or
    a provider registry exposing ``get(provider)`` (UnifiedTransport, or a
    plain dict of provider → transport).
    """

    def __init__(self, transport: Any,
                 penalty_box: Optional[PenaltyBox] = None,
                 settings: Optional[HydraSettings] = None,
                 hooks: Optional[HookRegistry] = None,
                 on_retry: Optional[RetryCallback] = None,
                 on_usage: Optional[UsageCallback] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.transport = transport
        self.settings = settings or HydraSettings()
        if penalty_box is None:
            penalty_box = PenaltyBox(self.settings.penalty_seconds)
        self.penalty_box = penalty_box
        self.hooks = hooks
        self.on_retry = on_retry
        self.on_usage = on_usage
        self._sleep = sleep

    def _transport_for(self, endpoint: ProviderEndpoint) -> LLMTransport:
        if hasattr(self.transport, "generate_content"):
            return self.transport
        transport = self.transport.get(endpoint.provider)
        if transport is None:
            raise NonTransientDispatchError(
                f"No transport configured for provider '{endpoint.provider}'",
                endpoint_id=endpoint.id,
            )
        return transport

    def _report_retry(self, endpoint: ProviderEndpoint, error: Exception, attempt: int):
        safe_call(self.on_retry, EventType.ENDPOINT_RETRY.value, endpoint, error, attempt)
        if self.hooks is not None:
            self.hooks.fire(EventType.ENDPOINT_RETRY, endpoint=endpoint, error=error, attempt=attempt)

    def _report_usage(self, endpoint: ProviderEndpoint, usage) -> None:
        if usage is None:
            return
        safe_call(self.on_usage, EventType.USAGE_RECORDED.value, endpoint, usage)
        if self.hooks is not None:
            self.hooks.fire(EventType.USAGE_RECORDED, endpoint=endpoint, usage=usage)

    async def _attempt(self, endpoint: ProviderEndpoint, prompt: str,
                       config: Optional[dict], timeout: float) -> CompletionResult:
        transport = self._transport_for(endpoint)
        with traced_llm_call(endpoint.id, endpoint.provider) as span:
            response = await asyncio.wait_for(
                transport.generate_content(endpoint.model, prompt, config),
                timeout=timeout,
            )
            if response.usage is not None:
                span.set_attribute("llm.tokens_total", response.usage.total_tokens)
        return CompletionResult(
            text=response.text,
            provider_used=endpoint,
            token_usage=response.usage,
        )

    async def dispatch(self, endpoints: Sequence[ProviderEndpoint], prompt: str,
                       config: Optional[dict] = None,
                       penalty_box: Optional[PenaltyBox] = None,
                       timeout: Optional[float] = None) -> CompletionResult:
        """Try ``endpoints`` in order; see module docstring for the failure rules."""
        box = penalty_box if penalty_box is not None else self.penalty_box
        timeout = timeout or self.settings.timeout_seconds
        attempts = 0
        last_error: Optional[Exception] = None

        for endpoint in endpoints:
            if await box.async_is_penalized(endpoint.id):
                logger.debug(f"Skipping penalized endpoint {endpoint.id}")
                continue

            attempts += 1
            try:
                result = await self._attempt(endpoint, prompt, config, timeout)
            except NonTransientDispatchError:
                raise
            except Exception as e:
                if not is_transient(e):
                    status = getattr(e, "status", None)
                    logger.error(f"Non-transient failure on {endpoint.id} (status {status}): {e}")
                    raise NonTransientDispatchError(
                        f"{endpoint.id}: {e}", status=status, endpoint_id=endpoint.id,
                    ) from e
                if isinstance(e, (asyncio.TimeoutError, TimeoutError)):
                    e = TimeoutError(f"{endpoint.id} timed out after {timeout}s")
                last_error = e
                logger.warning(f"Endpoint {endpoint.id} failed (attempt {attempts}): {e}")
                await box.async_add(endpoint.id, self.settings.penalty_seconds)
                self._report_retry(endpoint, e, attempts - 1)
                if not self.settings.auto_failover:
                    logger.info("Auto-failover disabled; not trying further endpoints")
                    break
                continue

            if attempts > 1:
                logger.info(f"Failover succeeded on {endpoint.id} after {attempts} attempt(s)")
            self._report_usage(endpoint, result.token_usage)
            return result

        if attempts == 0:
            waiting = ", ".join(
                f"{ep.id} ({box.time_remaining(ep.id):.0f}s)" for ep in endpoints
                if box.is_penalized(ep.id)
            ) or "no endpoints configured"
            raise AllEndpointsExhaustedError(
                "All endpoints are in the penalty box", last_error=waiting, attempts=0,
            )
        raise AllEndpointsFailedError(
            f"All {attempts} attempted endpoint(s) failed",
            last_error=str(last_error), attempts=attempts,
        )

    async def dispatch_structured(self, endpoints: Sequence[ProviderEndpoint], prompt: str,
                                  config: Optional[dict] = None,
                                  penalty_box: Optional[PenaltyBox] = None,
                                  expected_field: Optional[str] = None,
                                  prefer: str = "yaml",
                                  timeout: Optional[float] = None,
                                  ) -> tuple[CompletionResult, ExtractionResult]:
        result = await self.dispatch(endpoints, prompt, config, penalty_box, timeout)
        extraction = extract_structured(result.text, expected_field, prefer=prefer)
        if extraction.ok:
            logger.debug(f"Structured output from {result.provider_used.id} parsed as {extraction.format}")
        else:
            logger.warning(f"No structured data in response from {result.provider_used.id}")
        return result, extraction

    async def dispatch_with_backoff(self, endpoint: ProviderEndpoint, prompt: str,
                                    config: Optional[dict] = None) -> CompletionResult:
        """Single endpoint, fixed backoff schedule, timeout widening by 60 s per attempt."""
        last_error: Optional[Exception] = None
        for attempt in range(1, len(BACKOFF_DELAYS) + 1):
            if attempt > 1:
                delay = BACKOFF_DELAYS[attempt - 2]
                logger.info(f"Retrying {endpoint.id} in {delay:.0f}s...")
                await self._sleep(delay)
            timeout = BACKOFF_TIMEOUT_STEP * attempt
            try:
                result = await self._attempt(endpoint, prompt, config, timeout)
            except NonTransientDispatchError:
                raise
            except Exception as e:
                if not is_transient(e):
                    raise NonTransientDispatchError(
                        f"{endpoint.id}: {e}", status=getattr(e, "status", None),
                        endpoint_id=endpoint.id,
                    ) from e
                last_error = e
                logger.warning(f"Attempt {attempt} on {endpoint.id} failed: {e}")
                self._report_retry(endpoint, e, attempt - 1)
                continue
            self._report_usage(endpoint, result.token_usage)
            return result

        raise AllEndpointsFailedError(
            f"{endpoint.id} failed after {len(BACKOFF_DELAYS)} attempts",
            last_error=str(last_error), attempts=len(BACKOFF_DELAYS),
        )
