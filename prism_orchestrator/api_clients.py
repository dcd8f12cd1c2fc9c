"""
API Clients — provider transports behind one capability interface
=================================================================
Each provider has its own SDK idiom. This module normalizes them into a
single ``generate_content(model, prompt, config)`` coroutine so the
dispatch layer never touches a vendor SDK type.

Transports surface failures as TransportError carrying the HTTP status (or
``network=True`` for connection/timeout failures) so the dispatcher can tell
transient errors from malformed requests.

Supported providers:
  openai      — AsyncOpenAI                       (OPENAI_API_KEY)
  anthropic   — AsyncAnthropic                    (ANTHROPIC_API_KEY)
  google      — google-genai Client, run in executor (GOOGLE_API_KEY / GEMINI_API_KEY)
  groq        — OpenAI-compatible                 (GROQ_API_KEY)
  openrouter  — OpenAI-compatible                 (OPENROUTER_API_KEY)
  local       — OpenAI-compatible local server    (LOCAL_LLM_BASE_URL)
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Optional, Protocol, runtime_checkable

from .models import TokenUsage

logger = logging.getLogger("prism_orchestrator.api")

_OPENAI_COMPATIBLE = {
    "groq": ("GROQ_API_KEY", "https://api.groq.com/openai/v1"),
    "openrouter": ("OPENROUTER_API_KEY", "https://openrouter.ai/api/v1"),
}


# ─────────────────────────────────────────────
# Interface
# ─────────────────────────────────────────────

class TransportError(Exception):
    """A provider call failed. ``status`` is the HTTP status when known."""

    def __init__(self, message: str, status: Optional[int] = None,
                 network: bool = False, provider: str = ""):
        super().__init__(message)
        self.status = status
        self.network = network
        self.provider = provider


class TransportResponse:
    """Normalized response from any provider."""
    __slots__ = ("text", "usage")

    def __init__(self, text: str, usage: Optional[TokenUsage] = None):
        self.text = text
        self.usage = usage


@runtime_checkable
class LLMTransport(Protocol):
    async def generate_content(self, model: str, prompt: str,
                               config: Optional[dict] = None) -> TransportResponse:
        ...


def translate_error(exc: Exception, provider: str) -> TransportError:
    """Map an SDK exception onto TransportError(status, network)."""
    if isinstance(exc, TransportError):
        return exc
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(exc, "code", None)
    if not isinstance(status, int):
        status = None
    name = type(exc).__name__
    network = status is None and any(k in name for k in ("Connect", "Timeout", "Network"))
    return TransportError(f"{provider}: {exc}", status=status, network=network, provider=provider)


def _messages(prompt: str, system: str) -> list[dict]:
    messages = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    return messages


# ─────────────────────────────────────────────
# Concrete transports
# ─────────────────────────────────────────────

class OpenAITransport:
    """OpenAI and every OpenAI-compatible endpoint (groq, openrouter, local)."""

    def __init__(self, client: Any, provider: str = "openai"):
        self._client = client
        self.provider = provider

    async def generate_content(self, model: str, prompt: str,
                               config: Optional[dict] = None) -> TransportResponse:
        config = config or {}
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": _messages(prompt, config.get("system", "")),
            "temperature": config.get("temperature", 0.7),
        }
        if config.get("max_output_tokens"):
            kwargs["max_tokens"] = config["max_output_tokens"]
        if config.get("response_mime_type") == "application/json":
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except Exception as exc:
            raise translate_error(exc, self.provider) from exc

        choice = response.choices[0]
        usage = response.usage
        return TransportResponse(
            text=choice.message.content or "",
            usage=TokenUsage(usage.prompt_tokens, usage.completion_tokens) if usage else None,
        )


class AnthropicTransport:

    provider = "anthropic"

    def __init__(self, client: Any):
        self._client = client

    async def generate_content(self, model: str, prompt: str,
                               config: Optional[dict] = None) -> TransportResponse:
        config = config or {}
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": config.get("max_output_tokens") or 2048,
            "temperature": config.get("temperature", 0.7),
            "messages": [{"role": "user", "content": prompt}],
        }
        if config.get("system"):
            kwargs["system"] = config["system"]
        try:
            response = await self._client.messages.create(**kwargs)
        except Exception as exc:
            raise translate_error(exc, self.provider) from exc

        text = ""
        for block in response.content:
            if hasattr(block, "text"):
                text += block.text
        return TransportResponse(
            text=text,
            usage=TokenUsage(response.usage.input_tokens, response.usage.output_tokens),
        )


class GoogleTransport:

    provider = "google"

    def __init__(self, client: Any):
        self._client = client

    async def generate_content(self, model: str, prompt: str,
                               config: Optional[dict] = None) -> TransportResponse:
        from google.genai import types

        config = config or {}
        gen_config = types.GenerateContentConfig(
            temperature=config.get("temperature", 0.7),
        )
        if config.get("max_output_tokens"):
            gen_config.max_output_tokens = config["max_output_tokens"]
        if config.get("system"):
            gen_config.system_instruction = config["system"]
        if config.get("response_mime_type"):
            gen_config.response_mime_type = config["response_mime_type"]

        # google-genai sync API; run in executor
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,
                lambda: self._client.models.generate_content(
                    model=model, contents=prompt, config=gen_config,
                ),
            )
        except Exception as exc:
            raise translate_error(exc, self.provider) from exc

        usage = None
        meta = getattr(response, "usage_metadata", None)
        if meta:
            usage = TokenUsage(
                getattr(meta, "prompt_token_count", 0) or 0,
                getattr(meta, "candidates_token_count", 0) or 0,
            )
        return TransportResponse(text=response.text or "", usage=usage)


# ─────────────────────────────────────────────
# Registry
# ─────────────────────────────────────────────

class UnifiedTransport:
    """
    Builds one transport per provider whose credentials are present.
    Missing keys → provider unavailable; the dispatcher treats a call to an
    unavailable provider as a non-transient configuration error.
    """

    def __init__(self, load_env: bool = True):
        self._transports: dict[str, LLMTransport] = {}
        if load_env:
            self._init_clients()

    def _init_clients(self):
        from dotenv import load_dotenv
        load_dotenv(override=True)

        try:
            if os.environ.get("OPENAI_API_KEY"):
                from openai import AsyncOpenAI
                self._transports["openai"] = OpenAITransport(AsyncOpenAI())
                logger.info("OpenAI transport initialized")
            for provider, (env_key, base_url) in _OPENAI_COMPATIBLE.items():
                if os.environ.get(env_key):
                    from openai import AsyncOpenAI
                    self._transports[provider] = OpenAITransport(
                        AsyncOpenAI(api_key=os.environ[env_key], base_url=base_url),
                        provider=provider,
                    )
                    logger.info(f"{provider} transport initialized")
            local_url = os.environ.get("LOCAL_LLM_BASE_URL")
            if local_url:
                from openai import AsyncOpenAI
                self._transports["local"] = OpenAITransport(
                    AsyncOpenAI(api_key=os.environ.get("LOCAL_LLM_API_KEY", "local"),
                                base_url=local_url),
                    provider="local",
                )
                logger.info(f"Local transport initialized at {local_url}")
        except ImportError:
            logger.warning("openai package not installed")

        try:
            if os.environ.get("ANTHROPIC_API_KEY"):
                from anthropic import AsyncAnthropic
                self._transports["anthropic"] = AnthropicTransport(AsyncAnthropic())
                logger.info("Anthropic transport initialized")
        except ImportError:
            logger.warning("anthropic package not installed")

        try:
            api_key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
            if api_key:
                from google import genai
                self._transports["google"] = GoogleTransport(genai.Client(api_key=api_key))
                logger.info("Google GenAI transport initialized")
        except ImportError:
            logger.warning("google-genai package not installed")

    def register(self, provider: str, transport: LLMTransport) -> None:
        self._transports[provider] = transport

    def get(self, provider: str) -> Optional[LLMTransport]:
        return self._transports.get(provider)

    def is_available(self, provider: str) -> bool:
        return provider in self._transports

    @property
    def providers(self) -> list[str]:
        return sorted(self._transports)
