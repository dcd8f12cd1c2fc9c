"""
Settings — decomposition bounds, failover behaviour and the YAML settings file
==============================================================================
Schema reference (every field is optional):

    decomposition:
      strategy: bounded              # off | bounded | fixpoint_recursive
      max_atomic_tasks: 30           # clamped to 5..50, default 50
      max_decomposition_passes: 3    # clamped to 1..10, forced to 1 when off
      max_council_size: 5            # clamped to 1..15
      json_retry_mode: none          # none | all | prompt
      max_iterations: 150            # default 150, or 400 when fixpoint_recursive
      stall_limit: 4                 # default 4, or 8 when fixpoint_recursive
    hydra:
      auto_failover: true
      penalty_seconds: 300
      timeout_seconds: 60
    tribunal_strictness: balanced    # strict | balanced | local_small
    endpoints:
      - gemini-2.5-flash                          # provider inferred
      - {provider: openai, model: gpt-4o-mini, label: "Fast tier"}

Out-of-range numbers are clamped rather than rejected; unknown enum values
are rejected with ValueError naming the file.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import jsonschema
import yaml

from .models import (
    DEFAULT_ENDPOINTS,
    DecompositionStrategy,
    ProviderEndpoint,
    StrictnessProfile,
    _enum_or,
    get_provider,
)

logger = logging.getLogger("prism_orchestrator.settings")

JSON_RETRY_MODES = ("none", "all", "prompt")

MAX_ITERATIONS_BOUNDED = 150
MAX_ITERATIONS_RECURSIVE = 400
STALL_LIMIT_BOUNDED = 4
STALL_LIMIT_RECURSIVE = 8


def _clamp_int(value: Any, lo: int, hi: int) -> Optional[int]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return min(hi, max(lo, int(round(value))))


# ─────────────────────────────────────────────────────────────────────────────
# Dataclasses
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class DecompositionSettings:
    strategy: DecompositionStrategy = DecompositionStrategy.BOUNDED
    max_atomic_tasks: int = 50
    max_decomposition_passes: int = 3
    max_council_size: int = 5
    json_retry_mode: str = "none"
    max_iterations: Optional[int] = None
    stall_limit: Optional[int] = None

    def __post_init__(self):
        self.strategy = _enum_or(DecompositionStrategy, self.strategy,
                                 DecompositionStrategy.BOUNDED)
        self.max_atomic_tasks = _clamp_int(self.max_atomic_tasks, 5, 50) or 50
        self.max_decomposition_passes = _clamp_int(self.max_decomposition_passes, 1, 10) or 3
        if self.strategy == DecompositionStrategy.OFF:
            self.max_decomposition_passes = 1
        self.max_council_size = _clamp_int(self.max_council_size, 1, 15) or 5
        if self.json_retry_mode not in JSON_RETRY_MODES:
            self.json_retry_mode = "none"
        if self.max_iterations is not None:
            self.max_iterations = _clamp_int(self.max_iterations, 1, 1000)
        if self.stall_limit is not None:
            self.stall_limit = _clamp_int(self.stall_limit, 1, 50)

    @property
    def is_recursive(self) -> bool:
        return self.strategy == DecompositionStrategy.FIXPOINT_RECURSIVE

    @property
    def iteration_limit(self) -> int:
        if self.max_iterations is not None:
            return self.max_iterations
        return MAX_ITERATIONS_RECURSIVE if self.is_recursive else MAX_ITERATIONS_BOUNDED

    @property
    def stall_threshold(self) -> int:
        if self.stall_limit is not None:
            return self.stall_limit
        return STALL_LIMIT_RECURSIVE if self.is_recursive else STALL_LIMIT_BOUNDED


@dataclass
class HydraSettings:
    auto_failover: bool = True
    penalty_seconds: float = 300.0
    timeout_seconds: float = 60.0


@dataclass
class PrismSettings:
    decomposition: DecompositionSettings = field(default_factory=DecompositionSettings)
    hydra: HydraSettings = field(default_factory=HydraSettings)
    tribunal_strictness: StrictnessProfile = StrictnessProfile.BALANCED
    endpoints: list[ProviderEndpoint] = field(default_factory=lambda: list(DEFAULT_ENDPOINTS))


# ─────────────────────────────────────────────────────────────────────────────
# Schema
# ─────────────────────────────────────────────────────────────────────────────

_ENDPOINT_SCHEMA = {
    "oneOf": [
        {"type": "string", "minLength": 1},
        {
            "type": "object",
            "required": ["model"],
            "properties": {
                "provider": {"type": "string"},
                "model": {"type": "string", "minLength": 1},
                "id": {"type": "string"},
                "label": {"type": "string"},
            },
        },
    ]
}

SETTINGS_SCHEMA = {
    "type": "object",
    "properties": {
        "decomposition": {
            "type": "object",
            "properties": {
                "strategy": {"enum": [s.value for s in DecompositionStrategy]},
                "max_atomic_tasks": {"type": "number"},
                "max_decomposition_passes": {"type": "number"},
                "max_council_size": {"type": "number"},
                "json_retry_mode": {"enum": list(JSON_RETRY_MODES)},
                "max_iterations": {"type": "number"},
                "stall_limit": {"type": "number"},
            },
        },
        "hydra": {
            "type": "object",
            "properties": {
                "auto_failover": {"type": "boolean"},
                "penalty_seconds": {"type": "number", "minimum": 0},
                "timeout_seconds": {"type": "number", "exclusiveMinimum": 0},
            },
        },
        "tribunal_strictness": {"enum": [s.value for s in StrictnessProfile]},
        "endpoints": {"type": "array", "items": _ENDPOINT_SCHEMA},
    },
}


# ─────────────────────────────────────────────────────────────────────────────
# Loaders
# ─────────────────────────────────────────────────────────────────────────────

def _parse_endpoint(raw: Any) -> ProviderEndpoint:
    if isinstance(raw, str):
        return ProviderEndpoint.for_model(raw)
    model = str(raw["model"])
    return ProviderEndpoint(
        provider=str(raw.get("provider") or get_provider(model)),
        model=model,
        id=str(raw.get("id") or ""),
        label=str(raw.get("label") or ""),
    )


def settings_from_dict(raw: dict[str, Any]) -> PrismSettings:
    """Build PrismSettings from an already-validated mapping."""
    dec_raw = raw.get("decomposition") or {}
    hydra_raw = raw.get("hydra") or {}
    decomposition = DecompositionSettings(
        strategy=dec_raw.get("strategy", DecompositionStrategy.BOUNDED),
        max_atomic_tasks=dec_raw.get("max_atomic_tasks", 50),
        max_decomposition_passes=dec_raw.get("max_decomposition_passes", 3),
        max_council_size=dec_raw.get("max_council_size", 5),
        json_retry_mode=dec_raw.get("json_retry_mode", "none"),
        max_iterations=dec_raw.get("max_iterations"),
        stall_limit=dec_raw.get("stall_limit"),
    )
    hydra = HydraSettings(
        auto_failover=bool(hydra_raw.get("auto_failover", True)),
        penalty_seconds=float(hydra_raw.get("penalty_seconds", 300.0)),
        timeout_seconds=float(hydra_raw.get("timeout_seconds", 60.0)),
    )
    endpoints = [_parse_endpoint(e) for e in raw.get("endpoints") or []]
    return PrismSettings(
        decomposition=decomposition,
        hydra=hydra,
        tribunal_strictness=_enum_or(StrictnessProfile, raw.get("tribunal_strictness"),
                                     StrictnessProfile.BALANCED),
        endpoints=endpoints or list(DEFAULT_ENDPOINTS),
    )


def load_settings(path: str | Path) -> PrismSettings:
    """
    Parse a YAML settings file.

    Raises
    ------
    FileNotFoundError  — file doesn't exist
    ValueError         — malformed YAML or schema violation
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"'{path}': invalid YAML: {e}") from e

    if not isinstance(raw, dict):
        raise ValueError(f"'{path}': top level must be a mapping")
    try:
        jsonschema.validate(instance=raw, schema=SETTINGS_SCHEMA)
    except jsonschema.ValidationError as e:
        where = ".".join(str(p) for p in e.absolute_path) or "<root>"
        raise ValueError(f"'{path}': {where}: {e.message}") from e

    settings = settings_from_dict(raw)
    logger.info(
        f"Loaded settings from {path}: strategy={settings.decomposition.strategy.value}, "
        f"{len(settings.endpoints)} endpoint(s)"
    )
    return settings


def settings_from_env() -> PrismSettings:
    """
    Settings from PRISM_* environment variables:
      PRISM_STRATEGY, PRISM_MAX_TASKS, PRISM_MAX_PASSES, PRISM_MAX_COUNCIL,
      PRISM_JSON_RETRY, PRISM_PENALTY_SECONDS, PRISM_TIMEOUT_SECONDS,
      PRISM_STRICTNESS, PRISM_ENDPOINTS (comma-separated model names)
    """
    from dotenv import load_dotenv
    load_dotenv(override=False)

    def _num(name: str, default: float) -> float:
        value = os.environ.get(name)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            logger.warning(f"Ignoring non-numeric {name}={value!r}")
            return default

    raw: dict[str, Any] = {
        "decomposition": {
            "strategy": os.environ.get("PRISM_STRATEGY", "bounded"),
            "max_atomic_tasks": _num("PRISM_MAX_TASKS", 50),
            "max_decomposition_passes": _num("PRISM_MAX_PASSES", 3),
            "max_council_size": _num("PRISM_MAX_COUNCIL", 5),
            "json_retry_mode": os.environ.get("PRISM_JSON_RETRY", "none"),
        },
        "hydra": {
            "penalty_seconds": _num("PRISM_PENALTY_SECONDS", 300.0),
            "timeout_seconds": _num("PRISM_TIMEOUT_SECONDS", 60.0),
        },
        "tribunal_strictness": os.environ.get("PRISM_STRICTNESS", "balanced"),
    }
    models = [m.strip() for m in os.environ.get("PRISM_ENDPOINTS", "").split(",") if m.strip()]
    if models:
        raw["endpoints"] = models
    return settings_from_dict(raw)


def configure_logging(verbose: bool = False) -> None:
    """Application-side logging setup; the library itself never configures handlers."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%H:%M:%S",
        force=True,
    )
