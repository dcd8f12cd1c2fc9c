"""
Prism Orchestrator
==================
Planning core for multi-LLM project decomposition.
Supports: OpenAI, Anthropic Claude, Google Gemini, Groq, OpenRouter and any
OpenAI-compatible local server.

A goal and a constitution go in; a council of specialists and an ordered graph
of atomic tasks come out. Every model call walks an ordered endpoint list with
penalty-box failover; the plan is red-teamed by the Saboteur and each
artifact can be duelled by the Antagonist Mirror before it is accepted.

Basic usage:
    from prism_orchestrator import (
        Constitution, HydraDispatcher, PrismController, UnifiedTransport, load_settings,
    )

    settings = load_settings("prism.yaml")
    dispatcher = HydraDispatcher(UnifiedTransport(), settings=settings.hydra)
    prism = PrismController(dispatcher, settings.endpoints, settings)
    plan = asyncio.run(prism.run_full_decomposition(
        "Build a login system",
        Constitution(domain="Web App Authentication", tech_stack=["Python"]),
    ))

Verification:
    saboteur = Saboteur(dispatcher, settings.endpoints)
    report = asyncio.run(saboteur.stress_test(plan.tasks, plan.council, constitution, goal))
    tasks = inject_bricks(plan.tasks, report.missing_bricks, plan.council)
    mirror = AntagonistMirror(dispatcher, settings.endpoints, settings=settings)
"""

from .models import (
    AtomicTask, CompletionResult, Constitution, Constraint, CouncilProposal,
    DecompositionStrategy, ExtractionResult, PlanResult, ProjectMode,
    ProviderEndpoint, SaboteurResult, DuelResult, AuditResult, TokenUsage,
)
from .api_clients import LLMTransport, TransportError, TransportResponse, UnifiedTransport
from .penalty_box import PenaltyBox
from .dispatch import (
    AllEndpointsExhaustedError, AllEndpointsFailedError, DispatchError,
    EndpointsExhaustedError, HydraDispatcher, NonTransientDispatchError,
)
from .extraction import extract_structured, safe_json_parse, safe_yaml_parse
from .settings import (
    DecompositionSettings, HydraSettings, PrismSettings,
    configure_logging, load_settings, settings_from_env,
)
from .prism import PrismController
from .saboteur import Saboteur, inject_bricks
from .antagonist import AntagonistConfig, AntagonistMirror, quick_audit
from .checkpoint import CheckpointManager, SessionPhase, detect_resumable_session
from .state import InMemorySessionStore, SessionStore
from .hooks import EventType, HookRegistry
from .tracing import TracingConfig, configure_tracing

__all__ = [
    # ── Dispatch ─────────────────────────────────────────────────────────────
    "HydraDispatcher", "PenaltyBox", "ProviderEndpoint", "CompletionResult",
    "TokenUsage", "UnifiedTransport", "LLMTransport", "TransportError",
    "TransportResponse", "DispatchError", "NonTransientDispatchError",
    "EndpointsExhaustedError", "AllEndpointsExhaustedError", "AllEndpointsFailedError",
    "ExtractionResult", "extract_structured", "safe_json_parse", "safe_yaml_parse",
    # ── Decomposition ────────────────────────────────────────────────────────
    "PrismController", "PlanResult", "AtomicTask", "CouncilProposal",
    "Constitution", "Constraint", "ProjectMode", "DecompositionStrategy",
    # ── Verification ─────────────────────────────────────────────────────────
    "Saboteur", "SaboteurResult", "inject_bricks",
    "AntagonistMirror", "AntagonistConfig", "AuditResult", "DuelResult", "quick_audit",
    # ── Session state ────────────────────────────────────────────────────────
    "CheckpointManager", "SessionPhase", "detect_resumable_session",
    "SessionStore", "InMemorySessionStore",
    # ── Configuration & observability ────────────────────────────────────────
    "PrismSettings", "DecompositionSettings", "HydraSettings",
    "load_settings", "settings_from_env", "configure_logging",
    "HookRegistry", "EventType", "TracingConfig", "configure_tracing",
]
