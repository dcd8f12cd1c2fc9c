"""
Prism Orchestrator — Core Models & Types
========================================
All data structures and enums shared by the dispatch layer, the
decomposition engine, the verification subsystem and the checkpoint
state machine.

LLM output is untrusted: every ``*_from_dict`` parser tolerates missing or
mistyped fields and falls back to safe defaults instead of raising.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


# ─────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────

class ProjectMode(str, Enum):
    SOFTWARE = "software"
    SCIENTIFIC_RESEARCH = "scientific_research"
    LEGAL_RESEARCH = "legal_research"
    CREATIVE_WRITING = "creative_writing"
    GENERAL = "general"


class RoutingPath(str, Enum):
    FAST = "fast"
    SLOW = "slow"


class DecompositionStrategy(str, Enum):
    OFF = "off"
    BOUNDED = "bounded"
    FIXPOINT_RECURSIVE = "fixpoint_recursive"


class StopReason(str, Enum):
    COMPLETED = "completed"
    MAX_ITERATIONS = "max_iterations"
    STALL_LIMIT = "stall_limit"
    MAX_TASKS = "max_tasks"


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"


class GapCategory(str, Enum):
    MISSING_REQUIREMENT = "missing_requirement"
    LOGIC_GAP = "logic_gap"
    SECURITY_HOLE = "security_hole"
    EDGE_CASE = "edge_case"
    DEPENDENCY_MISSING = "dependency_missing"
    SCOPE_CREEP = "scope_creep"


class BrickPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


class EvidenceType(str, Enum):
    CONSTITUTION_QUOTE = "constitution_quote"
    ARTIFACT_QUOTE = "artifact_quote"
    LOGICAL_CONTRADICTION = "logical_contradiction"


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"


class DuelOutcome(str, Enum):
    VERIFIED = "verified"
    REPAIRED_AND_VERIFIED = "repaired_and_verified"
    FINAL_FAILURE = "final_failure"


class StrictnessProfile(str, Enum):
    STRICT = "strict"
    BALANCED = "balanced"
    LOCAL_SMALL = "local_small"


def parse_mode(value: Any) -> ProjectMode:
    """Normalise a raw mode value; anything unrecognised becomes SOFTWARE."""
    if isinstance(value, ProjectMode):
        return value
    try:
        return ProjectMode(str(value).strip().lower())
    except ValueError:
        return ProjectMode.SOFTWARE


def _enum_or(enum_cls, value: Any, default):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return default


def _str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None and str(v).strip()]
    return [str(value)] if str(value).strip() else []


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


# ─────────────────────────────────────────────
# Provider detection
# ─────────────────────────────────────────────

PROVIDERS = ("openai", "anthropic", "google", "groq", "openrouter", "local")


def get_provider(model: str) -> str:
    if "/" in model:
        return "openrouter"
    if model.startswith("claude"):
        return "anthropic"
    elif model.startswith(("gpt", "o1", "o3", "o4", "codex")):
        return "openai"
    elif model.startswith(("gemini", "gemma")):
        return "google"
    elif model.startswith(("llama", "mixtral")):
        return "groq"
    return "local"


# ─────────────────────────────────────────────
# Dispatch layer
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class ProviderEndpoint:
    """One (vendor, model) pair. ``id`` is what the penalty box keys on."""
    provider: str
    model: str
    id: str = ""
    label: str = ""

    def __post_init__(self):
        if not self.id:
            object.__setattr__(self, "id", f"{self.provider}:{self.model}")

    @classmethod
    def for_model(cls, model: str, label: str = "") -> "ProviderEndpoint":
        return cls(provider=get_provider(model), model=model, label=label)


DEFAULT_ENDPOINTS: list[ProviderEndpoint] = [
    ProviderEndpoint("google", "gemini-2.5-flash"),
    ProviderEndpoint("openai", "gpt-4o-mini"),
    ProviderEndpoint("anthropic", "claude-haiku-4-5-20251001"),
    ProviderEndpoint("groq", "llama-3.3-70b-versatile"),
    ProviderEndpoint("openrouter", "meta-llama/llama-3.3-70b-instruct:free"),
]


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class CompletionResult:
    text: str
    provider_used: ProviderEndpoint
    token_usage: Optional[TokenUsage] = None


@dataclass(frozen=True)
class ExtractionResult:
    data: Any = None
    format: Optional[str] = None   # "yaml" | "json" | None

    @property
    def ok(self) -> bool:
        return self.data is not None


# ─────────────────────────────────────────────
# Constitution (read-only constraints provider)
# ─────────────────────────────────────────────

@dataclass
class Constraint:
    description: str
    kind: str = "hard"


@dataclass
class Constitution:
    domain: str = "General"
    tech_stack: list[str] = field(default_factory=list)
    constraints: list[Constraint] = field(default_factory=list)
    mode: ProjectMode = ProjectMode.SOFTWARE

    def constraint_text(self) -> str:
        return ", ".join(c.description for c in self.constraints)

    def to_dict(self) -> dict:
        return {
            "domain": self.domain,
            "tech_stack": list(self.tech_stack),
            "constraints": [asdict(c) for c in self.constraints],
            "mode": self.mode.value,
        }

    def to_text(self) -> str:
        """Markdown rendering handed to the auditor."""
        lines = [
            f"## DOMAIN\n{self.domain}",
            f"## PROJECT MODE\n{self.mode.value}",
        ]
        if self.tech_stack:
            lines.append("## TECH STACK\n" + "\n".join(f"- {t}" for t in self.tech_stack))
        if self.constraints:
            lines.append("## CONSTRAINTS\n" + "\n".join(
                f"- [{c.kind}] {c.description}" for c in self.constraints
            ))
        return "\n\n".join(lines)


def constitution_from_dict(d: dict) -> Constitution:
    constraints = []
    for c in d.get("constraints") or []:
        if isinstance(c, dict):
            constraints.append(Constraint(
                description=str(c.get("description", "")),
                kind=str(c.get("kind", c.get("type", "hard"))),
            ))
        elif c:
            constraints.append(Constraint(description=str(c)))
    stack = d.get("tech_stack", d.get("techStack"))
    if isinstance(stack, dict):
        stack = [f"{k}: {v}" for k, v in stack.items()]
    return Constitution(
        domain=str(d.get("domain") or "General"),
        tech_stack=_str_list(stack),
        constraints=constraints,
        mode=parse_mode(d.get("mode")),
    )


# ─────────────────────────────────────────────
# Decomposition engine
# ─────────────────────────────────────────────

@dataclass
class AtomicTask:
    id: str
    title: str
    instruction: str
    domain: str = "General"
    complexity: int = 5
    routing_path: RoutingPath = RoutingPath.FAST
    estimated_tokens: int = 1000
    dependencies: list[str] = field(default_factory=list)
    assigned_specialist: Optional[str] = None
    is_atomic: bool = True
    atomicity_issues: Optional[list[str]] = None
    enabled: bool = True

    def __post_init__(self):
        self.complexity = max(1, min(10, self.complexity))
        self.routing_path = RoutingPath.SLOW if self.complexity >= 7 else RoutingPath.FAST

    @property
    def text(self) -> str:
        return f"{self.title} {self.instruction}"

    def to_dict(self) -> dict:
        d = asdict(self)
        d["routing_path"] = self.routing_path.value
        return d


def task_from_dict(d: dict, default_id: str, domain: str = "General",
                   default_complexity: int = 5) -> AtomicTask:
    return AtomicTask(
        id=str(d.get("id") or default_id),
        title=str(d.get("title") or "Untitled Task"),
        instruction=str(d.get("instruction") or ""),
        domain=str(d.get("domain") or domain),
        complexity=_as_int(d.get("complexity"), default_complexity) or default_complexity,
        estimated_tokens=_as_int(
            d.get("estimated_tokens", d.get("estimatedTokens")), 1000) or 1000,
        dependencies=_str_list(d.get("dependencies")),
        assigned_specialist=d.get("assigned_specialist", d.get("assignedSpecialist")),
        enabled=bool(d.get("enabled", True)),
    )


@dataclass
class AtomicityValidation:
    is_atomic: bool = True
    issues: list[str] = field(default_factory=list)
    suggestion: Optional[str] = None


@dataclass
class Specialist:
    id: str
    role: str
    persona: str = ""
    capabilities: list[str] = field(default_factory=list)
    temperature: float = 0.5


def specialist_from_dict(d: dict, index: int) -> Specialist:
    return Specialist(
        id=str(d.get("id") or f"specialist_{index + 1}"),
        role=str(d.get("role") or "Specialist"),
        persona=str(d.get("persona") or ""),
        capabilities=_str_list(d.get("capabilities")),
        temperature=max(0.0, min(1.0, _as_float(d.get("temperature"), 0.5))),
    )


@dataclass
class CouncilProposal:
    domain: str
    specialists: list[Specialist] = field(default_factory=list)
    reasoning: str = ""
    sub_domain: Optional[str] = None

    @property
    def lead_id(self) -> Optional[str]:
        return self.specialists[0].id if self.specialists else None


@dataclass
class DomainClassification:
    domain: str = "General"
    sub_domain: Optional[str] = None
    expertise: list[str] = field(default_factory=list)
    confidence: float = 0.5


@dataclass
class DecompositionTelemetry:
    strategy: DecompositionStrategy = DecompositionStrategy.BOUNDED
    total_iterations: int = 0
    max_depth_reached: int = 0
    stall_cycles: int = 0
    stop_reason: StopReason = StopReason.COMPLETED
    overlap_reduced: int = 0
    rejected_splits: int = 0
    mode_drift_events: int = 0


@dataclass
class CouncilResult:
    council: CouncilProposal
    atomic_tasks: list[AtomicTask] = field(default_factory=list)
    non_atomic_redecomposed: int = 0
    total_decomposition_passes: int = 0
    telemetry: Optional[DecompositionTelemetry] = None


@dataclass
class RoutingResult:
    fast_path_tasks: list[AtomicTask] = field(default_factory=list)
    slow_path_tasks: list[AtomicTask] = field(default_factory=list)
    complexity_distribution: dict[str, int] = field(
        default_factory=lambda: {"low": 0, "medium": 0, "high": 0}
    )
    estimated_total_tokens: int = 0


@dataclass
class ReviewData:
    council_members: list[tuple[Specialist, bool]] = field(default_factory=list)
    tasks: list[tuple[AtomicTask, bool]] = field(default_factory=list)
    estimated_time: str = ""
    estimated_cost: str = ""


@dataclass
class PlanResult:
    step_a: DomainClassification = field(default_factory=DomainClassification)
    step_b: CouncilResult = field(
        default_factory=lambda: CouncilResult(council=CouncilProposal(domain=""))
    )
    step_c: RoutingResult = field(default_factory=RoutingResult)
    step_d: ReviewData = field(default_factory=ReviewData)
    success: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def tasks(self) -> list[AtomicTask]:
        return self.step_b.atomic_tasks

    @property
    def council(self) -> CouncilProposal:
        return self.step_b.council


# ─────────────────────────────────────────────
# Verification subsystem
# ─────────────────────────────────────────────

@dataclass
class IdentifiedGap:
    id: str
    severity: Severity
    category: GapCategory
    title: str
    description: str = ""
    affected_tasks: list[str] = field(default_factory=list)
    suggested_fix: str = ""


def gap_from_dict(d: dict, default_id: str) -> IdentifiedGap:
    return IdentifiedGap(
        id=str(d.get("id") or default_id),
        severity=_enum_or(Severity, d.get("severity"), Severity.MINOR),
        category=_enum_or(GapCategory, d.get("category"), GapCategory.MISSING_REQUIREMENT),
        title=str(d.get("title") or "Unnamed gap"),
        description=str(d.get("description") or ""),
        affected_tasks=_str_list(d.get("affected_tasks", d.get("affectedTasks"))),
        suggested_fix=str(d.get("suggested_fix", d.get("suggestedFix")) or ""),
    )


@dataclass
class MissingBrick:
    id: str
    title: str
    instruction: str
    priority: BrickPriority = BrickPriority.MEDIUM
    reason: str = ""
    complexity: int = 5
    insert_after: Optional[str] = None
    insert_before: Optional[str] = None


def brick_from_dict(d: dict, default_id: str) -> MissingBrick:
    return MissingBrick(
        id=str(d.get("id") or default_id),
        title=str(d.get("title") or "Missing task"),
        instruction=str(d.get("instruction") or d.get("title") or ""),
        priority=_enum_or(BrickPriority, d.get("priority"), BrickPriority.MEDIUM),
        reason=str(d.get("reason") or ""),
        complexity=max(1, min(10, _as_int(d.get("complexity"), 5))),
        insert_after=d.get("insert_after", d.get("insertAfter")) or None,
        insert_before=d.get("insert_before", d.get("insertBefore")) or None,
    )


@dataclass
class SaboteurResult:
    success: bool = False
    gaps: list[IdentifiedGap] = field(default_factory=list)
    missing_bricks: list[MissingBrick] = field(default_factory=list)
    original_task_count: int = 0
    new_task_count: int = 0
    stress_test_score: int = 100
    analysis_time: float = 0.0
    warnings: list[str] = field(default_factory=list)


@dataclass
class EvidenceItem:
    type: EvidenceType
    content: str
    explanation: str


def evidence_from_dict(d: Any) -> EvidenceItem:
    if not isinstance(d, dict):
        d = {"content": str(d)}
    return EvidenceItem(
        type=_enum_or(EvidenceType, d.get("type"), EvidenceType.LOGICAL_CONTRADICTION),
        content=str(d.get("content") or "Unspecified"),
        explanation=str(d.get("explanation") or "No explanation provided"),
    )


@dataclass
class AuditResult:
    verdict: Verdict
    confidence: float = 50.0
    evidence: list[EvidenceItem] = field(default_factory=list)
    reasoning: str = ""
    issues: list[str] = field(default_factory=list)
    repair_suggestions: list[str] = field(default_factory=list)
    raw_response: str = ""
    model_used: str = ""

    @property
    def passed(self) -> bool:
        return self.verdict == Verdict.PASS


@dataclass
class RepairAttempt:
    attempt_number: int
    failure_evidence: list[EvidenceItem]
    repair_suggestions: list[str]
    original_artifact: str
    repaired_artifact: Optional[str] = None
    reaudit_result: Optional[AuditResult] = None


@dataclass
class DuelResult:
    outcome: DuelOutcome
    final_artifact: str
    initial_audit: AuditResult
    total_rounds: int
    is_verified: bool
    repair_attempt: Optional[RepairAttempt] = None


# ─────────────────────────────────────────────
# Session checkpoint
# ─────────────────────────────────────────────

@dataclass
class SessionCheckpoint:
    phase: str
    description: str
    total_steps: int
    completed_steps: int
    timestamp: float = field(default_factory=time.time)
    checkpoint_version: str = "1.0.0"
    current_node_id: Optional[str] = None
    completed_node_ids: Optional[list[str]] = None
    total_nodes: Optional[int] = None
    last_error: Optional[str] = None
    retry_count: Optional[int] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


def checkpoint_from_dict(d: dict) -> SessionCheckpoint:
    return SessionCheckpoint(
        phase=str(d.get("phase", "idle")),
        description=str(d.get("description", "")),
        total_steps=_as_int(d.get("total_steps"), 10),
        completed_steps=_as_int(d.get("completed_steps"), 0),
        timestamp=_as_float(d.get("timestamp"), 0.0),
        checkpoint_version=str(d.get("checkpoint_version", "1.0.0")),
        current_node_id=d.get("current_node_id"),
        completed_node_ids=d.get("completed_node_ids"),
        total_nodes=d.get("total_nodes"),
        last_error=d.get("last_error"),
        retry_count=d.get("retry_count"),
    )
