"""
Prism Controller — goal → council + ordered atomic task graph
=============================================================
Four steps, each a plain method so they can be exercised alone:

  A  classify the domain of the goal              (one JSON call)
  B  propose a council, generate tasks, then drive
     a bounded work queue that splits non-atomic
     tasks until they are atomic or a bound trips   (1 + N calls)
  C  route by complexity: ≤3 low, ≤6 medium, ≥7 slow
  D  assemble review data with time / cost estimates

Step B never recurses. Termination is guaranteed by four bounds: split depth,
total task budget, loop iterations and a stall counter that trips when
consecutive splits fail to raise the atomicity score.

Post-processing merges exact and near-duplicate tasks (token Jaccard ≥ 0.9),
remaps dependencies onto the survivors and emits a Kahn topological order
that schedules foundation work (requirements, scope, methodology …) first.
"""
from __future__ import annotations

import copy
import logging
import math
import time
from collections import deque
from typing import Any, Optional, Sequence

from .atomicity import (
    apply_validation,
    detect_mode_drift,
    normalize_task_text,
    score_atomicity,
    synergy_priority,
    task_text_overlap,
)
from .dispatch import AllEndpointsExhaustedError, DispatchError, HydraDispatcher
from .extraction import extract_structured, safe_json_array, safe_json_object, unwrap_list
from .hooks import EventType
from .models import (
    AtomicTask,
    Constitution,
    CouncilProposal,
    CouncilResult,
    DecompositionStrategy,
    DecompositionTelemetry,
    DomainClassification,
    PlanResult,
    ProjectMode,
    ReviewData,
    RoutingPath,
    RoutingResult,
    Specialist,
    StopReason,
    _as_float,
    _str_list,
    constitution_from_dict,
    specialist_from_dict,
    task_from_dict,
)
from .modes import (
    atomicity_rule,
    completeness_guidance,
    council_guidance,
    planning_artifact_type,
    task_example,
)
from .settings import PrismSettings
from .tracing import traced_decomposition

logger = logging.getLogger("prism_orchestrator.prism")

NEAR_DUPLICATE_THRESHOLD = 0.9
FAST_SECONDS_PER_TASK = 30
SLOW_SECONDS_PER_TASK = 120
FAST_COST_PER_TOKEN = 0.000001
SLOW_COST_PER_TOKEN = 0.00001

_AUTH_KEYWORDS = ("login", "log in", "auth", "sign-in", "sign in", "signin", "password", "account")
_API_KEYWORDS = ("api", "endpoint", "backend")
_UI_KEYWORDS = ("ui", "frontend", "interface", "page")
_DATA_KEYWORDS = ("database", "data", "store")


# ─────────────────────────────────────────────
# Post-processing (pure functions)
# ─────────────────────────────────────────────

def _keep_better(existing: AtomicTask, candidate: AtomicTask) -> AtomicTask:
    return candidate if score_atomicity(candidate) > score_atomicity(existing) else existing


def optimize_task_adjacency(tasks: list[AtomicTask]) -> list[AtomicTask]:
    """Dedup exact and near-duplicate tasks, remap dependencies, then order."""
    if len(tasks) <= 1:
        return list(tasks)

    clones = [copy.copy(t) for t in tasks]
    for t in clones:
        t.dependencies = list(t.dependencies or [])

    dropped: dict[str, str] = {}

    by_key: dict[str, int] = {}
    kept: list[AtomicTask] = []
    for task in clones:
        key = normalize_task_text(task.text)
        index = by_key.get(key)
        if index is None:
            by_key[key] = len(kept)
            kept.append(task)
            continue
        winner = _keep_better(kept[index], task)
        loser = task if winner is kept[index] else kept[index]
        kept[index] = winner
        dropped[loser.id] = winner.id

    reduced: list[AtomicTask] = []
    for task in kept:
        for i, existing in enumerate(reduced):
            if task_text_overlap(task, existing) >= NEAR_DUPLICATE_THRESHOLD:
                winner = _keep_better(existing, task)
                loser = task if winner is existing else existing
                reduced[i] = winner
                dropped[loser.id] = winner.id
                break
        else:
            reduced.append(task)

    valid_ids = {t.id for t in reduced}
    for task in reduced:
        remapped: list[str] = []
        for dep in task.dependencies:
            seen = set()
            while dep in dropped and dep not in seen:
                seen.add(dep)
                dep = dropped[dep]
            if dep != task.id and dep in valid_ids and dep not in remapped:
                remapped.append(dep)
        task.dependencies = remapped

    return order_tasks(reduced)


def order_tasks(tasks: list[AtomicTask]) -> list[AtomicTask]:
    """Kahn's algorithm; the ready queue is re-sorted by synergy_priority after every pop."""
    if len(tasks) <= 1:
        return list(tasks)

    by_id = {t.id: t for t in tasks}
    indegree = {t.id: 0 for t in tasks}
    outgoing: dict[str, list[str]] = {t.id: [] for t in tasks}
    for task in tasks:
        for dep in task.dependencies:
            if dep in by_id:
                outgoing[dep].append(task.id)
                indegree[task.id] += 1

    ready = sorted((t for t in tasks if indegree[t.id] == 0), key=synergy_priority)
    ordered: list[AtomicTask] = []
    while ready:
        task = ready.pop(0)
        ordered.append(task)
        for child_id in outgoing[task.id]:
            indegree[child_id] -= 1
            if indegree[child_id] == 0:
                ready.append(by_id[child_id])
        ready.sort(key=synergy_priority)

    if len(ordered) < len(tasks):
        placed = {t.id for t in ordered}
        leftovers = sorted((t for t in tasks if t.id not in placed), key=synergy_priority)
        logger.warning(f"Dependency cycle left {len(leftovers)} task(s) unordered; appending")
        ordered.extend(leftovers)
    return ordered


def route_tasks(tasks: list[AtomicTask]) -> RoutingResult:
    """Step C: complexity ≤3 low/fast, ≤6 medium/fast, otherwise high/slow."""
    result = RoutingResult()
    for task in tasks:
        if task.complexity <= 3:
            task.routing_path = RoutingPath.FAST
            result.fast_path_tasks.append(task)
            result.complexity_distribution["low"] += 1
        elif task.complexity <= 6:
            task.routing_path = RoutingPath.FAST
            result.fast_path_tasks.append(task)
            result.complexity_distribution["medium"] += 1
        else:
            task.routing_path = RoutingPath.SLOW
            result.slow_path_tasks.append(task)
            result.complexity_distribution["high"] += 1
        result.estimated_total_tokens += task.estimated_tokens
    logger.info(
        f"Routing: {len(result.fast_path_tasks)} fast, {len(result.slow_path_tasks)} slow"
    )
    return result


def format_duration(total_seconds: int) -> str:
    if total_seconds < 60:
        return f"{total_seconds} seconds"
    return f"{math.ceil(total_seconds / 60)} minutes"


def prepare_review(council: CouncilProposal, routing: RoutingResult) -> ReviewData:
    """Step D."""
    fast, slow = routing.fast_path_tasks, routing.slow_path_tasks
    seconds = len(fast) * FAST_SECONDS_PER_TASK + len(slow) * SLOW_SECONDS_PER_TASK
    cost = (
        sum(t.estimated_tokens for t in fast) * FAST_COST_PER_TOKEN
        + sum(t.estimated_tokens for t in slow) * SLOW_COST_PER_TOKEN
    )
    return ReviewData(
        council_members=[(s, True) for s in council.specialists],
        tasks=[(t, t.enabled) for t in fast + slow],
        estimated_time=format_duration(seconds),
        estimated_cost=f"${cost:.4f}",
    )


def _mentions(text: str, keywords: Sequence[str]) -> bool:
    return any(k in text for k in keywords)


def generate_fallback_tasks(goal: str, domain: str, council: CouncilProposal,
                            mode: ProjectMode) -> list[AtomicTask]:
    """Deterministic, network-free plan used when generation returns nothing."""
    goal_lower = goal.lower()
    specialist = council.lead_id or "domain_expert"
    tasks: list[AtomicTask] = []

    def push(task_id: str, title: str, instruction: str, complexity: int,
             dependencies: Optional[list[str]] = None):
        tasks.append(AtomicTask(
            id=task_id,
            title=title,
            instruction=instruction,
            domain=domain,
            complexity=complexity,
            estimated_tokens=1000 + complexity * 100,
            dependencies=dependencies or [],
            assigned_specialist=specialist,
        ))

    push("fallback_requirements", "Define Core Requirements",
         f'Analyze the following goal and extract the core requirements: "{goal[:200]}"', 3)

    if mode == ProjectMode.SOFTWARE:
        push("fallback_architecture", "Design System Architecture",
             f'Based on the goal "{goal[:120]}", outline the architecture modules and '
             "interface boundaries.", 5, ["fallback_requirements"])
        push("fallback_plan", "Create Implementation Roadmap",
             f'Create an architecture-first implementation roadmap for: "{goal[:150]}"',
             4, ["fallback_architecture"])
        if _mentions(goal_lower, _AUTH_KEYWORDS):
            push("fallback_auth_design", "Design Authentication Strategy",
                 "Specify the authentication flow: login credential handling, password "
                 "storage policy, session lifecycle and account recovery.",
                 5, ["fallback_architecture"])
        if _mentions(goal_lower, _API_KEYWORDS):
            push("fallback_api_design", "Define API Contract Coverage",
                 "Define endpoint contracts, request/response schemas, and authentication "
                 "boundaries.", 5, ["fallback_architecture"])
        if _mentions(goal_lower, _UI_KEYWORDS):
            push("fallback_ui_design", "Define Interface Specification",
                 "Define the major interface flows and component-level specifications.",
                 4, ["fallback_architecture"])
        if _mentions(goal_lower, _DATA_KEYWORDS):
            push("fallback_data_model", "Define Data Model",
                 "Define the data entities, relationships, and persistence constraints.",
                 5, ["fallback_requirements"])
    elif mode == ProjectMode.SCIENTIFIC_RESEARCH:
        push("fallback_literature", "Define Literature Review Scope",
             "Define search terms, inclusion/exclusion criteria, and source-quality thresholds.",
             5, ["fallback_requirements"])
        push("fallback_methodology", "Design Methodology Framework",
             "Design methodology, evidence standards, and reproducibility controls for the "
             "research plan.", 6, ["fallback_literature"])
        push("fallback_analysis", "Define Analysis Plan",
             "Define analysis techniques, expected limitations, and validation strategy.",
             5, ["fallback_methodology"])
    elif mode == ProjectMode.LEGAL_RESEARCH:
        push("fallback_issue_framing", "Frame Legal Issues",
             "Frame the primary legal issues and governing legal questions.",
             5, ["fallback_requirements"])
        push("fallback_precedent", "Map Governing Precedents",
             "Map controlling and persuasive authorities with jurisdiction relevance.",
             6, ["fallback_issue_framing"])
        push("fallback_irac", "Draft IRAC Structure",
             "Draft an IRAC-aligned analysis structure with citation checkpoints.",
             5, ["fallback_precedent"])
    elif mode == ProjectMode.CREATIVE_WRITING:
        push("fallback_premise", "Define Narrative Premise",
             "Define premise, genre expectations, and central thematic intent.",
             4, ["fallback_requirements"])
        push("fallback_structure", "Design Story Structure",
             "Design act-level structure, key turning points, and pacing targets.",
             5, ["fallback_premise"])
        push("fallback_character_arcs", "Map Character Arcs",
             "Map protagonist and antagonist arc trajectories across the planned structure.",
             5, ["fallback_structure"])
    else:
        push("fallback_scope", "Define Scope Boundaries",
             "Define in-scope vs out-of-scope boundaries and critical assumptions.",
             4, ["fallback_requirements"])
        push("fallback_validation", "Define Validation Criteria",
             "Define measurable success criteria and a validation approach.",
             4, ["fallback_scope"])

    logger.info(f"Generated {len(tasks)} fallback tasks")
    return tasks


# ─────────────────────────────────────────────
# Controller
# ─────────────────────────────────────────────

class PrismController:
    """
    Runs the A → B → C → D pipeline over a HydraDispatcher.

    ``failed_parses`` collects raw task-generation output that no extraction
    strategy could read when ``json_retry_mode == "prompt"``; the caller may
    feed an entry back through retry_with_explicit_json().
    """

    def __init__(self, dispatcher: HydraDispatcher,
                 endpoints: Optional[Sequence[Any]] = None,
                 settings: Optional[PrismSettings] = None):
        self.dispatcher = dispatcher
        self.settings = settings or PrismSettings()
        self.endpoints = list(endpoints) if endpoints is not None else list(self.settings.endpoints)
        self.failed_parses: list[dict] = []

    async def _complete(self, prompt: str, config: Optional[dict] = None) -> str:
        result = await self.dispatcher.dispatch(self.endpoints, prompt, config)
        return result.text or ""

    def clear_failed_parses(self) -> None:
        self.failed_parses.clear()

    # ── Pipeline ──────────────────────────────────────────────────────────────

    async def run_full_decomposition(self, goal: str,
                                     constitution: Optional[Constitution | dict] = None) -> PlanResult:
        if isinstance(constitution, dict):
            constitution = constitution_from_dict(constitution)
        result = PlanResult()
        logger.info("Starting four-step decomposition")

        with traced_decomposition(len(goal)) as span:
            try:
                logger.info("Step A: domain classification")
                result.step_a = await self.classify_domain(goal, constitution)

                logger.info("Step B: council + atomic tasks")
                result.step_b = await self.propose_council_and_tasks(goal, constitution, result.step_a)

                logger.info("Step C: adaptive routing")
                result.step_c = route_tasks(result.step_b.atomic_tasks)

                logger.info("Step D: review data")
                result.step_d = prepare_review(result.step_b.council, result.step_c)

                result.success = True
                span.set_attribute("prism.task_count", len(result.tasks))
                logger.info(f"Decomposition complete: {len(result.tasks)} atomic tasks")
                hooks = getattr(self.dispatcher, "hooks", None)
                if hooks is not None:
                    telemetry = result.step_b.telemetry
                    hooks.fire(
                        EventType.PLAN_DECOMPOSED, task_count=len(result.tasks),
                        stop_reason=telemetry.stop_reason.value if telemetry else "",
                    )
            except Exception as e:
                logger.error(f"Decomposition failed: {e}")
                result.errors.append(str(e))
        return result

    # ── Step A ────────────────────────────────────────────────────────────────

    async def classify_domain(self, goal: str,
                              constitution: Optional[Constitution]) -> DomainClassification:
        result = DomainClassification()
        if constitution:
            context = (
                f"Constitution Domain: {constitution.domain}\n"
                f"Tech Stack: {', '.join(constitution.tech_stack) or 'unspecified'}\n"
                f"Constraints: {constitution.constraint_text()}"
            )
        else:
            context = "No constitution provided."

        prompt = f'''You are the DOMAIN CLASSIFIER for the Prism system.

USER GOAL:
"""
{goal}
"""

PROJECT CONTEXT:
"""
{context}
"""

TASK: Determine the SPECIFIC domain of this project.

Examples of good domain classification:
- "Corporate Legal Contract Analysis" (not just "Legal")
- "Real-time Financial Trading Dashboard" (not just "Finance")
- "B2B SaaS Project Management Tool" (not just "Software")

Return JSON:
{{
    "domain": "Specific domain name",
    "subDomain": "Optional sub-category",
    "domainExpertise": ["specific_skill_1", "specific_skill_2"],
    "confidence": 0.0 to 1.0,
    "reasoning": "Brief explanation"
}}

Be SPECIFIC. Generic domains like "Software" or "Web" are failures.'''

        try:
            text = await self._complete(prompt, {"response_mime_type": "application/json"})
        except Exception as e:
            logger.warning(f"Domain classification failed, using General: {e}")
            return result

        data = safe_json_object(text)
        if data:
            result.domain = str(data.get("domain") or "General")
            result.sub_domain = data.get("subDomain", data.get("sub_domain")) or None
            result.expertise = _str_list(data.get("domainExpertise", data.get("expertise")))
            result.confidence = max(0.0, min(1.0, _as_float(data.get("confidence"), 0.5)))
        logger.info(f"Domain: {result.domain} (confidence {result.confidence:.0%})")
        return result

    # ── Step B ────────────────────────────────────────────────────────────────

    async def generate_council(self, goal: str, classification: DomainClassification,
                               mode: ProjectMode) -> CouncilProposal:
        size = self.settings.decomposition.max_council_size
        prompt = f'''You are The Prism. Generate a CUSTOM Council of Specialists for this specific domain.

DOMAIN: {classification.domain}
SUB-DOMAIN: {classification.sub_domain or "N/A"}
REQUIRED EXPERTISE: {", ".join(classification.expertise)}
PROJECT MODE: {mode.value}

GOAL: "{goal}"

## CRITICAL ROLE DESIGN RULES

Each specialist must produce {planning_artifact_type(mode)} with rationale, not implementation or final product output.
{council_guidance(mode)}

Generate up to {size} specialists (minimum 1, maximum {size}) with HYPER-SPECIFIC roles for this domain.

Return JSON:
{{
    "domain": "{classification.domain}",
    "specialists": [
        {{
            "id": "snake_case_id",
            "role": "Specific Role Title (Max 5 words)",
            "persona": "Detailed system prompt with expertise and Anti-Conformity stance",
            "capabilities": ["specific_capability"],
            "temperature": 0.2 to 0.8
        }}
    ],
    "reasoning": "Why this team composition"
}}'''

        data = None
        try:
            text = await self._complete(prompt, {"response_mime_type": "application/json"})
            data = safe_json_object(text, expected_field="specialists")
        except AllEndpointsExhaustedError:
            raise
        except DispatchError as e:
            logger.warning(f"Council generation call failed: {e}")

        specialists: list[Specialist] = []
        if data and isinstance(data.get("specialists"), list):
            specialists = [
                specialist_from_dict(s, i) for i, s in enumerate(data["specialists"])
                if isinstance(s, dict)
            ]
        if not specialists:
            logger.warning("Council parse failed; using single-expert fallback council")
            return CouncilProposal(
                domain=classification.domain,
                specialists=[Specialist(
                    id="domain_expert",
                    role=f"{classification.domain} Expert",
                    persona=f"You are a senior expert in {classification.domain}.",
                    capabilities=["analysis", "planning"],
                    temperature=0.5,
                )],
                reasoning="Fallback council generated due to LLM error.",
                sub_domain=classification.sub_domain,
            )

        return CouncilProposal(
            domain=str(data.get("domain") or classification.domain),
            specialists=specialists[:size],
            reasoning=str(data.get("reasoning") or ""),
            sub_domain=classification.sub_domain,
        )

    def _task_prompt(self, goal: str, classification: DomainClassification,
                     constitution: Optional[Constitution], council: CouncilProposal,
                     mode: ProjectMode) -> str:
        max_tasks = self.settings.decomposition.max_atomic_tasks
        constraint_line = ""
        if constitution and constitution.constraints:
            constraint_line = f"**Constraints: {constitution.constraint_text()}**"
        roster = "\n".join(f"- `{s.id}`: {s.role}" for s in council.specialists)
        planning = "ARCHITECTURAL PLANNING" if mode == ProjectMode.SOFTWARE else "DOMAIN-APPROPRIATE PLANNING"

        return f"""# PRISM ATOMIZER PROTOCOL (Soft-Strict)

You are The Prism's ATOMIZER. Your job is to break down this goal into ATOMIC single-step tasks.

---

## PROJECT CONTEXT

**DOMAIN:** {classification.domain}
**PROJECT MODE:** {mode.value}
**GOAL:** "{goal}"
{constraint_line}

**COUNCIL MEMBERS (Assign tasks to these specialists):**
{roster}

---

## CRITICAL CONSTRAINTS

1. **NOT A CODING AGENT** - These are {planning} tasks, not implementation.
2. **ATOMICITY RULES:**
   - {atomicity_rule(mode)}
   - ONE primary action verb per task (Specify, Design, Define, Analyze, Document)
   - ONE clear deliverable per task
3. **COMPLETENESS:**
   - Decompose into the SMALLEST independently completable atomic tasks needed to satisfy the goal.
   - **TASK LIMIT:** Generate up to {max_tasks} tasks. Do NOT exceed {max_tasks} unless absolutely critical.
   - {completeness_guidance(mode)}

---

## MODE-SPECIFIC TASK EXAMPLE

{task_example(mode)}

---

## YOUR RESPONSE FORMAT

**STEP 1: THINK (Markdown reasoning)**
First, analyze the goal and explain your decomposition strategy.

**STEP 2: COMMIT (YAML block)**
After your reasoning, output a ```yaml block with the task list:

```yaml
tasks:
  - id: snake_case_id
    title: Short task title
    instruction: Detailed single-step instruction
    domain: {classification.domain}
    complexity: 5
    estimatedTokens: 1000
    dependencies: []
    assignedSpecialist: specialist_id_from_council
```

Begin your response with your THINKING, then end with the YAML commit block:"""

    async def generate_atomic_tasks(self, goal: str, classification: DomainClassification,
                                    constitution: Optional[Constitution],
                                    council: CouncilProposal, mode: ProjectMode,
                                    temperature: float = 0.5) -> list[AtomicTask]:
        prompt = self._task_prompt(goal, classification, constitution, council, mode)
        try:
            text = await self._complete(prompt, {"temperature": temperature})
        except AllEndpointsExhaustedError:
            raise
        except DispatchError as e:
            logger.warning(f"Task generation call failed: {e}")
            return []

        if not text.strip():
            logger.warning("Empty response for atomic task generation")
            return []

        extraction = extract_structured(text, expected_field="tasks")
        items = unwrap_list(extraction.data, "tasks")
        if items:
            logger.debug(f"Atomic tasks extracted as {extraction.format}")
            return self._tasks_from_items(items, classification.domain, "task")

        logger.warning(f"Failed to parse atomic tasks (YAML and JSON): {text[:200]!r}")
        retry_mode = self.settings.decomposition.json_retry_mode
        if retry_mode == "all":
            retried = await self.retry_with_explicit_json(text, classification.domain)
            if retried:
                logger.info("Automatic JSON retry succeeded")
                return retried
            logger.warning("Automatic JSON retry failed")
        elif retry_mode == "prompt":
            self.failed_parses.append({
                "node_id": "prism_atomic_tasks",
                "node_name": "Atomic Task Generation",
                "raw_output": text,
                "timestamp": time.time(),
            })
            logger.warning("Parse failure stored for caller-driven retry")
        return []

    @staticmethod
    def _tasks_from_items(items: list, domain: str, prefix: str) -> list[AtomicTask]:
        return [
            task_from_dict(item, default_id=f"{prefix}_{i + 1}", domain=domain)
            for i, item in enumerate(items) if isinstance(item, dict)
        ]

    async def retry_with_explicit_json(self, previous_output: str, domain: str) -> list[AtomicTask]:
        """One low-temperature call asking for nothing but a raw JSON array."""
        prompt = f"""Your previous response was not valid JSON.
Please output ONLY a valid JSON array with no markdown formatting, no explanation, no code blocks.

Previous response that failed to parse (truncated):
{previous_output[:500]}...

Respond with ONLY the raw JSON array starting with [ and ending with ].
No other text. Just the JSON array of atomic tasks."""
        try:
            text = await self._complete(
                prompt, {"response_mime_type": "application/json", "temperature": 0.3}
            )
        except DispatchError as e:
            logger.warning(f"JSON retry call failed: {e}")
            return []
        items = safe_json_array(text) or []
        return self._tasks_from_items(items, domain, "retry_task")

    async def redecompose_task(self, task: AtomicTask) -> list[AtomicTask]:
        """Ask for a 2-4 way split. A failed call or parse returns ``[task]``."""
        issues = ", ".join(task.atomicity_issues or []) or "Multiple actions detected"
        prompt = f"""The following task was flagged as NON-ATOMIC because it contains multiple actions.

NON-ATOMIC TASK:
Title: "{task.title}"
Instruction: "{task.instruction}"
Issues: {issues}

BREAK THIS INTO 2-4 TRULY ATOMIC SUB-TASKS.

Each sub-task must:
1. Have ONE action verb only
2. Have ONE clear deliverable
3. Be independently completable

Return JSON array:
[
    {{
        "title": "Single action title",
        "instruction": "Single step instruction",
        "complexity": 1-10,
        "estimatedTokens": 500-2000,
        "dependencies": []
    }}
]"""
        try:
            text = await self._complete(prompt, {"response_mime_type": "application/json"})
        except DispatchError as e:
            logger.warning(f"Re-decomposition of {task.id} failed: {e}")
            return [task]

        extraction = extract_structured(text, expected_field="tasks", prefer="json")
        if not extraction.ok:
            return [task]
        subtasks = []
        for i, item in enumerate(unwrap_list(extraction.data, "tasks")):
            if not isinstance(item, dict):
                continue
            sub = task_from_dict(item, default_id="", domain=task.domain,
                                 default_complexity=task.complexity)
            sub.id = f"{task.id}_sub_{i + 1}"
            sub.domain = task.domain
            sub.assigned_specialist = sub.assigned_specialist or task.assigned_specialist
            subtasks.append(sub)
        return subtasks

    async def propose_council_and_tasks(self, goal: str, constitution: Optional[Constitution],
                                        classification: DomainClassification) -> CouncilResult:
        dec = self.settings.decomposition
        mode = constitution.mode if constitution else ProjectMode.SOFTWARE
        recursive = dec.strategy == DecompositionStrategy.FIXPOINT_RECURSIVE
        max_depth = max(dec.max_decomposition_passes, 6) if recursive else dec.max_decomposition_passes
        max_iterations = dec.iteration_limit
        stall_limit = dec.stall_threshold
        max_tasks = dec.max_atomic_tasks

        council = await self.generate_council(goal, classification, mode)

        tasks = await self.generate_atomic_tasks(goal, classification, constitution, council, mode, 0.5)
        passes = 1
        if not tasks:
            logger.warning("Zero tasks generated; retrying at temperature 0.8")
            tasks = await self.generate_atomic_tasks(goal, classification, constitution, council, mode, 0.8)
            passes += 1
            if not tasks:
                logger.warning("Retry produced nothing; synthesising fallback tasks")
                tasks = generate_fallback_tasks(goal, classification.domain, council, mode)

        telemetry = DecompositionTelemetry(strategy=dec.strategy)
        queue: deque[tuple[AtomicTask, int]] = deque((t, 0) for t in tasks)
        committed: list[AtomicTask] = []
        non_atomic = 0
        iterations = 0
        stall = 0

        def stalled(reason: str) -> bool:
            if stall >= stall_limit:
                logger.warning(f"Stall limit reached ({stall_limit}) {reason}")
                telemetry.stop_reason = StopReason.STALL_LIMIT
                return True
            return False

        while queue and iterations < max_iterations:
            iterations += 1
            if len(committed) >= max_tasks:
                logger.warning(f"Reached max task budget ({max_tasks}); stopping decomposition")
                telemetry.stop_reason = StopReason.MAX_TASKS
                break

            current, depth = queue.popleft()
            telemetry.max_depth_reached = max(telemetry.max_depth_reached, depth)
            validation = apply_validation(current)
            if validation.is_atomic:
                committed.append(current)
                continue

            non_atomic += 1
            can_split = (
                dec.strategy != DecompositionStrategy.OFF
                and depth < max_depth
                and passes < max_iterations
            )
            if not can_split:
                committed.append(current)
                continue

            parent_score = score_atomicity(current, validation)
            subtasks = await self.redecompose_task(current)
            passes += 1

            if not subtasks:
                stall += 1
                committed.append(current)
                if stalled("after an empty split"):
                    break
                continue

            scored = []
            for sub in subtasks:
                if detect_mode_drift(sub.text, mode):
                    telemetry.mode_drift_events += 1
                    telemetry.rejected_splits += 1
                    continue
                scored.append((sub, score_atomicity(sub, apply_validation(sub))))

            if not scored:
                stall += 1
                committed.append(current)
                if stalled("after mode-drift filtering"):
                    break
                continue

            average = sum(s for _, s in scored) / len(scored)
            improved = average >= parent_score + 0.05 or any(
                s >= parent_score + 0.1 for _, s in scored
            )

            if not improved and not recursive:
                stall += 1
                telemetry.rejected_splits += 1
                committed.append(current)
                if stalled("without score improvement"):
                    break
                continue

            stall = 0 if improved else stall + 1
            if stall >= stall_limit:
                committed.append(current)
                telemetry.rejected_splits += 1
                stalled("in fixpoint mode")
                break

            for sub, _ in scored:
                if len(committed) + len(queue) >= max_tasks:
                    break
                queue.append((sub, depth + 1))

        if iterations >= max_iterations and queue:
            telemetry.stop_reason = StopReason.MAX_ITERATIONS
            logger.warning(f"Hit max decomposition iterations ({max_iterations})")

        if queue:
            logger.warning(f"Committing {len(queue)} remaining queued task(s) as-is")
            while queue and len(committed) < max_tasks:
                pending, _ = queue.popleft()
                if pending.atomicity_issues is None and pending.is_atomic:
                    apply_validation(pending)
                committed.append(pending)

        optimized = optimize_task_adjacency(committed)
        if len(optimized) != len(committed):
            logger.info(f"Post-processing reduced overlap: {len(committed)} -> {len(optimized)} tasks")

        telemetry.total_iterations = iterations
        telemetry.stall_cycles = stall
        telemetry.overlap_reduced = max(0, len(committed) - len(optimized))
        logger.info(
            f"Generated {len(optimized)} tasks; re-decomposed {non_atomic} non-atomic "
            f"(stop: {telemetry.stop_reason.value})"
        )
        return CouncilResult(
            council=council,
            atomic_tasks=optimized,
            non_atomic_redecomposed=non_atomic,
            total_decomposition_passes=passes,
            telemetry=telemetry,
        )
