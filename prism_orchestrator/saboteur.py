"""
Saboteur — red-team stress test for a task plan
===============================================
Three passes over the plan, then brick generation:

  1. adversarial LLM pass      3-5 gaps from a hostile reviewer (YAML)
  2. checklist scan            aspects expected for the mode / domain that no
                               task mentions
  3. dependency scan           unknown dependency ids, first cycle found

Critical and major gaps become MissingBricks. inject_bricks() splices them
into the task list as ``[INJECTED]`` tasks.
LLM failures fall back to rule-based output, except AllEndpointsExhaustedError,
which propagates.
"""
from __future__ import annotations

import logging
import time
from typing import Optional, Sequence

from .atomicity import detect_mode_drift
from .dispatch import AllEndpointsExhaustedError, HydraDispatcher
from .extraction import unwrap_list
from .hooks import EventType
from .models import (
    AtomicTask,
    BrickPriority,
    Constitution,
    CouncilProposal,
    GapCategory,
    IdentifiedGap,
    MissingBrick,
    ProjectMode,
    RoutingPath,
    SaboteurResult,
    Severity,
    brick_from_dict,
    gap_from_dict,
)
from .modes import safe_brick_instruction

logger = logging.getLogger("prism_orchestrator.saboteur")

INJECTED_PREFIX = "[INJECTED] "
INJECTED_DOMAIN = "injected"
INJECTED_TOKENS = 1500

SEVERITY_PENALTY = {Severity.CRITICAL: 20, Severity.MAJOR: 10, Severity.MINOR: 5}

DOMAIN_CHECKLISTS: dict[str, list[str]] = {
    "webapp": ["authentication", "authorization", "error handling", "input validation",
               "logging", "database", "api", "frontend", "deployment", "testing"],
    "api": ["authentication", "rate limiting", "input validation", "error responses",
            "documentation", "versioning", "testing", "monitoring"],
    "mobile": ["authentication", "offline mode", "push notifications", "deep linking",
               "app store", "analytics", "crash reporting"],
    "data": ["data validation", "data transformation", "error handling", "logging",
             "backup", "recovery", "security"],
    "ml": ["data preprocessing", "model training", "model evaluation", "inference",
           "monitoring", "versioning", "testing"],
    "general": ["error handling", "logging", "testing", "documentation", "security",
                "performance"],
}

MODE_CHECKLISTS: dict[ProjectMode, list[str]] = {
    ProjectMode.SCIENTIFIC_RESEARCH: ["citations", "methodology", "literature review",
                                      "reproducibility", "limitations"],
    ProjectMode.LEGAL_RESEARCH: ["citations", "jurisdiction", "precedent", "counterarguments"],
    ProjectMode.CREATIVE_WRITING: ["character arcs", "plot structure", "conflict",
                                   "resolution", "theme"],
}

ASPECT_PATTERNS: dict[str, list[str]] = {
    "authentication": ["auth", "login", "sign in", "password", "credential", "jwt", "oauth", "session"],
    "authorization": ["permission", "role", "access control", "rbac", "authorize"],
    "error handling": ["error", "exception", "catch", "try", "failure", "fallback"],
    "input validation": ["validat", "sanitiz", "schema", "zod", "yup", "check input"],
    "logging": ["log", "trace", "debug", "monitor", "audit"],
    "testing": ["test", "spec", "jest", "vitest", "unit", "integration", "e2e"],
    "security": ["secur", "encrypt", "hash", "csrf", "xss", "injection", "https"],
    "documentation": ["document", "readme", "api doc", "swagger", "openapi"],
    "deployment": ["deploy", "ci/cd", "pipeline", "docker", "kubernetes", "vercel", "netlify"],
    "database": ["database", "db", "sql", "postgres", "mongo", "redis", "schema"],
    "api": ["api", "endpoint", "rest", "graphql", "route"],
    "frontend": ["ui", "component", "page", "view", "style", "css", "react", "vue"],
    "rate limiting": ["rate limit", "throttl", "quota"],
    "monitoring": ["monitor", "metric", "alert", "health check"],
    "citations": ["cite", "citation", "reference", "bibliograph", "source"],
    "methodology": ["method", "protocol", "study design", "experimental design"],
    "literature review": ["literature", "prior work", "survey", "systematic review"],
    "reproducibility": ["reproduc", "replicat"],
    "limitations": ["limitation", "threat to validity", "bias", "caveat"],
    "jurisdiction": ["jurisdiction", "venue", "governing law"],
    "precedent": ["precedent", "case law", "authorit"],
    "counterarguments": ["counterargument", "counter-argument", "opposing", "rebuttal"],
    "character arcs": ["character", "arc", "protagonist"],
    "plot structure": ["plot", "structure", "act ", "beat"],
    "conflict": ["conflict", "tension", "stakes"],
    "resolution": ["resolution", "climax", "ending"],
    "theme": ["theme", "motif"],
}

MAJOR_ASPECTS = frozenset({"error handling", "security", "citations", "methodology"})


def aspect_patterns(aspect: str) -> list[str]:
    return ASPECT_PATTERNS.get(aspect, [aspect])


def select_checklist(constitution: Optional[Constitution]) -> tuple[str, list[str]]:
    """Mode list for non-software modes, else the first domain key found in the domain."""
    if constitution and constitution.mode in MODE_CHECKLISTS:
        return constitution.mode.value, MODE_CHECKLISTS[constitution.mode]
    domain = (constitution.domain if constitution else "").lower()
    for key, items in DOMAIN_CHECKLISTS.items():
        if key != "general" and key in domain:
            return key, items
    return "general", DOMAIN_CHECKLISTS["general"]


def compute_score(gaps: Sequence[IdentifiedGap]) -> int:
    score = 100 - sum(SEVERITY_PENALTY.get(g.severity, 0) for g in gaps)
    return max(0, min(100, score))


def find_checklist_gaps(tasks: Sequence[AtomicTask],
                        constitution: Optional[Constitution]) -> list[IdentifiedGap]:
    _, checklist = select_checklist(constitution)
    domain = (constitution.domain if constitution else "general").lower() or "general"
    task_text = " ".join(f"{t.title} {t.instruction}" for t in tasks).lower()

    gaps = []
    for aspect in checklist:
        if any(p in task_text for p in aspect_patterns(aspect)):
            continue
        gaps.append(IdentifiedGap(
            id=f"domain_gap_{aspect.replace(' ', '_')}",
            severity=Severity.MAJOR if aspect in MAJOR_ASPECTS else Severity.MINOR,
            category=GapCategory.MISSING_REQUIREMENT,
            title=f"Missing: {aspect[:1].upper()}{aspect[1:]}",
            description=(
                f'The task list does not appear to cover "{aspect}" which is typically '
                f"required for {domain} projects."
            ),
            suggested_fix=f"Add a task to handle {aspect}",
        ))
    return gaps


def find_dependency_gaps(tasks: Sequence[AtomicTask]) -> list[IdentifiedGap]:
    gaps = []
    by_id = {t.id: t for t in tasks}

    for task in tasks:
        for dep in task.dependencies:
            if dep in by_id:
                continue
            gaps.append(IdentifiedGap(
                id=f"dep_gap_{task.id}_{dep}",
                severity=Severity.MAJOR,
                category=GapCategory.DEPENDENCY_MISSING,
                title=f"Missing Dependency: {dep}",
                description=f'Task "{task.title}" depends on "{dep}" which doesn\'t exist in the task list.',
                affected_tasks=[task.id],
                suggested_fix=f'Either add the missing task "{dep}" or remove the dependency',
            ))

    visited: set[str] = set()
    stack: set[str] = set()

    def has_cycle(task_id: str) -> bool:
        visited.add(task_id)
        stack.add(task_id)
        node = by_id.get(task_id)
        if node:
            for dep in node.dependencies:
                if dep not in visited:
                    if has_cycle(dep):
                        return True
                elif dep in stack:
                    return True
        stack.discard(task_id)
        return False

    for task in tasks:
        if task.id not in visited and has_cycle(task.id):
            gaps.append(IdentifiedGap(
                id=f"dep_gap_circular_{task.id}",
                severity=Severity.CRITICAL,
                category=GapCategory.LOGIC_GAP,
                title="Circular Dependency Detected",
                description=f'Task "{task.title}" is involved in a circular dependency chain.',
                affected_tasks=[task.id],
                suggested_fix="Restructure tasks to break the circular dependency",
            ))
            break
    return gaps


def fallback_bricks(gaps: Sequence[IdentifiedGap]) -> list[MissingBrick]:
    return [
        MissingBrick(
            id=f"missing_brick_{gap.id}",
            title=gap.suggested_fix[:50] or gap.title[:50],
            instruction=gap.suggested_fix or gap.title,
            priority=BrickPriority.CRITICAL if gap.severity == Severity.CRITICAL else BrickPriority.HIGH,
            reason=gap.description,
            complexity=5,
        )
        for gap in gaps
    ]


def inject_bricks(tasks: Sequence[AtomicTask], bricks: Sequence[MissingBrick],
                  council: Optional[CouncilProposal] = None) -> list[AtomicTask]:
    """Return a new list with every brick spliced in as an ``[INJECTED]`` task."""
    result = list(tasks)
    specialist = council.lead_id if council else None

    for brick in bricks:
        task = AtomicTask(
            id=brick.id,
            title=f"{INJECTED_PREFIX}{brick.title}",
            instruction=brick.instruction,
            domain=INJECTED_DOMAIN,
            complexity=brick.complexity,
            estimated_tokens=INJECTED_TOKENS,
            assigned_specialist=specialist,
        )
        task.routing_path = RoutingPath.SLOW if task.complexity >= 7 else RoutingPath.FAST

        ids = [t.id for t in result]
        if brick.insert_after and brick.insert_after in ids:
            result.insert(ids.index(brick.insert_after) + 1, task)
        elif brick.insert_before and brick.insert_before in ids:
            result.insert(ids.index(brick.insert_before), task)
        elif brick.priority == BrickPriority.CRITICAL:
            result.insert(0, task)
        else:
            result.append(task)
    return result


class Saboteur:
    """Adversarial reviewer; LLM passes degrade to rule-based output unless every endpoint is benched."""

    def __init__(self, dispatcher: HydraDispatcher, endpoints: Sequence):
        self.dispatcher = dispatcher
        self.endpoints = list(endpoints)

    async def stress_test(self, tasks: Sequence[AtomicTask], council: Optional[CouncilProposal],
                          constitution: Optional[Constitution], goal: str) -> SaboteurResult:
        logger.info("Starting red-team stress test")
        started = time.monotonic()
        result = SaboteurResult(original_task_count=len(tasks), new_task_count=len(tasks))

        if not tasks:
            logger.warning("No tasks to stress test; decomposition produced nothing")
            result.warnings.append(
                "Prism generated 0 tasks. Saboteur cannot perform stress test on empty task list."
            )
            result.stress_test_score = 0
            result.analysis_time = time.monotonic() - started
            return result

        try:
            result.gaps.extend(await self.find_llm_gaps(tasks, constitution, goal))
            result.gaps.extend(find_checklist_gaps(tasks, constitution))
            result.gaps.extend(find_dependency_gaps(tasks))

            result.missing_bricks = await self.generate_bricks(result.gaps, tasks, constitution)
            result.new_task_count = len(tasks) + len(result.missing_bricks)
            result.stress_test_score = compute_score(result.gaps)
            result.success = True
            logger.info(
                f"Stress test complete: {len(result.gaps)} gaps, "
                f"{len(result.missing_bricks)} bricks, score {result.stress_test_score}/100"
            )
        except AllEndpointsExhaustedError:
            raise
        except Exception as e:
            logger.error(f"Stress test failed: {e}")
            result.warnings.append(f"Saboteur error: {e}")

        result.analysis_time = time.monotonic() - started
        return result

    async def find_llm_gaps(self, tasks: Sequence[AtomicTask], constitution: Optional[Constitution],
                            goal: str) -> list[IdentifiedGap]:
        task_list = "\n".join(
            f"{i + 1}. [{t.id}] {t.title}: {t.instruction}" for i, t in enumerate(tasks)
        )
        constraints = f"Constraints: {constitution.constraint_text()}" if constitution else ""
        prompt = f'''You are THE SABOTEUR - a hostile Red Team agent. Your job is to BREAK this plan by finding what's missing.

USER'S ORIGINAL GOAL:
"""
{goal}
"""

PROJECT CONSTITUTION:
"""
Domain: {constitution.domain if constitution else "Unknown"}
{constraints}
"""

PROPOSED TASK LIST:
"""
{task_list}
"""

YOUR MISSION: Find the GAPS. What's missing? What will cause this project to FAIL?

Think like an attacker:
1. What requirements did they forget?
2. What edge cases are unhandled?
3. What security holes exist?
4. What dependencies are assumed but not created?
5. What happens when things go wrong?

Return YAML array of 3-5 identified gaps (or fewer if plan is solid):

```yaml
- id: gap_1
  severity: critical # or major, minor
  category: missing_requirement # or logic_gap, security_hole, edge_case, dependency_missing, scope_creep
  title: "Short title of the gap"
  description: "Description of what's missing"
  affectedTasks:
    - "task_id_1"
  suggestedFix: "What task should be added"
```

BE ADVERSARIAL. Find the weak points. If the plan is genuinely solid, return fewer gaps.
DO NOT make up fake gaps - only report REAL missing pieces.'''

        try:
            _, extraction = await self.dispatcher.dispatch_structured(
                self.endpoints, prompt, {"temperature": 0.7}, expected_field="gaps",
            )
        except AllEndpointsExhaustedError:
            raise
        except Exception as e:
            logger.warning(f"LLM gap analysis failed: {e}")
            return []

        return [
            gap_from_dict(item, f"saboteur_gap_{i + 1}")
            for i, item in enumerate(unwrap_list(extraction.data, "gaps"))
            if isinstance(item, dict)
        ]

    async def generate_bricks(self, gaps: Sequence[IdentifiedGap], tasks: Sequence[AtomicTask],
                              constitution: Optional[Constitution]) -> list[MissingBrick]:
        significant = [g for g in gaps if g.severity in (Severity.CRITICAL, Severity.MAJOR)]
        if not significant:
            logger.info("No significant gaps; nothing to inject")
            return []

        gap_lines = "\n".join(
            f"{i + 1}. [{g.severity.value.upper()}] {g.title}: {g.description}"
            for i, g in enumerate(significant)
        )
        task_lines = "\n".join(f"- [{t.id}] {t.title}" for t in tasks)
        prompt = f"""You are THE SABOTEUR. You've identified gaps in a project plan. Now generate the MISSING TASKS to fill them.

IDENTIFIED GAPS:
{gap_lines}

EXISTING TASKS:
{task_lines}

Generate a MISSING BRICK (new task) for each gap:

Return YAML array:

```yaml
- id: missing_brick_1
  title: "Short task title"
  instruction: "Single-step atomic instruction"
  priority: critical # or high, medium
  insertAfter: "existing_task_id" # optional
  reason: "Which gap this fixes"
  complexity: 5 # 1-10
```

Make tasks ATOMIC (single action, single deliverable)."""

        bricks: list[MissingBrick] = []
        try:
            _, extraction = await self.dispatcher.dispatch_structured(
                self.endpoints, prompt, {"temperature": 0.7}, expected_field="bricks",
            )
            bricks = [
                brick_from_dict(item, f"missing_brick_{i + 1}")
                for i, item in enumerate(unwrap_list(extraction.data, "bricks"))
                if isinstance(item, dict)
            ]
        except AllEndpointsExhaustedError:
            raise
        except Exception as e:
            logger.warning(f"Brick generation failed: {e}")

        if not bricks:
            logger.warning("Using gap-derived fallback bricks")
            bricks = fallback_bricks(significant)

        mode = constitution.mode if constitution else ProjectMode.SOFTWARE
        for brick in bricks:
            if detect_mode_drift(f"{brick.title} {brick.instruction}", mode):
                logger.debug(f"Brick {brick.id} drifted out of {mode.value}; using safe instruction")
                brick.instruction = safe_brick_instruction(mode)
        return bricks

    def inject(self, tasks: Sequence[AtomicTask], bricks: Sequence[MissingBrick],
               council: Optional[CouncilProposal] = None) -> list[AtomicTask]:
        """inject_bricks() plus a BRICKS_INJECTED hook on the dispatcher's registry."""
        merged = inject_bricks(tasks, bricks, council)
        hooks = getattr(self.dispatcher, "hooks", None)
        if hooks is not None and bricks:
            hooks.fire(EventType.BRICKS_INJECTED, count=len(bricks), task_ids=[b.id for b in bricks])
        return merged
