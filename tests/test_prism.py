"""
Tests for prism_orchestrator/prism.py — the four-step decomposition pipeline.

Every model call goes through a ScriptedTransport, so each test reads as the
exact sequence of completions the controller receives.
"""
from __future__ import annotations

import asyncio
import json

import pytest

from conftest import ScriptedTransport
from prism_orchestrator.dispatch import HydraDispatcher
from prism_orchestrator.hooks import EventType, HookRegistry
from prism_orchestrator.models import (
    AtomicTask,
    Constitution,
    CouncilProposal,
    DecompositionStrategy,
    DomainClassification,
    ProjectMode,
    RoutingPath,
    Specialist,
    StopReason,
)
from prism_orchestrator.prism import (
    PrismController,
    format_duration,
    generate_fallback_tasks,
    optimize_task_adjacency,
    order_tasks,
    prepare_review,
    route_tasks,
)
from prism_orchestrator.saboteur import find_checklist_gaps
from prism_orchestrator.settings import DecompositionSettings, PrismSettings


CLASSIFY = json.dumps({
    "domain": "Web App Authentication",
    "subDomain": "Session management",
    "domainExpertise": ["oauth", "password hashing"],
    "confidence": 0.9,
})

COUNCIL = json.dumps({
    "domain": "Web App Authentication",
    "specialists": [
        {"id": "identity_architect", "role": "Identity Architect", "temperature": 0.3},
        {"id": "security_reviewer", "role": "Security Reviewer"},
    ],
    "reasoning": "Auth needs design plus review",
})

TASKS_YAML = """\
## Thinking
Authentication strategy first; everything else hangs off it.

```yaml
tasks:
  - id: user_model
    title: Define User Data Model
    instruction: Specify the user entity fields.
    complexity: 4
    dependencies: [auth_strategy]
  - id: auth_strategy
    title: Define Authentication Strategy
    instruction: Specify the token lifecycle and refresh rules.
    complexity: 8
  - id: login_flow
    title: Design Login Flow
    instruction: Describe the credential exchange sequence.
    complexity: 2
    dependencies: [auth_strategy]
```
"""


def make_prism(responses, default="", **decomposition):
    transport = ScriptedTransport(responses, default=default)
    dispatcher = HydraDispatcher(transport)
    settings = PrismSettings(decomposition=DecompositionSettings(**decomposition))
    return PrismController(dispatcher, settings.endpoints[:1], settings), transport


def task(task_id, title, instruction="Specify it.", **kw):
    return AtomicTask(id=task_id, title=title, instruction=instruction, **kw)


def tasks_yaml(items):
    lines = ["```yaml", "tasks:"]
    for item in items:
        lines.append(f"  - id: {item['id']}")
        lines.append(f"    title: {item['title']}")
        lines.append(f"    instruction: {item['instruction']}")
        if "assignedSpecialist" in item:
            lines.append(f"    assignedSpecialist: {item['assignedSpecialist']}")
    lines.append("```")
    return "\n".join(lines)


# ─────────────────────────────────────────────────────────────────────────────
# Full pipeline
# ─────────────────────────────────────────────────────────────────────────────

class TestFullDecomposition:
    def test_happy_path(self):
        prism, transport = make_prism([CLASSIFY, COUNCIL, TASKS_YAML])
        constitution = Constitution(domain="Web App Authentication", tech_stack=["Python"])
        plan = asyncio.run(prism.run_full_decomposition("Build a login system", constitution))

        assert plan.success
        assert plan.errors == []
        assert plan.step_a.domain == "Web App Authentication"
        assert plan.step_a.sub_domain == "Session management"
        assert plan.step_a.confidence == pytest.approx(0.9)
        assert [s.id for s in plan.council.specialists] == ["identity_architect", "security_reviewer"]
        assert [t.id for t in plan.tasks] == ["auth_strategy", "login_flow", "user_model"]
        assert len(transport.calls) == 3

        assert plan.step_c.complexity_distribution == {"low": 1, "medium": 1, "high": 1}
        assert [t.id for t in plan.step_c.slow_path_tasks] == ["auth_strategy"]
        assert plan.step_d.estimated_time == "3 minutes"
        assert plan.step_d.estimated_cost == "$0.0120"

    def test_plan_decomposed_hook_fires(self):
        prism, _ = make_prism([CLASSIFY, COUNCIL, TASKS_YAML])
        prism.dispatcher.hooks = HookRegistry()
        seen = []
        prism.dispatcher.hooks.add(
            EventType.PLAN_DECOMPOSED,
            lambda task_count, stop_reason: seen.append((task_count, stop_reason)),
        )
        asyncio.run(prism.run_full_decomposition("Build a login system"))
        assert seen == [(3, "completed")]

    def test_accepts_constitution_dict(self):
        prism, _ = make_prism([CLASSIFY, COUNCIL, TASKS_YAML])
        plan = asyncio.run(prism.run_full_decomposition(
            "Build a login system", {"domain": "Auth", "mode": "software"},
        ))
        assert plan.success

    def test_login_goal_survives_unusable_model_output(self):
        prism, _ = make_prism([CLASSIFY, "no json here", "", ""])
        plan = asyncio.run(prism.run_full_decomposition(
            "Build a login system", Constitution(domain="Authentication WebApp"),
        ))

        assert plan.success
        assert [s.id for s in plan.council.specialists] == ["domain_expert"]
        ids = [t.id for t in plan.tasks]
        assert ids[0] == "fallback_requirements"
        assert "fallback_auth_design" in ids
        auth = next(t for t in plan.tasks if t.id == "fallback_auth_design")
        assert auth.dependencies == ["fallback_architecture"]
        assert auth.assigned_specialist == "domain_expert"

        gaps = find_checklist_gaps(plan.tasks, Constitution(domain="Authentication WebApp"))
        assert "domain_gap_authentication" not in [g.id for g in gaps]

    def test_exhausted_endpoints_are_reported(self):
        prism, transport = make_prism([])
        for endpoint in prism.endpoints:
            prism.dispatcher.penalty_box.add(endpoint.id)
        plan = asyncio.run(prism.run_full_decomposition("Build a login system"))

        assert plan.success is False
        assert plan.errors
        assert plan.step_a.domain == "General"
        assert transport.calls == []


# ─────────────────────────────────────────────────────────────────────────────
# Step A / Step B building blocks
# ─────────────────────────────────────────────────────────────────────────────

class TestClassify:
    def test_garbage_defaults_to_general(self):
        prism, _ = make_prism(["I think it is about websites"])
        result = asyncio.run(prism.classify_domain("goal", None))
        assert result.domain == "General"
        assert result.confidence == 0.5

    def test_confidence_is_clamped(self):
        prism, _ = make_prism(['{"domain": "Trading", "confidence": 7}'])
        assert asyncio.run(prism.classify_domain("goal", None)).confidence == 1.0


class TestCouncil:
    def test_council_is_capped_at_max_size(self):
        specialists = [{"id": f"s{i}", "role": f"Role {i}"} for i in range(8)]
        prism, _ = make_prism([json.dumps({"specialists": specialists})], max_council_size=3)
        council = asyncio.run(prism.generate_council(
            "goal", DomainClassification(domain="Finance"), ProjectMode.SOFTWARE,
        ))
        assert [s.id for s in council.specialists] == ["s0", "s1", "s2"]
        assert council.domain == "Finance"

    def test_empty_specialist_list_falls_back(self):
        prism, _ = make_prism(['{"specialists": []}'])
        council = asyncio.run(prism.generate_council(
            "goal", DomainClassification(domain="Finance"), ProjectMode.SOFTWARE,
        ))
        assert council.lead_id == "domain_expert"
        assert council.specialists[0].role == "Finance Expert"


class TestJsonRetry:
    def _generate(self, prism):
        council = CouncilProposal(domain="Auth", specialists=[Specialist("lead", "Lead")])
        return asyncio.run(prism.generate_atomic_tasks(
            "goal", DomainClassification(domain="Auth"), None, council, ProjectMode.SOFTWARE,
        ))

    def test_mode_none_gives_up_quietly(self):
        prism, transport = make_prism(["pure prose without any structure"])
        assert self._generate(prism) == []
        assert len(transport.calls) == 1
        assert prism.failed_parses == []

    def test_mode_all_retries_with_explicit_json(self):
        retry = '[{"title": "Define Scope", "instruction": "List the boundaries."}]'
        prism, transport = make_prism(["pure prose without any structure", retry],
                                      json_retry_mode="all")
        tasks = self._generate(prism)
        assert [t.id for t in tasks] == ["retry_task_1"]
        assert tasks[0].domain == "Auth"
        assert transport.calls[1]["config"]["temperature"] == 0.3

    def test_mode_prompt_stores_failed_parse(self):
        prism, transport = make_prism(["pure prose without any structure"],
                                      json_retry_mode="prompt")
        assert self._generate(prism) == []
        assert len(transport.calls) == 1
        assert prism.failed_parses[0]["node_id"] == "prism_atomic_tasks"
        assert prism.failed_parses[0]["raw_output"] == "pure prose without any structure"
        prism.clear_failed_parses()
        assert prism.failed_parses == []

    def test_default_ids_are_positional(self):
        prism, _ = make_prism(['[{"title": "Define Scope", "instruction": "List it."}]'])
        assert [t.id for t in self._generate(prism)] == ["task_1"]


class TestRedecompose:
    NON_ATOMIC = dict(
        title="Build billing service",
        instruction="Design the billing schema, implement the billing endpoints, deploy the billing service.",
        domain="Payments",
        assigned_specialist="billing_architect",
    )

    def test_split_inherits_domain_and_specialist(self):
        split = json.dumps([
            {"title": "Design Billing Schema", "instruction": "Specify the invoice tables.", "complexity": 4},
            {"title": "Define Billing Endpoints", "instruction": "List the invoice routes.",
             "domain": "Other"},
        ])
        prism, _ = make_prism([split])
        subtasks = asyncio.run(prism.redecompose_task(task("billing", **self.NON_ATOMIC)))
        assert [t.id for t in subtasks] == ["billing_sub_1", "billing_sub_2"]
        assert {t.domain for t in subtasks} == {"Payments"}
        assert {t.assigned_specialist for t in subtasks} == {"billing_architect"}

    def test_unparseable_split_returns_original(self):
        prism, _ = make_prism(["cannot help"])
        original = task("billing", **self.NON_ATOMIC)
        assert asyncio.run(prism.redecompose_task(original)) == [original]

    def test_empty_split_returns_nothing(self):
        prism, _ = make_prism(["[]"])
        assert asyncio.run(prism.redecompose_task(task("billing", **self.NON_ATOMIC))) == []


# ─────────────────────────────────────────────────────────────────────────────
# Work queue bounds
# ─────────────────────────────────────────────────────────────────────────────

class TestWorkQueue:
    CLASSIFICATION = DomainClassification(domain="Payments")

    def _run(self, prism, mode=ProjectMode.SOFTWARE):
        return asyncio.run(prism.propose_council_and_tasks(
            "goal", Constitution(domain="Payments", mode=mode), self.CLASSIFICATION,
        ))

    def test_accepted_split_replaces_parent(self):
        generated = tasks_yaml([{
            "id": "billing",
            "title": "Build billing service",
            "instruction": "Design the billing schema, implement the billing endpoints, deploy the billing service.",
            "assignedSpecialist": "billing_architect",
        }])
        split = json.dumps([
            {"title": "Design Billing Schema", "instruction": "Specify the invoice tables."},
            {"title": "Define Billing Endpoints", "instruction": "List the invoice routes."},
        ])
        prism, _ = make_prism([COUNCIL, generated, split])
        result = self._run(prism)

        assert [t.id for t in result.atomic_tasks] == ["billing_sub_1", "billing_sub_2"]
        assert result.non_atomic_redecomposed == 1
        assert result.total_decomposition_passes == 2
        assert result.telemetry.stop_reason == StopReason.COMPLETED
        assert result.telemetry.max_depth_reached == 1

    def test_max_tasks_stops_the_queue(self):
        nouns = ["password", "session", "lockout", "audit", "recovery", "email", "token"]
        generated = tasks_yaml([
            {"id": n, "title": f"Define {n} policy", "instruction": f"Specify the {n} rules."}
            for n in nouns
        ])
        prism, _ = make_prism([COUNCIL, generated], max_atomic_tasks=5)
        result = self._run(prism)

        assert len(result.atomic_tasks) == 5
        assert result.telemetry.stop_reason == StopReason.MAX_TASKS

    def test_max_iterations_stops_the_queue(self):
        nouns = ["password", "session", "lockout", "audit", "recovery"]
        generated = tasks_yaml([
            {"id": n, "title": f"Define {n} policy", "instruction": f"Specify the {n} rules."}
            for n in nouns
        ])
        prism, _ = make_prism([COUNCIL, generated], max_iterations=2)
        result = self._run(prism)

        assert result.telemetry.stop_reason == StopReason.MAX_ITERATIONS
        assert result.telemetry.total_iterations == 2
        assert sorted(t.id for t in result.atomic_tasks) == sorted(nouns)

    def test_stall_limit_commits_remaining_tasks(self):
        areas = ["billing", "search", "reporting", "inventory", "shipping"]
        generated = tasks_yaml([
            {"id": a, "title": f"Build {a} service",
             "instruction": f"Design the {a} schema, implement {a} endpoints, deploy {a} workers."}
            for a in areas
        ])
        prism, transport = make_prism([COUNCIL, generated], default="no split available")
        result = self._run(prism)

        assert result.telemetry.stop_reason == StopReason.STALL_LIMIT
        assert result.non_atomic_redecomposed == 4
        assert len(transport.calls) == 2 + 4
        assert sorted(t.id for t in result.atomic_tasks) == sorted(areas)
        assert all(t.is_atomic is False for t in result.atomic_tasks)

    def test_off_strategy_never_splits(self):
        generated = tasks_yaml([{
            "id": "billing", "title": "Build billing service",
            "instruction": "Design the schema, implement the endpoints, deploy the workers.",
        }])
        prism, transport = make_prism([COUNCIL, generated], strategy=DecompositionStrategy.OFF)
        result = self._run(prism)
        assert [t.id for t in result.atomic_tasks] == ["billing"]
        assert len(transport.calls) == 2

    def test_drifted_subtasks_are_rejected_in_research_mode(self):
        generated = tasks_yaml([{
            "id": "survey", "title": "Survey prior studies",
            "instruction": "Review the prior studies, analyze their methods, evaluate the evidence.",
        }])
        split = json.dumps([
            {"title": "Design citation database schema", "instruction": "List the tables."},
            {"title": "Write React viewer", "instruction": "Render the bibliography."},
        ])
        prism, _ = make_prism([COUNCIL, generated, split])
        result = self._run(prism, ProjectMode.SCIENTIFIC_RESEARCH)

        assert [t.id for t in result.atomic_tasks] == ["survey"]
        assert result.telemetry.mode_drift_events == 2
        assert result.telemetry.rejected_splits == 2

    def test_zero_tasks_twice_uses_fallback_plan(self):
        prism, transport = make_prism([COUNCIL, "", ""])
        result = self._run(prism, ProjectMode.LEGAL_RESEARCH)
        ids = [t.id for t in result.atomic_tasks]
        assert "fallback_precedent" in ids
        assert transport.calls[2]["config"]["temperature"] == 0.8


# ─────────────────────────────────────────────────────────────────────────────
# Post-processing, routing and review
# ─────────────────────────────────────────────────────────────────────────────

class TestOptimize:
    def test_exact_duplicates_merge_and_dependencies_remap(self):
        a = task("a", "Define user model", "Specify fields.")
        b = task("b", "Define user model", "Specify fields.")
        c = task("c", "Document login flow", "Describe the steps.", dependencies=["b"])
        result = optimize_task_adjacency([a, b, c])
        assert [t.id for t in result] == ["a", "c"]
        assert result[1].dependencies == ["a"]
        assert c.dependencies == ["b"]

    def test_dependency_on_twice_replaced_duplicate_follows_to_survivor(self):
        prereqs = [task(f"p{i}", f"Prerequisite number {i}", f"Prepare input {i}.") for i in range(5)]
        same = dict(title="Define Session Token Format", instruction="Specify the token fields.")
        tasks = prereqs + [
            task("a", dependencies=[f"p{i}" for i in range(5)], **same),
            task("b", dependencies=[f"p{i}" for i in range(4)], **same),
            task("c", **same),
            task("d", "Document Token Rotation", "Describe rotation cadence.", dependencies=["a"]),
        ]
        result = optimize_task_adjacency(tasks)
        ids = [t.id for t in result]
        assert "a" not in ids and "b" not in ids
        d = next(t for t in result if t.id == "d")
        assert d.dependencies == ["c"]
        assert ids.index("c") < ids.index("d")

    def test_near_duplicates_merge(self):
        base = "Specify fields indexes and constraints for the stored user account records"
        a = task("a", "Define user account model", base)
        b = task("b", "Define user account model", base + " carefully")
        c = task("c", "Document login flow", "Describe the steps.", dependencies=["b", "c"])
        result = optimize_task_adjacency([a, b, c])
        assert sorted(t.id for t in result) == ["a", "c"]
        assert next(t for t in result if t.id == "c").dependencies == ["a"]

    def test_unknown_dependencies_are_dropped(self):
        result = optimize_task_adjacency([
            task("a", "Define scope"), task("b", "Draft outline", dependencies=["ghost"]),
        ])
        assert all(t.dependencies == [] for t in result)

    def test_cycle_members_are_appended(self):
        a = task("a", "Draft outline", dependencies=["b"])
        b = task("b", "Draft summary", dependencies=["a"])
        c = task("c", "Define scope")
        assert [t.id for t in order_tasks([a, b, c])][0] == "c"
        assert len(order_tasks([a, b, c])) == 3

    def test_foundation_work_runs_first(self):
        outline = task("outline", "Draft outline", complexity=3)
        reqs = task("reqs", "Define core requirements", complexity=4)
        assert [t.id for t in order_tasks([outline, reqs])] == ["reqs", "outline"]


class TestRoutingAndReview:
    def test_route_boundaries(self):
        tasks = [task(str(c), f"Task {c}", complexity=c) for c in (3, 4, 6, 7)]
        routing = route_tasks(tasks)
        assert routing.complexity_distribution == {"low": 1, "medium": 2, "high": 1}
        assert [t.routing_path for t in tasks] == [RoutingPath.FAST] * 3 + [RoutingPath.SLOW]
        assert routing.estimated_total_tokens == 4000

    def test_review_estimates(self):
        council = CouncilProposal(domain="x", specialists=[Specialist("lead", "Lead")])
        disabled = task("t2", "Draft outline", estimated_tokens=2000, enabled=False)
        routing = route_tasks([task("t1", "Define scope"), disabled])
        review = prepare_review(council, routing)
        assert review.estimated_time == "1 minutes"
        assert review.estimated_cost == "$0.0030"
        assert review.council_members[0][1] is True
        assert review.tasks[1] == (disabled, False)

    @pytest.mark.parametrize("seconds, text", [(30, "30 seconds"), (60, "1 minutes"), (150, "3 minutes")])
    def test_format_duration(self, seconds, text):
        assert format_duration(seconds) == text


class TestFallbackTasks:
    COUNCIL = CouncilProposal(domain="x", specialists=[Specialist("lead", "Lead")])

    @pytest.mark.parametrize("mode, expected", [
        (ProjectMode.SCIENTIFIC_RESEARCH, "fallback_methodology"),
        (ProjectMode.LEGAL_RESEARCH, "fallback_irac"),
        (ProjectMode.CREATIVE_WRITING, "fallback_character_arcs"),
        (ProjectMode.GENERAL, "fallback_validation"),
    ])
    def test_mode_specific_tasks(self, mode, expected):
        tasks = generate_fallback_tasks("Write something", "Domain", self.COUNCIL, mode)
        assert tasks[0].id == "fallback_requirements"
        assert expected in [t.id for t in tasks]
        assert {t.assigned_specialist for t in tasks} == {"lead"}

    def test_software_keywords_add_tasks(self):
        tasks = generate_fallback_tasks("Expose a REST API over the database", "d",
                                        self.COUNCIL, ProjectMode.SOFTWARE)
        ids = [t.id for t in tasks]
        assert "fallback_api_design" in ids
        assert "fallback_data_model" in ids
        assert "fallback_auth_design" not in ids

    def test_fallback_tokens_scale_with_complexity(self):
        tasks = generate_fallback_tasks("goal", "d", self.COUNCIL, ProjectMode.GENERAL)
        assert tasks[0].estimated_tokens == 1300
