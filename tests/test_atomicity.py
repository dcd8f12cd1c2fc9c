"""Tests for prism_orchestrator/atomicity.py — validation, scoring and drift."""
from __future__ import annotations

import pytest

from prism_orchestrator.atomicity import (
    MAX_INSTRUCTION_LEN,
    apply_validation,
    detect_mode_drift,
    find_action_verbs,
    normalize_task_text,
    score_atomicity,
    synergy_priority,
    task_text_overlap,
    validate_atomicity,
)
from prism_orchestrator.models import AtomicTask, ProjectMode


def make_task(title="Define Auth Strategy", instruction="Specify the token lifecycle.", **kw):
    return AtomicTask(id=kw.pop("id", "t1"), title=title, instruction=instruction, **kw)


# ─────────────────────────────────────────────────────────────────────────────
# validate_atomicity
# ─────────────────────────────────────────────────────────────────────────────

class TestValidate:
    def test_single_action_is_atomic(self):
        result = validate_atomicity(make_task())
        assert result.is_atomic
        assert result.issues == []
        assert result.suggestion is None

    def test_three_verbs_is_not_atomic(self):
        task = make_task("Auth", "Design the schema, implement the endpoints, deploy the service.")
        result = validate_atomicity(task)
        assert result.is_atomic is False
        assert any("Multiple actions detected" in i for i in result.issues)
        assert result.suggestion.startswith("Consider splitting into 2 separate tasks")

    def test_verbs_match_on_word_boundaries(self):
        assert find_action_verbs("a testament to address") == []
        assert find_action_verbs("Set up the repo") == ["set up"]

    @pytest.mark.parametrize("instruction", [
        "Write the outline then review it.",
        "Draft the outline, followed by a summary.",
    ])
    def test_compound_patterns(self, instruction):
        result = validate_atomicity(make_task("x", instruction))
        assert "Compound task detected (multiple sequential actions)" in result.issues

    @pytest.mark.parametrize("instruction", [
        "Handle all edge cases.",
        "Cover everything about billing.",
        "List providers, regions, etc.",
    ])
    def test_vague_scope(self, instruction):
        result = validate_atomicity(make_task("x", instruction))
        assert "Vague or overly broad scope" in result.issues

    def test_long_instruction(self):
        result = validate_atomicity(make_task("x", "word " * (MAX_INSTRUCTION_LEN // 4)))
        assert "Instruction too long - likely needs decomposition" in result.issues

    def test_apply_validation_records_on_task(self):
        task = make_task("x", "Handle all errors.")
        apply_validation(task)
        assert task.is_atomic is False
        assert task.atomicity_issues == ["Vague or overly broad scope"]


# ─────────────────────────────────────────────────────────────────────────────
# score_atomicity
# ─────────────────────────────────────────────────────────────────────────────

class TestScore:
    def test_clean_task_scores_one(self):
        assert score_atomicity(make_task()) == 1.0

    def test_each_issue_costs_point_fifteen(self):
        task = make_task("x", "Handle all errors.")
        assert score_atomicity(task) == pytest.approx(0.7 - 0.15)

    def test_issue_penalty_is_capped(self):
        task = make_task("x", "Create, build, implement and test everything then deploy etc. " * 3)
        validation = validate_atomicity(task)
        assert len(validation.issues) >= 3
        assert score_atomicity(task, validation) >= 0.0

    def test_dependency_and_title_penalties(self):
        task = make_task("T" * 91, "Specify it.", dependencies=["a", "b", "c", "d"])
        assert score_atomicity(task) == pytest.approx(1.0 - 0.08 - 0.05)

    def test_length_penalty_above_220_chars(self):
        task = make_task("x", "a" * 290)
        assert score_atomicity(task) == pytest.approx(1.0 - 70 / 700)


# ─────────────────────────────────────────────────────────────────────────────
# Drift, overlap and ordering helpers
# ─────────────────────────────────────────────────────────────────────────────

class TestDrift:
    def test_software_never_drifts(self):
        assert detect_mode_drift("Design the REST API endpoint", ProjectMode.SOFTWARE) is False

    @pytest.mark.parametrize("text", [
        "Design the database schema for citations",
        "Write a React component",
        "Plan the deployment",
    ])
    def test_software_vocabulary_drifts_in_research(self, text):
        assert detect_mode_drift(text, ProjectMode.SCIENTIFIC_RESEARCH)

    def test_plain_research_text_does_not_drift(self):
        assert not detect_mode_drift("Define the sampling methodology", "scientific_research")


def test_normalize_task_text():
    assert normalize_task_text("  Define: the API!!  Contract ") == "define the api contract"


def test_overlap_is_token_jaccard():
    a = make_task("Define user model", "fields")
    b = make_task("Define user model", "fields and indexes")
    assert task_text_overlap(a, b) == pytest.approx(4 / 6)
    assert task_text_overlap(a, a) == 1.0


def test_synergy_priority_biases_foundation_work():
    req = make_task("Define Core Requirements", "List them.", complexity=3)
    other = make_task("Design Story Structure", "Outline acts.", complexity=3)
    assert synergy_priority(req) == 1
    assert synergy_priority(other) == 3
    assert synergy_priority(make_task(complexity=2, dependencies=["a", "b"])) == 12
