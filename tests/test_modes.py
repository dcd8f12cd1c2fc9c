"""Tests for prism_orchestrator/modes.py — per-mode tables and mode extraction."""
from __future__ import annotations

import json

import pytest

from prism_orchestrator.models import Constitution, ProjectMode
from prism_orchestrator.modes import (
    MODE_DISPLAY_NAMES,
    atomicity_rule,
    completeness_guidance,
    council_guidance,
    display_name,
    extract_mode,
    planning_artifact_type,
    safe_brick_instruction,
    task_example,
)
from prism_orchestrator.atomicity import detect_mode_drift


class TestExtractMode:
    def test_from_constitution_object(self):
        assert extract_mode(Constitution(mode=ProjectMode.LEGAL_RESEARCH)) == ProjectMode.LEGAL_RESEARCH

    def test_from_dict(self):
        assert extract_mode({"mode": "creative_writing"}) == ProjectMode.CREATIVE_WRITING

    def test_from_json_text(self):
        text = json.dumps({"domain": "Biology", "mode": "scientific_research"})
        assert extract_mode(text) == ProjectMode.SCIENTIFIC_RESEARCH

    def test_from_inline_pair(self):
        assert extract_mode("domain: Law\nmode: 'legal_research'\n") == ProjectMode.LEGAL_RESEARCH

    def test_from_heading(self):
        text = Constitution(domain="Novels", mode=ProjectMode.CREATIVE_WRITING).to_text()
        assert "## PROJECT MODE" in text
        assert extract_mode(text) == ProjectMode.CREATIVE_WRITING

    @pytest.mark.parametrize("value", [None, "", "no mode mentioned here", '{"mode": "astrology"}', 7])
    def test_defaults_to_software(self, value):
        assert extract_mode(value) == ProjectMode.SOFTWARE


class TestTables:
    @pytest.mark.parametrize("mode", list(ProjectMode))
    def test_every_mode_has_every_entry(self, mode):
        for lookup in (task_example, atomicity_rule, council_guidance,
                       completeness_guidance, safe_brick_instruction):
            assert lookup(mode)
        assert display_name(mode) == MODE_DISPLAY_NAMES[mode]

    def test_unknown_mode_string_falls_back_to_software(self):
        assert atomicity_rule("weird") == atomicity_rule(ProjectMode.SOFTWARE)

    def test_planning_artifact_type(self):
        assert planning_artifact_type("software") == "architecture specifications"
        assert "domain-appropriate" in planning_artifact_type(ProjectMode.LEGAL_RESEARCH)

    @pytest.mark.parametrize("mode", [m for m in ProjectMode if m != ProjectMode.SOFTWARE])
    def test_safe_brick_templates_never_drift(self, mode):
        assert not detect_mode_drift(safe_brick_instruction(mode), mode)
