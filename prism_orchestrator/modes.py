"""
Project modes — per-mode prompt tables and mode extraction
==========================================================
Planning prompts change shape with the project mode: a software plan talks
about architecture decisions, a legal plan about issues and precedents. The
tables here are the single place those differences live.
"""
from __future__ import annotations

import json
import logging
import re
from typing import Any

from .models import Constitution, ProjectMode, parse_mode

logger = logging.getLogger("prism_orchestrator.modes")


MODE_DISPLAY_NAMES: dict[ProjectMode, str] = {
    ProjectMode.SOFTWARE: "Software Architecture",
    ProjectMode.SCIENTIFIC_RESEARCH: "Scientific Research",
    ProjectMode.LEGAL_RESEARCH: "Legal Research",
    ProjectMode.CREATIVE_WRITING: "Creative Writing",
    ProjectMode.GENERAL: "General Analysis",
}

TASK_EXAMPLES: dict[ProjectMode, str] = {
    ProjectMode.SOFTWARE: (
        'Example: "Define the Authentication Flow Architecture"\n'
        'Deliverable: "JWT strategy specification with refresh token handling"'
    ),
    ProjectMode.SCIENTIFIC_RESEARCH: (
        'Example: "Conduct systematic literature review on [topic]"\n'
        'Deliverable: "Annotated bibliography with thematic synthesis (20-30 sources)"'
    ),
    ProjectMode.LEGAL_RESEARCH: (
        'Example: "Analyze precedent applicability for [case]"\n'
        'Deliverable: "IRAC analysis memo with case citations and policy considerations"'
    ),
    ProjectMode.CREATIVE_WRITING: (
        'Example: "Design Act II turning point sequence"\n'
        'Deliverable: "Beat sheet with character motivation and structural impact analysis"'
    ),
    ProjectMode.GENERAL: (
        'Example: "Analyze the core requirements for [goal]"\n'
        'Deliverable: "Structured analysis with identified constraints and success criteria"'
    ),
}

ATOMICITY_RULES: dict[ProjectMode, str] = {
    ProjectMode.SOFTWARE: "Single architectural decision, single deliverable",
    ProjectMode.SCIENTIFIC_RESEARCH: "Single research question, single synthesis",
    ProjectMode.LEGAL_RESEARCH: "Single legal issue, single IRAC analysis",
    ProjectMode.CREATIVE_WRITING: "Single narrative beat, single structural element",
    ProjectMode.GENERAL: "Single action, single deliverable",
}

COUNCIL_GUIDANCE: dict[ProjectMode, str] = {
    ProjectMode.SOFTWARE: (
        '- Example role shape: "Authentication Flow Architect", "Data Contract Analyst", '
        '"Reliability Architect"\n'
        '- Forbidden role shape: "Backend Developer", "Frontend Coder", "Full Stack Engineer"\n'
        "- Output focus: architecture decisions, contracts, constraints, and validation criteria."
    ),
    ProjectMode.SCIENTIFIC_RESEARCH: (
        '- Example role shape: "Literature Synthesis Lead", "Methodology Designer", '
        '"Evidence Quality Analyst"\n'
        '- Forbidden role shape: "App Developer", "API Engineer", "DevOps Specialist" unless '
        "software implementation is explicitly requested.\n"
        "- Output focus: hypotheses, evidence synthesis plans, methods, limitations, and "
        "reproducibility strategy."
    ),
    ProjectMode.LEGAL_RESEARCH: (
        '- Example role shape: "Issue Framing Analyst", "Precedent Mapper", "Citation Verifier"\n'
        '- Forbidden role shape: "Legal Advisor", "Counsel for Client", "Software Engineer" '
        "unless explicitly requested.\n"
        "- Output focus: issue/rule mapping, precedent analysis, citation integrity, and "
        "jurisdiction checks."
    ),
    ProjectMode.CREATIVE_WRITING: (
        '- Example role shape: "Beat Structure Architect", "Character Arc Planner", '
        '"Theme Cohesion Analyst"\n'
        '- Forbidden role shape: "Novelist", "Dialogue Writer", "Screenplay Author" when '
        "generating full prose/dialogue.\n"
        "- Output focus: narrative structure, scene purpose, arc consistency, and thematic alignment."
    ),
    ProjectMode.GENERAL: (
        '- Example role shape: "Scope Analyst", "Constraint Planner", "Validation Strategist"\n'
        "- Forbidden role shape: generic implementation/coding roles unless explicitly requested.\n"
        "- Output focus: scope framing, decision quality, verification, and delivery structure."
    ),
}

COMPLETENESS_GUIDANCE: dict[ProjectMode, str] = {
    ProjectMode.SOFTWARE: (
        "If this is a complex feature (for example: authentication), decompose into "
        "architecture-level parts such as auth strategy, user data model, API contract "
        "coverage, recovery flows, and validation approach."
    ),
    ProjectMode.SCIENTIFIC_RESEARCH: (
        "If this is a complex research topic, decompose into literature scope, hypothesis "
        "framing, methodology design, analysis plan, limitations, and reproducibility checks."
    ),
    ProjectMode.LEGAL_RESEARCH: (
        "If this is a complex legal matter, decompose into issue framing, governing rule set, "
        "precedent mapping, counterargument analysis, jurisdiction checks, and citation "
        "verification."
    ),
    ProjectMode.CREATIVE_WRITING: (
        "If this is a complex narrative goal, decompose into premise articulation, character "
        "arcs, act-level beats, turning points, climax design, and resolution integrity."
    ),
    ProjectMode.GENERAL: (
        "If this is a complex goal, decompose into requirements, assumptions, dependencies, "
        "risk checks, and validation criteria."
    ),
}

# Replacement instructions for injected bricks whose text drifted out of mode.
SAFE_BRICK_TEMPLATES: dict[ProjectMode, str] = {
    ProjectMode.SOFTWARE: (
        'Specify the architecture decision that closes this coverage gap, with rationale and '
        "acceptance criteria."
    ),
    ProjectMode.SCIENTIFIC_RESEARCH: (
        'Define the research step that closes this coverage gap: state the question, the evidence '
        "standard and how the result will be validated."
    ),
    ProjectMode.LEGAL_RESEARCH: (
        'Frame the legal issue behind this coverage gap and outline the governing rule, the relevant '
        "authorities and the citation checks required."
    ),
    ProjectMode.CREATIVE_WRITING: (
        'Plan the narrative element that closes this coverage gap: its structural purpose and its '
        "effect on character arcs."
    ),
    ProjectMode.GENERAL: (
        'Define the work needed to close this coverage gap with a clear deliverable and '
        "measurable success criteria."
    ),
}


def _lookup(table: dict[ProjectMode, str], mode: Any) -> str:
    return table.get(parse_mode(mode), table[ProjectMode.GENERAL])


def display_name(mode: Any) -> str:
    return _lookup(MODE_DISPLAY_NAMES, mode)


def task_example(mode: Any) -> str:
    return _lookup(TASK_EXAMPLES, mode)


def atomicity_rule(mode: Any) -> str:
    return _lookup(ATOMICITY_RULES, mode)


def council_guidance(mode: Any) -> str:
    return _lookup(COUNCIL_GUIDANCE, mode)


def completeness_guidance(mode: Any) -> str:
    return _lookup(COMPLETENESS_GUIDANCE, mode)


def planning_artifact_type(mode: Any) -> str:
    if parse_mode(mode) == ProjectMode.SOFTWARE:
        return "architecture specifications"
    return "domain-appropriate planning specifications"


def safe_brick_instruction(mode: Any) -> str:
    return _lookup(SAFE_BRICK_TEMPLATES, mode)


_MODE_NAMES = "|".join(m.value for m in ProjectMode)
_INLINE_MODE = re.compile(rf"[\"']?mode[\"']?\s*:\s*[\"']?({_MODE_NAMES})[\"']?", re.IGNORECASE)
_MODE_HEADING = re.compile(r"##\s*PROJECT MODE\s+([a-z_]+)", re.IGNORECASE)


def _valid_mode(value: Any) -> ProjectMode | None:
    try:
        return ProjectMode(str(value).strip().lower())
    except ValueError:
        return None


def extract_mode(constitution: Any) -> ProjectMode:
    """
    Project mode from a Constitution, a dict, or constitution text.

    Text is tried as JSON first, then an inline ``mode: x`` pair, then a
    ``## PROJECT MODE`` heading. Anything unrecognised is SOFTWARE.
    """
    if constitution is None:
        return ProjectMode.SOFTWARE
    if isinstance(constitution, Constitution):
        return constitution.mode
    if isinstance(constitution, dict):
        return parse_mode(constitution.get("mode"))
    if not isinstance(constitution, str) or not constitution.strip():
        return ProjectMode.SOFTWARE

    try:
        parsed = json.loads(constitution)
        if isinstance(parsed, dict) and _valid_mode(parsed.get("mode")):
            return _valid_mode(parsed["mode"])
    except ValueError:
        pass

    for pattern in (_INLINE_MODE, _MODE_HEADING):
        match = pattern.search(constitution)
        if match and _valid_mode(match.group(1)):
            return _valid_mode(match.group(1))
    return ProjectMode.SOFTWARE
