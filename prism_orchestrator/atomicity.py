"""
Atomicity — is a task one action with one deliverable?
======================================================
Regex heuristics, kept as data tables so they can be tested and extended
per mode:

  ACTION_VERBS         more than two distinct verbs → non-atomic
  COMPOUND_PATTERNS    "and … build", "then", "followed by" → non-atomic
  VAGUE_PATTERNS       "everything", "etc", "handle all" → non-atomic
  MAX_INSTRUCTION_LEN  instruction longer than this → non-atomic

score_atomicity() turns a validation into a 0..1 number the work queue uses
as a progress gate: a split is only accepted if it raises the score.
"""
from __future__ import annotations

import math
import re
from typing import Optional

from .models import AtomicityValidation, AtomicTask, ProjectMode, parse_mode

ACTION_VERBS = (
    "create", "build", "implement", "define", "design", "write", "develop",
    "set up", "configure", "add", "update", "modify", "delete", "remove",
    "validate", "verify", "test", "check", "review", "analyze", "evaluate",
    "deploy", "publish", "release", "integrate", "connect", "migrate",
)
_VERB_PATTERNS = [(v, re.compile(rf"\b{re.escape(v)}\b", re.IGNORECASE)) for v in ACTION_VERBS]

COMPOUND_PATTERNS = [
    re.compile(r"\band\b.*\b(create|build|implement|add|update)\b", re.IGNORECASE),
    re.compile(r"\b(create|build|implement)\b.*\band\b.*\b(validate|test|verify)\b", re.IGNORECASE),
    re.compile(r"\bthen\b", re.IGNORECASE),
    re.compile(r"\bafter that\b", re.IGNORECASE),
    re.compile(r"\bfollowed by\b", re.IGNORECASE),
]

VAGUE_PATTERNS = [
    re.compile(r"\bhandle\s+(all|any|various|different)\b", re.IGNORECASE),
    re.compile(r"\bset\s*up\s+(the\s+)?project\b", re.IGNORECASE),
    re.compile(r"\bbuild\s+(the\s+)?(entire|whole|complete)\b", re.IGNORECASE),
    re.compile(r"\b(everything|anything)\b", re.IGNORECASE),
    re.compile(r"\betc\.?\b", re.IGNORECASE),
    re.compile(r"\band\s+more\b", re.IGNORECASE),
]

MAX_INSTRUCTION_LEN = 500

# Software-implementation vocabulary; English only.
SOFTWARE_MARKERS = [
    re.compile(p) for p in (
        r"\bapi\b", r"\bendpoint\b", r"\bdatabase\b", r"\bschema\b", r"\breact\b",
        r"\btypescript\b", r"\bjavascript\b", r"\bbackend\b", r"\bfrontend\b",
        r"\bmiddleware\b", r"\bdevops\b", r"\bdeploy(ment)?\b", r"\bcode\b",
        r"\bclass\b", r"\bfunction\b",
    )
]

FOUNDATION_PATTERNS = (
    "requirement", "scope", "constraint", "assumption", "validation",
    "methodology", "issue framing",
)

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def find_action_verbs(text: str) -> list[str]:
    return [verb for verb, pattern in _VERB_PATTERNS if pattern.search(text)]


def validate_atomicity(task: AtomicTask) -> AtomicityValidation:
    """Run every heuristic; each failure adds an issue and clears ``is_atomic``."""
    result = AtomicityValidation()
    text = task.text.lower()

    verbs = find_action_verbs(text)
    if len(verbs) > 2:
        result.is_atomic = False
        result.issues.append(f"Multiple actions detected: {', '.join(verbs)}")

    if any(p.search(text) for p in COMPOUND_PATTERNS):
        result.is_atomic = False
        result.issues.append("Compound task detected (multiple sequential actions)")

    if any(p.search(text) for p in VAGUE_PATTERNS):
        result.is_atomic = False
        result.issues.append("Vague or overly broad scope")

    if len(task.instruction) > MAX_INSTRUCTION_LEN:
        result.is_atomic = False
        result.issues.append("Instruction too long - likely needs decomposition")

    if not result.is_atomic:
        result.suggestion = (
            f"Consider splitting into {math.ceil(len(verbs) / 2)} separate tasks, "
            "each with one primary action."
        )
    return result


def score_atomicity(task: AtomicTask, validation: Optional[AtomicityValidation] = None) -> float:
    checked = validation or validate_atomicity(task)
    score = 1.0 if checked.is_atomic else 0.7

    score -= min(0.45, len(checked.issues) * 0.15)

    length = len(task.instruction or "")
    if length > 220:
        score -= min(0.2, (length - 220) / 700)

    deps = len(task.dependencies or [])
    if deps > 2:
        score -= min(0.1, (deps - 2) * 0.04)

    if len(task.title or "") > 90:
        score -= 0.05

    return max(0.0, min(1.0, score))


def apply_validation(task: AtomicTask) -> AtomicityValidation:
    """Validate and record the outcome on the task itself."""
    validation = validate_atomicity(task)
    task.is_atomic = validation.is_atomic
    task.atomicity_issues = None if validation.is_atomic else list(validation.issues)
    return validation


def detect_mode_drift(text: str, mode) -> bool:
    """True when non-software work contains software-implementation vocabulary."""
    if parse_mode(mode) == ProjectMode.SOFTWARE:
        return False
    lowered = text.lower()
    return any(p.search(lowered) for p in SOFTWARE_MARKERS)


# ─────────────────────────────────────────────
# Overlap & ordering helpers
# ─────────────────────────────────────────────

def normalize_task_text(text: str) -> str:
    lowered = _NON_ALNUM.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", lowered).strip()


def task_text_overlap(a: AtomicTask, b: AtomicTask) -> float:
    """Token Jaccard similarity of normalized title + instruction."""
    set_a = set(normalize_task_text(a.text).split())
    set_b = set(normalize_task_text(b.text).split())
    if not set_a or not set_b:
        return 0.0
    intersection = len(set_a & set_b)
    union = len(set_a) + len(set_b) - intersection
    return intersection / union if union else 0.0


def synergy_priority(task: AtomicTask) -> int:
    """Lower runs earlier; foundation work gets a -2 bias."""
    text = task.text.lower()
    bias = -2 if any(p in text for p in FOUNDATION_PATTERNS) else 0
    return len(task.dependencies or []) * 5 + (task.complexity or 5) + bias
