"""
Antagonist Mirror — evidence-bound audit duel
=============================================
A hostile auditor reviews one artifact against the constitution and the
instruction that produced it. The duel is at most two rounds:

  audit ── pass ──────────────────────────────→ verified          (1 round)
        └─ fail ── no repair fn ──────────────→ final_failure     (1 round)
                └─ repair once ── re-audit ── pass → repaired_and_verified
                                            └─ fail → final_failure (2 rounds)

Habeas Corpus: a fail verdict without evidence is converted to pass. An audit
response that cannot be parsed also passes, with confidence 50.
"""
from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from .dispatch import HydraDispatcher
from .extraction import extract_structured
from .hooks import EventType
from .models import (
    AuditResult,
    Constitution,
    DuelOutcome,
    DuelResult,
    EvidenceItem,
    ProjectMode,
    RepairAttempt,
    StrictnessProfile,
    Verdict,
    _as_float,
    _enum_or,
    _str_list,
    evidence_from_dict,
)
from .modes import extract_mode
from .settings import PrismSettings
from .tracing import traced_duel

logger = logging.getLogger("prism_orchestrator.antagonist")

RepairFn = Callable[[list[EvidenceItem], list[str]], Union[str, Awaitable[str]]]

EXTRACTION_FAILED_REASONING = "Failed to extract structured data (YAML/JSON) from audit response"
QUICK_AUDIT_INSTRUCTION = "Quick audit - verify general compliance"

AUDIT_CRITERIA: dict[ProjectMode, str] = {
    ProjectMode.SOFTWARE: (
        "AUTOMATIC FAILURES:\n"
        "- Implementation code (import, function, class definitions)\n"
        "- Technologies NOT in Constitution"
    ),
    ProjectMode.SCIENTIFIC_RESEARCH: (
        "AUTOMATIC FAILURES:\n"
        "- Claims without citations\n"
        "- Personal opinions without evidence"
    ),
    ProjectMode.LEGAL_RESEARCH: (
        "AUTOMATIC FAILURES:\n"
        '- Legal advice language ("you should", "I recommend")\n'
        "- Missing case/statute citations"
    ),
    ProjectMode.CREATIVE_WRITING: (
        "AUTOMATIC FAILURES:\n"
        "- Full prose passages (should be structural only)\n"
        "- Missing beat structure"
    ),
    ProjectMode.GENERAL: (
        "AUTOMATIC FAILURES:\n"
        "- Contradictions with Constitution"
    ),
}

STRICTNESS_GUIDES: dict[StrictnessProfile, str] = {
    StrictnessProfile.STRICT: (
        "STRICT PROFILE:\n"
        "- Treat significant incompleteness as fail when it blocks downstream tasks.\n"
        "- Prefer fail over pass when constraints are ambiguous but potentially violated."
    ),
    StrictnessProfile.LOCAL_SMALL: (
        "LOCAL-SMALL PROFILE:\n"
        "- HARD FAIL only for explicit rule breaks with direct evidence.\n"
        "- Use REPAIR SUGGESTIONS for quality gaps instead of rejection whenever possible."
    ),
    StrictnessProfile.BALANCED: (
        "BALANCED PROFILE:\n"
        "- HARD FAIL on explicit rule breaks or contradictions.\n"
        "- Use repair suggestions for non-blocking quality issues."
    ),
}


def extract_mode_from_constitution_text(constitution: str) -> ProjectMode:
    return extract_mode(constitution)


def get_audit_criteria_for_mode(mode: Any) -> str:
    return AUDIT_CRITERIA.get(_enum_or(ProjectMode, mode, ProjectMode.GENERAL),
                              AUDIT_CRITERIA[ProjectMode.GENERAL])


def _constitution_text(constitution: Union[str, Constitution, dict, None]) -> str:
    if constitution is None:
        return ""
    if isinstance(constitution, Constitution):
        return constitution.to_text()
    if isinstance(constitution, dict):
        return json.dumps(constitution, indent=2)
    return str(constitution)


@dataclass
class AntagonistConfig:
    model_label: Optional[str] = None
    temperature: float = 0.3
    max_tokens: int = 2048
    lite_mode: bool = False
    strictness: StrictnessProfile = StrictnessProfile.BALANCED

    @classmethod
    def from_settings(cls, settings: PrismSettings) -> "AntagonistConfig":
        return cls(strictness=settings.tribunal_strictness)


def parse_audit_response(text: str, model_used: str = "") -> AuditResult:
    """Turn a raw audit response into an AuditResult; never raises."""
    extraction = extract_structured(text, prefer="yaml")
    data = extraction.data
    if not isinstance(data, dict):
        logger.warning("Audit response had no structured verdict; defaulting to pass")
        return AuditResult(
            verdict=Verdict.PASS,
            confidence=50.0,
            reasoning=EXTRACTION_FAILED_REASONING,
            raw_response=text,
            model_used=model_used,
        )

    raw_evidence = data.get("evidence") or []
    if not isinstance(raw_evidence, list):
        raw_evidence = [raw_evidence]
    evidence = [evidence_from_dict(e) for e in raw_evidence]

    raw_verdict = data.get("verdict")
    if isinstance(raw_verdict, str):
        verdict = _enum_or(Verdict, raw_verdict, Verdict.PASS)
    elif isinstance(data.get("verified"), bool):
        verdict = Verdict.PASS if data["verified"] else Verdict.FAIL
    else:
        verdict = Verdict.PASS

    if verdict == Verdict.FAIL and not evidence:
        logger.info("Fail verdict without evidence overturned to pass (Habeas Corpus)")
        verdict = Verdict.PASS
    if verdict == Verdict.PASS:
        evidence = []

    confidence = data.get("confidence")
    if confidence is None:
        confidence = data.get("score")
    confidence = max(0.0, min(100.0, _as_float(confidence, 50.0)))

    return AuditResult(
        verdict=verdict,
        confidence=confidence,
        evidence=evidence,
        reasoning=str(data.get("reasoning") or "No reasoning provided"),
        issues=_str_list(data.get("issues")),
        repair_suggestions=_str_list(data.get("repairSuggestions", data.get("repair_suggestions"))),
        raw_response=text,
        model_used=model_used,
    )


class AntagonistMirror:

    def __init__(self, dispatcher: HydraDispatcher, endpoints: Sequence,
                 config: Optional[AntagonistConfig] = None,
                 settings: Optional[PrismSettings] = None):
        """An explicit ``config`` wins; otherwise strictness comes from ``settings``."""
        self.dispatcher = dispatcher
        self.endpoints = list(endpoints)
        if config is None:
            config = AntagonistConfig.from_settings(settings) if settings is not None else AntagonistConfig()
        self.config = config

    def build_prompt(self, artifact: str, constitution: str, instruction: str) -> str:
        mode = extract_mode_from_constitution_text(constitution)
        criteria = get_audit_criteria_for_mode(mode)
        strictness = self.config.strictness
        guide = STRICTNESS_GUIDES.get(strictness, STRICTNESS_GUIDES[StrictnessProfile.BALANCED])

        if self.config.lite_mode:
            return f"""YOU ARE THE ANTAGONIST AUDITOR (LITE MODE).
Your goal: Verify compliance with the Input Constitution.

PROJECT MODE: {mode.value}

1. **CHECK CONSISTENCY:** Does the Artifact match the Constitution?
2. **CHECK INSTRUCTION:** Does it fulfill the specific task?
3. **CHECK FORMAT:** Is it a Specification (good) or Implementation Code (bad)?
4. **MODE-SPECIFIC FAILURES:**
{criteria}
5. **STRICTNESS PROFILE:** {strictness.value}
{guide}

- HARD FAIL: constitution contradiction, explicit forbidden output, or direct instruction failure.
- SOFT FAIL: quality/completeness issues that should return repair suggestions.

CONSTITUTION: {constitution}
INSTRUCTION: {instruction}
ARTIFACT: {artifact}

**OUTPUT FORMAT (JSON ONLY - No Markdown):**
{{
  "verified": boolean,
  "score": number (0-100),
  "reasoning": "Brief explanation of pass/fail",
  "evidence": [{{"type":"artifact_quote", "content":"Quote...", "explanation":"Why it fails"}}],
  "issues": ["Issue 1"],
  "repairSuggestions": ["Fix 1"]
}}"""

        return f'''# ANTAGONIST MIRROR PROTOCOL

**Your Role:** The Hostile Auditor
**Philosophy:** "Trust is a weakness. Prove me wrong."

You are conducting a 1-on-1 DUEL. Your job is to find FLAWS in the artifact.
You are NOT a collaborative reviewer. You are a hostile critic.

---

## THE LIVING CONSTITUTION (Binding Rules)
"""
{constitution}
"""

## THE ORIGINAL INSTRUCTION
"""
{instruction}
"""

## THE ARTIFACT TO AUDIT
"""
{artifact}
"""

---

## ARCHITECTURAL CONSISTENCY CHECK (CRITICAL)

Verify that the Artifact does NOT contradict established Decisions or Constraints.
1. New technologies (Languages, Frameworks, Databases) NOT in the Constitution are AUTOMATIC FAILURES unless explicitly requested by the Instruction.
2. **EXCEPTION:** Standard Design Patterns (e.g., Singleton, Caching strategies) are ALLOWED.
3. **EXCEPTION:** Features explicitly requested by the User MUST be allowed.

## MODE-SPECIFIC AUDIT CRITERIA (CRITICAL)

PROJECT MODE: {mode.value}
{criteria}

## STRICTNESS PROFILE
{guide}

## FAIL TAXONOMY (CRITICAL)
- HARD FAIL: constitution contradiction, explicit forbidden output, direct instruction failure.
- SOFT FAIL: quality or style gaps; provide repair suggestions first.
- In LOCAL-SMALL profile, avoid HARD FAIL unless evidence is explicit and direct.

---

## THE HABEAS CORPUS RULE

**CRITICAL:** You CANNOT reject without citing EVIDENCE.

If you find a flaw, you MUST provide:
1. A **Direct Quote** from the Constitution OR the Artifact
2. An **Explanation** of why this is a contradiction or violation
3. **Specific repair suggestions**

If you cannot cite specific evidence, you MUST pass the artifact.

---

## YOUR TASK

1. **THINK (Markdown):** conduct a hostile review and cite your evidence.
2. **VERDICT (YAML):** output your final decision in YAML format.

## OUTPUT FORMAT

```yaml
verdict: pass # or fail
confidence: 0-100
reasoning: "Overall explanation of your decision"
evidence:
  - type: constitution_quote # or artifact_quote, logical_contradiction
    content: "The exact quote or description"
    explanation: "Why this is a problem"
issues:
  - "Specific issue 1"
repairSuggestions:
  - "How to fix issue 1"
```

**REMEMBER:**
- Empty "evidence" array is REQUIRED for a "pass" verdict
- Non-empty "evidence" array is REQUIRED for a "fail" verdict (Habeas Corpus)
- You are HOSTILE - look for flaws actively
- But you are FAIR - you need real evidence to reject

Begin your audit:'''

    async def audit(self, artifact: str, constitution: Union[str, Constitution, dict, None],
                    instruction: str) -> AuditResult:
        constitution_text = _constitution_text(constitution)
        prompt = self.build_prompt(artifact, constitution_text, instruction)
        result = await self.dispatcher.dispatch(
            self.endpoints, prompt,
            {"temperature": self.config.temperature, "max_output_tokens": self.config.max_tokens},
        )
        model_used = self.config.model_label or result.provider_used.id
        audit = parse_audit_response(result.text or "", model_used)
        logger.info(
            f"Audit verdict {audit.verdict.value} ({audit.confidence:.0f}%), "
            f"{len(audit.evidence)} evidence item(s)"
        )
        return audit

    async def conduct_duel(self, artifact: str, constitution: Union[str, Constitution, dict, None],
                           instruction: str, on_repair: Optional[RepairFn] = None) -> DuelResult:
        mode = extract_mode(constitution)
        with traced_duel(mode.value) as span:
            initial = await self.audit(artifact, constitution, instruction)

            if initial.passed:
                duel = DuelResult(DuelOutcome.VERIFIED, artifact, initial, 1, True)
            elif on_repair is None:
                duel = DuelResult(DuelOutcome.FINAL_FAILURE, artifact, initial, 1, False)
            else:
                attempt = RepairAttempt(
                    attempt_number=1,
                    failure_evidence=initial.evidence,
                    repair_suggestions=initial.repair_suggestions,
                    original_artifact=artifact,
                )
                repaired = on_repair(initial.evidence, initial.repair_suggestions)
                if inspect.isawaitable(repaired):
                    repaired = await repaired
                attempt.repaired_artifact = repaired
                attempt.reaudit_result = await self.audit(repaired, constitution, instruction)

                verified = attempt.reaudit_result.passed
                duel = DuelResult(
                    outcome=DuelOutcome.REPAIRED_AND_VERIFIED if verified else DuelOutcome.FINAL_FAILURE,
                    final_artifact=repaired,
                    initial_audit=initial,
                    total_rounds=2,
                    is_verified=verified,
                    repair_attempt=attempt,
                )
            span.set_attribute("duel.outcome", duel.outcome.value)

        logger.info(f"Duel finished: {duel.outcome.value} after {duel.total_rounds} round(s)")
        hooks = getattr(self.dispatcher, "hooks", None)
        if hooks is not None:
            hooks.fire(EventType.DUEL_COMPLETED, outcome=duel.outcome.value, rounds=duel.total_rounds)
        return duel


async def quick_audit(artifact: str, constitution: Union[str, Constitution, dict, None],
                      dispatcher: HydraDispatcher, endpoints: Sequence,
                      settings: Optional[PrismSettings] = None) -> AuditResult:
    mirror = AntagonistMirror(dispatcher, endpoints, settings=settings)
    return await mirror.audit(artifact, constitution, QUICK_AUDIT_INSTRUCTION)


# ─────────────────────────────────────────────
# Formatting
# ─────────────────────────────────────────────

def format_duel_result(result: DuelResult) -> str:
    lines = [
        f"## Antagonist Duel Result: {result.outcome.value.upper()}",
        "",
        f"**Rounds:** {result.total_rounds}",
        f"**Verified:** {str(result.is_verified).lower()}",
        "",
        "### Initial Audit",
        f"- Verdict: {result.initial_audit.verdict.value}",
        f"- Confidence: {result.initial_audit.confidence:g}%",
        f"- Reasoning: {result.initial_audit.reasoning}",
    ]
    if result.initial_audit.evidence:
        lines += ["", "**Evidence:**"]
        for i, e in enumerate(result.initial_audit.evidence, 1):
            lines.append(f'{i}. [{e.type.value}] "{e.content}"')
            lines.append(f"   -> {e.explanation}")
    if result.repair_attempt:
        lines += ["", "### Repair Attempt"]
        reaudit = result.repair_attempt.reaudit_result
        if reaudit:
            lines.append(f"- Re-audit Verdict: {reaudit.verdict.value}")
            lines.append(f"- Re-audit Confidence: {reaudit.confidence:g}%")
    return "\n".join(lines) + "\n"


def format_evidence_for_repair(evidence: Sequence[EvidenceItem], suggestions: Sequence[str]) -> str:
    if not evidence:
        return "No specific evidence provided."

    lines = [
        "## ANTAGONIST REJECTION - EVIDENCE OF FAILURE",
        "",
        "The following issues were identified. You have ONE attempt to fix them.",
        "",
        "### Evidence",
    ]
    for i, e in enumerate(evidence, 1):
        lines += ["", f"**Issue {i}:** [{e.type.value}]", f'> "{e.content}"', f"**Problem:** {e.explanation}"]
    if suggestions:
        lines += ["", "### Repair Suggestions"]
        lines += [f"{i}. {s}" for i, s in enumerate(suggestions, 1)]
    lines += ["", "---", "**IMPORTANT:** This is your ONLY repair attempt. Address ALL issues above."]
    return "\n".join(lines) + "\n"
