"""
Checkpoint Manager — phase-level crash recovery for a planning session
======================================================================
Each phase transition merges the phase's output into the session record and
overwrites its ``checkpoint`` meta (phase, timestamp, step counts). A crashed
or closed session can then be offered for resume from the last phase reached.

Phases run in a fixed order, idle → … → complete; ``completed_steps`` is the
phase's index in that order, so complete is step 10 of 10.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .hooks import EventType, HookRegistry
from .models import SessionCheckpoint, checkpoint_from_dict
from .state import SessionBackend

logger = logging.getLogger("prism_orchestrator.checkpoint")

CHECKPOINT_VERSION = "1.0.0"
DEFAULT_SESSION_ID = "current_session"


class SessionPhase(str, Enum):
    IDLE = "idle"
    GENESIS_STARTED = "genesis_started"
    GENESIS_COMPLETE = "genesis_complete"
    PRISM_STEP_A = "prism_step_a"
    PRISM_STEP_B = "prism_step_b"
    PRISM_STEP_C = "prism_step_c"
    SABOTEUR_COMPLETE = "saboteur_complete"
    AWAITING_REVIEW = "awaiting_review"
    EXECUTION_STARTED = "execution_started"
    EXECUTION_IN_PROGRESS = "execution_in_progress"
    COMPLETE = "complete"


PHASE_ORDER: list[SessionPhase] = list(SessionPhase)
TOTAL_STEPS = len(PHASE_ORDER) - 1

PHASE_DESCRIPTIONS: dict[SessionPhase, str] = {
    SessionPhase.IDLE: "Not started",
    SessionPhase.GENESIS_STARTED: "Generating Constitution...",
    SessionPhase.GENESIS_COMPLETE: "Constitution ready",
    SessionPhase.PRISM_STEP_A: "Domain classified",
    SessionPhase.PRISM_STEP_B: "Tasks generated",
    SessionPhase.PRISM_STEP_C: "Tasks routed",
    SessionPhase.SABOTEUR_COMPLETE: "Gaps filled",
    SessionPhase.AWAITING_REVIEW: "Awaiting your review",
    SessionPhase.EXECUTION_STARTED: "Execution started",
    SessionPhase.EXECUTION_IN_PROGRESS: "Executing tasks...",
    SessionPhase.COMPLETE: "Complete",
}


def _phase(value) -> Optional[SessionPhase]:
    try:
        return SessionPhase(value)
    except ValueError:
        return None


def compare_phases(a: SessionPhase | str, b: SessionPhase | str) -> int:
    """Negative when ``a`` precedes ``b``."""
    return PHASE_ORDER.index(SessionPhase(a)) - PHASE_ORDER.index(SessionPhase(b))


def is_resumable_phase(phase: SessionPhase | str) -> bool:
    """True for phases worth offering on startup: anything begun and not finished."""
    return _phase(phase) not in (SessionPhase.IDLE, SessionPhase.COMPLETE, None)


def completed_steps_for(phase: SessionPhase | str) -> int:
    p = _phase(phase)
    return PHASE_ORDER.index(p) if p else 0


def phase_description(phase: SessionPhase | str) -> str:
    p = _phase(phase)
    return PHASE_DESCRIPTIONS[p] if p else "Unknown phase"


def step_fraction(completed: Optional[int], total: Optional[int]) -> float:
    """Clamped to 0..1; records written with an older step count can overshoot."""
    if not total:
        return 0.0
    return max(0.0, min(1.0, (completed or 0) / total))


def progress_percentage(phase: SessionPhase | str) -> int:
    return round(step_fraction(completed_steps_for(phase), TOTAL_STEPS) * 100)


def format_relative_time(timestamp: float, now: Optional[float] = None) -> str:
    """``timestamp`` and ``now`` are epoch seconds."""
    seconds = int((now if now is not None else time.time()) - timestamp)
    minutes, hours, days = seconds // 60, seconds // 3600, seconds // 86400
    if days > 0:
        return f"{days} day{'s' if days > 1 else ''} ago"
    if hours > 0:
        return f"{hours} hour{'s' if hours > 1 else ''} ago"
    if minutes > 0:
        return f"{minutes} minute{'s' if minutes > 1 else ''} ago"
    return "Just now"


@dataclass
class ResumeStatus:
    resumable: bool
    phase: str
    description: str
    timestamp: Optional[float] = None
    completed_steps: Optional[int] = None
    total_steps: Optional[int] = None

    @property
    def progress(self) -> float:
        return step_fraction(self.completed_steps, self.total_steps)


class CheckpointManager:
    """
    Writes phase checkpoints for one session through a SessionBackend.

    Store failures propagate from checkpoint() so the pipeline can decide
    whether to continue; can_resume() never raises.
    """

    def __init__(self, store: SessionBackend, session_id: str = DEFAULT_SESSION_ID,
                 hooks: Optional[HookRegistry] = None):
        self.store = store
        self.session_id = session_id
        self.hooks = hooks
        self.current_phase = SessionPhase.IDLE

    def _build_meta(self, phase: SessionPhase, data: dict,
                    description: Optional[str]) -> SessionCheckpoint:
        meta = SessionCheckpoint(
            phase=phase.value,
            description=description or PHASE_DESCRIPTIONS[phase],
            total_steps=TOTAL_STEPS,
            completed_steps=completed_steps_for(phase),
            timestamp=time.time(),
            checkpoint_version=CHECKPOINT_VERSION,
        )
        exec_state = data.get("node_execution_state")
        if exec_state:
            completed = [n.get("node_id") for n in exec_state.get("completed_nodes", [])]
            meta.completed_node_ids = completed
            meta.total_nodes = len(data.get("nodes") or [])
            if completed:
                meta.current_node_id = completed[-1]
        return meta

    async def checkpoint(self, phase: SessionPhase | str, data: Optional[dict] = None,
                         description: Optional[str] = None) -> SessionCheckpoint:
        phase = SessionPhase(phase)
        data = dict(data or {})
        meta = self._build_meta(phase, data, description)

        await self.store.update(self.session_id, {
            **data,
            "checkpoint": meta.to_dict(),
            "updated_at": meta.timestamp,
        })
        self.current_phase = phase
        logger.info(f"Checkpoint saved: {phase.value} - {meta.description}")

        if self.hooks is not None:
            self.hooks.fire(EventType.PHASE_CHECKPOINTED, session_id=self.session_id,
                            phase=phase.value, meta=meta.to_dict())
        return meta

    async def get_checkpoint_meta(self, session_id: Optional[str] = None) -> Optional[SessionCheckpoint]:
        record = await self.store.get(session_id or self.session_id)
        raw = (record or {}).get("checkpoint")
        return checkpoint_from_dict(raw) if raw else None

    async def can_resume(self, session_id: Optional[str] = None) -> ResumeStatus:
        try:
            record = await self.store.get(session_id or self.session_id)
        except Exception as e:
            logger.error(f"Error checking resume capability: {e}")
            return ResumeStatus(False, SessionPhase.IDLE.value, "Error checking session")

        if record is None:
            return ResumeStatus(False, SessionPhase.IDLE.value, "Session not found")
        raw = record.get("checkpoint")
        if not raw:
            return ResumeStatus(False, SessionPhase.IDLE.value, "No checkpoint found")

        meta = checkpoint_from_dict(raw)
        return ResumeStatus(
            resumable=meta.phase != SessionPhase.COMPLETE.value,
            phase=meta.phase,
            description=meta.description or phase_description(meta.phase),
            timestamp=meta.timestamp,
            completed_steps=meta.completed_steps,
            total_steps=meta.total_steps,
        )

    async def clear_checkpoint(self, session_id: Optional[str] = None) -> None:
        """Drop the checkpoint meta; the rest of the session record stays."""
        sid = session_id or self.session_id
        await self.store.update(sid, {"checkpoint": None, "updated_at": time.time()})
        self.current_phase = SessionPhase.IDLE
        logger.info(f"Cleared checkpoint for session: {sid}")

    async def record_error(self, message: str) -> Optional[SessionCheckpoint]:
        meta = await self.get_checkpoint_meta()
        if meta is None:
            logger.warning(f"No checkpoint to attach error to: {message}")
            return None
        meta.last_error = message
        meta.retry_count = (meta.retry_count or 0) + 1
        await self.store.update(self.session_id, {"checkpoint": meta.to_dict()})
        return meta

    async def mark_complete(self) -> SessionCheckpoint:
        return await self.checkpoint(SessionPhase.COMPLETE, {}, "Pipeline complete")

    async def save_on_pause(self, node_execution_state: dict) -> SessionCheckpoint:
        done = len(node_execution_state.get("completed_nodes", []))
        return await self.checkpoint(
            SessionPhase.EXECUTION_IN_PROGRESS,
            {"node_execution_state": node_execution_state},
            f"Paused after {done} nodes",
        )

    @staticmethod
    def phase_description(phase: SessionPhase | str) -> str:
        return phase_description(phase)

    @staticmethod
    def progress_percentage(phase: SessionPhase | str) -> int:
        return progress_percentage(phase)


async def detect_resumable_session(store: SessionBackend,
                                   session_id: str = DEFAULT_SESSION_ID) -> Optional[dict]:
    """Summary of a session worth offering for resume, or None."""
    try:
        record = await store.get(session_id)
    except Exception as e:
        logger.error(f"Error detecting resumable session: {e}")
        return None
    raw = (record or {}).get("checkpoint")
    if not raw or not is_resumable_phase(raw.get("phase")):
        return None

    meta = checkpoint_from_dict(raw)
    return {
        "session_id": session_id,
        "phase": meta.phase,
        "description": meta.description or phase_description(meta.phase),
        "timestamp": meta.timestamp,
        "progress": round(step_fraction(meta.completed_steps, meta.total_steps) * 100),
    }
