"""
LiveCoach — Data Models

Dataclasses for every piece of data flowing through the system.
`CoachSession` and everything it holds are frozen: the state machine
produces a new session per transition instead of mutating in place.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


# ---------------------------------------------------------------------------
# Training content
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProcessStep:
    title: str
    description: str = ""
    checkpoint: Optional[str] = None


@dataclass(frozen=True)
class TrainingModule:
    slug: str
    title: str
    steps: Tuple[ProcessStep, ...] = ()

    @property
    def step_count(self) -> int:
        return len(self.steps)

    def step(self, index: int) -> Optional[ProcessStep]:
        if 0 <= index < len(self.steps):
            return self.steps[index]
        return None

    def context(self) -> str:
        """Step list used to seed the tutor chat."""
        return "\n\n".join(
            f"Step {i + 1}: {s.title}\n{s.description}" for i, s in enumerate(self.steps)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slug": self.slug,
            "title": self.title,
            "steps": [asdict(s) for s in self.steps],
        }


# ---------------------------------------------------------------------------
# Need catalog entries
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BranchRule:
    item: str
    module_id: str


@dataclass(frozen=True)
class StepNeeds:
    required: Tuple[str, ...] = ()
    forbidden: Tuple[str, ...] = ()
    branch_on: Tuple[BranchRule, ...] = ()

    def branch_for(self, item: str) -> Optional[BranchRule]:
        for rule in self.branch_on:
            if rule.item == item:
                return rule
        return None


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class DetectedObject:
    """
    One momentary observation.

    box is (x_min, y_min, x_max, y_max) as fractions of the frame.
    """
    label: str
    box: Tuple[float, float, float, float] = (0.0, 0.0, 0.0, 0.0)
    score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"label": self.label, "score": self.score, "box": list(self.box)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DetectedObject":
        box = data.get("box") or (0.0, 0.0, 0.0, 0.0)
        score = data.get("score")
        return cls(
            label=str(data.get("label", "")),
            box=tuple(float(v) for v in box[:4]),  # type: ignore[arg-type]
            score=float(score) if score is not None else None,
        )


@dataclass
class TranscriptEntry:
    """A speech-recognition result as delivered by the recognizer."""
    text: str = ""
    is_final: bool = True
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Session events + durable record
# ---------------------------------------------------------------------------

class CoachEventType(str, Enum):
    HINT = "hint"
    CORRECTION = "correction"
    TUTORING = "tutoring"
    STEP_ADVANCE = "step_advance"


@dataclass(frozen=True)
class LiveCoachEvent:
    event_type: CoachEventType
    step_index: int
    timestamp: float = field(default_factory=time.time)
    # Module the step belongs to; remedial branches log under their own slug
    module_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "step_index": self.step_index,
            "timestamp": self.timestamp,
            "module_id": self.module_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LiveCoachEvent":
        return cls(
            event_type=CoachEventType(data["event_type"]),
            step_index=int(data["step_index"]),
            timestamp=float(data.get("timestamp", 0.0)),
            module_id=str(data.get("module_id", "")),
        )


@dataclass
class SessionRecord:
    """Durable session row, owned by the persistence adapter."""
    module_id: str = ""
    session_token: str = ""
    current_step_index: int = 0
    score: Optional[int] = None
    live_coach_events: List[LiveCoachEvent] = field(default_factory=list)
    is_completed: bool = False
    updated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module_id": self.module_id,
            "session_token": self.session_token,
            "current_step_index": self.current_step_index,
            "score": self.score,
            "live_coach_events": [e.to_dict() for e in self.live_coach_events],
            "is_completed": self.is_completed,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            module_id=str(data.get("module_id", "")),
            session_token=str(data.get("session_token", "")),
            current_step_index=int(data.get("current_step_index", 0) or 0),
            score=data.get("score"),
            live_coach_events=[
                LiveCoachEvent.from_dict(e) for e in (data.get("live_coach_events") or [])
            ],
            is_completed=bool(data.get("is_completed", False)),
            updated_at=float(data.get("updated_at", 0.0) or 0.0),
        )


@dataclass
class SessionSummary:
    """Review view of a stored session."""
    record: SessionRecord
    started_at: float = 0.0
    ended_at: float = 0.0
    durations_per_step: Dict[int, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.record.to_dict(),
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "durations_per_step": {str(k): round(v, 3) for k, v in self.durations_per_step.items()},
        }


# ---------------------------------------------------------------------------
# Recall
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RankedFix:
    id: str
    user_fix_text: str
    similarity: float


@dataclass
class FeedbackLog:
    """A prompt/response pair plus the trainee's verdict on it."""
    id: str = ""
    session_token: str = ""
    module_id: str = ""
    step_index: int = 0
    user_prompt: str = ""
    ai_response: str = ""
    feedback: Optional[str] = None        # "good" | "bad" | None
    user_fix_text: Optional[str] = None
    fix_embedding: Optional[List[float]] = None
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Session telemetry
# ---------------------------------------------------------------------------

@dataclass
class SessionTelemetry:
    """Per-session counters — never crashes the session."""
    session_id: str = ""
    module_id: str = ""
    snapshots_received: int = 0
    snapshots_evaluated: int = 0
    frames_detected: int = 0
    transcripts_received: int = 0
    interjections_started: int = 0
    interjections_discarded: int = 0
    pipeline_failures: int = 0
    saves_failed: int = 0
    last_pipeline_latency_ms: float = 0.0
    vision_active: bool = False
    chat_active: bool = False
    coach_status: str = "initializing"
    coach_mode: str = "unavailable"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Live coaching session
# ---------------------------------------------------------------------------

class CoachStatus(str, Enum):
    INITIALIZING = "initializing"
    LISTENING = "listening"
    HINTING = "hinting"
    CORRECTING = "correcting"
    TUTORING = "tutoring"
    BRANCHING = "branching"
    THINKING = "thinking"
    SPEAKING = "speaking"
    IDLE = "idle"


class InterjectionKind(str, Enum):
    HINT = "hint"
    CORRECTION = "correction"
    TUTORING = "tutoring"
    QUERY = "query"
    BRANCH = "branch"
    ANNOUNCEMENT = "announcement"


class TimerKind(str, Enum):
    HINT = "hint"
    COMPLETION = "completion"


@dataclass(frozen=True)
class SuspendedModule:
    module: TrainingModule
    step_index: int


@dataclass(frozen=True)
class Interjection:
    """Holder of the interjection lock. Results from older generations are dropped."""
    kind: InterjectionKind
    generation: int


@dataclass(frozen=True)
class ArmedTimer:
    kind: TimerKind
    token: int
    module_slug: str
    step_index: int


@dataclass(frozen=True)
class CoachSession:
    session_id: str
    active_module: TrainingModule
    status: CoachStatus = CoachStatus.INITIALIZING
    current_step_index: int = 0
    score: int = 100
    main_module_state: Optional[SuspendedModule] = None
    events: Tuple[LiveCoachEvent, ...] = ()
    interjection: Optional[Interjection] = None
    generation: int = 0
    armed_timer: Optional[ArmedTimer] = None
    timer_token: int = 0
    detected_labels: Tuple[str, ...] = ()
    vision_ready: bool = False
    is_completed: bool = False
    ai_response: str = ""

    @classmethod
    def create(
        cls,
        session_id: str,
        module: TrainingModule,
        initial_score: int = 100,
        record: Optional[SessionRecord] = None,
    ) -> "CoachSession":
        """New session, or one resumed from its stored record."""
        if record is None:
            return cls(session_id=session_id, active_module=module, score=initial_score)
        last = max(module.step_count - 1, 0)
        return cls(
            session_id=session_id,
            active_module=module,
            current_step_index=min(max(record.current_step_index, 0), last),
            score=record.score if record.score is not None else initial_score,
            events=tuple(record.live_coach_events),
            is_completed=record.is_completed,
        )

    @property
    def is_branched(self) -> bool:
        return self.main_module_state is not None

    @property
    def main_module(self) -> TrainingModule:
        if self.main_module_state is not None:
            return self.main_module_state.module
        return self.active_module

    @property
    def current_step(self) -> Optional[ProcessStep]:
        return self.active_module.step(self.current_step_index)

    @property
    def lock_held(self) -> bool:
        return self.interjection is not None

    def has_hint_for(self, module_slug: str, step_index: int) -> bool:
        for e in self.events:
            if (
                e.event_type in (CoachEventType.HINT, CoachEventType.TUTORING)
                and e.step_index == step_index
                and (e.module_id or module_slug) == module_slug
            ):
                return True
        return False

    def to_dict(self, initial_score: int = 100) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "module_id": self.main_module.slug,
            "active_module": self.active_module.slug,
            "current_step_index": self.current_step_index,
            "step_count": self.active_module.step_count,
            "score": self.score,
            "score_percentage": display_percentage(self.score, initial_score),
            "branched": self.is_branched,
            "suspended_step_index": (
                self.main_module_state.step_index if self.main_module_state else None
            ),
            "interjection": self.interjection.kind.value if self.interjection else None,
            "armed_timer": self.armed_timer.kind.value if self.armed_timer else None,
            "events": [e.to_dict() for e in self.events],
            "is_completed": self.is_completed,
        }


def display_percentage(score: int, initial_score: int = 100) -> int:
    """Score as a 0-100 percentage. The stored score itself is never clamped."""
    if initial_score <= 0:
        return 0
    return int(max(0.0, min(100.0, score / initial_score * 100)))
