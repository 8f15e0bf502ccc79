"""
LiveCoach — Coach State Machine

    initializing → listening ⇄ {hinting, correcting, tutoring, branching, thinking}
                                       → speaking → listening
    idle: chat failed at start-up, session completed, or session torn down.

`reduce()` is the single pure transition function. It takes the current
CoachSession and one input event and returns the next session plus a list
of effect requests (speak, persist, arm timer, ...). It never performs I/O;
the orchestrator executes the effects and feeds results back in as events.

`CoachStateMachine` wraps `reduce()` with the bookkeeping every transition
needs: legality check, logging, bounded history and a listener callback.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

from .config import CoachConfig, coach_cfg
from .errors import IllegalTransitionError
from .models import (
    ArmedTimer,
    CoachEventType,
    CoachSession,
    CoachStatus,
    DetectedObject,
    Interjection,
    InterjectionKind,
    LiveCoachEvent,
    SuspendedModule,
    TimerKind,
    TrainingModule,
)
from ..processing.needs import NeedAction, NeedChecker

logger = logging.getLogger("livecoach.state")


# Legal status transitions
_TRANSITIONS: Dict[CoachStatus, Set[CoachStatus]] = {
    CoachStatus.INITIALIZING: {CoachStatus.LISTENING, CoachStatus.IDLE},
    CoachStatus.LISTENING: {
        CoachStatus.HINTING, CoachStatus.CORRECTING, CoachStatus.TUTORING,
        CoachStatus.BRANCHING, CoachStatus.THINKING, CoachStatus.SPEAKING,
        CoachStatus.IDLE,
    },
    CoachStatus.HINTING: {CoachStatus.SPEAKING, CoachStatus.LISTENING, CoachStatus.THINKING, CoachStatus.IDLE},
    CoachStatus.CORRECTING: {CoachStatus.SPEAKING, CoachStatus.LISTENING, CoachStatus.THINKING, CoachStatus.IDLE},
    CoachStatus.TUTORING: {CoachStatus.SPEAKING, CoachStatus.LISTENING, CoachStatus.THINKING, CoachStatus.IDLE},
    CoachStatus.THINKING: {CoachStatus.SPEAKING, CoachStatus.LISTENING, CoachStatus.IDLE},
    CoachStatus.BRANCHING: {CoachStatus.SPEAKING, CoachStatus.LISTENING, CoachStatus.IDLE},
    CoachStatus.SPEAKING: {CoachStatus.LISTENING, CoachStatus.THINKING, CoachStatus.IDLE},
    CoachStatus.IDLE: set(),
}

# Statuses that hold the interjection lock while waiting on the pipeline
_PIPELINE_STATUS: Dict[InterjectionKind, CoachStatus] = {
    InterjectionKind.HINT: CoachStatus.HINTING,
    InterjectionKind.CORRECTION: CoachStatus.CORRECTING,
    InterjectionKind.TUTORING: CoachStatus.TUTORING,
    InterjectionKind.QUERY: CoachStatus.THINKING,
}

_EVENT_FOR_KIND: Dict[InterjectionKind, CoachEventType] = {
    InterjectionKind.HINT: CoachEventType.HINT,
    InterjectionKind.CORRECTION: CoachEventType.CORRECTION,
    InterjectionKind.TUTORING: CoachEventType.TUTORING,
}

SYSTEM_VOICE = "system"


# ═══════════════════════════════════════════════════════════════════════════
# Input events
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SessionReady:
    vision_ok: bool
    chat_ok: bool
    error: str = ""


@dataclass(frozen=True)
class DetectionSnapshot:
    objects: Tuple[DetectedObject, ...] = ()

    @property
    def labels(self) -> Tuple[str, ...]:
        return tuple(o.label for o in self.objects if o.label)


@dataclass(frozen=True)
class TimerFired:
    kind: TimerKind
    token: int


@dataclass(frozen=True)
class VoiceQuery:
    text: str


@dataclass(frozen=True)
class StepAdvance:
    # "voice" | "click" | "auto"
    source: str = "click"


@dataclass(frozen=True)
class InterjectionCompleted:
    generation: int
    text: str


@dataclass(frozen=True)
class InterjectionFailed:
    generation: int
    message: str = ""


@dataclass(frozen=True)
class SpeechFinished:
    generation: int


@dataclass(frozen=True)
class BranchLoaded:
    generation: int
    module: TrainingModule


@dataclass(frozen=True)
class BranchLoadFailed:
    generation: int
    error: str = ""


@dataclass(frozen=True)
class Teardown:
    reason: str = "session closed"


CoachInput = Union[
    SessionReady, DetectionSnapshot, TimerFired, VoiceQuery, StepAdvance,
    InterjectionCompleted, InterjectionFailed, SpeechFinished,
    BranchLoaded, BranchLoadFailed, Teardown,
]


# ═══════════════════════════════════════════════════════════════════════════
# Effect requests
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Speak:
    text: str
    voice: str
    generation: int


@dataclass(frozen=True)
class CancelSpeech:
    pass


@dataclass(frozen=True)
class RunInterjection:
    kind: InterjectionKind
    generation: int
    module_slug: str
    step_index: int
    step_title: str
    step_context: str
    required: Tuple[str, ...] = ()
    utterance: str = ""
    detected_labels: Tuple[str, ...] = ()
    trigger_item: str = ""


@dataclass(frozen=True)
class LoadBranch:
    module_id: str
    generation: int


@dataclass(frozen=True)
class ArmTimer:
    kind: TimerKind
    delay: float
    token: int


@dataclass(frozen=True)
class DisarmTimers:
    pass


@dataclass(frozen=True)
class Persist:
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Notify:
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EndSession:
    completed: bool


Effect = Union[
    Speak, CancelSpeech, RunInterjection, LoadBranch, ArmTimer,
    DisarmTimers, Persist, Notify, EndSession,
]


@dataclass
class Transition:
    session: CoachSession
    effects: List[Effect] = field(default_factory=list)
    reason: str = ""


# ═══════════════════════════════════════════════════════════════════════════
# Pure transition function
# ═══════════════════════════════════════════════════════════════════════════

def reduce(
    session: CoachSession,
    event: CoachInput,
    checker: NeedChecker,
    cfg: CoachConfig = coach_cfg,
    now: Optional[float] = None,
) -> Transition:
    """Compute the next session and the effects it requests."""
    ts = now if now is not None else time.time()

    if session.status == CoachStatus.IDLE:
        return Transition(session, [], "idle")

    if isinstance(event, SessionReady):
        return _on_ready(session, event)
    if isinstance(event, Teardown):
        return _on_teardown(session, event)
    if session.status == CoachStatus.INITIALIZING:
        return Transition(session, [], "not ready")

    if isinstance(event, DetectionSnapshot):
        return _on_snapshot(session, event, checker, cfg, ts)
    if isinstance(event, TimerFired):
        return _on_timer(session, event, checker, cfg, ts)
    if isinstance(event, VoiceQuery):
        return _on_query(session, event, checker)
    if isinstance(event, StepAdvance):
        return _advance(session, event.source, checker, ts)
    if isinstance(event, InterjectionCompleted):
        return _on_completed(session, event, cfg)
    if isinstance(event, InterjectionFailed):
        return _on_failed(session, event, cfg)
    if isinstance(event, SpeechFinished):
        return _on_speech_finished(session, event)
    if isinstance(event, BranchLoaded):
        return _on_branch_loaded(session, event, cfg)
    if isinstance(event, BranchLoadFailed):
        return _on_branch_failed(session, event)
    raise TypeError(f"Unknown coach input: {event!r}")


# ── lifecycle ──────────────────────────────────────────────────────────────

def _on_ready(s: CoachSession, ev: SessionReady) -> Transition:
    if s.status != CoachStatus.INITIALIZING:
        return Transition(s, [], "already initialized")
    if not ev.chat_ok:
        return Transition(
            replace(s, status=CoachStatus.IDLE),
            [Notify("error", {"message": ev.error or "AI tutor unavailable"}), EndSession(completed=False)],
            "chat unavailable",
        )
    if s.is_completed:
        return Transition(
            replace(s, status=CoachStatus.IDLE),
            [Notify("status", {"message": "Module already completed"}), EndSession(completed=True)],
            "already completed",
        )
    effects: List[Effect] = []
    if not ev.vision_ok:
        effects.append(Notify("error", {"message": ev.error or "Vision unavailable, proactive coaching disabled"}))
    return Transition(
        replace(s, status=CoachStatus.LISTENING, vision_ready=ev.vision_ok),
        effects,
        "ready" if ev.vision_ok else "ready (no vision)",
    )


def _on_teardown(s: CoachSession, ev: Teardown) -> Transition:
    effects: List[Effect] = [DisarmTimers()]
    if s.lock_held:
        effects.append(CancelSpeech())
    return Transition(
        replace(
            s, status=CoachStatus.IDLE, interjection=None, armed_timer=None,
            generation=s.generation + 1,
        ),
        effects,
        ev.reason,
    )


# ── proactive checking ─────────────────────────────────────────────────────

def _on_snapshot(
    s: CoachSession, ev: DetectionSnapshot, checker: NeedChecker, cfg: CoachConfig, ts: float,
) -> Transition:
    s = replace(s, detected_labels=ev.labels)
    if not s.vision_ready or s.status != CoachStatus.LISTENING or s.lock_held:
        return Transition(s, [], "")

    slug = s.active_module.slug
    idx = s.current_step_index
    armed = s.armed_timer.kind if s.armed_timer else None
    decision = checker.evaluate(slug, idx, ev.labels, armed=armed, branched=s.is_branched)

    if decision.action == NeedAction.KEEP:
        return Transition(s, [], "")

    if decision.action == NeedAction.DISARM:
        return Transition(replace(s, armed_timer=None), [DisarmTimers()], "")

    if decision.action in (NeedAction.ARM_HINT, NeedAction.ARM_COMPLETION):
        kind = TimerKind.HINT if decision.action == NeedAction.ARM_HINT else TimerKind.COMPLETION
        delay = cfg.hint_delay if kind == TimerKind.HINT else cfg.completion_delay
        token = s.timer_token + 1
        s = replace(s, timer_token=token, armed_timer=ArmedTimer(kind, token, slug, idx))
        return Transition(s, [DisarmTimers(), ArmTimer(kind, delay, token)], "")

    if decision.action == NeedAction.BRANCH and decision.rule is not None:
        gen = s.generation + 1
        s = replace(
            s, status=CoachStatus.BRANCHING, generation=gen, armed_timer=None,
            interjection=Interjection(InterjectionKind.BRANCH, gen),
        )
        return Transition(
            s,
            [DisarmTimers(), LoadBranch(decision.rule.module_id, gen),
             Notify("branch", {"phase": "loading", "module_id": decision.rule.module_id,
                               "item": decision.item})],
            f"forbidden '{decision.item}' → {decision.rule.module_id}",
        )

    # CORRECT
    return _start_proactive(s, InterjectionKind.CORRECTION, checker, cfg, ts,
                            reason=f"forbidden '{decision.item}'", trigger_item=decision.item or "")


def _on_timer(
    s: CoachSession, ev: TimerFired, checker: NeedChecker, cfg: CoachConfig, ts: float,
) -> Transition:
    armed = s.armed_timer
    if armed is None or armed.token != ev.token or armed.kind != ev.kind:
        return Transition(s, [], "")
    s = replace(s, armed_timer=None)
    still_current = (
        armed.module_slug == s.active_module.slug and armed.step_index == s.current_step_index
    )
    if s.status != CoachStatus.LISTENING or s.lock_held or not still_current:
        return Transition(s, [], "")

    if ev.kind == TimerKind.COMPLETION:
        return _advance(s, "auto", checker, ts)

    kind = (
        InterjectionKind.TUTORING
        if s.has_hint_for(s.active_module.slug, s.current_step_index)
        else InterjectionKind.HINT
    )
    return _start_proactive(s, kind, checker, cfg, ts, reason=f"{ev.kind.value} timer")


def _start_proactive(
    s: CoachSession,
    kind: InterjectionKind,
    checker: NeedChecker,
    cfg: CoachConfig,
    ts: float,
    reason: str,
    trigger_item: str = "",
) -> Transition:
    penalty = {
        InterjectionKind.HINT: cfg.hint_penalty,
        InterjectionKind.CORRECTION: cfg.correction_penalty,
        InterjectionKind.TUTORING: cfg.tutoring_penalty,
    }[kind]
    gen = s.generation + 1
    event = LiveCoachEvent(_EVENT_FOR_KIND[kind], s.current_step_index, ts, s.active_module.slug)
    events = s.events + (event,)
    s = replace(
        s,
        status=_PIPELINE_STATUS[kind],
        generation=gen,
        interjection=Interjection(kind, gen),
        armed_timer=None,
        score=s.score - penalty,
        events=events,
        ai_response="",
    )
    return Transition(
        s,
        [
            DisarmTimers(),
            Persist({"score": s.score, "live_coach_events": list(events)}),
            Notify("event", event.to_dict()),
            Notify("score", {"score": s.score}),
            _run(s, kind, gen, checker, trigger_item=trigger_item),
        ],
        reason,
    )


def _run(
    s: CoachSession,
    kind: InterjectionKind,
    gen: int,
    checker: NeedChecker,
    utterance: str = "",
    trigger_item: str = "",
) -> RunInterjection:
    step = s.current_step
    return RunInterjection(
        kind=kind,
        generation=gen,
        module_slug=s.active_module.slug,
        step_index=s.current_step_index,
        step_title=step.title if step else "",
        step_context=step.description if step else "",
        required=tuple(checker.required_items(s.active_module.slug, s.current_step_index)),
        utterance=utterance,
        detected_labels=s.detected_labels,
        trigger_item=trigger_item,
    )


# ── voice queries ──────────────────────────────────────────────────────────

def _on_query(s: CoachSession, ev: VoiceQuery, checker: NeedChecker) -> Transition:
    if s.status == CoachStatus.BRANCHING or not ev.text.strip():
        return Transition(s, [], "")
    effects: List[Effect] = [DisarmTimers()]
    pre_empted = s.interjection.kind.value if s.interjection else ""
    if s.lock_held:
        effects.append(CancelSpeech())
    gen = s.generation + 1
    s = replace(
        s,
        status=CoachStatus.THINKING,
        generation=gen,
        interjection=Interjection(InterjectionKind.QUERY, gen),
        armed_timer=None,
        ai_response="",
    )
    effects.append(_run(s, InterjectionKind.QUERY, gen, checker, utterance=ev.text.strip()))
    return Transition(s, effects, f"voice query (pre-empts {pre_empted})" if pre_empted else "voice query")


# ── pipeline results ───────────────────────────────────────────────────────

def _is_current(s: CoachSession, generation: int) -> bool:
    return (
        s.interjection is not None
        and s.interjection.generation == generation
        and s.status in _PIPELINE_STATUS.values()
    )


def _on_completed(s: CoachSession, ev: InterjectionCompleted, cfg: CoachConfig) -> Transition:
    if not _is_current(s, ev.generation):
        return Transition(s, [], "stale result discarded")
    text = ev.text.strip()
    if not text:
        return Transition(replace(s, status=CoachStatus.LISTENING, interjection=None), [], "empty response")
    return Transition(
        replace(s, status=CoachStatus.SPEAKING, ai_response=text),
        [Notify("ai_text", {"text": text, "final": True}), Speak(text, cfg.voice_profile, ev.generation)],
        "response ready",
    )


def _on_failed(s: CoachSession, ev: InterjectionFailed, cfg: CoachConfig) -> Transition:
    if not _is_current(s, ev.generation):
        return Transition(s, [], "stale failure discarded")
    text = ev.message or "Sorry, I couldn't process that. Please try again."
    return Transition(
        replace(s, status=CoachStatus.SPEAKING, ai_response=text),
        [Notify("error", {"message": text}), Speak(text, cfg.voice_profile, ev.generation)],
        "pipeline failed",
    )


def _on_speech_finished(s: CoachSession, ev: SpeechFinished) -> Transition:
    if (
        s.status != CoachStatus.SPEAKING
        or s.interjection is None
        or s.interjection.generation != ev.generation
    ):
        return Transition(s, [], "")
    return Transition(replace(s, status=CoachStatus.LISTENING, interjection=None), [], "speech finished")


# ── branching ──────────────────────────────────────────────────────────────

def _branch_pending(s: CoachSession, generation: int) -> bool:
    return (
        s.status == CoachStatus.BRANCHING
        and s.interjection is not None
        and s.interjection.generation == generation
    )


def _on_branch_loaded(s: CoachSession, ev: BranchLoaded, cfg: CoachConfig) -> Transition:
    if not _branch_pending(s, ev.generation) or s.is_branched:
        return Transition(s, [], "stale branch discarded")
    if ev.module.step_count == 0:
        return _on_branch_failed(s, BranchLoadFailed(ev.generation, f"Module '{ev.module.slug}' has no steps"))

    suspended = SuspendedModule(module=s.active_module, step_index=s.current_step_index)
    first = ev.module.steps[0]
    intro = (
        f"Hold on. Before we continue, let's take a quick detour: {ev.module.title}. "
        f"Step 1: {first.title}."
    )
    s = replace(
        s,
        main_module_state=suspended,
        active_module=ev.module,
        current_step_index=0,
        score=s.score - cfg.branch_penalty,
        status=CoachStatus.SPEAKING,
        ai_response=intro,
    )
    return Transition(
        s,
        [
            Persist({"score": s.score}),
            Notify("branch", {"phase": "started", "module_id": ev.module.slug,
                              "suspended_module": suspended.module.slug,
                              "suspended_step_index": suspended.step_index}),
            Notify("score", {"score": s.score}),
            Notify("step", {"module_id": ev.module.slug, "step_index": 0, "title": first.title}),
            Speak(intro, cfg.voice_profile, ev.generation),
        ],
        f"branch into {ev.module.slug}",
    )


def _on_branch_failed(s: CoachSession, ev: BranchLoadFailed) -> Transition:
    if not _branch_pending(s, ev.generation):
        return Transition(s, [], "")
    return Transition(
        replace(s, status=CoachStatus.LISTENING, interjection=None),
        [Notify("error", {"message": ev.error or "Remedial module unavailable"})],
        "branch aborted",
    )


# ── step advance ───────────────────────────────────────────────────────────

def _advance(s: CoachSession, source: str, checker: NeedChecker, ts: float) -> Transition:
    if s.status == CoachStatus.INITIALIZING:
        return Transition(s, [], "")
    effects: List[Effect] = [DisarmTimers()]
    if s.lock_held:
        effects.append(CancelSpeech())

    gen = s.generation + 1
    event = LiveCoachEvent(CoachEventType.STEP_ADVANCE, s.current_step_index, ts, s.active_module.slug)
    events = s.events + (event,)
    effects.append(Notify("event", event.to_dict()))
    s = replace(s, generation=gen, events=events, interjection=None, armed_timer=None)
    nxt = s.current_step_index + 1

    # Next step in the active module
    if nxt < s.active_module.step_count:
        step = s.active_module.steps[nxt]
        line = f"Step {nxt + 1}: {step.title}."
        fields: Dict[str, Any] = {"live_coach_events": list(events)}
        if not s.is_branched:
            fields["current_step_index"] = nxt
        s = replace(
            s, current_step_index=nxt, status=CoachStatus.SPEAKING, ai_response=line,
            interjection=Interjection(InterjectionKind.ANNOUNCEMENT, gen),
        )
        effects += [
            Persist(fields),
            Notify("step", {"module_id": s.active_module.slug, "step_index": nxt, "title": step.title}),
            Speak(line, SYSTEM_VOICE, gen),
        ]
        return Transition(s, effects, f"step advance ({source})")

    # Remedial module finished: pop back to the suspended step
    if s.main_module_state is not None:
        done = s.active_module
        resumed = s.main_module_state
        step = resumed.module.step(resumed.step_index)
        line = (
            f"Great, {done.title} complete. Back to {resumed.module.title}"
            + (f", step {resumed.step_index + 1}: {step.title}." if step else ".")
        )
        s = replace(
            s,
            active_module=resumed.module,
            current_step_index=resumed.step_index,
            main_module_state=None,
            status=CoachStatus.SPEAKING,
            ai_response=line,
            interjection=Interjection(InterjectionKind.ANNOUNCEMENT, gen),
        )
        effects += [
            Persist({"live_coach_events": list(events)}),
            Notify("branch", {"phase": "ended", "module_id": done.slug,
                              "resumed_module": resumed.module.slug,
                              "resumed_step_index": resumed.step_index}),
            Notify("step", {"module_id": resumed.module.slug, "step_index": resumed.step_index,
                            "title": step.title if step else ""}),
            Speak(line, SYSTEM_VOICE, gen),
        ]
        return Transition(s, effects, f"branch complete ({source})")

    # Last step of the main module
    line = f"Well done, you've completed {s.active_module.title}!"
    s = replace(s, is_completed=True, status=CoachStatus.IDLE, ai_response=line)
    effects += [
        Persist({"live_coach_events": list(events), "is_completed": True}),
        Notify("step", {"module_id": s.active_module.slug, "step_index": s.current_step_index,
                        "completed": True}),
        Speak(line, SYSTEM_VOICE, gen),
        EndSession(completed=True),
    ]
    return Transition(s, effects, f"module complete ({source})")


# ═══════════════════════════════════════════════════════════════════════════
# Stateful wrapper
# ═══════════════════════════════════════════════════════════════════════════

class CoachStateMachine:
    """
    Holds one CoachSession and applies inputs to it through `reduce()`.

    Usage:
        sm = CoachStateMachine(session, checker, on_transition=cb)
        effects = sm.apply(SessionReady(vision_ok=True, chat_ok=True))
    """

    def __init__(
        self,
        session: CoachSession,
        checker: NeedChecker,
        cfg: CoachConfig = coach_cfg,
        on_transition: Optional[Callable[[CoachStatus, CoachStatus, str], None]] = None,
    ) -> None:
        self._session = session
        self._checker = checker
        self._cfg = cfg
        self._on_transition = on_transition
        self._history: List[Dict] = []
        self._entered_at = time.time()

    @property
    def session(self) -> CoachSession:
        return self._session

    @property
    def status(self) -> CoachStatus:
        return self._session.status

    @property
    def history(self) -> List[Dict]:
        return list(self._history)

    def apply(self, event: CoachInput, now: Optional[float] = None) -> List[Effect]:
        result = reduce(self._session, event, self._checker, self._cfg, now=now)
        prev, target = self._session.status, result.session.status
        if prev != target and target not in _TRANSITIONS.get(prev, set()):
            raise IllegalTransitionError(
                f"Illegal state transition: {prev.value} → {target.value}. "
                f"Allowed from {prev.value}: {sorted(s.value for s in _TRANSITIONS.get(prev, set()))}. "
                f"Input: {type(event).__name__}"
            )
        self._session = result.session
        if prev != target:
            self._record(prev, target, result.reason)
        elif result.reason and target != CoachStatus.IDLE:
            logger.debug(f"[{self._session.session_id}] {type(event).__name__}: {result.reason}")
        return result.effects

    def _record(self, prev: CoachStatus, target: CoachStatus, reason: str) -> None:
        now = time.time()
        self._history.append({
            "from": prev.value,
            "to": target.value,
            "reason": reason,
            "timestamp": now,
            "duration_in_prev_ms": round((now - self._entered_at) * 1000, 1),
        })
        if len(self._history) > self._cfg.max_history:
            del self._history[: len(self._history) - self._cfg.max_history]
        self._entered_at = now

        logger.info(
            f"[{self._session.session_id}] STATE: {prev.value} → {target.value}"
            + (f" ({reason})" if reason else "")
        )

        if self._on_transition:
            try:
                self._on_transition(prev, target, reason)
            except Exception as e:
                logger.error(f"State transition callback error: {e}")
