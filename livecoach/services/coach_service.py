"""
LiveCoach — Coach Service (the orchestrator)

================================================================================
ONE PER TRAINING SESSION
================================================================================

`LiveCoachService` owns everything that happens while a trainee works
through a module in front of the camera:

  1. Loads the module, hydrates the CoachSession from its stored record.
  2. Initializes vision (degrades on failure) and the tutor chat (fatal).
  3. Polls the latest detection snapshot every 500ms and feeds it to the
     state machine, which decides on hints, corrections, branches and
     auto-advance.
  4. Parses final transcripts into voice queries and step-advance commands.
  5. Executes the effects the state machine requests: pipeline runs,
     speech, timers, branch loads, saves and client notifications.

Every mutation of the CoachSession goes through `dispatch()`, serialized by
one asyncio.Lock. Effects never dispatch inline: anything that produces a
follow-up input (timers, pipeline, speech, branch loads) runs as a task
and dispatches when it finishes.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Callable, Dict, List, Optional, Set

from ..core.config import CoachConfig, PipelineConfig, coach_cfg, pipeline_cfg
from ..core.errors import CoachError, IllegalTransitionError, ModuleUnavailableError
from ..core.health import CoachPolicy
from ..core.interfaces import (
    ChatService,
    FeedbackStore,
    ModuleRepository,
    SessionStore,
    SpeechSynthesizer,
    VisionDetector,
)
from ..core.latency import LatencyTracer
from ..core.models import (
    CoachSession,
    CoachStatus,
    DetectedObject,
    SessionTelemetry,
    TimerKind,
    TrainingModule,
)
from ..core.state_machine import (
    ArmTimer,
    BranchLoaded,
    BranchLoadFailed,
    CancelSpeech,
    CoachInput,
    CoachStateMachine,
    DetectionSnapshot,
    DisarmTimers,
    Effect,
    EndSession,
    InterjectionCompleted,
    InterjectionFailed,
    LoadBranch,
    Notify,
    Persist,
    RunInterjection,
    SessionReady,
    Speak,
    SpeechFinished,
    StepAdvance,
    Teardown,
    TimerFired,
    VoiceQuery,
)
from ..processing.needs import NeedCatalog, NeedChecker
from ..processing.pipeline import InteractionPipeline
from ..processing.signals import CommandKind, DetectionFeed, VoiceCommandParser
from ..processing.vision import FrameAnalyzer
from .persistence import SessionPersistence

logger = logging.getLogger("livecoach.service")

MessageCallback = Callable[[Dict[str, Any]], Any]


class LiveCoachService:
    """
    Lifecycle:
        service = LiveCoachService(session_id, module_id, token, modules=..., catalog=...,
                                   chat_service=..., synthesizer=..., session_store=...,
                                   on_message=send_json)
        await service.start()
        await service.handle_detections([...])      # or handle_frame(b64)
        await service.handle_transcript("hey adapt what's next", is_final=True)
        await service.advance_step()
        await service.stop()

    Outbound messages (`on_message`) are plain dicts with a "type" key:
    status, ai_text, event, step, score, branch, error, session_stopped.
    """

    def __init__(
        self,
        session_id: str,
        module_id: str,
        session_token: str,
        modules: ModuleRepository,
        catalog: NeedCatalog,
        chat_service: ChatService,
        synthesizer: SpeechSynthesizer,
        session_store: SessionStore,
        feedback_store: Optional[FeedbackStore] = None,
        detector: Optional[VisionDetector] = None,
        on_message: Optional[MessageCallback] = None,
        coach: CoachConfig = coach_cfg,
        pipeline: PipelineConfig = pipeline_cfg,
        pipeline_sleep: Optional[Callable[[float], Any]] = None,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.session_id = session_id
        self.module_id = module_id
        self.session_token = session_token
        self.telemetry = SessionTelemetry(session_id=session_id, module_id=module_id)

        self._modules = modules
        self._checker = NeedChecker(catalog)
        self._chat_service = chat_service
        self._synth = synthesizer
        self._feedback = feedback_store
        self._on_message = on_message
        self._cfg = coach
        self._pcfg = pipeline
        self._pipeline_sleep = pipeline_sleep or asyncio.sleep
        self._rng = rng

        self._persistence = SessionPersistence(session_store, module_id, session_token, session_id)
        self._feed = DetectionFeed(coach.detection_stale_timeout)
        self._parser = VoiceCommandParser(coach.wake_phrase, coach.advance_phrases)
        self._analyzer: Optional[FrameAnalyzer] = (
            FrameAnalyzer(detector, session_id) if detector is not None else None
        )
        self._policy = CoachPolicy(coach.detection_stale_timeout)
        self._latency = LatencyTracer(session_id)

        self._sm: Optional[CoachStateMachine] = None
        self._pipeline: Optional[InteractionPipeline] = None
        self._guard = asyncio.Lock()

        # Background work
        self._timer: Optional[asyncio.TimerHandle] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._speak_task: Optional[asyncio.Task] = None
        self._wind_down_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._status_outbox: List[Dict[str, Any]] = []

        self._started_at: Optional[float] = None
        self._stopped = False
        self._last_log_id: Optional[str] = None

    # ── Read-only views ─────────────────────────────────────────────────

    @property
    def session(self) -> Optional[CoachSession]:
        return self._sm.session if self._sm else None

    @property
    def status(self) -> CoachStatus:
        return self._sm.status if self._sm else CoachStatus.INITIALIZING

    @property
    def is_active(self) -> bool:
        return self._sm is not None and not self._stopped and self.status != CoachStatus.IDLE

    @property
    def history(self) -> List[Dict]:
        return self._sm.history if self._sm else []

    @property
    def persistence(self) -> SessionPersistence:
        return self._persistence

    def snapshot(self) -> Dict[str, Any]:
        session = self.session
        return {
            "session_id": self.session_id,
            "module_id": self.module_id,
            "session_token": self.session_token,
            "session": session.to_dict(self._cfg.initial_score) if session else None,
            "telemetry": self.telemetry.to_dict(),
            "policy": self._policy.diagnostics(),
            "latency": self._latency.summary(),
            "history": self.history[-20:],
        }

    # ── Start ───────────────────────────────────────────────────────────

    async def start(self, vision_available: bool = True) -> Dict[str, Any]:
        """
        Load + hydrate, bring up vision and chat, then report readiness to
        the state machine. `vision_available` is the client's word on
        push-mode detections when no server-side detector is configured.
        Raises ModuleUnavailableError if the module does not exist.
        """
        self._started_at = time.time()
        self._latency.mark("start_requested")

        module = await self._modules.get_module(self.module_id)
        record = await self._persistence.load()
        session = CoachSession.create(self.session_id, module, self._cfg.initial_score, record)
        self._sm = CoachStateMachine(
            session, self._checker, self._cfg, on_transition=self._on_state_transition,
        )
        if record is not None:
            logger.info(
                f"[{self.session_id}] Resumed at step {session.current_step_index + 1}"
                f"/{module.step_count}, score {session.score}"
            )

        vision_ok, vision_error = await self._init_vision(vision_available)
        chat_ok, chat_error = await self._init_chat(module)

        self._policy.report_vision_state(vision_ok)
        self._policy.report_chat_state(chat_ok)
        self.telemetry.vision_active = vision_ok
        self.telemetry.chat_active = chat_ok
        self.telemetry.coach_mode = self._policy.determine_mode().value

        await self.dispatch(SessionReady(
            vision_ok=vision_ok, chat_ok=chat_ok, error=chat_error or vision_error,
        ))

        if self.status == CoachStatus.LISTENING:
            self._latency.mark("ready")
            if vision_ok:
                self._poll_task = asyncio.create_task(
                    self._poll_worker(), name=f"poll-{self.session_id}",
                )

        logger.info(
            f"[{self.session_id}] Coach started: status={self.status.value}, "
            f"mode={self.telemetry.coach_mode}, module={module.slug}"
        )
        return self.snapshot()

    async def _init_vision(self, vision_available: bool):
        if self._analyzer is None:
            if vision_available:
                return True, ""
            return False, "Vision unavailable, proactive coaching disabled"
        try:
            await self._analyzer.initialize()
            return True, ""
        except Exception as e:
            logger.warning(f"[{self.session_id}] Vision init failed, continuing without it: {e}")
            return False, f"Vision unavailable: {e}"

    async def _init_chat(self, module: TrainingModule):
        try:
            handle = await asyncio.wait_for(
                self._chat_service.start_chat(module.context()), timeout=self._pcfg.attempt_timeout,
            )
        except Exception as e:
            logger.error(f"[{self.session_id}] Tutor chat failed to start: {e}")
            return False, f"AI tutor unavailable: {e}"
        self._pipeline = InteractionPipeline(
            handle,
            self._feedback,
            session_token=self.session_token,
            cfg=self._pcfg,
            sleep=self._pipeline_sleep,
            rng=self._rng,
            session_id=self.session_id,
        )
        return True, ""

    # ── Inputs ──────────────────────────────────────────────────────────

    async def handle_detections(self, objects: List[DetectedObject]) -> None:
        """Push-mode snapshot from the client-side detector."""
        self._feed.push(objects)
        self.telemetry.snapshots_received = self._feed.snapshots_received
        self._policy.report_snapshot(bool(objects))
        if objects:
            self._latency.mark("first_detection")

    async def handle_frame(self, base64_jpeg: str) -> Optional[List[DetectedObject]]:
        """Frame-mode: detect server-side, then treat like a pushed snapshot."""
        if self._analyzer is None or not self.telemetry.vision_active:
            return None
        objects = await self._analyzer.analyze(base64_jpeg)
        if objects is None:
            return None
        self.telemetry.frames_detected = self._analyzer.frames_detected
        await self.handle_detections(objects)
        return objects

    async def handle_transcript(self, text: str, is_final: bool = True) -> None:
        self.telemetry.transcripts_received += 1
        command = self._parser.parse(text, is_final)
        if command is None:
            return
        self._latency.mark("first_transcript")
        if command.kind == CommandKind.ADVANCE:
            await self.dispatch(StepAdvance(source="voice"))
        else:
            await self.dispatch(VoiceQuery(command.text))

    async def advance_step(self, source: str = "click") -> None:
        await self.dispatch(StepAdvance(source=source))

    def speech_done(self, speech_id: Optional[str] = None) -> None:
        """Client finished playing an utterance."""
        ack = getattr(self._synth, "acknowledge", None)
        if ack is not None:
            ack(speech_id)

    # ── The one transition path ─────────────────────────────────────────

    async def dispatch(self, event: CoachInput) -> None:
        async with self._guard:
            if self._sm is None:
                return
            try:
                effects = self._sm.apply(event)
            except IllegalTransitionError as e:
                logger.error(f"[{self.session_id}] {e}")
                return
            self.telemetry.coach_status = self._sm.status.value
            while self._status_outbox:
                await self._emit(self._status_outbox.pop(0))
            for effect in effects:
                try:
                    await self._execute(effect)
                except Exception as e:
                    logger.error(
                        f"[{self.session_id}] Effect {type(effect).__name__} failed: {e}",
                        exc_info=True,
                    )

    async def _execute(self, effect: Effect) -> None:
        if isinstance(effect, DisarmTimers):
            self._disarm_timer()
        elif isinstance(effect, ArmTimer):
            self._arm_timer(effect.kind, effect.delay, effect.token)
        elif isinstance(effect, CancelSpeech):
            await self._cancel_speech()
        elif isinstance(effect, Speak):
            self._start_speaking(effect)
        elif isinstance(effect, RunInterjection):
            self.telemetry.interjections_started += 1
            self._spawn(self._run_interjection(effect), f"ai-{effect.kind.value}")
        elif isinstance(effect, LoadBranch):
            self._spawn(self._load_branch(effect.module_id, effect.generation), "branch")
        elif isinstance(effect, Persist):
            self._persistence.save(**effect.fields)
        elif isinstance(effect, Notify):
            payload = dict(effect.payload)
            if effect.kind == "ai_text" and payload.get("final"):
                payload["log_id"] = self._last_log_id
            await self._emit({"type": effect.kind, **payload})
        elif isinstance(effect, EndSession):
            if self._wind_down_task is None:
                self._wind_down_task = asyncio.create_task(
                    self._wind_down(effect.completed), name=f"end-{self.session_id}",
                )

    # ── Timers ──────────────────────────────────────────────────────────

    def _arm_timer(self, kind: TimerKind, delay: float, token: int) -> None:
        self._disarm_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._timer_fired, kind, token)
        logger.debug(f"[{self.session_id}] {kind.value} timer armed ({delay}s)")

    def _disarm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _timer_fired(self, kind: TimerKind, token: int) -> None:
        self._timer = None
        if not self._stopped:
            self._spawn(self.dispatch(TimerFired(kind, token)), f"timer-{kind.value}")

    # ── Speech ──────────────────────────────────────────────────────────

    def _start_speaking(self, effect: Speak) -> None:
        if self._speak_task is not None and not self._speak_task.done():
            self._speak_task.cancel()
        self._speak_task = asyncio.create_task(
            self._speak(effect.text, effect.voice, effect.generation),
            name=f"speak-{self.session_id}",
        )

    async def _speak(self, text: str, voice: str, generation: int) -> None:
        try:
            await self._synth.speak(text, voice)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.warning(f"[{self.session_id}] Speech synthesis failed: {e}")
        await self.dispatch(SpeechFinished(generation))

    async def _cancel_speech(self) -> None:
        if self._speak_task is not None and not self._speak_task.done():
            self._speak_task.cancel()
        self._speak_task = None
        try:
            await self._synth.cancel()
        except Exception as e:
            logger.debug(f"[{self.session_id}] Speech cancel: {e}")

    # ── Pipeline ────────────────────────────────────────────────────────

    async def _run_interjection(self, request: RunInterjection) -> None:
        if self._pipeline is None:
            await self.dispatch(InterjectionFailed(request.generation, self._pcfg.fallback_message))
            return

        async def on_partial(text: str) -> None:
            session = self.session
            if session and session.interjection and session.interjection.generation == request.generation:
                await self._emit({"type": "ai_text", "text": text, "final": False})

        try:
            result = await self._pipeline.run(request, on_partial=on_partial)
        except CoachError as e:
            self.telemetry.pipeline_failures += 1
            logger.warning(f"[{self.session_id}] {request.kind.value} failed: {e}")
            await self.dispatch(InterjectionFailed(request.generation, self._pcfg.fallback_message))
            return
        except Exception as e:
            self.telemetry.pipeline_failures += 1
            logger.error(f"[{self.session_id}] {request.kind.value} crashed: {e}", exc_info=True)
            await self.dispatch(InterjectionFailed(request.generation, self._pcfg.fallback_message))
            return

        self.telemetry.last_pipeline_latency_ms = result.latency_ms
        self._latency.mark("first_response")
        session = self.session
        if not (session and session.interjection and session.interjection.generation == request.generation):
            self.telemetry.interjections_discarded += 1
        self._last_log_id = result.log_id
        await self.dispatch(InterjectionCompleted(request.generation, result.text))

    # ── Branching ───────────────────────────────────────────────────────

    async def _load_branch(self, module_id: str, generation: int) -> None:
        try:
            module = await self._modules.get_module(module_id)
        except ModuleUnavailableError as e:
            logger.warning(f"[{self.session_id}] {e}")
            await self.dispatch(BranchLoadFailed(generation, str(e)))
            return
        except Exception as e:
            logger.error(f"[{self.session_id}] Branch load failed: {e}")
            await self.dispatch(BranchLoadFailed(generation, f"Could not load '{module_id}': {e}"))
            return
        await self.dispatch(BranchLoaded(generation, module))

    # ── Background workers ──────────────────────────────────────────────

    async def _poll_worker(self) -> None:
        """Feed the latest snapshot to the state machine at a fixed cadence."""
        while not self._stopped:
            try:
                objects = self._feed.latest()
                self.telemetry.snapshots_evaluated += 1
                await self.dispatch(DetectionSnapshot(tuple(objects)))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[{self.session_id}] Poll worker error: {e}")
            if self.status == CoachStatus.IDLE:
                return
            await asyncio.sleep(self._cfg.vision_poll_interval)

    def _spawn(self, coro: Any, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{name}-{self.session_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ── Outbound ────────────────────────────────────────────────────────

    def _on_state_transition(self, prev: CoachStatus, new: CoachStatus, reason: str) -> None:
        # Sent by dispatch() ahead of the transition's effects
        self.telemetry.coach_status = new.value
        self._status_outbox.append({
            "type": "status",
            "status": new.value,
            "previous": prev.value,
            "reason": reason,
            "mode": self._policy.determine_mode().value,
        })

    async def _emit(self, message: Dict[str, Any]) -> None:
        if self._on_message is None:
            return
        try:
            cb = self._on_message(message)
            if asyncio.iscoroutine(cb):
                await cb
        except Exception as e:
            logger.debug(f"[{self.session_id}] Outbound message dropped: {e}")

    # ── Stop ────────────────────────────────────────────────────────────

    async def _wind_down(self, completed: bool) -> None:
        """Let the closing line finish, then tear the session down."""
        if self._speak_task is not None and not self._speak_task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._speak_task), timeout=15.0)
            except (asyncio.TimeoutError, Exception) as e:
                logger.debug(f"[{self.session_id}] Closing speech did not finish cleanly: {e!r}")
        summary = await self.stop()
        await self._emit({"type": "session_stopped", "completed": completed, "summary": summary})

    async def stop(self) -> Dict[str, Any]:
        """Cancel timers and workers, flush pending saves."""
        if self._stopped:
            return self._summary()
        await self.dispatch(Teardown())
        self._stopped = True
        self._disarm_timer()

        tasks = [self._poll_task, self._speak_task, *list(self._tasks)]
        for task in tasks:
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass
        self._poll_task = None
        self._speak_task = None

        await self._persistence.flush()
        if self._analyzer is not None:
            self._analyzer.close()

        summary = self._summary()
        logger.info(f"[{self.session_id}] Coach stopped: {summary}")
        return summary

    def _summary(self) -> Dict[str, Any]:
        self.telemetry.saves_failed = self._persistence.failures
        session = self.session
        duration = time.time() - (self._started_at or time.time())
        return {
            "duration_seconds": round(duration, 1),
            "score": session.score if session else None,
            "step_index": session.current_step_index if session else None,
            "is_completed": session.is_completed if session else False,
            **self.telemetry.to_dict(),
            "latency": self._latency.summary(),
        }
