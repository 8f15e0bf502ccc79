"""
LiveCoach — AI Interaction Pipeline

One interjection, start to finish:
  1. Recall  — similar fixes from other trainees + this step's past feedback
  2. Prompt  — situation, recall and the directive for the interjection kind
  3. Stream  — tokens accumulated and forwarded to a partial-text callback,
               with bounded retry on transient failures
  4. Log     — prompt/response stored as a feedback record

Recall and logging are best-effort: their failures are logged and ignored.
The stream is not: permanent errors and exhausted retries propagate, and
the orchestrator turns them into the spoken fallback message.

The pipeline holds no lock. Mutual exclusion belongs to the state machine.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Union

from ..core.config import PipelineConfig, pipeline_cfg
from ..core.errors import TransientServiceError
from ..core.interfaces import ChatHandle, FeedbackStore
from ..core.models import FeedbackLog, InterjectionKind, RankedFix
from ..core.state_machine import RunInterjection
from .prompts import TaglinePicker, build_prompt

logger = logging.getLogger("livecoach.pipeline")

PartialCallback = Callable[[str], Union[None, Awaitable[None]]]

_TAGGED_KINDS = frozenset({InterjectionKind.HINT, InterjectionKind.CORRECTION})


@dataclass
class InteractionResult:
    text: str
    prompt: str
    attempts: int
    latency_ms: float
    log_id: Optional[str] = None


class InteractionPipeline:
    """
    Usage:
        pipeline = InteractionPipeline(chat, feedback_store, session_token)
        result = await pipeline.run(request, on_partial=push_to_ui)
    """

    def __init__(
        self,
        chat: ChatHandle,
        feedback: Optional[FeedbackStore] = None,
        session_token: str = "",
        cfg: PipelineConfig = pipeline_cfg,
        taglines: Optional[TaglinePicker] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        session_id: str = "",
    ) -> None:
        self._chat = chat
        self._feedback = feedback
        self._session_token = session_token
        self._cfg = cfg
        self._taglines = taglines if taglines is not None else (TaglinePicker() if cfg.taglines else None)
        self._sleep = sleep
        self._rng = rng
        self._sid = session_id or session_token

    # ── Public ──────────────────────────────────────────────────────────

    async def run(
        self,
        request: RunInterjection,
        on_partial: Optional[PartialCallback] = None,
    ) -> InteractionResult:
        t0 = time.perf_counter()
        fixes, past = await self._recall(request)

        prompt = build_prompt(
            request.kind,
            request.step_title,
            required=request.required,
            past_feedback=past,
            similar_fixes=fixes,
            utterance=request.utterance,
            detected_labels=request.detected_labels,
            trigger_item=request.trigger_item,
            step_context=request.step_context,
        )

        text, attempts = await self._stream_with_retry(prompt, on_partial)
        text = text.strip()
        log_id = await self._log(request, prompt, text) if text else None

        if text and request.kind in _TAGGED_KINDS and self._taglines is not None:
            text = f"{text} {self._taglines.next()}".strip()

        latency_ms = round((time.perf_counter() - t0) * 1000, 1)
        logger.info(
            f"[{self._sid}] {request.kind.value} answered in {latency_ms}ms "
            f"({attempts} attempt{'s' if attempts != 1 else ''}, {len(text)} chars)"
        )
        return InteractionResult(text=text, prompt=prompt, attempts=attempts,
                                 latency_ms=latency_ms, log_id=log_id)

    def backoff_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number `attempt` (1-based)."""
        if retry_after is not None:
            return retry_after
        base = min(self._cfg.max_backoff, self._cfg.base_backoff * (2 ** (attempt - 1)))
        return base * (1 + self._cfg.jitter * self._rng())

    # ── Recall ──────────────────────────────────────────────────────────

    async def _recall(self, request: RunInterjection):
        fixes: List[RankedFix] = []
        past: List[FeedbackLog] = []
        if self._feedback is None:
            return fixes, past

        query_text = request.utterance or " ".join(
            filter(None, [request.step_title, request.trigger_item, *request.required])
        )
        try:
            fixes = await self._feedback.find_similar_fixes(
                request.module_slug, request.step_index, query_text,
            )
        except Exception as e:
            logger.warning(f"[{self._sid}] Similar-fix recall failed: {e}")
        try:
            past = await self._feedback.past_feedback(request.module_slug, request.step_index)
            past = past[-self._cfg.past_feedback_limit:]
        except Exception as e:
            logger.warning(f"[{self._sid}] Past-feedback recall failed: {e}")
        return fixes, past

    # ── Streaming ───────────────────────────────────────────────────────

    async def _stream_with_retry(self, prompt: str, on_partial: Optional[PartialCallback]):
        attempt = 0
        while True:
            attempt += 1
            try:
                text = await asyncio.wait_for(
                    self._collect(prompt, on_partial), timeout=self._cfg.attempt_timeout,
                )
                return text, attempt
            except asyncio.TimeoutError:
                err: TransientServiceError = TransientServiceError(
                    f"No complete response within {self._cfg.attempt_timeout}s"
                )
            except TransientServiceError as e:
                err = e

            if attempt > self._cfg.max_retries:
                logger.error(f"[{self._sid}] Giving up after {attempt} attempts: {err}")
                raise err

            delay = self.backoff_delay(attempt, err.retry_after)
            logger.warning(
                f"[{self._sid}] Transient AI error (attempt {attempt}): {err}, "
                f"retrying in {delay:.2f}s"
            )
            await self._sleep(delay)

    async def _collect(self, prompt: str, on_partial: Optional[PartialCallback]) -> str:
        text = ""
        async for chunk in self._chat.send(prompt):
            if not chunk:
                continue
            text += chunk
            if on_partial is not None:
                try:
                    cb = on_partial(text)
                    if asyncio.iscoroutine(cb):
                        await cb
                except Exception as e:
                    logger.debug(f"[{self._sid}] Partial callback error: {e}")
        return text

    # ── Logging ─────────────────────────────────────────────────────────

    async def _log(self, request: RunInterjection, prompt: str, text: str) -> Optional[str]:
        if self._feedback is None:
            return None
        try:
            return await self._feedback.log_interaction(
                self._session_token, request.module_slug, request.step_index, prompt, text,
            )
        except Exception as e:
            logger.warning(f"[{self._sid}] Feedback log write failed: {e}")
            return None
