"""
LiveCoach — Signal Adapters

Normalise the two inbound streams:
  • DetectionFeed       — holds only the latest detection snapshot; clears it
                          when nothing has been seen for the stale timeout.
  • VoiceCommandParser  — turns final transcripts into a query or an advance
                          command; interim transcripts are ignored.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional, Sequence, Tuple

from ..core.config import coach_cfg
from ..core.models import DetectedObject

logger = logging.getLogger("livecoach.signals")


# ---------------------------------------------------------------------------
# Detections
# ---------------------------------------------------------------------------

class DetectionFeed:
    """
    Latest-only snapshot holder.

    Empty snapshots do not overwrite a recent non-empty one: detectors blink.
    Once no non-empty snapshot has arrived for `stale_timeout` seconds the
    held snapshot is dropped and readers see "nothing detected".
    """

    def __init__(self, stale_timeout: float = coach_cfg.detection_stale_timeout):
        self._stale_timeout = stale_timeout
        self._objects: Tuple[DetectedObject, ...] = ()
        self._last_seen = 0.0
        self.snapshots_received = 0

    def push(self, objects: Iterable[DetectedObject], now: Optional[float] = None) -> None:
        objs = tuple(o for o in objects if o.label)
        self.snapshots_received += 1
        if objs:
            self._objects = objs
            self._last_seen = now if now is not None else time.time()

    def latest(self, now: Optional[float] = None) -> Tuple[DetectedObject, ...]:
        t = now if now is not None else time.time()
        if self._objects and (t - self._last_seen) > self._stale_timeout:
            self._objects = ()
        return self._objects

    @property
    def last_seen(self) -> float:
        return self._last_seen

    def clear(self) -> None:
        self._objects = ()
        self._last_seen = 0.0


# ---------------------------------------------------------------------------
# Voice
# ---------------------------------------------------------------------------

class CommandKind(str, Enum):
    QUERY = "query"
    ADVANCE = "advance"


@dataclass(frozen=True)
class VoiceCommand:
    kind: CommandKind
    text: str = ""


_PUNCT = re.compile(r"[^\w\s']+")


def _normalise(text: str) -> str:
    return " ".join(_PUNCT.sub(" ", text.lower()).split())


class VoiceCommandParser:
    """
    "hey adapt, how thin do I slice this?"  → QUERY("how thin do I slice this?")
    "done" / "next step"                    → ADVANCE
    "hey adapt next"                        → ADVANCE
    anything else                           → None
    """

    def __init__(
        self,
        wake_phrase: str = coach_cfg.wake_phrase,
        advance_phrases: Sequence[str] = coach_cfg.advance_phrases,
    ):
        self._wake = _normalise(wake_phrase)
        self._advance = {_normalise(p) for p in advance_phrases}

    def parse(self, transcript: str, is_final: bool = True) -> Optional[VoiceCommand]:
        if not is_final:
            return None
        norm = _normalise(transcript)
        if not norm:
            return None

        if norm in self._advance:
            return VoiceCommand(CommandKind.ADVANCE)

        if norm.startswith(self._wake):
            rest = norm[len(self._wake):].strip()
            if not rest:
                return None
            if rest in self._advance:
                return VoiceCommand(CommandKind.ADVANCE)
            return VoiceCommand(CommandKind.QUERY, self._strip_wake(transcript))
        return None

    def _strip_wake(self, transcript: str) -> str:
        """Cut the wake phrase off the original text, keeping its casing."""
        words = self._wake.split()
        pattern = r"^\W*" + r"\W+".join(re.escape(w) for w in words) + r"\W*"
        return re.sub(pattern, "", transcript.strip(), count=1, flags=re.IGNORECASE).strip()
