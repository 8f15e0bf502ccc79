"""
LiveCoach — Latency Tracer

Records wall-clock milestones for a session:
  start_requested → ready → first_detection → first_transcript → first_response
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger("livecoach.latency")

_MILESTONES = ("start_requested", "ready", "first_detection", "first_transcript", "first_response")


@dataclass
class LatencyTrace:
    session_id: str = ""

    start_requested: float = 0.0
    ready: float = 0.0
    first_detection: float = 0.0
    first_transcript: float = 0.0
    first_response: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"session_id": self.session_id}
        for name in _MILESTONES:
            ts = getattr(self, name)
            if ts > 0:
                d[name] = ts
        d["deltas"] = self.deltas()
        return d

    def deltas(self) -> Dict[str, Optional[float]]:
        """Milliseconds between milestones."""
        def _delta(a: float, b: float) -> Optional[float]:
            if a > 0 and b > 0:
                return round((b - a) * 1000, 1)
            return None

        return {
            "start_to_ready_ms": _delta(self.start_requested, self.ready),
            "ready_to_first_detection_ms": _delta(self.ready, self.first_detection),
            "ready_to_first_transcript_ms": _delta(self.ready, self.first_transcript),
            "ready_to_first_response_ms": _delta(self.ready, self.first_response),
        }


class LatencyTracer:
    """Each milestone is recorded once; later marks are ignored."""

    def __init__(self, session_id: str) -> None:
        self._trace = LatencyTrace(session_id=session_id)

    @property
    def trace(self) -> LatencyTrace:
        return self._trace

    def mark(self, milestone: str) -> None:
        if milestone not in _MILESTONES:
            raise ValueError(f"Unknown latency milestone: {milestone}")
        if getattr(self._trace, milestone) > 0:
            return
        setattr(self._trace, milestone, time.time())
        logger.info(f"[{self._trace.session_id}] LATENCY {milestone}")

    def summary(self) -> Dict[str, Any]:
        return self._trace.to_dict()
