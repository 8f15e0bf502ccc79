"""
LiveCoach — Health Checks & Mode (Policy Layer)

The orchestrator reports raw signals here; this module decides what
operating mode the session is in. The coach status itself belongs to the
state machine, mode is orthogonal to it.
"""

from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Dict, Optional

from .config import coach_cfg

logger = logging.getLogger("livecoach.health")


class CoachMode(str, Enum):
    """Explicit operating mode — never inferred silently."""
    FULL = "full"                # Vision + chat: proactive and reactive coaching
    VOICE_ONLY = "voice_only"    # Chat only: vision failed, no proactive checks
    UNAVAILABLE = "unavailable"  # Chat failed


class HealthStatus:
    """Snapshot of system health at a point in time."""

    __slots__ = ("vision", "chat", "detections", "checked_at")

    def __init__(self, vision: bool = False, chat: bool = False, detections: bool = False) -> None:
        self.vision = vision
        self.chat = chat
        self.detections = detections
        self.checked_at = time.time()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vision": self.vision,
            "chat": self.chat,
            "detections": self.detections,
            "checked_at": self.checked_at,
        }


class CoachPolicy:
    """
    Answers:
      • What mode are we in?
      • Are detections still fresh enough to act on?
    """

    def __init__(self, stale_timeout: float = coach_cfg.detection_stale_timeout) -> None:
        self._stale_timeout = stale_timeout
        self._vision_ready = False
        self._chat_ready = False
        self._snapshots = 0
        self._last_snapshot_time = 0.0
        self._last_health: Optional[HealthStatus] = None

    # ── Signal setters ──────────────────────────────────────────────────

    def report_vision_state(self, ready: bool) -> None:
        self._vision_ready = ready

    def report_chat_state(self, ready: bool) -> None:
        self._chat_ready = ready

    def report_snapshot(self, non_empty: bool, timestamp: Optional[float] = None) -> None:
        self._snapshots += 1
        if non_empty:
            self._last_snapshot_time = timestamp or time.time()

    # ── Checks ──────────────────────────────────────────────────────────

    def detections_fresh(self, now: Optional[float] = None) -> bool:
        if self._last_snapshot_time <= 0:
            return False
        return ((now or time.time()) - self._last_snapshot_time) < self._stale_timeout

    def check_health(self) -> HealthStatus:
        health = HealthStatus(
            vision=self._vision_ready,
            chat=self._chat_ready,
            detections=self.detections_fresh(),
        )
        self._last_health = health
        return health

    def determine_mode(self) -> CoachMode:
        if not self._chat_ready:
            return CoachMode.UNAVAILABLE
        if not self._vision_ready:
            return CoachMode.VOICE_ONLY
        return CoachMode.FULL

    @property
    def last_health(self) -> Optional[HealthStatus]:
        return self._last_health

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "health": self.check_health().to_dict(),
            "mode": self.determine_mode().value,
            "snapshots": self._snapshots,
            "last_detection_age_s": (
                round(time.time() - self._last_snapshot_time, 2)
                if self._last_snapshot_time > 0 else None
            ),
        }
