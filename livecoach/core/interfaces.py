"""
LiveCoach — Collaborator Interfaces

Protocol definitions for everything the orchestrator talks to but does
not own:
  1. Signals     — vision detector, speech recognizer output
  2. AI          — streaming chat service
  3. Output      — speech synthesizer
  4. Storage     — session store, feedback/similarity store, module repository

Adapters in `livecoach.services` implement these; tests swap in fakes.
"""

from __future__ import annotations

from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, runtime_checkable

from .models import DetectedObject, FeedbackLog, RankedFix, SessionRecord, TrainingModule


# ═══════════════════════════════════════════════════════════════════════════
# Signals
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class VisionDetector(Protocol):
    """Object detector. Runs off the event loop; `detect` may block."""

    def initialize(self) -> None:
        """Load weights. Raises on failure."""
        ...

    def detect(self, frame: Any) -> List[DetectedObject]:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# AI
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class ChatHandle(Protocol):
    """One tutoring conversation seeded with the module's steps."""

    def send(self, prompt: str) -> AsyncIterator[str]:
        """
        Stream response text chunks.
        Raises TransientServiceError / PermanentServiceError.
        """
        ...


@runtime_checkable
class ChatService(Protocol):
    async def start_chat(self, context: str) -> ChatHandle:
        ...


@runtime_checkable
class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Output
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class SpeechSynthesizer(Protocol):
    async def speak(self, text: str, voice_profile: str) -> None:
        """Return once the utterance has finished playing."""
        ...

    async def cancel(self) -> None:
        """Stop the current utterance immediately."""
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Storage
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class SessionStore(Protocol):
    async def get(self, module_id: str, session_token: str) -> Optional[SessionRecord]:
        ...

    async def put(self, module_id: str, session_token: str, fields: Dict[str, Any]) -> None:
        """Upsert: merge only the provided fields into the record."""
        ...


@runtime_checkable
class FeedbackStore(Protocol):
    async def find_similar_fixes(
        self, module_id: str, step_index: int, query_text: str,
    ) -> List[RankedFix]:
        ...

    async def past_feedback(self, module_id: str, step_index: int) -> List[FeedbackLog]:
        ...

    async def log_interaction(
        self,
        session_token: str,
        module_id: str,
        step_index: int,
        user_prompt: str,
        ai_response: str,
    ) -> str:
        """Returns the new log id."""
        ...

    async def update_feedback(self, log_id: str, outcome: str) -> None:
        """`outcome` is "good" or the trainee's free-text fix."""
        ...


@runtime_checkable
class ModuleRepository(Protocol):
    async def get_module(self, module_id: str) -> TrainingModule:
        """Raises ModuleUnavailableError when not found."""
        ...
