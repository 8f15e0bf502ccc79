"""Shared fixtures and fake collaborators."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from livecoach.core.config import CoachConfig, PipelineConfig
from livecoach.core.models import CoachSession, CoachStatus
from livecoach.data.demo import HANDWASHING_MODULE, SANDWICH_MODULE, demo_catalog
from livecoach.processing.needs import NeedChecker
from livecoach.services.modules import InMemoryModuleRepository
from livecoach.services.stores import MemoryFeedbackStore, MemorySessionStore


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeChat:
    """Scripted chat: `errors` are raised first (None = succeed), then replies stream in two chunks."""

    def __init__(self, replies=("Look for the knife.",), errors=(), delay: float = 0.0):
        self.prompts: List[str] = []
        self._replies = list(replies)
        self._errors = list(errors)
        self._delay = delay

    async def send(self, prompt: str):
        self.prompts.append(prompt)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._errors:
            err = self._errors.pop(0)
            if err is not None:
                raise err
        text = self._replies.pop(0) if len(self._replies) > 1 else self._replies[0]
        mid = len(text) // 2
        yield text[:mid]
        yield text[mid:]


class FakeChatService:
    def __init__(self, chat: Optional[FakeChat] = None, fail: Optional[Exception] = None):
        self.chat = chat or FakeChat()
        self.fail = fail
        self.contexts: List[str] = []

    async def start_chat(self, context: str) -> FakeChat:
        self.contexts.append(context)
        if self.fail is not None:
            raise self.fail
        return self.chat


class FakeSynth:
    """Records utterances. With hold=True each utterance lasts until release() or cancel()."""

    def __init__(self, hold: bool = False):
        self.spoken: List[tuple] = []
        self.cancels = 0
        self._hold = hold
        self._release: Optional[asyncio.Event] = None

    async def speak(self, text: str, voice_profile: str = "system") -> None:
        self.spoken.append((text, voice_profile))
        if self._hold:
            self._release = asyncio.Event()
            await self._release.wait()

    def release(self) -> None:
        if self._release is not None:
            self._release.set()

    async def cancel(self) -> None:
        self.cancels += 1
        self.release()

    @property
    def texts(self) -> List[str]:
        return [t for t, _ in self.spoken]


class FakeEmbedder:
    """Embeds by keyword so similarity is predictable."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default=(1.0, 0.0)):
        self.vectors = vectors or {}
        self.default = list(default)
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        for key, vec in self.vectors.items():
            if key in text.lower():
                return list(vec)
        return list(self.default)


class FlakyStore(MemorySessionStore):
    """Fails the first `failures` writes, optionally slow."""

    def __init__(self, failures: int = 0, delay: float = 0.0):
        super().__init__()
        self.failures = failures
        self.delay = delay
        self.batches: List[Dict[str, Any]] = []

    async def put(self, module_id: str, session_token: str, fields: Dict[str, Any]) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        self.batches.append(dict(fields))
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("store offline")
        await super().put(module_id, session_token, fields)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def catalog():
    return demo_catalog()


@pytest.fixture
def checker(catalog):
    return NeedChecker(catalog)


@pytest.fixture
def sandwich():
    return SANDWICH_MODULE


@pytest.fixture
def handwashing():
    return HANDWASHING_MODULE


@pytest.fixture
def modules():
    return InMemoryModuleRepository([SANDWICH_MODULE, HANDWASHING_MODULE])


@pytest.fixture
def fast_coach():
    return CoachConfig(
        hint_delay=0.05,
        completion_delay=0.05,
        vision_poll_interval=0.01,
        detection_stale_timeout=5.0,
    )


@pytest.fixture
def fast_pipeline():
    return PipelineConfig(base_backoff=0.0, attempt_timeout=1.0, taglines=False)


@pytest.fixture
def listening_session(sandwich):
    """A sandwich session that is ready with vision."""
    return CoachSession(
        session_id="test", active_module=sandwich, status=CoachStatus.LISTENING, vision_ready=True,
    )


@pytest.fixture
def fakes():
    class _Fakes:
        Chat = FakeChat
        ChatService = FakeChatService
        Synth = FakeSynth
        Embedder = FakeEmbedder
        FlakyStore = FlakyStore
    return _Fakes


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
def feedback_store():
    return MemoryFeedbackStore(embedder=FakeEmbedder())
