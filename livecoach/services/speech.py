"""
LiveCoach — Speech synthesis

Playback happens in the trainee's browser. The server side:
  • resolves the persona to a voice id (VOICE_MAP)
  • optionally renders high-quality audio with ElevenLabs (cached, 50 entries)
  • sends a `speak` message and waits for the client's `speech_done` ack

If ElevenLabs is not configured or fails, the message carries text only and
the client falls back to its native speech engine. If the client never
acks, the wait times out on an estimate of the utterance length.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import uuid
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..core.config import SDKConfig, sdk_cfg
from ..core.errors import classify_status

logger = logging.getLogger("livecoach.speech")

VOICE_MAP: Dict[str, str] = {
    "system": "21m00Tcm4TlvDq8ikWAM",
    "coach": "2EiwWnXFnvU5JabPnv8n",
    "stephen": "5Q022V3w7hLp35k5uA2u",
    "sunny": "jsCqWAovK2LkecY7zXl4",
    "janice": "piTKgcLEGmPE4e6mEKli",
    "default": "21m00Tcm4TlvDq8ikWAM",
}


def voice_id_for(profile: str = "default") -> str:
    return VOICE_MAP.get((profile or "default").lower(), VOICE_MAP["default"])


def estimate_duration(text: str, words_per_second: float = 2.5) -> float:
    """Rough seconds to speak `text`, plus slack for client latency."""
    return max(2.0, len(text.split()) / words_per_second + 2.0)


# ---------------------------------------------------------------------------
# ElevenLabs
# ---------------------------------------------------------------------------

class ElevenLabsAudio:
    """Text → MP3 bytes with a bounded insertion-ordered cache."""

    API_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"

    def __init__(
        self,
        cfg: SDKConfig = sdk_cfg,
        max_cache: int = 50,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._cfg = cfg
        self._max_cache = max_cache
        self._cache: "OrderedDict[str, bytes]" = OrderedDict()
        self._transport = transport

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    async def render(self, text: str, voice_id: str) -> bytes:
        key = f"{voice_id}-{text}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        async with httpx.AsyncClient(timeout=15.0, transport=self._transport) as client:
            resp = await client.post(
                self.API_URL.format(voice_id=voice_id),
                headers={"xi-api-key": self._cfg.elevenlabs_api_key, "Accept": "audio/mpeg"},
                json={"text": text, "model_id": self._cfg.tts_model},
            )
        if resp.status_code >= 400:
            raise classify_status(resp.status_code, f"ElevenLabs returned {resp.status_code}")
        ctype = resp.headers.get("content-type", "")
        if not ctype.startswith("audio/"):
            raise ValueError(f"ElevenLabs returned unexpected content type: {ctype or 'none'}")

        audio = resp.content
        if len(self._cache) >= self._max_cache:
            oldest, _ = self._cache.popitem(last=False)
            logger.debug(f"TTS cache full, evicted {oldest[:40]}")
        self._cache[key] = audio
        return audio


# ---------------------------------------------------------------------------
# Client-side playback
# ---------------------------------------------------------------------------

SendFn = Callable[[Dict[str, Any]], Awaitable[None]]


class ClientSpeechSynthesizer:
    """
    Implements SpeechSynthesizer over a WebSocket send function.

    Only one utterance is live at a time: a new `speak` or `cancel`
    releases whoever was waiting on the previous one.
    """

    def __init__(
        self,
        send: SendFn,
        audio: Optional[ElevenLabsAudio] = None,
        session_id: str = "",
        duration_estimator: Callable[[str], float] = estimate_duration,
    ) -> None:
        self._send = send
        self._audio = audio
        self._sid = session_id
        self._estimate = duration_estimator
        self._current_id: Optional[str] = None
        self._done: Optional[asyncio.Future] = None

    async def speak(self, text: str, voice_profile: str = "system") -> None:
        self._release()
        speech_id = uuid.uuid4().hex[:12]
        loop = asyncio.get_running_loop()
        self._current_id = speech_id
        self._done = done = loop.create_future()

        voice_id = voice_id_for(voice_profile)
        msg: Dict[str, Any] = {
            "type": "speak",
            "speech_id": speech_id,
            "text": text,
            "voice": voice_profile,
            "voice_id": voice_id,
            "audio": None,
        }
        if self._audio is not None:
            try:
                audio = await self._audio.render(text, voice_id)
                msg["audio"] = base64.b64encode(audio).decode("ascii")
            except Exception as e:
                logger.warning(f"[{self._sid}] High-quality TTS failed, client will use native speech: {e}")
            if done.done():
                return  # cancelled while rendering

        await self._send(msg)
        try:
            await asyncio.wait_for(asyncio.shield(done), timeout=self._estimate(text))
        except asyncio.TimeoutError:
            logger.debug(f"[{self._sid}] No speech_done for {speech_id}, assuming finished")
        finally:
            if self._current_id == speech_id:
                self._current_id = None
                self._done = None

    def acknowledge(self, speech_id: Optional[str] = None) -> None:
        """Client reported playback finished."""
        if speech_id is None or speech_id == self._current_id:
            self._release()

    async def cancel(self) -> None:
        had_speech = self._current_id is not None
        self._release()
        if had_speech:
            await self._send({"type": "speech_cancel"})

    def _release(self) -> None:
        if self._done is not None and not self._done.done():
            self._done.set_result(None)
        self._current_id = None
        self._done = None
