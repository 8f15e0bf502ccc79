"""
LiveCoach — Gemini adapters (google-genai)

  • GeminiChatService / GeminiChatHandle — streaming tutor chat
  • GeminiEmbedder                      — text embeddings for fix recall

Library errors are translated into the livecoach taxonomy here so nothing
above this module ever sees a google.genai exception.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from ..core.config import SDKConfig, sdk_cfg
from ..core.errors import (
    CoachError,
    PermanentServiceError,
    TransientServiceError,
    classify_status,
    parse_retry_after,
)
from ..processing.prompts import tutor_system_instruction

logger = logging.getLogger("livecoach.gemini")


def translate_error(exc: Exception) -> CoachError:
    """Map a google-genai / transport exception onto the error taxonomy."""
    if isinstance(exc, CoachError):
        return exc
    if isinstance(exc, genai_errors.APIError):
        headers = getattr(getattr(exc, "response", None), "headers", None) or {}
        retry_after = parse_retry_after(headers.get("retry-after")) if hasattr(headers, "get") else None
        return classify_status(exc.code, f"Gemini API error {exc.code}: {exc.message or exc}", retry_after)
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return TransientServiceError(f"Gemini transport error: {exc}")
    return PermanentServiceError(f"Gemini call failed: {exc}")


def _client(cfg: SDKConfig) -> genai.Client:
    if not cfg.gemini_api_key:
        raise PermanentServiceError("GEMINI_API_KEY is not configured")
    return genai.Client(api_key=cfg.gemini_api_key)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

class GeminiChatHandle:
    def __init__(self, chat: Any) -> None:
        self._chat = chat

    async def send(self, prompt: str) -> AsyncIterator[str]:
        try:
            stream = await self._chat.send_message_stream(prompt)
            async for chunk in stream:
                if chunk.text:
                    yield chunk.text
        except (genai_errors.APIError, httpx.HTTPError) as e:
            raise translate_error(e) from e


class GeminiChatService:
    """Opens one tutor chat per session, seeded with the module's steps."""

    def __init__(self, cfg: SDKConfig = sdk_cfg, client: Optional[genai.Client] = None) -> None:
        self._cfg = cfg
        self._client = client

    async def start_chat(self, context: str) -> GeminiChatHandle:
        if self._client is None:
            self._client = _client(self._cfg)
        chat = self._client.aio.chats.create(
            model=self._cfg.chat_model,
            config=types.GenerateContentConfig(
                system_instruction=tutor_system_instruction(context),
            ),
        )
        logger.info(f"Tutor chat opened ({self._cfg.chat_model})")
        return GeminiChatHandle(chat)


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

class GeminiEmbedder:
    def __init__(self, cfg: SDKConfig = sdk_cfg, client: Optional[genai.Client] = None) -> None:
        self._cfg = cfg
        self._client = client

    async def embed(self, text: str) -> List[float]:
        if self._client is None:
            self._client = _client(self._cfg)
        try:
            result = await self._client.aio.models.embed_content(
                model=self._cfg.embedding_model, contents=text,
            )
        except (genai_errors.APIError, httpx.HTTPError) as e:
            raise translate_error(e) from e
        if not result.embeddings:
            raise PermanentServiceError("Embedding response was empty")
        return list(result.embeddings[0].values or [])
