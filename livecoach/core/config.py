"""
LiveCoach — Configuration

Centralised settings from environment variables.
All tuneable constants live here; other modules accept overrides through
their constructors so tests can shrink delays.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv
import certifi

os.environ.setdefault("SSL_CERT_FILE", certifi.where())
os.environ.setdefault("REQUESTS_CA_BUNDLE", certifi.where())

load_dotenv()

# ── Bridge env-var naming: the Gemini SDK reads GOOGLE_API_KEY ──────────
_gemini_key = os.getenv("GEMINI_API_KEY", "")
if _gemini_key and not os.getenv("GOOGLE_API_KEY"):
    os.environ["GOOGLE_API_KEY"] = _gemini_key


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8080"))
    cors_origins: tuple[str, ...] = (
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    )


# ---------------------------------------------------------------------------
# Service keys + model names
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SDKConfig:
    """API keys, store locations and model names."""
    gemini_api_key: str = os.getenv("GEMINI_API_KEY", "") or os.getenv("GOOGLE_API_KEY", "")
    elevenlabs_api_key: str = os.getenv("ELEVENLABS_API_KEY", "")
    mongodb_uri: str = os.getenv("MONGODB_URI", "")
    database_name: str = os.getenv("DATABASE_NAME", "livecoach")
    session_token_secret: str = os.getenv("SESSION_TOKEN_SECRET", "livecoach-dev-secret")

    chat_model: str = os.getenv("CHAT_MODEL", "gemini-2.5-flash")
    embedding_model: str = os.getenv("EMBEDDING_MODEL", "text-embedding-004")
    tts_model: str = "eleven_turbo_v2_5"
    # Optional Ultralytics weights for server-side frame detection
    yolo_model_path: str = os.getenv("YOLO_MODEL_PATH", "")

    @property
    def has_chat_key(self) -> bool:
        return bool(self.gemini_api_key)

    @property
    def has_tts_key(self) -> bool:
        return bool(self.elevenlabs_api_key)


# ---------------------------------------------------------------------------
# Coaching policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CoachConfig:
    initial_score: int = 100
    hint_penalty: int = 5
    correction_penalty: int = 5
    tutoring_penalty: int = 5
    branch_penalty: int = 15
    # Seconds of unmet requirements before a proactive hint
    hint_delay: float = float(os.getenv("HINT_DELAY", "7.0"))
    # Seconds all required items must stay visible before auto-advance
    completion_delay: float = float(os.getenv("COMPLETION_DELAY", "3.0"))
    # Vision poll cadence
    vision_poll_interval: float = 0.5
    # Pushed detections older than this are treated as "nothing seen"
    detection_stale_timeout: float = 2.0
    wake_phrase: str = "hey adapt"
    advance_phrases: tuple[str, ...] = ("done", "next", "next step", "i'm done", "im done")
    voice_profile: str = "coach"
    # Transition history kept per session
    max_history: int = 200


# ---------------------------------------------------------------------------
# AI interaction pipeline
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineConfig:
    # Retries after the first attempt (transient errors only)
    max_retries: int = 2
    base_backoff: float = 0.5
    max_backoff: float = 8.0
    # Fractional jitter added on top of the exponential delay
    jitter: float = 0.25
    # Hard timeout for one streamed attempt
    attempt_timeout: float = 30.0
    fallback_message: str = "Sorry, I couldn't process that. Please try again."
    past_feedback_limit: int = 5
    similar_fix_threshold: float = 0.78
    similar_fix_count: int = 3
    taglines: bool = True


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PersistenceConfig:
    # "memory" or "mongo"
    backend: str = os.getenv("SESSION_STORE", "memory")
    sessions_collection: str = "training_sessions"
    feedback_collection: str = "ai_feedback_logs"


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

server_cfg = ServerConfig()
sdk_cfg = SDKConfig()
coach_cfg = CoachConfig()
pipeline_cfg = PipelineConfig()
persistence_cfg = PersistenceConfig()
