"""
LiveCoach — Session + Feedback stores

Two backends each:
  • Memory — process-local dicts, the default and what tests use
  • Mongo  — motor (async MongoDB driver)

Both feedback stores rank recalled fixes the same way: cosine similarity
between the query embedding and each stored fix embedding (numpy), keep
those above the threshold, best first, capped at the match count.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo.errors import PyMongoError

from ..core.config import (
    PersistenceConfig,
    PipelineConfig,
    SDKConfig,
    persistence_cfg,
    pipeline_cfg,
    sdk_cfg,
)
from ..core.errors import PersistenceError
from ..core.interfaces import Embedder
from ..core.models import (
    CoachEventType,
    FeedbackLog,
    LiveCoachEvent,
    RankedFix,
    SessionRecord,
    SessionSummary,
)

logger = logging.getLogger("livecoach.stores")


def _serialise_fields(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unset fields and turn event objects into plain dicts."""
    out: Dict[str, Any] = {}
    for key, value in fields.items():
        if value is None:
            continue
        if key == "live_coach_events":
            value = [e.to_dict() if isinstance(e, LiveCoachEvent) else dict(e) for e in value]
        out[key] = value
    return out


# ---------------------------------------------------------------------------
# Session summary
# ---------------------------------------------------------------------------

def summarize_session(record: SessionRecord) -> SessionSummary:
    """
    started_at / ended_at are the first and last event timestamps.
    Each gap between consecutive step_advance events of the main module is
    attributed to the earlier event's step.
    """
    events = sorted(record.live_coach_events, key=lambda e: e.timestamp)
    advances = [
        e for e in events
        if e.event_type == CoachEventType.STEP_ADVANCE
        and (not e.module_id or e.module_id == record.module_id)
    ]
    durations: Dict[int, float] = {}
    for cur, nxt in zip(advances, advances[1:]):
        durations[cur.step_index] = durations.get(cur.step_index, 0.0) + (nxt.timestamp - cur.timestamp)

    return SessionSummary(
        record=record,
        started_at=events[0].timestamp if events else 0.0,
        ended_at=events[-1].timestamp if events else 0.0,
        durations_per_step=durations,
    )


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------

def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0
    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0:
        return 0.0
    return float(np.dot(va, vb) / denom)


def rank_fixes(
    query: Sequence[float],
    candidates: Sequence[Tuple[str, str, Sequence[float]]],
    threshold: float,
    count: int,
) -> List[RankedFix]:
    """candidates: (id, fix text, embedding)."""
    scored = [
        RankedFix(id=cid, user_fix_text=text, similarity=cosine_similarity(query, emb))
        for cid, text, emb in candidates
    ]
    scored = [r for r in scored if r.similarity > threshold]
    scored.sort(key=lambda r: r.similarity, reverse=True)
    return scored[:count]


# ═══════════════════════════════════════════════════════════════════════════
# Session stores
# ═══════════════════════════════════════════════════════════════════════════

class MemorySessionStore:
    def __init__(self) -> None:
        self._rows: Dict[Tuple[str, str], SessionRecord] = {}
        self.writes = 0

    async def get(self, module_id: str, session_token: str) -> Optional[SessionRecord]:
        return self._rows.get((module_id, session_token))

    async def put(self, module_id: str, session_token: str, fields: Dict[str, Any]) -> None:
        record = self._rows.get((module_id, session_token)) or SessionRecord(
            module_id=module_id, session_token=session_token,
        )
        for key, value in fields.items():
            if value is None:
                continue
            if key == "live_coach_events":
                value = [e if isinstance(e, LiveCoachEvent) else LiveCoachEvent.from_dict(e) for e in value]
            if hasattr(record, key):
                setattr(record, key, value)
        record.updated_at = time.time()
        self._rows[(module_id, session_token)] = record
        self.writes += 1

    async def summary(self, module_id: str, session_token: str) -> Optional[SessionSummary]:
        record = await self.get(module_id, session_token)
        return summarize_session(record) if record else None


class MongoSessionStore:
    """One document per (module_id, session_token)."""

    def __init__(
        self,
        client: Optional[AsyncIOMotorClient] = None,
        sdk: SDKConfig = sdk_cfg,
        cfg: PersistenceConfig = persistence_cfg,
    ) -> None:
        self._client = client or AsyncIOMotorClient(sdk.mongodb_uri)
        self._col = self._client[sdk.database_name][cfg.sessions_collection]

    async def get(self, module_id: str, session_token: str) -> Optional[SessionRecord]:
        try:
            doc = await self._col.find_one(
                {"module_id": module_id, "session_token": session_token}, {"_id": 0},
            )
        except PyMongoError as e:
            raise PersistenceError(f"Session read failed: {e}") from e
        return SessionRecord.from_dict(doc) if doc else None

    async def put(self, module_id: str, session_token: str, fields: Dict[str, Any]) -> None:
        update = _serialise_fields(fields)
        update["updated_at"] = time.time()
        try:
            await self._col.update_one(
                {"module_id": module_id, "session_token": session_token},
                {"$set": update},
                upsert=True,
            )
        except PyMongoError as e:
            raise PersistenceError(f"Session write failed: {e}") from e

    async def summary(self, module_id: str, session_token: str) -> Optional[SessionSummary]:
        record = await self.get(module_id, session_token)
        return summarize_session(record) if record else None


# ═══════════════════════════════════════════════════════════════════════════
# Feedback stores
# ═══════════════════════════════════════════════════════════════════════════

class _FeedbackBase:
    def __init__(self, embedder: Optional[Embedder], cfg: PipelineConfig) -> None:
        self._embedder = embedder
        self._cfg = cfg

    async def _embed(self, text: str) -> Optional[List[float]]:
        if self._embedder is None or not text.strip():
            return None
        return await self._embedder.embed(text)

    @staticmethod
    def _outcome_fields(outcome: str) -> Dict[str, Any]:
        outcome = outcome.strip()
        if outcome.lower() == "good":
            return {"feedback": "good", "user_fix_text": None}
        if outcome.lower() == "bad" or not outcome:
            return {"feedback": "bad", "user_fix_text": None}
        return {"feedback": "bad", "user_fix_text": outcome}


class MemoryFeedbackStore(_FeedbackBase):
    def __init__(self, embedder: Optional[Embedder] = None, cfg: PipelineConfig = pipeline_cfg) -> None:
        super().__init__(embedder, cfg)
        self._logs: Dict[str, FeedbackLog] = {}

    async def log_interaction(
        self, session_token: str, module_id: str, step_index: int, user_prompt: str, ai_response: str,
    ) -> str:
        log = FeedbackLog(
            id=uuid.uuid4().hex, session_token=session_token, module_id=module_id,
            step_index=step_index, user_prompt=user_prompt, ai_response=ai_response,
        )
        self._logs[log.id] = log
        return log.id

    async def update_feedback(self, log_id: str, outcome: str) -> None:
        log = self._logs.get(log_id)
        if log is None:
            raise PersistenceError(f"Feedback log '{log_id}' not found")
        fields = self._outcome_fields(outcome)
        log.feedback = fields["feedback"]
        log.user_fix_text = fields["user_fix_text"]
        if log.user_fix_text:
            try:
                log.fix_embedding = await self._embed(log.user_fix_text)
            except Exception as e:
                logger.warning(f"Fix embedding failed for {log_id}: {e}")

    async def past_feedback(self, module_id: str, step_index: int) -> List[FeedbackLog]:
        logs = [
            l for l in self._logs.values()
            if l.module_id == module_id and l.step_index == step_index and l.feedback is not None
        ]
        logs.sort(key=lambda l: l.created_at)
        return logs[-self._cfg.past_feedback_limit:]

    async def find_similar_fixes(self, module_id: str, step_index: int, query_text: str) -> List[RankedFix]:
        query = await self._embed(query_text)
        if query is None:
            return []
        candidates = [
            (l.id, l.user_fix_text, l.fix_embedding)
            for l in self._logs.values()
            if l.module_id == module_id and l.step_index == step_index
            and l.user_fix_text and l.fix_embedding
        ]
        return rank_fixes(query, candidates, self._cfg.similar_fix_threshold, self._cfg.similar_fix_count)

    def get(self, log_id: str) -> Optional[FeedbackLog]:
        return self._logs.get(log_id)


class MongoFeedbackStore(_FeedbackBase):
    def __init__(
        self,
        client: Optional[AsyncIOMotorClient] = None,
        embedder: Optional[Embedder] = None,
        sdk: SDKConfig = sdk_cfg,
        cfg: PipelineConfig = pipeline_cfg,
        persistence: PersistenceConfig = persistence_cfg,
    ) -> None:
        super().__init__(embedder, cfg)
        self._client = client or AsyncIOMotorClient(sdk.mongodb_uri)
        self._col = self._client[sdk.database_name][persistence.feedback_collection]

    async def log_interaction(
        self, session_token: str, module_id: str, step_index: int, user_prompt: str, ai_response: str,
    ) -> str:
        log = FeedbackLog(
            id=uuid.uuid4().hex, session_token=session_token, module_id=module_id,
            step_index=step_index, user_prompt=user_prompt, ai_response=ai_response,
        )
        doc = log.to_dict()
        doc["_id"] = doc.pop("id")
        try:
            await self._col.insert_one(doc)
        except PyMongoError as e:
            raise PersistenceError(f"Feedback log write failed: {e}") from e
        return log.id

    async def update_feedback(self, log_id: str, outcome: str) -> None:
        fields = self._outcome_fields(outcome)
        if fields["user_fix_text"]:
            try:
                fields["fix_embedding"] = await self._embed(fields["user_fix_text"])
            except Exception as e:
                logger.warning(f"Fix embedding failed for {log_id}: {e}")
        try:
            result = await self._col.update_one({"_id": log_id}, {"$set": fields})
        except PyMongoError as e:
            raise PersistenceError(f"Feedback update failed: {e}") from e
        if result.matched_count == 0:
            raise PersistenceError(f"Feedback log '{log_id}' not found")

    async def past_feedback(self, module_id: str, step_index: int) -> List[FeedbackLog]:
        try:
            cursor = (
                self._col.find({"module_id": module_id, "step_index": step_index,
                                "feedback": {"$ne": None}})
                .sort("created_at", -1)
                .limit(self._cfg.past_feedback_limit)
            )
            docs = await cursor.to_list(length=self._cfg.past_feedback_limit)
        except PyMongoError as e:
            raise PersistenceError(f"Feedback read failed: {e}") from e
        return [self._from_doc(d) for d in reversed(docs)]

    async def find_similar_fixes(self, module_id: str, step_index: int, query_text: str) -> List[RankedFix]:
        query = await self._embed(query_text)
        if query is None:
            return []
        try:
            docs = await self._col.find(
                {"module_id": module_id, "step_index": step_index,
                 "user_fix_text": {"$ne": None}, "fix_embedding": {"$ne": None}},
                {"user_fix_text": 1, "fix_embedding": 1},
            ).to_list(length=500)
        except PyMongoError as e:
            raise PersistenceError(f"Fix recall failed: {e}") from e
        candidates = [(str(d["_id"]), d["user_fix_text"], d["fix_embedding"]) for d in docs]
        return rank_fixes(query, candidates, self._cfg.similar_fix_threshold, self._cfg.similar_fix_count)

    @staticmethod
    def _from_doc(doc: Dict[str, Any]) -> FeedbackLog:
        return FeedbackLog(
            id=str(doc.get("_id", "")),
            session_token=doc.get("session_token", ""),
            module_id=doc.get("module_id", ""),
            step_index=int(doc.get("step_index", 0)),
            user_prompt=doc.get("user_prompt", ""),
            ai_response=doc.get("ai_response", ""),
            feedback=doc.get("feedback"),
            user_fix_text=doc.get("user_fix_text"),
            fix_embedding=doc.get("fix_embedding"),
            created_at=float(doc.get("created_at", 0.0)),
        )
