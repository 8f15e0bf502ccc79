"""
LiveCoach — Session Persistence Adapter

Debounced writer/reader of the durable SessionRecord.

`save(**fields)` never blocks the live session: fields are merged into a
pending dict and a single background writer drains it. Several saves that
arrive while a write is in flight collapse into one follow-up write. A
failed write is logged and its fields go back into the pending dict
(without overwriting anything newer) so the next save retries them.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from ..core.interfaces import SessionStore
from ..core.models import SessionRecord

logger = logging.getLogger("livecoach.persistence")


class SessionPersistence:

    def __init__(self, store: SessionStore, module_id: str, session_token: str, session_id: str = "") -> None:
        self._store = store
        self.module_id = module_id
        self.session_token = session_token
        self._sid = session_id or session_token
        self._pending: Dict[str, Any] = {}
        self._generation = 0
        self._writer: Optional[asyncio.Task] = None
        self.writes = 0
        self.failures = 0

    @property
    def pending(self) -> Dict[str, Any]:
        return dict(self._pending)

    async def load(self) -> Optional[SessionRecord]:
        try:
            return await self._store.get(self.module_id, self.session_token)
        except Exception as e:
            logger.warning(f"[{self._sid}] Session load failed, starting fresh: {e}")
            return None

    def save(self, **fields: Any) -> None:
        """Merge fields and make sure a writer is draining them."""
        fields = {k: v for k, v in fields.items() if v is not None}
        if not fields:
            return
        self._pending.update(fields)
        self._generation += 1
        if self._writer is None or self._writer.done():
            self._writer = asyncio.create_task(self._drain(), name=f"persist-{self._sid}")

    async def flush(self) -> None:
        """Wait for the writer, then make one last attempt at anything left."""
        if self._writer is not None and not self._writer.done():
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        if self._pending:
            await self._write_once()

    async def _drain(self) -> None:
        while self._pending:
            gen = self._generation
            ok = await self._write_once()
            if not ok and gen == self._generation:
                # Nothing new arrived; wait for the next transition to retry
                return

    async def _write_once(self) -> bool:
        batch, self._pending = self._pending, {}
        try:
            await self._store.put(self.module_id, self.session_token, batch)
            self.writes += 1
            logger.debug(f"[{self._sid}] Saved {sorted(batch)}")
            return True
        except Exception as e:
            self.failures += 1
            logger.warning(f"[{self._sid}] Session save failed, will retry {sorted(batch)}: {e}")
            for key, value in batch.items():
                self._pending.setdefault(key, value)
            return False
