"""
LiveCoach — Service Registry

Maps session_id → LiveCoachService and holds the dependencies every
session shares (module repository, need catalog, tutor chat, stores).
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from ..core.interfaces import (
    ChatService,
    FeedbackStore,
    ModuleRepository,
    SessionStore,
    SpeechSynthesizer,
    VisionDetector,
)
from ..processing.needs import NeedCatalog
from .coach_service import LiveCoachService

logger = logging.getLogger("livecoach.registry")


class ServiceRegistry:
    """Maps session_id → LiveCoachService. Single event loop, no locking."""

    def __init__(
        self,
        modules: ModuleRepository,
        catalog: NeedCatalog,
        chat_service: ChatService,
        session_store: SessionStore,
        feedback_store: Optional[FeedbackStore] = None,
        detector_factory: Optional[Callable[[], Optional[VisionDetector]]] = None,
        **service_kwargs: Any,
    ) -> None:
        self.modules = modules
        self.catalog = catalog
        self.chat_service = chat_service
        self.session_store = session_store
        self.feedback_store = feedback_store
        self._detector_factory = detector_factory
        self._service_kwargs = service_kwargs
        self._services: Dict[str, LiveCoachService] = {}

    def create(
        self,
        session_id: str,
        module_id: str,
        session_token: str,
        synthesizer: SpeechSynthesizer,
        on_message: Optional[Callable] = None,
    ) -> LiveCoachService:
        if session_id in self._services:
            logger.warning(f"ServiceRegistry: {session_id} already registered, replacing")
        detector = self._detector_factory() if self._detector_factory else None
        service = LiveCoachService(
            session_id=session_id,
            module_id=module_id,
            session_token=session_token,
            modules=self.modules,
            catalog=self.catalog,
            chat_service=self.chat_service,
            synthesizer=synthesizer,
            session_store=self.session_store,
            feedback_store=self.feedback_store,
            detector=detector,
            on_message=on_message,
            **self._service_kwargs,
        )
        self._services[session_id] = service
        logger.info(f"ServiceRegistry: created {session_id} (total: {len(self._services)})")
        return service

    async def stop_service(self, session_id: str) -> Optional[Dict[str, Any]]:
        service = self._services.pop(session_id, None)
        if service:
            summary = await service.stop()
            logger.info(f"ServiceRegistry: removed {session_id} (total: {len(self._services)})")
            return summary
        return None

    async def stop_all(self) -> None:
        for sid in list(self._services.keys()):
            await self.stop_service(sid)

    def get(self, session_id: str) -> Optional[LiveCoachService]:
        return self._services.get(session_id)

    @property
    def active_count(self) -> int:
        return len(self._services)

    @property
    def all_services(self) -> Dict[str, LiveCoachService]:
        return dict(self._services)
