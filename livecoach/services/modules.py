"""
LiveCoach — Module Repository

Training content is authored elsewhere; at runtime we only read it.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Union

from ..core.errors import ModuleUnavailableError
from ..core.models import ProcessStep, TrainingModule

logger = logging.getLogger("livecoach.modules")


class InMemoryModuleRepository:
    def __init__(self, modules: Iterable[TrainingModule] = ()) -> None:
        self._modules: Dict[str, TrainingModule] = {m.slug: m for m in modules}

    def add(self, module: TrainingModule) -> None:
        self._modules[module.slug] = module

    def slugs(self) -> List[str]:
        return sorted(self._modules)

    async def get_module(self, module_id: str) -> TrainingModule:
        module = self._modules.get(module_id)
        if module is None:
            raise ModuleUnavailableError(module_id)
        return module


def module_from_dict(data: Dict) -> TrainingModule:
    return TrainingModule(
        slug=data["slug"],
        title=data.get("title", data["slug"]),
        steps=tuple(
            ProcessStep(
                title=s["title"],
                description=s.get("description", ""),
                checkpoint=s.get("checkpoint"),
            )
            for s in data.get("steps", ())
        ),
    )


def load_modules(path: Union[str, Path]) -> List[TrainingModule]:
    """Read a JSON file holding one module object or a list of them."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    items = raw if isinstance(raw, list) else [raw]
    modules = [module_from_dict(m) for m in items]
    logger.info(f"Loaded {len(modules)} module(s) from {path}")
    return modules
