"""
LiveCoach — Need Catalog + Proactive Need Checker

The catalog is static: per (module, step) required/forbidden items and
branch rules, plus the synonym table detector labels are matched against.
It is loaded once and shared read-only by every session.

The checker is a pure evaluator. It compares the latest detection snapshot
with the active step's needs and tells the state machine what to do with
the hint/completion timers. It never touches timers itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..core.models import BranchRule, StepNeeds, TimerKind

logger = logging.getLogger("livecoach.needs")


# ---------------------------------------------------------------------------
# Label matching
# ---------------------------------------------------------------------------

class ItemMatcher:
    """Case-insensitive substring + synonym matching of item names to labels."""

    def __init__(self, synonyms: Optional[Mapping[str, Sequence[str]]] = None):
        self._synonyms: Dict[str, Tuple[str, ...]] = {
            k.lower(): tuple(s.lower() for s in v) for k, v in (synonyms or {}).items()
        }

    def aliases(self, item: str) -> Tuple[str, ...]:
        key = item.lower().strip()
        return (key,) + self._synonyms.get(key, ())

    def matches(self, item: str, label: str) -> bool:
        label = label.lower().strip()
        if not label:
            return False
        for alias in self.aliases(item):
            if alias in label:
                return True
        return False

    def present(self, item: str, labels: Iterable[str]) -> bool:
        return any(self.matches(item, lbl) for lbl in labels)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

class NeedCatalog:
    """Static (module_slug, step_index) → StepNeeds lookup."""

    def __init__(
        self,
        needs: Optional[Mapping[Tuple[str, int], StepNeeds]] = None,
        synonyms: Optional[Mapping[str, Sequence[str]]] = None,
    ):
        self._needs: Dict[Tuple[str, int], StepNeeds] = dict(needs or {})
        self.matcher = ItemMatcher(synonyms)

    def get(self, module_slug: str, step_index: int) -> StepNeeds:
        return self._needs.get((module_slug, step_index), StepNeeds())

    def __contains__(self, key: Tuple[str, int]) -> bool:
        return key in self._needs

    def __len__(self) -> int:
        return len(self._needs)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "NeedCatalog":
        """
        Build from the JSON-ish layout used for bundled content:

            {"modules": {"slug": {"0": {"required": [...], "forbidden": [...],
                                        "branch_on": [{"item": ..., "module": ...}]}}},
             "synonyms": {"knife": ["blade"]}}
        """
        needs: Dict[Tuple[str, int], StepNeeds] = {}
        modules = data.get("modules") or {}
        for slug, steps in modules.items():  # type: ignore[union-attr]
            for idx, entry in steps.items():
                needs[(slug, int(idx))] = StepNeeds(
                    required=tuple(entry.get("required", ())),
                    forbidden=tuple(entry.get("forbidden", ())),
                    branch_on=tuple(
                        BranchRule(item=r["item"], module_id=r.get("module") or r["module_id"])
                        for r in entry.get("branch_on", ())
                    ),
                )
        return cls(needs, data.get("synonyms") or {})  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Checker
# ---------------------------------------------------------------------------

class NeedAction(str, Enum):
    BRANCH = "branch"                  # forbidden item with a branch rule
    CORRECT = "correct"                # forbidden item, no (usable) rule
    ARM_HINT = "arm_hint"              # required items missing, no hint timer yet
    ARM_COMPLETION = "arm_completion"  # all required present, no completion timer yet
    DISARM = "disarm"                  # nothing to watch, a timer is armed
    KEEP = "keep"                      # leave timers as they are


@dataclass(frozen=True)
class NeedDecision:
    action: NeedAction
    item: Optional[str] = None
    rule: Optional[BranchRule] = None
    missing: Tuple[str, ...] = field(default_factory=tuple)
    present: Tuple[str, ...] = field(default_factory=tuple)


class NeedChecker:
    """
    Evaluates one snapshot against the active step.

    `armed` is the kind of timer currently pending for this step, if any.
    Arming one timer always implies disarming the other; the caller does
    the disarm before the arm.
    """

    def __init__(self, catalog: NeedCatalog):
        self.catalog = catalog

    def evaluate(
        self,
        module_slug: str,
        step_index: int,
        labels: Sequence[str],
        armed: Optional[TimerKind] = None,
        branched: bool = False,
    ) -> NeedDecision:
        needs = self.catalog.get(module_slug, step_index)
        matcher = self.catalog.matcher

        # 1. Forbidden items win over everything else
        for item in needs.forbidden:
            if matcher.present(item, labels):
                rule = needs.branch_for(item)
                if rule is not None and not branched:
                    return NeedDecision(NeedAction.BRANCH, item=item, rule=rule)
                return NeedDecision(NeedAction.CORRECT, item=item)

        # 2. Nothing required, nothing forbidden
        if not needs.required:
            return NeedDecision(NeedAction.DISARM if armed else NeedAction.KEEP)

        present = tuple(i for i in needs.required if matcher.present(i, labels))
        missing = tuple(i for i in needs.required if i not in present)

        # 3. Something still missing
        if missing:
            if armed == TimerKind.HINT:
                return NeedDecision(NeedAction.KEEP, missing=missing, present=present)
            return NeedDecision(NeedAction.ARM_HINT, missing=missing, present=present)

        # 4. Everything in view
        if armed == TimerKind.COMPLETION:
            return NeedDecision(NeedAction.KEEP, present=present)
        return NeedDecision(NeedAction.ARM_COMPLETION, present=present)

    def required_items(self, module_slug: str, step_index: int) -> List[str]:
        return list(self.catalog.get(module_slug, step_index).required)
