"""
Run outcome types returned by the dispatcher.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ...shared import ChangeType
from ..cache.models import ChangeRecord


class RunOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FATAL = "fatal"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]


_EXIT_CODES = {
    RunOutcome.SUCCESS: 0,
    RunOutcome.FATAL: 1,
    RunOutcome.PARTIAL_FAILURE: 2,
}


@dataclass
class RunStats:
    total: int = 0
    processed: int = 0
    cache_hit: int = 0
    extracted: int = 0
    skipped: int = 0
    errors: int = 0
    retried: int = 0
    deleted: int = 0
    new: int = 0
    modified: int = 0
    content_changed: int = 0
    unchanged: int = 0
    cancelled: bool = False
    elapsed_s: float = 0.0

    def count_change(self, change: ChangeType) -> None:
        if change == ChangeType.NEW:
            self.new += 1
        elif change == ChangeType.MODIFIED:
            self.modified += 1
        elif change == ChangeType.CONTENT_CHANGED:
            self.content_changed += 1
        elif change == ChangeType.UNCHANGED:
            self.unchanged += 1
        elif change == ChangeType.DELETED:
            self.deleted += 1

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["elapsed_s"] = round(float(self.elapsed_s), 3)
        return out


@dataclass
class RunResult:
    outcome: RunOutcome
    stats: RunStats
    reason: Optional[str] = None
    code: Optional[str] = None
    run_id: Optional[str] = None
    changes: List[ChangeRecord] = field(default_factory=list)

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code

    @property
    def ok(self) -> bool:
        return self.outcome != RunOutcome.FATAL

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "reason": self.reason,
            "code": self.code,
            "run_id": self.run_id,
            "stats": self.stats.to_dict(),
        }
