from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass
class Ok:
    outcome: str = "ok"
    detail: Optional[Dict[str, Any]] = None


@dataclass
class SoftFail:
    reason: str
    item_id: Optional[int] = None


ItemResult = Union[Ok, SoftFail]


@dataclass
class BatchSummary:
    """Per-sweep tally of item outcomes. Serialised onto the task checkpoint."""

    task: str
    processed: int = 0
    counts: Dict[str, int] = field(default_factory=dict)
    failures: List[Dict[str, Any]] = field(default_factory=list)

    def add(self, result: ItemResult) -> None:
        self.processed += 1
        if isinstance(result, SoftFail):
            self.counts["failed"] = self.counts.get("failed", 0) + 1
            self.failures.append({"item_id": result.item_id, "reason": result.reason})
        else:
            self.counts[result.outcome] = self.counts.get(result.outcome, 0) + 1

    def count(self, outcome: str) -> int:
        return self.counts.get(outcome, 0)

    @property
    def failed(self) -> int:
        return self.count("failed")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.task,
            "processed": self.processed,
            "counts": dict(self.counts),
            # Keep the stored payload bounded
            "failures": self.failures[:50],
        }
