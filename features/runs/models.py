"""
Data models for the run journal.

A run is one execution of a workflow for one card (or for a batch, where
card_id is empty). Steps are the memoized units of work inside a run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from models.schemas import WorkflowKind


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RunKey:
    kind: WorkflowKind
    card_id: str
    attempt: int

    @property
    def workflow_id(self) -> str:
        scope = self.card_id or "batch"
        return f"{self.kind.value}-{scope}-{self.attempt}"

    @classmethod
    def parse(cls, workflow_id: str) -> "RunKey":
        """Inverse of ``workflow_id``. Card ids may themselves contain dashes."""
        for kind in WorkflowKind:
            prefix = f"{kind.value}-"
            if workflow_id.startswith(prefix):
                scope, _, attempt = workflow_id[len(prefix):].rpartition("-")
                return cls(kind, "" if scope == "batch" else scope, int(attempt))
        raise ValueError(f"Not a journal workflow id: {workflow_id}")


@dataclass
class RunRecord:
    key: RunKey
    args: list[Any] = field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING
    started_at: str | None = None
    completed_at: str | None = None
    result: Any = None
    error: str | None = None
    steps: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "workflow_id": self.key.workflow_id,
            "workflow_kind": self.key.kind.value,
            "card_id": self.key.card_id,
            "attempt": self.key.attempt,
            "args": self.args,
            "status": self.status.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "result": self.result,
            "error": self.error,
            "steps": sorted(self.steps),
        }
