"""
Run Journal: durable record of workflow runs and their completed steps.

Each run is keyed by (workflow kind, card id, attempt). Each successful
step result is stored under its step name as soon as it is produced, so
re-entering a run returns the stored results instead of redoing the work.

Every state change is persisted to Postgres when enabled. If the DB is
unavailable, the journal keeps working in memory only (with a warning).
Only running records stay in memory once they are safely persisted;
without the DB the newest ``max_finished`` finished runs are kept.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any

from features.runs import db as run_db
from features.runs.models import RunKey, RunRecord, RunStatus
from models.schemas import WorkflowKind

log = logging.getLogger(__name__)

_MISSING = object()

MAX_FINISHED_RUNS = 500


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _record_from_row(row: dict, steps: dict[str, Any]) -> RunRecord:
    return RunRecord(
        key=RunKey(WorkflowKind(row["workflow_kind"]), row["card_id"], row["attempt"]),
        args=list(row.get("args") or []),
        status=RunStatus(row["status"]),
        started_at=str(row["started_at"]) if row.get("started_at") else None,
        completed_at=str(row["completed_at"]) if row.get("completed_at") else None,
        result=row.get("result"),
        error=row.get("error"),
        steps=steps,
    )


class RunJournal:
    """Tracks workflow runs and memoizes step results by name."""

    def __init__(self, persist: bool = True, max_finished: int = MAX_FINISHED_RUNS):
        self.persist = persist
        self.max_finished = max_finished
        self.runs: dict[str, RunRecord] = {}
        self._attempts: dict[tuple[WorkflowKind, str], int] = {}
        self._lock = threading.Lock()

    def _persist(self, record: RunRecord) -> bool:
        if not self.persist:
            return False
        try:
            run_db.upsert_run(record.to_dict())
            return True
        except Exception as e:
            log.warning("[JOURNAL] Failed to persist run %s to DB: %s", record.key.workflow_id, e)
            return False

    def _retire(self, record: RunRecord) -> None:
        """Drop a finished record from memory once it is in the DB, then apply the cap."""
        persisted = self._persist(record)
        with self._lock:
            if persisted:
                self.runs.pop(record.key.workflow_id, None)
            finished = [r for r in self.runs.values() if r.status is not RunStatus.RUNNING]
            excess = len(finished) - self.max_finished
            if excess > 0:
                finished.sort(key=lambda r: r.completed_at or "")
                for old in finished[:excess]:
                    del self.runs[old.key.workflow_id]

    # ── Runs ─────────────────────────────────────────────────────────

    def next_key(self, kind: WorkflowKind, card_id: str = "") -> RunKey:
        """Allocate the next attempt number for (kind, card_id)."""
        with self._lock:
            local = self._attempts.get((kind, card_id), 0)
        stored = 0
        if self.persist:
            try:
                stored = run_db.max_attempt(kind.value, card_id)
            except Exception as e:
                log.warning("[JOURNAL] Could not read attempts from DB: %s", e)
        return RunKey(kind, card_id, max(local, stored) + 1)

    def open(self, key: RunKey, args: list[Any] | None = None) -> RunRecord:
        """Register a run, or return the existing record when resuming."""
        existing = self.get(key.workflow_id)
        if existing is not None:
            log.info("[JOURNAL] Resuming: %s (%d cached steps)", key.workflow_id, len(existing.steps))
            existing.status = RunStatus.RUNNING
            with self._lock:
                self.runs[key.workflow_id] = existing
            self._persist(existing)
            return existing
        record = RunRecord(key=key, args=list(args or []), started_at=_utcnow())
        with self._lock:
            self.runs[key.workflow_id] = record
            scope = (key.kind, key.card_id)
            self._attempts[scope] = max(self._attempts.get(scope, 0), key.attempt)
        log.info("[JOURNAL] Opened: %s", key.workflow_id)
        self._persist(record)
        return record

    def complete(self, key: RunKey, result: Any) -> None:
        record = self._require(key)
        record.status = RunStatus.COMPLETED
        record.completed_at = _utcnow()
        record.result = result
        log.info("[JOURNAL] Completed: %s", key.workflow_id)
        self._retire(record)

    def fail(self, key: RunKey, error: str) -> None:
        record = self._require(key)
        record.status = RunStatus.FAILED
        record.completed_at = _utcnow()
        record.error = error
        log.error("[JOURNAL] Failed: %s: %s", key.workflow_id, error)
        self._retire(record)

    def finish(self, workflow_id: str, result: Any = None, error: str | None = None) -> bool:
        """Complete or fail a run by workflow id, e.g. when a Temporal run ends.

        Returns False for ids the journal does not know.
        """
        try:
            key = RunKey.parse(workflow_id)
        except ValueError:
            log.warning("[JOURNAL] Ignoring outcome for foreign workflow %s", workflow_id)
            return False
        if self.get(workflow_id) is None:
            log.warning("[JOURNAL] Ignoring outcome for unknown run %s", workflow_id)
            return False
        if error is None:
            self.complete(key, result)
        else:
            self.fail(key, error)
        return True

    def release(self, key: RunKey) -> None:
        """Forget the in-memory copy of a run another process will finish."""
        with self._lock:
            record = self.runs.get(key.workflow_id)
        if record is not None and self._persist(record):
            with self._lock:
                self.runs.pop(key.workflow_id, None)

    def get(self, workflow_id: str) -> RunRecord | None:
        with self._lock:
            record = self.runs.get(workflow_id)
        if record is not None or not self.persist:
            return record
        try:
            row = run_db.get_run(workflow_id)
            if row is None:
                return None
            record = _record_from_row(row, run_db.get_steps(workflow_id))
        except Exception as e:
            log.warning("[JOURNAL] Could not load run %s from DB: %s", workflow_id, e)
            return None
        if record.status is RunStatus.RUNNING:
            with self._lock:
                record = self.runs.setdefault(workflow_id, record)
        return record

    def list(self, status: RunStatus | None = None, limit: int = 50) -> list[RunRecord]:
        with self._lock:
            records = {r.key.workflow_id: r for r in self.runs.values()}
        if self.persist:
            try:
                for row in run_db.list_runs(limit=limit, status=status.value if status else None):
                    if row["workflow_id"] not in records:
                        records[row["workflow_id"]] = _record_from_row(row, run_db.get_steps(row["workflow_id"]))
            except Exception as e:
                log.warning("[JOURNAL] Could not list runs from DB: %s", e)
        selected = [r for r in records.values() if status is None or r.status is status]
        selected.sort(key=lambda r: r.started_at or "", reverse=True)
        return selected[:limit]

    def incomplete(self) -> list[RunRecord]:
        """Runs that were started but never finished (e.g. process restart)."""
        if self.persist:
            try:
                for row in run_db.list_runs(limit=500, status=RunStatus.RUNNING.value):
                    self.get(row["workflow_id"])
            except Exception as e:
                log.warning("[JOURNAL] Could not list incomplete runs: %s", e)
        with self._lock:
            running = [r for r in self.runs.values() if r.status is RunStatus.RUNNING]
        running.sort(key=lambda r: r.started_at or "", reverse=True)
        return running

    # ── Steps ────────────────────────────────────────────────────────

    def cached_step(self, key: RunKey, step_name: str) -> Any:
        """Return the stored result for a step, or the sentinel ``MISSING``."""
        record = self._require(key)
        return record.steps.get(step_name, _MISSING)

    def record_step(self, key: RunKey, step_name: str, result: Any) -> None:
        record = self._require(key)
        record.steps[step_name] = result
        if not self.persist:
            return
        try:
            run_db.insert_step(key.workflow_id, step_name, result)
        except Exception as e:
            log.warning("[JOURNAL] Failed to persist step %s/%s: %s", key.workflow_id, step_name, e)

    def _require(self, key: RunKey) -> RunRecord:
        record = self.get(key.workflow_id)
        if record is None:
            raise KeyError(f"Unknown run {key.workflow_id}")
        return record


MISSING = _MISSING
