"""
WorkflowManager: starts workflows under Temporal, or in-process without it.

Every start allocates a journal key ``(kind, card_id, attempt)`` whose
``workflow_id`` names the run in both modes. With a Temporal client the
workflow is started (or executed) on the task queue. Without one the same
workflow logic runs on the event loop through InProcessSteps, with each
finished step stored in the journal so an interrupted run can be resumed
by ``resume_pending_runs``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from temporalio.client import Client, WorkflowExecutionStatus

import config
from features.runs.journal import RunJournal
from features.runs.models import RunKey, RunRecord, RunStatus
from models.schemas import WorkflowKind
from workflows.ai_backfill import AiBackfillWorkflow, backfill_ai_metadata
from workflows.card_cleanup import CardCleanupWorkflow, sweep_deleted_cards
from workflows.card_processing import CardProcessingWorkflow, process_card
from workflows.engine import InProcessSteps, Sleep
from workflows.link_enrichment import LinkEnrichmentWorkflow, enrich_link
from workflows.screenshot import ScreenshotWorkflow, capture_link_screenshot

log = logging.getLogger(__name__)

Logic = Callable[..., Awaitable[Any]]

WORKFLOWS: dict[WorkflowKind, tuple[Any, Logic]] = {
    WorkflowKind.CARD_PROCESSING: (CardProcessingWorkflow, process_card),
    WorkflowKind.LINK_ENRICHMENT: (LinkEnrichmentWorkflow, enrich_link),
    WorkflowKind.SCREENSHOT: (ScreenshotWorkflow, capture_link_screenshot),
    WorkflowKind.AI_BACKFILL: (AiBackfillWorkflow, backfill_ai_metadata),
    WorkflowKind.CARD_CLEANUP: (CardCleanupWorkflow, sweep_deleted_cards),
}

ALL_WORKFLOWS = [workflow_cls for workflow_cls, _ in WORKFLOWS.values()]

FAILED_TEMPORAL_STATUSES = {
    WorkflowExecutionStatus.FAILED,
    WorkflowExecutionStatus.CANCELED,
    WorkflowExecutionStatus.TERMINATED,
    WorkflowExecutionStatus.TIMED_OUT,
}


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


class WorkflowManager:
    def __init__(self, activities: Any, client: Client | None = None,
                 journal: RunJournal | None = None, sleep: Sleep | None = None):
        self.activities = activities
        self.client = client
        self.journal = journal or RunJournal(persist=False)
        self._sleep = sleep
        self._tasks: set[asyncio.Task] = set()
        activities.manager = self

    @property
    def store(self):
        return self.activities.services.store

    # ── Entry points ─────────────────────────────────────────────────

    async def start_card_processing_workflow(self, card_id: str, start_async: bool = True) -> dict:
        return await self._start(WorkflowKind.CARD_PROCESSING, card_id, start_async)

    async def start_link_enrichment_workflow(self, card_id: str, start_async: bool = True) -> dict:
        return await self._start(WorkflowKind.LINK_ENRICHMENT, card_id, start_async)

    async def start_screenshot_workflow(self, card_id: str, start_async: bool = True) -> dict:
        return await self._start(WorkflowKind.SCREENSHOT, card_id, start_async)

    async def start_ai_backfill_workflow(self, start_async: bool = True) -> dict:
        return await self._start(WorkflowKind.AI_BACKFILL, "", start_async)

    async def start_card_cleanup_workflow(self, start_async: bool = True) -> dict:
        return await self._start(WorkflowKind.CARD_CLEANUP, "", start_async)

    async def retry_card_enrichment(self, card_id: str) -> dict:
        """Admin retry: re-run the pipeline for one card. A missing card is not an error."""
        requested_at = _utcnow()
        if self.store.get(card_id) is None:
            log.info("[MANAGER] Retry requested for missing card %s", card_id)
            return {"requested_at": requested_at, "success": False, "reason": "not_found"}
        started = await self.start_card_processing_workflow(card_id, start_async=True)
        return {"requested_at": requested_at, "success": True, "workflow_id": started["workflow_id"]}

    # ── Dispatch ─────────────────────────────────────────────────────

    async def _start(self, kind: WorkflowKind, card_id: str, start_async: bool) -> dict | Any:
        key = self.journal.next_key(kind, card_id)
        args = [card_id] if card_id else []
        self.journal.open(key, args)
        if kind is WorkflowKind.CARD_PROCESSING:
            self.store.patch(card_id, workflow_id=key.workflow_id)

        if self.client is not None:
            return await self._start_temporal(kind, key, args, start_async)
        return await self._start_in_process(kind, key, args, start_async)

    async def _start_temporal(self, kind: WorkflowKind, key: RunKey, args: list, start_async: bool) -> dict | Any:
        workflow_cls, _ = WORKFLOWS[kind]
        options = dict(args=args, id=key.workflow_id, task_queue=config.TEMPORAL_TASK_QUEUE)
        if start_async:
            await self.client.start_workflow(workflow_cls.run, **options)
            log.info("[MANAGER] Started %s via Temporal", key.workflow_id)
            # The workflow records its own outcome from the worker.
            self.journal.release(key)
            return {"workflow_id": key.workflow_id}
        try:
            result = await self.client.execute_workflow(workflow_cls.run, **options)
        except Exception as e:
            self.journal.fail(key, str(e))
            raise
        self.journal.complete(key, result)
        return result

    async def _start_in_process(self, kind: WorkflowKind, key: RunKey, args: list, start_async: bool) -> dict | Any:
        if start_async:
            self._spawn(kind, key, args)
            return {"workflow_id": key.workflow_id}
        return await self._execute(kind, key, args)

    def _spawn(self, kind: WorkflowKind, key: RunKey, args: list) -> None:
        task = asyncio.create_task(self._execute_in_background(kind, key, args), name=key.workflow_id)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        log.info("[MANAGER] Started %s in-process", key.workflow_id)

    async def _execute(self, kind: WorkflowKind, key: RunKey, args: list) -> Any:
        _, logic = WORKFLOWS[kind]
        steps = InProcessSteps(self.activities, self.journal, key, sleep=self._sleep)
        try:
            result = await logic(steps, *args)
        except Exception as e:
            self.journal.fail(key, str(e) or type(e).__name__)
            raise
        self.journal.complete(key, result)
        return result

    async def _execute_in_background(self, kind: WorkflowKind, key: RunKey, args: list) -> None:
        try:
            await self._execute(kind, key, args)
        except Exception as e:
            # Already recorded on the run; nothing awaits a background task.
            log.error("[MANAGER] %s failed: %s", key.workflow_id, e)

    # ── Temporal runs ────────────────────────────────────────────────

    async def sync_temporal_run(self, workflow_id: str) -> tuple[RunRecord | None, str | None]:
        """Journal record of a run, updated from Temporal when the journal still shows it running.

        Returns the record and the Temporal execution status name (None when
        Temporal was not asked).
        """
        record = self.journal.get(workflow_id)
        if record is None or self.client is None or record.status is not RunStatus.RUNNING:
            return record, None
        try:
            handle = self.client.get_workflow_handle(workflow_id)
            status = (await handle.describe()).status
            result = await handle.result() if status is WorkflowExecutionStatus.COMPLETED else None
        except Exception as e:
            log.warning("[MANAGER] Could not describe workflow %s: %s", workflow_id, e)
            return record, None

        if status is WorkflowExecutionStatus.COMPLETED:
            self.journal.finish(workflow_id, result=result)
        elif status in FAILED_TEMPORAL_STATUSES:
            self.journal.finish(workflow_id, error=f"Temporal run {status.name.lower()}")
        else:
            return record, status.name if status else None
        return self.journal.get(workflow_id), status.name

    # ── In-process lifecycle ─────────────────────────────────────────

    def resume_pending_runs(self) -> list[str]:
        """Restart in-process runs the journal shows as unfinished."""
        if self.client is not None:
            return []
        resumed = []
        for record in self.journal.incomplete():
            if any(t.get_name() == record.key.workflow_id for t in self._tasks):
                continue
            self._spawn(record.key.kind, record.key, list(record.args))
            resumed.append(record.key.workflow_id)
        if resumed:
            log.info("[MANAGER] Resumed %d unfinished runs", len(resumed))
        return resumed

    async def wait_idle(self) -> None:
        """Wait for every in-process background run to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
