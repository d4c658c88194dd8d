"""WorkflowManager: in-process starts, admin retry, resume and Temporal run outcomes."""

from types import SimpleNamespace

import pytest
from temporalio.client import WorkflowExecutionStatus

from conftest import ARTICLE_HTML, make_card
from features.runs.journal import RunJournal
from features.runs.models import RunKey, RunStatus
from models.errors import CardNotFoundError
from models.schemas import WorkflowKind
from workflows.manager import WorkflowManager


class TestStarts:
    async def test_async_start_runs_in_background(self, store, manager):
        store.insert(make_card(content="a note"))

        started = await manager.start_card_processing_workflow("card-1")
        assert started == {"workflow_id": "card_processing-card-1-1"}
        assert store.get("card-1").workflow_id == "card_processing-card-1-1"

        await manager.wait_idle()
        record = manager.journal.get("card_processing-card-1-1")
        assert record.status is RunStatus.COMPLETED
        assert record.result["success"] is True
        assert "metadata" in record.steps

    async def test_attempts_increase(self, store, manager):
        store.insert(make_card(content="a note"))
        await manager.start_card_processing_workflow("card-1", start_async=False)
        second = await manager.start_card_processing_workflow("card-1")
        assert second["workflow_id"] == "card_processing-card-1-2"
        await manager.wait_idle()

    async def test_sync_start_returns_result(self, store, manager):
        store.insert(make_card(content="a note"))
        result = await manager.start_card_processing_workflow("card-1", start_async=False)
        assert result["classification"]["type"] == "text"

    async def test_failed_run_is_recorded(self, manager):
        with pytest.raises(CardNotFoundError):
            await manager.start_card_processing_workflow("ghost", start_async=False)
        assert manager.journal.get("card_processing-ghost-1").status is RunStatus.FAILED


class TestRetryCardEnrichment:
    async def test_missing_card(self, manager):
        result = await manager.retry_card_enrichment("ghost")
        assert result["success"] is False
        assert result["reason"] == "not_found"
        assert result["requested_at"]
        assert manager.journal.list() == []

    async def test_existing_card(self, store, manager):
        store.insert(make_card(content="a note"))
        result = await manager.retry_card_enrichment("card-1")
        assert result["success"] is True
        assert result["workflow_id"] == "card_processing-card-1-1"
        await manager.wait_idle()
        assert store.get("card-1").ai_summary == "A saved item."


class TestResume:
    async def test_unfinished_run_skips_recorded_steps(self, store, journal, manager):
        store.insert(make_card(content="a note"))
        key = RunKey(WorkflowKind.CARD_PROCESSING, "card-1", 1)
        journal.open(key, ["card-1"])
        journal.record_step(key, "classify", {"type": "text", "confidence": 0.7})

        resumed = manager.resume_pending_runs()
        assert resumed == [key.workflow_id]
        await manager.wait_idle()

        assert journal.get(key.workflow_id).status is RunStatus.COMPLETED
        processing_status = store.get("card-1").processing_status
        assert "classify" not in processing_status
        assert processing_status["metadata"]["status"] == "completed"

    async def test_finished_runs_are_not_resumed(self, store, manager):
        store.insert(make_card(content="a note"))
        await manager.start_card_processing_workflow("card-1", start_async=False)
        assert manager.resume_pending_runs() == []


class TestScreenshotEnqueue:
    async def test_link_processing_enqueues_screenshot(self, store, web, manager):
        web.add("https://example.com/page", ARTICLE_HTML)
        store.insert(make_card(url="https://example.com/page"))

        await manager.start_card_processing_workflow("card-1", start_async=False)
        await manager.wait_idle()

        shot_run = manager.journal.get("screenshot-card-1-1")
        assert shot_run.status is RunStatus.COMPLETED
        assert shot_run.result == {"success": True}
        assert store.get("card-1").link_preview["screenshot_blob_id"]


class TestPersistedRuns:
    async def test_finished_runs_leave_memory(self, store, activities, sleeps, run_db):
        manager = WorkflowManager(activities, journal=RunJournal(persist=True), sleep=sleeps)
        store.insert(make_card(content="a note"))

        await manager.start_card_processing_workflow("card-1", start_async=False)

        assert manager.journal.runs == {}
        record = manager.journal.get("card_processing-card-1-1")
        assert record.status is RunStatus.COMPLETED
        assert "classify" in record.steps


class FakeHandle:
    def __init__(self, status, result=None):
        self.status = status
        self._result = result

    async def describe(self):
        return SimpleNamespace(status=self.status)

    async def result(self):
        return self._result


class FakeTemporal:
    def __init__(self, status, result=None):
        self.started = []
        self.handle = FakeHandle(status, result)

    async def start_workflow(self, run, **options):
        self.started.append(options["id"])

    def get_workflow_handle(self, workflow_id):
        return self.handle


class TestTemporalOutcomes:
    async def start(self, store, activities, journal, client):
        manager = WorkflowManager(activities, client=client, journal=journal)
        store.insert(make_card(content="a note"))
        started = await manager.start_card_processing_workflow("card-1")
        return manager, started["workflow_id"]

    async def test_completed_run_is_written_back(self, store, activities, journal):
        client = FakeTemporal(WorkflowExecutionStatus.COMPLETED, {"success": True})
        manager, workflow_id = await self.start(store, activities, journal, client)
        assert client.started == [workflow_id]

        record, status = await manager.sync_temporal_run(workflow_id)

        assert status == "COMPLETED"
        assert record.status is RunStatus.COMPLETED
        assert record.result == {"success": True}
        assert journal.get(workflow_id).status is RunStatus.COMPLETED

    async def test_terminated_run_is_failed(self, store, activities, journal):
        client = FakeTemporal(WorkflowExecutionStatus.TERMINATED)
        manager, workflow_id = await self.start(store, activities, journal, client)

        record, status = await manager.sync_temporal_run(workflow_id)

        assert status == "TERMINATED"
        assert record.status is RunStatus.FAILED
        assert record.error == "Temporal run terminated"

    async def test_running_run_stays_running(self, store, activities, journal):
        client = FakeTemporal(WorkflowExecutionStatus.RUNNING)
        manager, workflow_id = await self.start(store, activities, journal, client)

        record, status = await manager.sync_temporal_run(workflow_id)

        assert status == "RUNNING"
        assert record.status is RunStatus.RUNNING

    async def test_async_start_hands_the_record_to_the_db(self, store, activities, run_db):
        client = FakeTemporal(WorkflowExecutionStatus.RUNNING)
        manager, workflow_id = await self.start(store, activities, RunJournal(persist=True), client)

        assert manager.journal.runs == {}
        assert run_db.rows[workflow_id]["status"] == "running"

    async def test_workflow_outcome_activity_finishes_the_run(self, activities, manager):
        key = RunKey(WorkflowKind.SCREENSHOT, "card-1", 1)
        manager.journal.open(key, ["card-1"])

        assert activities.record_run_outcome(key.workflow_id, {"success": True}, None) is True
        assert manager.journal.get(key.workflow_id).status is RunStatus.COMPLETED
        assert activities.record_run_outcome("screenshot-ghost-1", None, "boom") is False
