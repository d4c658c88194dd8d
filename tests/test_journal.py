"""Run keys and the run journal."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from features.runs.journal import MISSING, RunJournal
from features.runs.models import RunKey, RunStatus
from models.schemas import WorkflowKind

scopes = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789-_", min_size=1, max_size=24).filter(
    lambda s: s != "batch"
)


class TestRunKey:
    def test_workflow_id(self):
        assert RunKey(WorkflowKind.CARD_PROCESSING, "card-1", 2).workflow_id == "card_processing-card-1-2"
        assert RunKey(WorkflowKind.AI_BACKFILL, "", 1).workflow_id == "ai_backfill-batch-1"

    @given(kind=st.sampled_from(list(WorkflowKind)), card_id=scopes | st.just(""),
           attempt=st.integers(min_value=1, max_value=10_000))
    def test_parse_inverts_workflow_id(self, kind, card_id, attempt):
        key = RunKey(kind, card_id, attempt)
        assert RunKey.parse(key.workflow_id) == key

    def test_parse_rejects_foreign_ids(self):
        with pytest.raises(ValueError):
            RunKey.parse("some-other-workflow-1")


class TestRunJournal:
    def test_next_key_counts_attempts(self, journal):
        first = journal.next_key(WorkflowKind.SCREENSHOT, "card-1")
        assert first.attempt == 1
        journal.open(first, ["card-1"])
        assert journal.next_key(WorkflowKind.SCREENSHOT, "card-1").attempt == 2
        assert journal.next_key(WorkflowKind.SCREENSHOT, "card-2").attempt == 1

    def test_steps_are_memoized(self, journal):
        key = RunKey(WorkflowKind.CARD_PROCESSING, "card-1", 1)
        journal.open(key, ["card-1"])
        assert journal.cached_step(key, "classify") is MISSING
        journal.record_step(key, "classify", None)
        assert journal.cached_step(key, "classify") is None

    def test_reopen_resumes_existing_record(self, journal):
        key = RunKey(WorkflowKind.CARD_PROCESSING, "card-1", 1)
        journal.open(key, ["card-1"])
        journal.record_step(key, "load_card", {"id": "card-1"})
        journal.fail(key, "worker died")

        record = journal.open(key, ["card-1"])

        assert record.status is RunStatus.RUNNING
        assert record.steps == {"load_card": {"id": "card-1"}}

    def test_incomplete_lists_running_only(self, journal):
        running = RunKey(WorkflowKind.CARD_PROCESSING, "a", 1)
        done = RunKey(WorkflowKind.CARD_PROCESSING, "b", 1)
        journal.open(running)
        journal.open(done)
        journal.complete(done, {"success": True})
        assert [r.key for r in journal.incomplete()] == [running]

    def test_unknown_run(self, journal):
        with pytest.raises(KeyError):
            journal.cached_step(RunKey(WorkflowKind.CARD_CLEANUP, "", 9), "x")

    def test_to_dict_lists_step_names(self, journal):
        key = RunKey(WorkflowKind.CARD_PROCESSING, "card-1", 1)
        record = journal.open(key, ["card-1"])
        journal.record_step(key, "metadata", {"ai_tags_count": 1})
        journal.record_step(key, "classify", {"type": "text"})
        data = record.to_dict()
        assert data["steps"] == ["classify", "metadata"]
        assert data["workflow_kind"] == "card_processing"
        assert data["status"] == "running"


class TestEviction:
    def test_memory_only_journal_keeps_newest_finished_runs(self):
        journal = RunJournal(persist=False, max_finished=2)
        keys = [RunKey(WorkflowKind.SCREENSHOT, f"card-{n}", 1) for n in range(4)]
        for key in keys:
            journal.open(key)
        for key in keys[:3]:
            journal.complete(key, {"success": True})

        assert set(journal.runs) == {k.workflow_id for k in keys[1:]}
        assert journal.get(keys[3].workflow_id).status is RunStatus.RUNNING
        assert journal.next_key(WorkflowKind.SCREENSHOT, "card-0").attempt == 2

    def test_persisted_runs_leave_memory_when_finished(self, run_db):
        journal = RunJournal(persist=True)
        key = journal.next_key(WorkflowKind.CARD_PROCESSING, "card-1")
        journal.open(key, ["card-1"])
        journal.record_step(key, "classify", {"type": "text"})
        journal.complete(key, {"success": True})

        assert journal.runs == {}
        record = journal.get(key.workflow_id)
        assert record.status is RunStatus.COMPLETED
        assert record.result == {"success": True}
        assert record.steps == {"classify": {"type": "text"}}
        assert journal.runs == {}
        assert [r.key for r in journal.list()] == [key]
        assert journal.next_key(WorkflowKind.CARD_PROCESSING, "card-1").attempt == 2

    def test_unreachable_db_keeps_records_in_memory(self, run_db, monkeypatch):
        def down(run):
            raise ConnectionError("db down")

        monkeypatch.setattr(run_db, "upsert_run", down)
        journal = RunJournal(persist=True)
        key = RunKey(WorkflowKind.CARD_CLEANUP, "", 1)
        journal.open(key)
        journal.complete(key, {"cleaned_count": 0})

        assert journal.runs[key.workflow_id].status is RunStatus.COMPLETED


class TestFinish:
    def test_result_completes_the_run(self, journal):
        key = RunKey(WorkflowKind.LINK_ENRICHMENT, "card-1", 1)
        journal.open(key, ["card-1"])

        assert journal.finish(key.workflow_id, result={"category": "book"}) is True

        record = journal.get(key.workflow_id)
        assert record.status is RunStatus.COMPLETED
        assert record.result == {"category": "book"}

    def test_error_fails_the_run(self, journal):
        key = RunKey(WorkflowKind.SCREENSHOT, "card-1", 1)
        journal.open(key, ["card-1"])

        journal.finish(key.workflow_id, error="browser gone")

        assert journal.get(key.workflow_id).error == "browser gone"

    def test_unknown_and_foreign_ids(self, journal):
        assert journal.finish("card_processing-ghost-1", result={}) is False
        assert journal.finish("nightly-report-7") is False

    def test_released_run_is_finished_from_the_db(self, run_db):
        journal = RunJournal(persist=True)
        key = RunKey(WorkflowKind.CARD_PROCESSING, "card-1", 1)
        journal.open(key, ["card-1"])

        journal.release(key)
        assert journal.runs == {}

        assert journal.finish(key.workflow_id, result={"success": True}) is True
        assert run_db.rows[key.workflow_id]["status"] == "completed"
        assert journal.runs == {}
