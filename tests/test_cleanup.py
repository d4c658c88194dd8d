"""Hard deletion of long soft-deleted cards."""

import logging

from activities.cleanup import card_blob_ids, delete_card_with_assets, find_cleanup_candidates
from conftest import days_ago, make_card
from features.cards.store import cleanup_cutoff, is_cleanup_eligible
from features.runs.models import RunKey, RunStatus
from models.processing_status import now_ms
from models.schemas import WorkflowKind


def deleted_card(card_id, days, **fields):
    return make_card(card_id, is_deleted=True, deleted_at=days_ago(days), **fields)


class TestEligibility:
    def test_deleted_past_retention(self):
        cutoff = cleanup_cutoff(now_ms(), 30)
        assert is_cleanup_eligible(deleted_card("a", 31), cutoff)

    def test_deleted_within_retention(self):
        cutoff = cleanup_cutoff(now_ms(), 30)
        assert not is_cleanup_eligible(deleted_card("a", 29), cutoff)

    def test_live_card_never_eligible(self):
        cutoff = cleanup_cutoff(now_ms(), 30)
        assert not is_cleanup_eligible(make_card("a", deleted_at=days_ago(90)), cutoff)

    def test_candidates_are_bounded(self, store):
        for i in range(5):
            store.insert(deleted_card(f"old-{i}", 40))
        store.insert(deleted_card("recent", 2))
        store.insert(make_card("live"))
        candidates = find_cleanup_candidates(store, 3)
        assert len(candidates) == 3
        assert all(c.startswith("old-") for c in candidates)


class TestDeleteCardWithAssets:
    def test_deletes_blobs_and_record(self, store, blobs):
        file_id = blobs.store(b"file", "image/png")
        thumb_id = blobs.store(b"thumb", "image/webp")
        shot_id = blobs.store(b"shot", "image/jpeg")
        store.insert(deleted_card("old", 31, file_id=file_id, thumbnail_id=thumb_id,
                                  metadata={"link_preview": {"screenshot_blob_id": shot_id}}))

        assert delete_card_with_assets(store, blobs, "old") is True

        assert store.get("old") is None
        for blob_id in (file_id, thumb_id, shot_id):
            assert blobs.read(blob_id) is None

    def test_blob_failure_is_logged_not_raised(self, store, blobs, caplog):
        store.insert(deleted_card("old", 31, thumbnail_id="already-gone.webp"))

        with caplog.at_level(logging.WARNING, logger="utils.resources"):
            assert delete_card_with_assets(store, blobs, "old") is True

        release = [r for r in caplog.records if getattr(r, "resource_kind", None) == "blob"]
        assert len(release) == 1
        assert release[0].resource_id == "already-gone.webp"
        assert store.get("old") is None

    def test_restored_card_is_left_alone(self, store, blobs):
        store.insert(make_card("restored", is_deleted=False, deleted_at=days_ago(40)))
        assert delete_card_with_assets(store, blobs, "restored") is False
        assert store.get("restored") is not None

    def test_missing_card(self, store, blobs):
        assert delete_card_with_assets(store, blobs, "nope") is False

    def test_blob_ids(self):
        card = make_card(file_id="f", thumbnail_id="t",
                         metadata={"link_preview": {"image_blob_id": "og", "screenshot_blob_id": "s"}})
        assert card_blob_ids(card) == ["f", "t", "og", "s"]


class TestCleanupWorkflow:
    async def test_full_batch_reschedules(self, store, manager):
        for i in range(12):
            store.insert(deleted_card(f"old-{i}", 45))
        store.insert(make_card("live"))

        result = await manager.start_card_cleanup_workflow(start_async=False)
        assert result == {"cleaned_count": 10, "has_more": True}

        await manager.wait_idle()
        follow_up = manager.journal.get(RunKey(WorkflowKind.CARD_CLEANUP, "", 2).workflow_id)
        assert follow_up.status is RunStatus.COMPLETED
        assert follow_up.result == {"cleaned_count": 2, "has_more": False}
        assert store.get("live") is not None
        assert find_cleanup_candidates(store) == []

    async def test_partial_batch_stops(self, store, manager):
        store.insert(deleted_card("old", 45))
        result = await manager.start_card_cleanup_workflow(start_async=False)
        assert result == {"cleaned_count": 1, "has_more": False}
        await manager.wait_idle()
        assert len(manager.journal.list()) == 1
