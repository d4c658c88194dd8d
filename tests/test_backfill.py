"""AI metadata backfill."""

import asyncio

from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import make_card
from features.runs.models import RunStatus
from workflows.ai_backfill import backfill_ai_metadata
from workflows.engine import InProcessSteps


class FakeBackfillActivities:
    def __init__(self, candidates, failing):
        self.candidates = candidates
        self.failing = set(failing)
        self.enqueued = []

    def find_cards_missing_ai(self, limit):
        return self.candidates[:limit]

    async def enqueue_card_processing(self, card_id):
        if card_id in self.failing:
            raise RuntimeError(f"cannot start {card_id}")
        self.enqueued.append(card_id)
        return f"card_processing-{card_id}-1"


async def no_sleep(ms):
    pass


card_ids = st.lists(st.sampled_from([f"c{i}" for i in range(12)]), max_size=30)


class TestBackfillLogic:
    @given(candidates=card_ids, failing=st.sets(st.sampled_from([f"c{i}" for i in range(12)])))
    @settings(max_examples=60, deadline=None)
    def test_counts_add_up(self, candidates, failing):
        fake = FakeBackfillActivities(candidates, failing)
        result = asyncio.run(backfill_ai_metadata(InProcessSteps(fake, sleep=no_sleep), batch_size=50))

        unique = list(dict.fromkeys(candidates))
        expected_failed = [c for c in unique if c in failing]
        assert result["failed_card_ids"] == expected_failed
        assert result["enqueued_count"] == len(unique) - len(expected_failed)
        assert len(fake.enqueued) == len(set(fake.enqueued))

    async def test_empty_batch(self):
        fake = FakeBackfillActivities([], [])
        result = await backfill_ai_metadata(InProcessSteps(fake, sleep=no_sleep))
        assert result == {"enqueued_count": 0, "failed_card_ids": []}

    async def test_failed_enqueue_is_retried(self, sleeps):
        fake = FakeBackfillActivities(["a", "b"], ["b"])
        result = await backfill_ai_metadata(InProcessSteps(fake, sleep=sleeps))
        assert result == {"enqueued_count": 1, "failed_card_ids": ["b"]}
        assert sleeps.calls == [2_000, 4_000, 8_000, 16_000]


class TestBackfillWorkflow:
    async def test_enqueues_cards_missing_ai(self, store, manager):
        store.insert(make_card("needs-both", content="one"))
        store.insert(make_card("needs-tags", content="two", ai_summary="has a summary"))
        store.insert(make_card("done", content="three", ai_summary="s", ai_tags=["t"]))
        store.insert(make_card("deleted", content="four", is_deleted=True))

        result = await manager.start_ai_backfill_workflow(start_async=False)
        assert result == {"enqueued_count": 2, "failed_card_ids": []}

        await manager.wait_idle()
        processing = [r for r in manager.journal.list() if r.key.card_id]
        assert sorted(r.key.card_id for r in processing) == ["needs-both", "needs-tags"]
        assert all(r.status is RunStatus.COMPLETED for r in processing)
        assert store.get("needs-both").ai_tags == ["design", "inspiration"]
