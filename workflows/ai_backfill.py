"""
Temporal Workflow: AI Backfill

Re-enqueues the card processing workflow for a bounded batch of cards
that are missing AI tags or a summary. One card failing to enqueue is
logged and reported; the rest of the batch still goes out.
"""

from __future__ import annotations

import logging

from temporalio import workflow

with workflow.unsafe.imports_passed_through():
    import config
    from workflows.engine import START_PIPELINE_RETRY, Steps, run_recorded

log = logging.getLogger(__name__)


async def backfill_ai_metadata(steps: Steps, batch_size: int = config.AI_BACKFILL_BATCH_SIZE) -> dict:
    """
    Returns:
        {"enqueued_count": 48, "failed_card_ids": ["c1", "c2"]}
    """
    candidates = await steps.run("find_candidates", "find_cards_missing_ai", batch_size)
    card_ids = list(dict.fromkeys(candidates))
    if not card_ids:
        return {"enqueued_count": 0, "failed_card_ids": []}

    failed: list[str] = []
    for card_id in card_ids:
        try:
            await steps.run(f"enqueue:{card_id}", "enqueue_card_processing", card_id, retry=START_PIPELINE_RETRY)
        except Exception as e:
            log.error("[BACKFILL] Failed to enqueue card %s: %s", card_id, e)
            failed.append(card_id)

    enqueued = len(card_ids) - len(failed)
    log.info("[BACKFILL] Enqueued %d/%d cards", enqueued, len(card_ids))
    return {"enqueued_count": enqueued, "failed_card_ids": failed}


@workflow.defn(name="AiBackfillWorkflow")
class AiBackfillWorkflow:
    @workflow.run
    async def run(self) -> dict:
        return await run_recorded(backfill_ai_metadata)
