"""
Temporal Workflow: Card Cleanup

Hard-deletes one batch of cards soft-deleted more than
CLEANUP_RETENTION_DAYS ago, together with their blobs. A full batch means
there may be more, so the workflow schedules a fresh run of itself and
stops; each run stays bounded.
"""

from __future__ import annotations

import logging

from temporalio import workflow

with workflow.unsafe.imports_passed_through():
    import config
    from workflows.engine import Steps, run_recorded

log = logging.getLogger(__name__)


async def sweep_deleted_cards(steps: Steps, batch_size: int = config.CLEANUP_BATCH_SIZE) -> dict:
    """
    Returns:
        {"cleaned_count": 10, "has_more": true}
    """
    card_ids = await steps.run("find_candidates", "find_cleanup_candidates", batch_size)
    cleaned = 0
    for card_id in card_ids:
        try:
            if await steps.run(f"delete:{card_id}", "delete_card_with_assets", card_id):
                cleaned += 1
        except Exception as e:
            log.error("[CLEANUP] Failed to delete card %s: %s", card_id, e)

    has_more = len(card_ids) >= batch_size
    if has_more:
        await steps.run("reschedule", "reschedule_cleanup")
    log.info("[CLEANUP] Cleaned %d cards (more pending: %s)", cleaned, has_more)
    return {"cleaned_count": cleaned, "has_more": has_more}


@workflow.defn(name="CardCleanupWorkflow")
class CardCleanupWorkflow:
    @workflow.run
    async def run(self) -> dict:
        return await run_recorded(sweep_deleted_cards)
