"""
Temporal Workflow: Link Enrichment

Categorizes one link card on its own (outside the full pipeline), e.g. to
refresh a stale category.
"""

from __future__ import annotations

import logging

from temporalio import workflow

with workflow.unsafe.imports_passed_through():
    from workflows.engine import LINK_ENRICHMENT_RETRY, Steps, run_recorded

log = logging.getLogger(__name__)


async def enrich_link(steps: Steps, card_id: str) -> dict:
    """
    Returns:
        {"category": "...", "confidence": 0.98, "image_url": "...", "facts_count": 3}
    """
    log.info("[LINK_ENRICHMENT] Starting for card %s", card_id)
    result = await steps.run("categorize", "categorize_card", card_id, retry=LINK_ENRICHMENT_RETRY)
    log.info("[LINK_ENRICHMENT] Card %s: %s", card_id, result.get("category"))
    return result


@workflow.defn(name="LinkEnrichmentWorkflow")
class LinkEnrichmentWorkflow:
    @workflow.run
    async def run(self, card_id: str) -> dict:
        return await run_recorded(enrich_link, card_id)
