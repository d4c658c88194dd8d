"""
Temporal Workflow: Card Processing

Runs the enrichment stages for one card:
  1. Classify (always first; reused when already completed), then fill in
     the stage keys that do not apply to the final type
  2. Link cards: link preview + AI metadata, and categorize, concurrently;
     then a screenshot workflow is enqueued
  3. Image / video / document cards: AI metadata and renderables
     concurrently; images also get a colour palette
  4. Everything else: AI metadata

A stage failure is recorded on the card and never stops the other stages.
Only a missing card aborts the run.
"""

from __future__ import annotations

import asyncio
import logging

from temporalio import workflow

with workflow.unsafe.imports_passed_through():
    from activities.renderables import is_svg
    from models.errors import CardNotFoundError
    from models.processing_status import (
        StageKey,
        StageState,
        parse_processing_status,
        should_run_categorize_stage,
        should_run_renderables_stage,
    )
    from models.schemas import Card, CardType
    from workflows.engine import (
        LINK_ENRICHMENT_RETRY,
        LINK_METADATA_RETRY,
        METADATA_RETRY,
        START_PIPELINE_RETRY,
        Steps,
        run_recorded,
    )
    from workflows.retry import run_with_tiered_retry

log = logging.getLogger(__name__)

EMPTY_METADATA = {"ai_tags_count": 0, "has_summary": False, "has_transcript": False}


async def _guarded(steps: Steps, stage: StageKey, card_id: str, failed: list[str], coro):
    """Await a stage; on failure record it and return None."""
    try:
        return await coro
    except CardNotFoundError:
        raise
    except Exception as e:
        log.error("[PIPELINE] Card %s: %s stage failed: %s", card_id, stage.value, e)
        failed.append(stage.value)
        await steps.run(f"{stage.value}:mark_failed", "mark_stage_failed", card_id, stage.value, str(e) or type(e).__name__)
        return None


async def _gather_stages(*stages):
    """Run stages concurrently; re-raise the first error once all have finished."""
    results = await asyncio.gather(*stages, return_exceptions=True)
    for outcome in results:
        if isinstance(outcome, BaseException):
            raise outcome
    return results


async def fetch_link_preview_with_retry(steps: Steps, card_id: str) -> dict:
    async def attempt(n: int) -> dict:
        return await steps.run(f"link_preview:{n}", "fetch_link_preview", card_id, n, retry=LINK_METADATA_RETRY)

    outcome = await run_with_tiered_retry(attempt, steps.sleep)
    if outcome["success"]:
        preview = outcome["result"]
        if preview.get("status") == "failed":
            return {"success": False, "error_type": preview.get("error_type", "error")}
        return {"success": True}
    await steps.run("link_preview:record_failure", "record_link_preview_failure",
                    card_id, outcome["error_type"], outcome.get("error", ""))
    return outcome


async def _link_metadata_stage(steps: Steps, card_id: str) -> dict:
    preview = await fetch_link_preview_with_retry(steps, card_id)
    if not preview["success"]:
        raise RuntimeError(f"Link preview failed: {preview['error_type']}")
    return await steps.run("metadata", "generate_metadata", card_id, retry=METADATA_RETRY)


async def _renderables_stage(steps: Steps, card_id: str, with_palette: bool) -> dict:
    rendered = await steps.run("renderables", "generate_renderables", card_id)
    if with_palette:
        await steps.run("palette", "extract_image_palette", card_id)
    return rendered


async def process_card(steps: Steps, card_id: str) -> dict:
    log.info("[PIPELINE] Starting for card %s", card_id)
    snapshot = await steps.run("load_card", "load_card_snapshot", card_id)
    if snapshot is None:
        raise CardNotFoundError(card_id)
    card = Card.from_dict(snapshot)
    failed: list[str] = []

    # 1. Classify
    existing = parse_processing_status(card.processing_status).get(StageKey.CLASSIFY)
    if existing is not None and existing.status is StageState.COMPLETED:
        classification = {"type": card.type.value, "confidence": existing.confidence or 1.0}
        log.info("[PIPELINE] Card %s: classification already completed (%s)", card_id, card.type.value)
    else:
        classification = await _guarded(
            steps, StageKey.CLASSIFY, card_id, failed,
            steps.run("classify", "classify_card", card_id),
        ) or {"type": card.type.value, "confidence": 0.0}
    card_type = CardType(classification["type"])
    await steps.run("settle_status", "settle_stage_statuses", card_id, card_type.value)

    result: dict = {
        "success": True,
        "classification": {"type": card_type.value, "confidence": classification["confidence"]},
    }

    # 2. Type-specific stages
    if should_run_categorize_stage(card_type):
        metadata, categorization = await _gather_stages(
            _guarded(steps, StageKey.METADATA, card_id, failed, _link_metadata_stage(steps, card_id)),
            _guarded(steps, StageKey.CATEGORIZE, card_id, failed,
                     steps.run("categorize", "categorize_card", card_id, retry=LINK_ENRICHMENT_RETRY)),
        )
        if categorization:
            result["categorization"] = {
                "category": categorization["category"],
                "confidence": categorization["confidence"],
            }
        try:
            await steps.run("enqueue_screenshot", "enqueue_screenshot", card_id, retry=START_PIPELINE_RETRY)
        except CardNotFoundError:
            raise
        except Exception as e:
            log.warning("[PIPELINE] Card %s: could not enqueue screenshot: %s", card_id, e)
    elif should_run_renderables_stage(card_type):
        with_palette = card_type is CardType.IMAGE and not is_svg(card)
        metadata, rendered = await _gather_stages(
            _guarded(steps, StageKey.METADATA, card_id, failed,
                     steps.run("metadata", "generate_metadata", card_id, retry=METADATA_RETRY)),
            _guarded(steps, StageKey.RENDERABLES, card_id, failed,
                     _renderables_stage(steps, card_id, with_palette)),
        )
        result["renderables"] = {"thumbnail_generated": bool(rendered and rendered.get("thumbnail_generated"))}
    else:
        metadata = await _guarded(
            steps, StageKey.METADATA, card_id, failed,
            steps.run("metadata", "generate_metadata", card_id, retry=METADATA_RETRY),
        )

    result["metadata"] = metadata or dict(EMPTY_METADATA)
    if failed:
        result["failed_stages"] = failed
    log.info("[PIPELINE] Completed for card %s (%s, failed stages: %s)",
             card_id, card_type.value, ", ".join(failed) or "none")
    return result


@workflow.defn(name="CardProcessingWorkflow")
class CardProcessingWorkflow:
    @workflow.run
    async def run(self, card_id: str) -> dict:
        return await run_recorded(process_card, card_id)
