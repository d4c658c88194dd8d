"""
Temporal Workflow: Screenshot

Captures a link card's screenshot under the tiered retry budget. The
outcome is returned, not raised: callers branch on ``success``.
"""

from __future__ import annotations

import logging

from temporalio import workflow

with workflow.unsafe.imports_passed_through():
    from workflows.engine import Steps, run_recorded
    from workflows.retry import run_with_tiered_retry

log = logging.getLogger(__name__)


async def capture_link_screenshot(steps: Steps, card_id: str) -> dict:
    """
    Returns:
        {"success": true} or {"success": false, "error_type": "rate_limit"}
    """
    async def attempt(n: int) -> dict:
        return await steps.run(f"screenshot:{n}", "capture_screenshot", card_id, n)

    outcome = await run_with_tiered_retry(attempt, steps.sleep)
    if outcome["success"]:
        log.info("[SCREENSHOT] Card %s: %s after %d attempt(s)",
                 card_id, outcome["result"].get("status"), outcome["attempts"])
        return {"success": True}
    log.warning("[SCREENSHOT] Card %s: gave up (%s)", card_id, outcome["error_type"])
    return {"success": False, "error_type": outcome["error_type"]}


@workflow.defn(name="ScreenshotWorkflow")
class ScreenshotWorkflow:
    @workflow.run
    async def run(self, card_id: str) -> dict:
        return await run_recorded(capture_link_screenshot, card_id)
