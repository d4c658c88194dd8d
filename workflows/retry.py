"""
Tiered retry for network-bound steps (link preview fetch, screenshots).

Each retryable error kind has its own budget and fixed delay, and the
counters are independent: a run may spend its one ``http_error`` retry
and then still use all three ``rate_limit`` retries. Exhausting a budget
ends the loop with ``{"success": False, "error_type": kind}``. Errors that
carry no retryable FetchFailure are re-raised untouched.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from models.errors import FetchErrorKind, retryable_failure

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierBudget:
    max_retries: int
    delay_ms: int


TIER_BUDGETS: dict[FetchErrorKind, TierBudget] = {
    FetchErrorKind.RATE_LIMIT: TierBudget(max_retries=3, delay_ms=15_000),
    FetchErrorKind.HTTP_ERROR: TierBudget(max_retries=1, delay_ms=5_000),
}


async def run_with_tiered_retry(
    attempt: Callable[[int], Awaitable[Any]],
    sleep: Callable[[int], Awaitable[None]],
    budgets: dict[FetchErrorKind, TierBudget] | None = None,
) -> dict:
    """
    Call ``attempt(n)`` (n = 0, 1, ...) until it succeeds or a budget runs out.

    Returns:
        {"success": True, "attempts": 2, "result": ...}
        {"success": False, "attempts": 4, "error_type": "rate_limit", "error": "..."}
    """
    budgets = budgets or TIER_BUDGETS
    used = {kind: 0 for kind in budgets}
    n = 0
    while True:
        try:
            result = await attempt(n)
            return {"success": True, "attempts": n + 1, "result": result}
        except Exception as e:
            failure = retryable_failure(e)
            if failure is None or failure.kind not in budgets:
                raise
            budget = budgets[failure.kind]
            if used[failure.kind] >= budget.max_retries:
                log.warning("[RETRY] %s budget exhausted after %d attempts: %s",
                            failure.kind.value, n + 1, failure.detail)
                return {
                    "success": False,
                    "attempts": n + 1,
                    "error_type": failure.kind.value,
                    "error": failure.detail,
                }
            used[failure.kind] += 1
            log.info("[RETRY] %s (%d/%d), next attempt in %dms",
                     failure.kind.value, used[failure.kind], budget.max_retries, budget.delay_ms)
            await sleep(budget.delay_ms)
            n += 1
