"""
Step execution for workflow logic, under Temporal or in-process.

Workflow logic is written once against the ``Steps`` interface:

    result = await steps.run("metadata", "generate_metadata", card_id, retry=METADATA_RETRY)

``TemporalSteps`` turns that into ``workflow.execute_activity`` with a
RetryPolicy. Workflow classes run their logic through ``run_recorded``,
which writes the run's outcome to the journal as its last activity.
``InProcessSteps`` calls the activity method directly with the same retry
policy and memoizes each successful step in the run journal, so a resumed
run skips the steps it already finished.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Protocol

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError, ApplicationError

from features.runs.journal import MISSING, RunJournal
from features.runs.models import RunKey
from models.errors import unwrap_activity_error

log = logging.getLogger(__name__)

STEP_TIMEOUT = timedelta(minutes=5)


@dataclass(frozen=True)
class StepRetry:
    """Engine-level retry for one step: attempts, first delay, backoff."""
    maximum_attempts: int
    initial_interval_ms: int
    backoff: float

    def delay_ms(self, retry_number: int) -> int:
        """Delay before retry ``retry_number`` (1 = first retry)."""
        return int(self.initial_interval_ms * self.backoff ** (retry_number - 1))

    def to_temporal(self) -> RetryPolicy:
        return RetryPolicy(
            initial_interval=timedelta(milliseconds=self.initial_interval_ms),
            backoff_coefficient=self.backoff,
            maximum_attempts=self.maximum_attempts,
        )


METADATA_RETRY = StepRetry(8, 400, 1.8)
LINK_METADATA_RETRY = StepRetry(5, 5000, 2.0)
LINK_ENRICHMENT_RETRY = StepRetry(5, 1200, 1.6)
START_PIPELINE_RETRY = StepRetry(5, 2000, 2.0)
DEFAULT_RETRY = StepRetry(3, 1000, 2.0)


class Steps(Protocol):
    async def run(self, name: str, activity: str, *args: Any, retry: StepRetry | None = None) -> Any: ...

    async def sleep(self, ms: int) -> None: ...


def is_non_retryable(err: BaseException) -> bool:
    return isinstance(err, ApplicationError) and err.non_retryable


# ── Temporal ─────────────────────────────────────────────────────────

class TemporalSteps:
    """Runs steps as Temporal activities. Only valid inside a workflow."""

    async def run(self, name: str, activity: str, *args: Any, retry: StepRetry | None = None) -> Any:
        try:
            return await workflow.execute_activity(
                activity,
                args=list(args),
                start_to_close_timeout=STEP_TIMEOUT,
                retry_policy=(retry or DEFAULT_RETRY).to_temporal(),
            )
        except ActivityError as e:
            raise unwrap_activity_error(e) from e

    async def sleep(self, ms: int) -> None:
        # Durable timer inside a workflow.
        await asyncio.sleep(ms / 1000)


# ── In-process ───────────────────────────────────────────────────────

Sleep = Callable[[int], Awaitable[None]]


async def asyncio_sleep_ms(ms: int) -> None:
    await asyncio.sleep(ms / 1000)


class InProcessSteps:
    """Runs steps by calling activity methods on ``activities`` directly."""

    def __init__(self, activities: Any, journal: RunJournal | None = None,
                 run_key: RunKey | None = None, sleep: Sleep | None = None):
        self.activities = activities
        self.journal = journal
        self.run_key = run_key
        self._sleep = sleep or asyncio_sleep_ms

    async def run(self, name: str, activity: str, *args: Any, retry: StepRetry | None = None) -> Any:
        if self.journal is not None and self.run_key is not None:
            cached = self.journal.cached_step(self.run_key, name)
            if cached is not MISSING:
                log.info("[STEP] %s: replaying cached result", name)
                return cached

        fn = getattr(self.activities, activity)
        policy = retry or DEFAULT_RETRY
        attempt = 1
        while True:
            try:
                result = await self._invoke(fn, args)
                break
            except Exception as e:
                if is_non_retryable(e) or attempt >= policy.maximum_attempts:
                    raise
                delay = policy.delay_ms(attempt)
                log.warning("[STEP] %s attempt %d/%d failed: %s (retrying in %dms)",
                            name, attempt, policy.maximum_attempts, e, delay)
                await self._sleep(delay)
                attempt += 1

        if self.journal is not None and self.run_key is not None:
            self.journal.record_step(self.run_key, name, result)
        return result

    async def sleep(self, ms: int) -> None:
        await self._sleep(ms)

    @staticmethod
    async def _invoke(fn: Callable[..., Any], args: tuple) -> Any:
        if inspect.iscoroutinefunction(fn):
            return await fn(*args)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))


async def run_recorded(logic: Callable[..., Awaitable[Any]], *args: Any) -> Any:
    """Run workflow logic under Temporal and write its outcome to the run journal."""
    steps = TemporalSteps()
    workflow_id = workflow.info().workflow_id
    try:
        result = await logic(steps, *args)
    except Exception as e:
        await _record_outcome(steps, workflow_id, None, str(e) or type(e).__name__)
        raise
    await _record_outcome(steps, workflow_id, result, None)
    return result


async def _record_outcome(steps: TemporalSteps, workflow_id: str, result: Any, error: str | None) -> None:
    try:
        await steps.run("record_outcome", "record_run_outcome", workflow_id, result, error)
    except Exception as e:
        log.warning("[STEP] Could not record outcome of %s: %s", workflow_id, e)
