"""
Pipeline error taxonomy.

Network failures are classified once, where they happen, into a
FetchFailure. The tiered retry loop branches on that typed value; it never
parses messages. Both error classes are Temporal ApplicationErrors marked
non-retryable, so the engine leaves retry decisions to workflow code.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from temporalio.exceptions import ActivityError, ApplicationError


class FetchErrorKind(str, Enum):
    RATE_LIMIT = "rate_limit"
    HTTP_ERROR = "http_error"
    FATAL = "fatal"


@dataclass(frozen=True)
class FetchFailure:
    kind: FetchErrorKind
    detail: str = ""
    status_code: int | None = None

    @property
    def retryable(self) -> bool:
        return self.kind is not FetchErrorKind.FATAL

    def to_dict(self) -> dict:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "FetchFailure":
        return cls(
            kind=FetchErrorKind(data.get("kind", FetchErrorKind.FATAL)),
            detail=data.get("detail", ""),
            status_code=data.get("status_code"),
        )


class RetryableFetchError(ApplicationError):
    """A classified network failure raised at the fetch boundary."""

    def __init__(self, failure: FetchFailure):
        super().__init__(
            f"{failure.kind.value}: {failure.detail}",
            failure.to_dict(),
            type="RetryableFetchError",
            non_retryable=True,
        )
        self.failure = failure


class CardNotFoundError(ApplicationError):
    def __init__(self, card_id: str):
        super().__init__(
            f"Card {card_id} not found",
            card_id,
            type="CardNotFoundError",
            non_retryable=True,
        )
        self.card_id = card_id


class StageError(Exception):
    """A stage could not produce its artifact. Recorded, never fatal."""


def retryable_failure(err: BaseException) -> FetchFailure | None:
    """Return the FetchFailure carried by ``err`` if it is a retryable one.

    Accepts the error raised directly (in-process) or wrapped by the engine
    as an ActivityError whose cause carries the failure details.
    """
    failure = _carried_failure(err)
    if failure is None or not failure.retryable:
        return None
    return failure


def _carried_failure(err: BaseException) -> FetchFailure | None:
    if isinstance(err, RetryableFetchError):
        return err.failure
    if isinstance(err, ActivityError) and err.cause is not None:
        return _carried_failure(err.cause)
    if isinstance(err, ApplicationError) and err.type == "RetryableFetchError" and err.details:
        first: Any = err.details[0]
        if isinstance(first, dict):
            return FetchFailure.from_dict(first)
    return None


def unwrap_activity_error(err: ActivityError) -> BaseException:
    """Map an engine-wrapped activity failure back to the domain error."""
    cause = err.cause
    if isinstance(cause, ApplicationError):
        if cause.type == "CardNotFoundError":
            card_id = cause.details[0] if cause.details else "unknown"
            return CardNotFoundError(str(card_id))
        failure = _carried_failure(cause)
        if failure is not None:
            return RetryableFetchError(failure)
    return err
