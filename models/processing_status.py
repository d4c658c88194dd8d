"""
Processing status: the per-card record of pipeline stage progress.

One StageStatus per stage key. Builders and transition helpers are pure;
nothing in this module touches storage.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from models.schemas import CardType


class StageKey(str, Enum):
    CLASSIFY = "classify"
    CATEGORIZE = "categorize"
    METADATA = "metadata"
    RENDERABLES = "renderables"


class StageState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


ALL_STAGES = (StageKey.CLASSIFY, StageKey.CATEGORIZE, StageKey.METADATA, StageKey.RENDERABLES)

# Which optional stages apply to each card type. Classify and metadata run
# for every type unless a caller overrides them.
STAGE_APPLICABILITY: dict[CardType, dict[StageKey, bool]] = {
    CardType.TEXT: {StageKey.CATEGORIZE: False, StageKey.RENDERABLES: False},
    CardType.LINK: {StageKey.CATEGORIZE: True, StageKey.RENDERABLES: False},
    CardType.IMAGE: {StageKey.CATEGORIZE: False, StageKey.RENDERABLES: True},
    CardType.VIDEO: {StageKey.CATEGORIZE: False, StageKey.RENDERABLES: True},
    CardType.AUDIO: {StageKey.CATEGORIZE: False, StageKey.RENDERABLES: False},
    CardType.DOCUMENT: {StageKey.CATEGORIZE: False, StageKey.RENDERABLES: True},
    CardType.PALETTE: {StageKey.CATEGORIZE: False, StageKey.RENDERABLES: False},
    CardType.QUOTE: {StageKey.CATEGORIZE: False, StageKey.RENDERABLES: False},
}


@dataclass(frozen=True)
class StageStatus:
    """State of a single pipeline stage. Timestamps are epoch milliseconds."""
    status: StageState
    started_at: int | None = None
    completed_at: int | None = None
    confidence: float | None = None
    error: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"status": self.status.value}
        if self.started_at is not None:
            data["startedAt"] = self.started_at
        if self.completed_at is not None:
            data["completedAt"] = self.completed_at
        if self.confidence is not None:
            data["confidence"] = self.confidence
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Mapping) -> "StageStatus":
        return cls(
            status=StageState(data["status"]),
            started_at=data.get("startedAt"),
            completed_at=data.get("completedAt"),
            confidence=data.get("confidence"),
            error=data.get("error"),
        )


ProcessingStatus = dict[StageKey, StageStatus]


def now_ms() -> int:
    return int(time.time() * 1000)


# ── Transition helpers ───────────────────────────────────────────────

def stage_pending() -> StageStatus:
    return StageStatus(status=StageState.PENDING)


def stage_completed(now: int, confidence: float = 1.0) -> StageStatus:
    return StageStatus(status=StageState.COMPLETED, completed_at=now, confidence=confidence)


def stage_in_progress(now: int, previous: StageStatus | None = None) -> StageStatus:
    """Start an attempt. A prior attempt's start time and confidence survive."""
    return StageStatus(
        status=StageState.IN_PROGRESS,
        started_at=previous.started_at if previous and previous.started_at is not None else now,
        confidence=previous.confidence if previous else None,
    )


def stage_failed(now: int, error: str, previous: StageStatus | None = None) -> StageStatus:
    return StageStatus(
        status=StageState.FAILED,
        started_at=previous.started_at if previous and previous.started_at is not None else now,
        completed_at=now,
        confidence=previous.confidence if previous else None,
        error=error,
    )


def with_stage_status(
    current: Mapping[StageKey, StageStatus] | None,
    stage: StageKey | str,
    status: StageStatus,
) -> ProcessingStatus:
    """Return a copy of ``current`` with exactly one stage replaced or added."""
    updated: ProcessingStatus = dict(current or {})
    updated[StageKey(stage)] = status
    return updated


# ── Applicability ────────────────────────────────────────────────────

def should_run_renderables_stage(card_type: CardType | str) -> bool:
    return STAGE_APPLICABILITY[CardType(card_type)][StageKey.RENDERABLES]


def should_run_categorize_stage(card_type: CardType | str) -> bool:
    return STAGE_APPLICABILITY[CardType(card_type)][StageKey.CATEGORIZE]


def build_initial_processing_status(
    now: int,
    card_type: CardType | str,
    classification_status: StageStatus | None = None,
    metadata_stage_needed: bool = True,
    categorize_stage_override: bool | None = None,
    renderables_stage_override: bool | None = None,
) -> ProcessingStatus:
    """Build a complete status map for a new card.

    Every stage key is present. Stages that do not apply to the card type
    (or that an override switches off) start out completed so consumers
    never see a missing key.
    """
    run_categorize = (
        categorize_stage_override
        if categorize_stage_override is not None
        else should_run_categorize_stage(card_type)
    )
    run_renderables = (
        renderables_stage_override
        if renderables_stage_override is not None
        else should_run_renderables_stage(card_type)
    )
    return {
        StageKey.CLASSIFY: classification_status or stage_pending(),
        StageKey.CATEGORIZE: stage_pending() if run_categorize else stage_completed(now),
        StageKey.METADATA: stage_pending() if metadata_stage_needed else stage_completed(now),
        StageKey.RENDERABLES: stage_pending() if run_renderables else stage_completed(now),
    }


# ── Serialization ────────────────────────────────────────────────────

def serialize_processing_status(status: Mapping[StageKey, StageStatus] | None) -> dict:
    return {StageKey(k).value: v.to_dict() for k, v in (status or {}).items()}


def parse_processing_status(data: Mapping | None) -> ProcessingStatus:
    parsed: ProcessingStatus = {}
    for key, value in (data or {}).items():
        try:
            stage = StageKey(key)
        except ValueError:
            continue
        parsed[stage] = StageStatus.from_dict(value)
    return parsed
