"""
Shared plumbing for stage runners: card loading and stage status writes.

Each runner writes ``in_progress`` when it starts and exactly one terminal
status when it ends. ``running_stage`` writes ``failed`` for any exception
escaping the block and re-raises so the engine can retry the activity.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from features.cards.store import CardStore
from models.errors import CardNotFoundError
from models.processing_status import (
    StageKey,
    StageState,
    StageStatus,
    build_initial_processing_status,
    now_ms,
    parse_processing_status,
    stage_completed,
    stage_failed,
    stage_in_progress,
    with_stage_status,
)
from models.schemas import Card, CardType

log = logging.getLogger(__name__)


def load_card(store: CardStore, card_id: str) -> Card:
    card = store.get(card_id)
    if card is None:
        log.warning("Card %s not found", card_id)
        raise CardNotFoundError(card_id)
    return card


def previous_status(card: Card, stage: StageKey) -> StageStatus | None:
    return parse_processing_status(card.processing_status).get(stage)


def complete_stage(store: CardStore, card_id: str, stage: StageKey, confidence: float = 1.0) -> None:
    store.merge_stage_status(card_id, stage, stage_completed(now_ms(), confidence))


def fail_stage(store: CardStore, card_id: str, stage: StageKey, error: str) -> None:
    card = store.get(card_id)
    previous = previous_status(card, stage) if card else None
    store.merge_stage_status(card_id, stage, stage_failed(now_ms(), error, previous))


@contextmanager
def running_stage(store: CardStore, card: Card, stage: StageKey) -> Iterator[None]:
    store.merge_stage_status(card.id, stage, stage_in_progress(now_ms(), previous_status(card, stage)))
    try:
        yield
    except CardNotFoundError:
        raise
    except Exception as e:
        log.error("[%s] Card %s failed: %s", stage.value.upper(), card.id, e)
        fail_stage(store, card.id, stage, str(e) or type(e).__name__)
        raise


def settle_stage_statuses(store: CardStore, card_id: str, card_type: CardType | str) -> list[str]:
    """Bring every stage key in line with the card's classified type.

    The classify key belongs to the classify stage and is not touched.
    Missing keys get their initial status and a still-pending stage that
    does not apply to ``card_type`` is completed. Stages that apply are
    left as they are. Returns the stage keys that were written.
    """
    card = load_card(store, card_id)
    now = now_ms()
    current = parse_processing_status(card.processing_status)
    initial = build_initial_processing_status(now, card_type, classification_status=current.get(StageKey.CLASSIFY))

    settled = current
    written: list[str] = []
    for stage, status in initial.items():
        if stage is StageKey.CLASSIFY:
            continue
        existing = settled.get(stage)
        if existing is None or (existing.status is StageState.PENDING and status.status is StageState.COMPLETED):
            settled = with_stage_status(settled, stage, status)
            store.merge_stage_status(card_id, stage, status)
            written.append(stage.value)

    if written:
        log.info("Card %s: settled stages %s for type %s", card_id, ", ".join(written), CardType(card_type).value)
    return written
