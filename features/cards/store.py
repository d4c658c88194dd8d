"""
Card persistence interface and the in-memory implementation.

The pipeline only needs a narrow slice of card storage: point reads,
field patches, per-key merges into nested maps, two bounded scans and a
hard delete. Per-key merges are what let concurrent stages of one run
write to the same card without clobbering each other.
"""

from __future__ import annotations

import copy
import threading
from typing import Any, Protocol

from models.processing_status import (
    StageKey,
    StageStatus,
    parse_processing_status,
    serialize_processing_status,
    with_stage_status,
)
from models.schemas import Card, to_jsonable

DAY_MS = 24 * 60 * 60 * 1000


class CardStore(Protocol):
    def get(self, card_id: str) -> Card | None: ...

    def insert(self, card: Card) -> None: ...

    def patch(self, card_id: str, **fields: Any) -> bool: ...

    def merge_stage_status(self, card_id: str, stage: StageKey, status: StageStatus) -> bool: ...

    def merge_metadata(self, card_id: str, key: str, value: dict | None) -> bool: ...

    def find_missing_ai(self, limit: int) -> list[str]: ...

    def find_pending_cleanup(self, cutoff_ms: int, limit: int) -> list[str]: ...

    def delete(self, card_id: str) -> bool: ...


def cleanup_cutoff(now: int, retention_days: int) -> int:
    return now - retention_days * DAY_MS


def is_cleanup_eligible(card: Card, cutoff_ms: int) -> bool:
    """Soft-deleted before the cutoff. Live cards are never eligible."""
    if not card.is_deleted or card.deleted_at is None:
        return False
    return card.deleted_at < cutoff_ms


def is_missing_ai(card: Card) -> bool:
    if card.is_deleted:
        return False
    return not card.ai_summary or not card.ai_tags


class InMemoryCardStore:
    """Thread-safe dict-backed store, used in-process and in tests."""

    def __init__(self, cards: list[Card] | None = None):
        self._cards: dict[str, Card] = {}
        self._lock = threading.Lock()
        for card in cards or []:
            self.insert(card)

    def get(self, card_id: str) -> Card | None:
        with self._lock:
            card = self._cards.get(card_id)
            return copy.deepcopy(card) if card else None

    def insert(self, card: Card) -> None:
        with self._lock:
            self._cards[card.id] = copy.deepcopy(card)

    def patch(self, card_id: str, **fields: Any) -> bool:
        with self._lock:
            card = self._cards.get(card_id)
            if card is None:
                return False
            for name, value in fields.items():
                if not hasattr(card, name):
                    raise AttributeError(f"Card has no field {name!r}")
                setattr(card, name, copy.deepcopy(value))
            return True

    def merge_stage_status(self, card_id: str, stage: StageKey, status: StageStatus) -> bool:
        with self._lock:
            card = self._cards.get(card_id)
            if card is None:
                return False
            card.processing_status = serialize_processing_status(
                with_stage_status(parse_processing_status(card.processing_status), stage, status)
            )
            return True

    def merge_metadata(self, card_id: str, key: str, value: dict | None) -> bool:
        with self._lock:
            card = self._cards.get(card_id)
            if card is None:
                return False
            card.metadata = {**card.metadata, key: to_jsonable(value)}
            return True

    def find_missing_ai(self, limit: int) -> list[str]:
        with self._lock:
            ids = [c.id for c in self._cards.values() if is_missing_ai(c)]
        return ids[:limit]

    def find_pending_cleanup(self, cutoff_ms: int, limit: int) -> list[str]:
        with self._lock:
            ids = [c.id for c in self._cards.values() if is_cleanup_eligible(c, cutoff_ms)]
        return ids[:limit]

    def delete(self, card_id: str) -> bool:
        with self._lock:
            return self._cards.pop(card_id, None) is not None
