"""
Activity: Delete Card With Assets — hard delete of a soft-deleted card.
"""

from __future__ import annotations

import logging

import config
from features.cards.store import CardStore, cleanup_cutoff, is_cleanup_eligible
from models.processing_status import now_ms
from models.schemas import Card
from utils.blob_store import LocalBlobStore
from utils.resources import log_release_failure

log = logging.getLogger(__name__)


def card_blob_ids(card: Card) -> list[str]:
    ids = [card.file_id, card.thumbnail_id]
    preview = card.link_preview or {}
    ids += [preview.get("image_blob_id"), preview.get("screenshot_blob_id")]
    return [blob_id for blob_id in ids if blob_id]


def find_cleanup_candidates(store: CardStore, limit: int | None = None) -> list[str]:
    cutoff = cleanup_cutoff(now_ms(), config.CLEANUP_RETENTION_DAYS)
    return store.find_pending_cleanup(cutoff, limit or config.CLEANUP_BATCH_SIZE)


def delete_card_with_assets(store: CardStore, blobs: LocalBlobStore, card_id: str) -> bool:
    """Delete the card's blobs (best-effort) and then the record.

    Eligibility is checked again so a card restored since the sweep was
    queried is left alone. Returns whether the record was deleted.
    """
    card = store.get(card_id)
    if card is None:
        return False
    cutoff = cleanup_cutoff(now_ms(), config.CLEANUP_RETENTION_DAYS)
    if not is_cleanup_eligible(card, cutoff):
        log.info("[CLEANUP] Card %s is no longer eligible, skipping", card_id)
        return False

    for blob_id in card_blob_ids(card):
        try:
            blobs.delete(blob_id)
        except Exception as e:
            log_release_failure("blob", blob_id, e)

    deleted = store.delete(card_id)
    log.info("[CLEANUP] Card %s deleted: %s", card_id, deleted)
    return deleted
