"""
Activity: Generate Metadata — AI tags, summary and (for audio) transcript.

What the model sees depends on the card type: text-like cards send their
content, link cards send the stored preview, images go through the vision
model and audio is transcribed first.
"""

from __future__ import annotations

import logging
from typing import Protocol

from activities.stages import complete_stage, load_card, running_stage
from features.cards.store import CardStore
from models.processing_status import StageKey
from models.schemas import Card, CardType, MetadataStatus
from utils.blob_store import LocalBlobStore

log = logging.getLogger(__name__)

TYPE_CONFIDENCE: dict[CardType, float] = {
    CardType.TEXT: 0.95,
    CardType.IMAGE: 0.9,
    CardType.AUDIO: 0.85,
    CardType.LINK: 0.9,
    CardType.DOCUMENT: 0.85,
    CardType.QUOTE: 0.95,
    CardType.PALETTE: 0.9,
    CardType.VIDEO: 0.85,
}


class AIClient(Protocol):
    def tag_and_summarize(self, kind: str, text: str) -> dict: ...

    def describe_image(self, image_url: str, context: str = "") -> dict: ...

    def transcribe(self, audio: bytes, file_name: str = "audio.mp3") -> str: ...


def _card_text(card: Card) -> str:
    parts = [card.content.strip()]
    if card.notes:
        parts.append(f"Notes: {card.notes}")
    if card.tags:
        parts.append(f"Tags: {', '.join(card.tags)}")
    if card.file_metadata and card.file_metadata.file_name:
        parts.append(f"File name: {card.file_metadata.file_name}")
    return "\n".join(p for p in parts if p)


def _link_text(card: Card) -> str:
    preview = card.link_preview or {}
    parts = [
        f"URL: {card.url}",
        f"Title: {preview.get('title', '')}",
        f"Site: {preview.get('site_name', '')}",
        f"Description: {preview.get('description', '')}",
    ]
    if card.content.strip() and card.content.strip() != card.url:
        parts.append(card.content.strip())
    return "\n".join(parts)


class AIMetadataGenerator:
    """Produces {tags, summary, transcript} for a card by type."""

    def __init__(self, ai: AIClient, blobs: LocalBlobStore):
        self.ai = ai
        self.blobs = blobs

    def generate(self, card: Card) -> dict:
        handler = {
            CardType.IMAGE: self._image,
            CardType.AUDIO: self._audio,
            CardType.LINK: self._link,
        }.get(card.type, self._text)
        return handler(card)

    def _text(self, card: Card) -> dict:
        text = _card_text(card)
        if not text:
            return {"tags": [], "summary": ""}
        return self.ai.tag_and_summarize(card.type.value, text)

    def _link(self, card: Card) -> dict:
        return self.ai.tag_and_summarize("link", _link_text(card))

    def _image(self, card: Card) -> dict:
        url = self.blobs.get_url(card.file_id) if card.file_id else None
        if not url:
            return self._text(card)
        return self.ai.describe_image(url, _card_text(card))

    def _audio(self, card: Card) -> dict:
        blob = self.blobs.read(card.file_id) if card.file_id else None
        if blob is None:
            return self._text(card)
        data, _ = blob
        name = card.file_metadata.file_name if card.file_metadata and card.file_metadata.file_name else "audio.mp3"
        transcript = self.ai.transcribe(data, name)
        text = "\n".join(p for p in (transcript, _card_text(card)) if p)
        result = self.ai.tag_and_summarize("audio", text) if text else {"tags": [], "summary": ""}
        return {**result, "transcript": transcript or None}


def generate_metadata(store: CardStore, generator: AIMetadataGenerator, card_id: str) -> dict:
    """
    Run the AI half of the metadata stage for one card.

    Returns:
        {"ai_tags_count": 5, "has_summary": true, "has_transcript": false}
    """
    log.info("[METADATA] Running for card %s", card_id)
    card = load_card(store, card_id)
    if card.metadata_status is MetadataStatus.COMPLETED and card.ai_summary and card.ai_tags:
        log.info("[METADATA] Card %s already has AI metadata, skipping", card_id)
        complete_stage(store, card_id, StageKey.METADATA, TYPE_CONFIDENCE[card.type])
        return _summary(card.ai_tags, card.ai_summary, card.ai_transcript)

    with running_stage(store, card, StageKey.METADATA):
        try:
            generated = generator.generate(card)
            tags = list(generated.get("tags") or [])
            summary = generated.get("summary") or None
            transcript = generated.get("transcript") or None
            if not tags and not summary:
                raise ValueError(f"No AI metadata generated for card {card_id}")
        except Exception:
            store.patch(card_id, metadata_status=MetadataStatus.FAILED)
            raise
        store.patch(
            card_id,
            ai_tags=tags,
            ai_summary=summary,
            ai_transcript=transcript,
            metadata_status=MetadataStatus.COMPLETED,
        )
        complete_stage(store, card_id, StageKey.METADATA, TYPE_CONFIDENCE[card.type])

    log.info("[METADATA] Completed for card %s: %d tags", card_id, len(tags))
    return _summary(tags, summary, transcript)


def _summary(tags: list[str], summary: str | None, transcript: str | None) -> dict:
    return {
        "ai_tags_count": len(tags),
        "has_summary": bool(summary),
        "has_transcript": bool(transcript),
    }
