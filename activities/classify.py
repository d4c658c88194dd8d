"""
Activity: Classify Card — derive a card's type from deterministic signals.

Signal order: sticky/heuristic quote, file metadata (mime first, then
shape), URL extension, a bare file id, a URL, palette-like text, text.
"""

from __future__ import annotations

import logging
import re
from urllib.parse import urlparse

from activities.stages import complete_stage, load_card, previous_status, running_stage
from features.cards.store import CardStore
from models.processing_status import StageKey
from models.schemas import Card, CardType, FileMetadata

log = logging.getLogger(__name__)

STRONG_CONFIDENCE = 0.97
MEDIUM_CONFIDENCE = 0.9
PALETTE_CONFIDENCE = 0.88
DEFAULT_CONFIDENCE = 0.7
QUOTE_CONFIDENCE = 0.95
MIN_UPDATE_CONFIDENCE = 0.6
MAX_PALETTE_COLORS = 12

DOCUMENT_MIMES = (
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-powerpoint",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "text/markdown",
    "text/csv",
    "application/rtf",
)

EXTENSION_TYPES: dict[CardType, frozenset[str]] = {
    CardType.IMAGE: frozenset({"png", "jpg", "jpeg", "webp", "gif", "bmp", "svg", "tiff", "avif", "heic"}),
    CardType.VIDEO: frozenset({"mp4", "mov", "m4v", "webm", "mkv", "avi", "mpeg", "mpg", "wmv"}),
    CardType.AUDIO: frozenset({"mp3", "wav", "flac", "m4a", "aac", "ogg", "oga", "opus"}),
    CardType.DOCUMENT: frozenset({
        "pdf", "doc", "docx", "ppt", "pptx", "xls", "xlsx", "csv", "rtf",
        "md", "txt", "pages", "key", "numbers",
    }),
}

PALETTE_HINTS = (
    "palette", "color palette", "brand colors", "brand palette",
    "swatch", "swatches", "colorway",
)

Classification = tuple[CardType, float]


# ── Quotes ───────────────────────────────────────────────────────────

QUOTE_PAIRS = {
    '"': '"', "'": "'", "`": "`", "＂": "＂",
    "“": "”", "„": "“", "‘": "’", "‚": "‘",
    "❝": "❞", "❛": "❜", "«": "»", "‹": "›",
    "「": "」", "『": "』", "《": "》", "〈": "〉", "〝": "〞",
}
ATTRIBUTION_PREFIXES = ("—", "-", "–", "―", "~", "(", "[", "{")
PUNCT_ONLY = re.compile(r"^[\s.,!?;:…·、。！？；：•]+$")


def _trailing_ok(text: str) -> bool:
    trimmed = text.lstrip()
    return not trimmed or trimmed.startswith(ATTRIBUTION_PREFIXES) or bool(PUNCT_ONLY.match(trimmed))


def strip_quotes(content: str | None) -> tuple[str, bool]:
    """Remove decorative surrounding quote marks. Returns (text, removed)."""
    original = content or ""
    working = original.strip()
    removed = False
    while len(working) > 1 and working[0] in QUOTE_PAIRS:
        closing = QUOTE_PAIRS[working[0]]
        idx = next(
            (i for i in range(len(working) - 1, 0, -1)
             if working[i] == closing and _trailing_ok(working[i + 1:])),
            -1,
        )
        if idx == -1:
            break
        working = (working[1:idx] + working[idx + 1:]).strip()
        removed = True
    return (working if removed else original), removed


# ── Palettes ─────────────────────────────────────────────────────────

HEX_COLOR = re.compile(r"#(?:[0-9a-fA-F]{6}|[0-9a-fA-F]{3})\b")
RGB_COLOR = re.compile(r"rgba?\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})")


def _hex_to_rgb(hex_value: str) -> dict:
    h = hex_value.lstrip("#")
    if len(h) == 3:
        h = "".join(c * 2 for c in h)
    return {"r": int(h[0:2], 16), "g": int(h[2:4], 16), "b": int(h[4:6], 16)}


def extract_palette_colors(text: str) -> list[dict]:
    """Hex and rgb() colours in order of appearance, de-duplicated."""
    found: list[tuple[int, str]] = []
    for m in HEX_COLOR.finditer(text):
        rgb = _hex_to_rgb(m.group(0))
        found.append((m.start(), "#{r:02X}{g:02X}{b:02X}".format(**rgb)))
    for m in RGB_COLOR.finditer(text):
        r, g, b = (min(int(v), 255) for v in m.groups())
        found.append((m.start(), f"#{r:02X}{g:02X}{b:02X}"))
    colors: list[dict] = []
    seen: set[str] = set()
    for _, hex_value in sorted(found):
        if hex_value in seen:
            continue
        seen.add(hex_value)
        colors.append({"hex": hex_value, "rgb": _hex_to_rgb(hex_value)})
    return colors


def palette_text(card: Card) -> str:
    sections = []
    if card.content.strip():
        sections.append(card.content)
    if card.notes and card.notes.strip():
        sections.append(f"Notes: {card.notes}")
    if card.tags:
        sections.append(f"Tags: {', '.join(card.tags)}")
    return "\n".join(sections).strip()


def has_palette_hint(card: Card) -> bool:
    text = palette_text(card).lower()
    if any(hint in text for hint in PALETTE_HINTS):
        return True
    return any(re.search(r"palette|color", tag, re.IGNORECASE) for tag in card.tags)


def is_probably_palette(card: Card) -> bool:
    count = len(extract_palette_colors(palette_text(card)))
    return count >= 3 or (count >= 2 and has_palette_hint(card))


# ── Deterministic signals ────────────────────────────────────────────

def extension_from_url(url: str | None) -> str | None:
    if not url:
        return None
    try:
        path = urlparse(url).path
    except ValueError:
        return None
    m = re.search(r"\.([a-zA-Z0-9]+)$", path)
    return m.group(1).lower() if m else None


def classify_by_mime(mime_type: str | None) -> Classification | None:
    if not mime_type:
        return None
    mime = mime_type.lower()
    for prefix, card_type in (("image/", CardType.IMAGE), ("video/", CardType.VIDEO), ("audio/", CardType.AUDIO)):
        if mime.startswith(prefix):
            return card_type, STRONG_CONFIDENCE
    if any(candidate in mime for candidate in DOCUMENT_MIMES):
        return CardType.DOCUMENT, STRONG_CONFIDENCE
    if mime.startswith("text/"):
        return CardType.TEXT, MEDIUM_CONFIDENCE
    return None


def classify_by_extension(ext: str | None) -> Classification | None:
    if not ext:
        return None
    for card_type, extensions in EXTENSION_TYPES.items():
        if ext.lower() in extensions:
            return card_type, MEDIUM_CONFIDENCE
    return None


def classify_by_file_metadata(meta: FileMetadata | None) -> Classification | None:
    if meta is None:
        return None
    by_mime = classify_by_mime(meta.mime_type)
    if by_mime:
        return by_mime
    has_dims = bool(meta.width or meta.height)
    if meta.duration and meta.duration > 0:
        return (CardType.VIDEO if has_dims else CardType.AUDIO), MEDIUM_CONFIDENCE
    if has_dims:
        return CardType.IMAGE, MEDIUM_CONFIDENCE
    return CardType.DOCUMENT, MEDIUM_CONFIDENCE


def deterministic_classify(card: Card) -> Classification:
    result = classify_by_file_metadata(card.file_metadata)
    if result:
        return result
    result = classify_by_extension(extension_from_url(card.url))
    if result:
        return result
    if card.file_id:
        return CardType.DOCUMENT, MEDIUM_CONFIDENCE
    if card.url:
        return CardType.LINK, MEDIUM_CONFIDENCE
    if is_probably_palette(card):
        return CardType.PALETTE, PALETTE_CONFIDENCE
    return CardType.TEXT, DEFAULT_CONFIDENCE


def classify_card_type(card: Card) -> tuple[CardType, float, bool]:
    """Decide (type, confidence, should_update_type) for a card. Pure."""
    if card.type is CardType.QUOTE and not card.url and not card.file_id:
        previous = previous_status(card, StageKey.CLASSIFY)
        confidence = previous.confidence if previous and previous.confidence is not None else QUOTE_CONFIDENCE
        return CardType.QUOTE, confidence, False

    _, removed = strip_quotes(card.content)
    if removed and not card.url and not card.file_id:
        return CardType.QUOTE, QUOTE_CONFIDENCE, card.type is not CardType.QUOTE

    card_type, confidence = deterministic_classify(card)
    content = card.content.strip()
    url_only = bool(card.url) and not card.file_id and (not content or content == card.url)
    if url_only:
        card_type = CardType.LINK
    confidence = max(0.0, min(confidence, 1.0))
    should_update = (url_only and card.type is not CardType.LINK) or (
        card_type is not card.type and confidence >= MIN_UPDATE_CONFIDENCE
    )
    return card_type, confidence, should_update


def classify_card(store: CardStore, card_id: str) -> dict:
    """
    Run the classify stage for one card.

    Returns:
        {"type": "...", "confidence": 0.9}
    """
    log.info("[CLASSIFY] Running for card %s", card_id)
    card = load_card(store, card_id)
    with running_stage(store, card, StageKey.CLASSIFY):
        card_type, confidence, should_update = classify_card_type(card)
        if should_update:
            log.info("[CLASSIFY] Card %s: %s -> %s (%.2f)", card_id, card.type.value, card_type.value, confidence)
            fields: dict = {"type": card_type}
            if card_type is CardType.PALETTE:
                colors = extract_palette_colors(palette_text(card))[:MAX_PALETTE_COLORS]
                if colors and colors != card.colors:
                    fields["colors"] = colors
                    log.info("[CLASSIFY] Card %s: stored %d palette colours", card_id, len(colors))
            store.patch(card_id, **fields)
        complete_stage(store, card_id, StageKey.CLASSIFY, confidence)

    log.info("[CLASSIFY] Completed for card %s: %s (%.2f)", card_id, card_type.value, confidence)
    return {"type": card_type.value, "confidence": confidence}
