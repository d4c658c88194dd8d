"""
Activity: Extract Image Palette — dominant colours of an image card.
"""

from __future__ import annotations

import io
import logging

from PIL import Image

import config
from activities.stages import load_card
from features.cards.store import CardStore
from models.schemas import CardType
from utils.blob_store import LocalBlobStore

log = logging.getLogger(__name__)

SAMPLE_SIZE = (128, 128)


def dominant_colors(data: bytes, max_colors: int | None = None) -> list[dict]:
    limit = max_colors or config.PALETTE_MAX_COLORS
    with Image.open(io.BytesIO(data)) as img:
        small = img.convert("RGB")
        small.thumbnail(SAMPLE_SIZE)
        quantized = small.quantize(colors=limit)
        palette = quantized.getpalette() or []
        counts = sorted(quantized.getcolors() or [], reverse=True)

    total = sum(count for count, _ in counts) or 1
    colors = []
    for count, index in counts[:limit]:
        r, g, b = palette[index * 3: index * 3 + 3]
        colors.append({
            "hex": f"#{r:02X}{g:02X}{b:02X}",
            "rgb": {"r": r, "g": g, "b": b},
            "share": round(count / total, 3),
        })
    return colors


def extract_image_palette(store: CardStore, blobs: LocalBlobStore, card_id: str) -> dict:
    """Store up to PALETTE_MAX_COLORS colours on an image card. Best-effort."""
    card = load_card(store, card_id)
    if card.type is not CardType.IMAGE or not card.file_id:
        return {"colors_count": 0}
    if card.colors:
        return {"colors_count": len(card.colors)}
    try:
        blob = blobs.read(card.file_id)
        if blob is None:
            raise FileNotFoundError(card.file_id)
        colors = dominant_colors(blob[0])
    except Exception as e:
        log.warning("[PALETTE] Card %s: extraction failed: %s", card_id, e)
        return {"colors_count": 0, "error": str(e)}
    store.patch(card_id, colors=colors)
    log.info("[PALETTE] Card %s: %d colours", card_id, len(colors))
    return {"colors_count": len(colors)}
