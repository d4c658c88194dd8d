"""
Activity: Capture Screenshot — a viewport JPEG of a link card's page.

Runs inside the tiered retry loop. Any failure is raised as a classified
RetryableFetchError: rate limiting from the browser service or the site
becomes ``rate_limit``, everything else ``http_error``.
"""

from __future__ import annotations

import base64
import io
import json
import logging

from PIL import Image

import config
from activities.link_metadata import normalize_link_url
from activities.stages import load_card
from features.cards.store import CardStore
from models.errors import RetryableFetchError
from models.processing_status import now_ms
from models.schemas import CardType
from utils.blob_store import LocalBlobStore
from utils.browser import BrowserClient
from utils.http import classify_http_error

log = logging.getLogger(__name__)

JPEG_QUALITY = 80

SCREENSHOT_SCRIPT = """
await page.setViewportSize({ width: %(width)d, height: %(height)d });
await page.goto(%(url)s, { waitUntil: 'domcontentloaded', timeout: 45000 });
await page.waitForLoadState('networkidle', { timeout: 15000 }).catch(() => {});
const shot = await page.screenshot({ type: 'jpeg', quality: %(quality)d, fullPage: false });
return shot.toString('base64');
"""


def capture_screenshot(store: CardStore, blobs: LocalBlobStore, browser: BrowserClient,
                       card_id: str, attempt: int = 0) -> dict:
    """
    Capture and store a screenshot for a link card.

    Returns:
        {"status": "captured" | "skipped", "screenshot_id": "...", "reason": "..."}
    """
    card = load_card(store, card_id)
    if card.type is not CardType.LINK or not card.url:
        return {"status": "skipped", "reason": "not_a_link"}
    preview = card.link_preview or {}
    if preview.get("status") != "success":
        return {"status": "skipped", "reason": "preview_not_ready"}
    if preview.get("screenshot_blob_id") and attempt == 0:
        return {"status": "skipped", "reason": "already_captured",
                "screenshot_id": preview["screenshot_blob_id"]}

    url = normalize_link_url(preview.get("final_url") or card.url)
    width, height = config.SCREENSHOT_VIEWPORT
    script = SCREENSHOT_SCRIPT % {
        "url": json.dumps(url), "width": width, "height": height, "quality": JPEG_QUALITY,
    }
    log.info("[SCREENSHOT] Capturing %s for card %s (attempt %d)", url, card_id, attempt + 1)
    try:
        data = base64.b64decode(browser.run_script(script))
    except Exception as e:
        failure = classify_http_error(e)
        log.warning("[SCREENSHOT] Card %s: %s", card_id, failure.detail)
        raise RetryableFetchError(failure) from e

    with Image.open(io.BytesIO(data)) as img:
        shot_width, shot_height = img.size
    blob_id = blobs.store(data, "image/jpeg")
    store.merge_metadata(card_id, "link_preview", {
        **preview,
        "screenshot_blob_id": blob_id,
        "screenshot_width": shot_width,
        "screenshot_height": shot_height,
        "screenshot_updated_at": now_ms(),
    })
    log.info("[SCREENSHOT] Card %s: stored %s (%dx%d)", card_id, blob_id, shot_width, shot_height)
    return {"status": "captured", "screenshot_id": blob_id}
