"""
Activity: Generate Renderables — thumbnails for image, video and document cards.

Dispatch goes through RENDERERS keyed by card type. Images are downscaled
with Pillow; PDFs and videos are rendered in a remote browser session.
SVG images need no raster thumbnail and complete without one.

Thumbnails are best-effort: any failure marks the stage failed and returns
a result instead of raising. A missing card is the only error that escapes.
"""

from __future__ import annotations

import base64
import io
import json
import logging
from typing import Callable

from PIL import Image

import config
from activities.stages import complete_stage, fail_stage, load_card, previous_status
from features.cards.store import CardStore
from models.errors import CardNotFoundError
from models.processing_status import StageKey, now_ms, stage_in_progress
from models.schemas import Card, CardType
from utils.blob_store import LocalBlobStore
from utils.browser import BrowserClient

log = logging.getLogger(__name__)

# (upper size bound in bytes, WebP quality)
WEBP_QUALITY_TIERS: list[tuple[int, int]] = [
    (1_000_000, 70),
    (2_000_000, 65),
    (5_000_000, 60),
    (10_000_000, 55),
    (20_000_000, 50),
]
WEBP_MIN_QUALITY = 40

SVG_MIME_TYPES = ("image/svg+xml",)
SVG_EXTENSIONS = (".svg", ".svgz")


class SkipThumbnail(Exception):
    """Nothing to render. The stage still completes."""


def webp_quality(size_bytes: int) -> int:
    for bound, quality in WEBP_QUALITY_TIERS:
        if size_bytes < bound:
            return quality
    return WEBP_MIN_QUALITY


def is_svg(card: Card) -> bool:
    meta = card.file_metadata
    if meta is None:
        return False
    if meta.mime_type and meta.mime_type.lower() in SVG_MIME_TYPES:
        return True
    return bool(meta.file_name and meta.file_name.lower().endswith(SVG_EXTENSIONS))


def make_image_thumbnail(data: bytes) -> bytes:
    """Downscale to fit THUMBNAIL_MAX_WIDTH x THUMBNAIL_MAX_HEIGHT and encode as WebP."""
    if len(data) < config.THUMBNAIL_MIN_SOURCE_BYTES:
        raise SkipThumbnail(f"source is only {len(data) // 1024}KB")
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        if img.mode not in ("RGB", "RGBA"):
            img = img.convert("RGBA" if "A" in img.getbands() else "RGB")
        img.thumbnail((config.THUMBNAIL_MAX_WIDTH, config.THUMBNAIL_MAX_HEIGHT))
        out = io.BytesIO()
        img.save(out, format="WEBP", quality=webp_quality(len(data)))
    return out.getvalue()


# ── Browser scripts ──────────────────────────────────────────────────

PDF_SCRIPT = """
await page.setViewportSize({ width: %(width)d, height: 700 });
const viewerUrl = 'https://mozilla.github.io/pdf.js/web/viewer.html?file=' + encodeURIComponent(%(url)s);
await page.goto(viewerUrl, { waitUntil: 'networkidle', timeout: 60000 });
await page.waitForSelector('#viewer .page canvas', { timeout: 30000 });
await new Promise(r => setTimeout(r, 2000));
await page.addStyleTag({ content: '.page, .page canvas { box-shadow: none !important; border: none !important; margin: 0 !important; }' });
const canvas = await page.$('#viewer .page canvas');
if (!canvas) { throw new Error('Could not find PDF canvas element'); }
const shot = await canvas.screenshot({ type: 'png' });
return shot.toString('base64');
"""

VIDEO_SCRIPT = """
await page.setViewportSize({ width: 800, height: 600 });
await page.goto('about:blank');
const result = await page.evaluate(async ({ videoUrl, maxWidth, maxHeight }) => {
  return new Promise((resolve) => {
    const video = document.createElement('video');
    video.crossOrigin = 'anonymous';
    video.preload = 'metadata';
    video.muted = true;
    const timer = setTimeout(() => resolve({ error: 'Video loading timeout after 60s' }), 60000);
    video.onerror = () => { clearTimeout(timer); resolve({ error: 'Video load error' }); };
    video.onloadedmetadata = () => { video.currentTime = Math.max(0.1, Math.min(video.duration * 0.1, 5)); };
    video.onseeked = () => {
      clearTimeout(timer);
      const w = video.videoWidth, h = video.videoHeight;
      if (!w || !h) { resolve({ error: 'Could not get video dimensions' }); return; }
      const scale = Math.min(1, maxWidth / w, maxHeight / h);
      const canvas = document.createElement('canvas');
      canvas.width = Math.round(w * scale);
      canvas.height = Math.round(h * scale);
      canvas.getContext('2d').drawImage(video, 0, 0, canvas.width, canvas.height);
      resolve({ data: canvas.toDataURL('image/jpeg', 0.8).split(',')[1] });
    };
    video.src = videoUrl;
  });
}, { videoUrl: %(url)s, maxWidth: %(width)d, maxHeight: %(height)d });
if (result.error) { throw new Error(result.error); }
return result.data;
"""


def _render_in_browser(browser: BrowserClient, script: str) -> bytes:
    result = browser.run_script(script, timeout_sec=config.BROWSER_SESSION_TIMEOUT_SEC)
    return base64.b64decode(result)


# ── Renderers ────────────────────────────────────────────────────────

Renderer = Callable[[Card, LocalBlobStore, BrowserClient], "tuple[bytes, str] | None"]


def render_image(card: Card, blobs: LocalBlobStore, browser: BrowserClient) -> tuple[bytes, str] | None:
    if is_svg(card):
        log.info("[RENDER] Card %s is an SVG, no raster thumbnail needed", card.id)
        return None
    blob = blobs.read(card.file_id)
    if blob is None:
        raise FileNotFoundError(f"File {card.file_id} missing from storage")
    data, _ = blob
    return make_image_thumbnail(data), "image/webp"


def render_document(card: Card, blobs: LocalBlobStore, browser: BrowserClient) -> tuple[bytes, str] | None:
    mime = card.file_metadata.mime_type if card.file_metadata else None
    if mime != "application/pdf":
        raise SkipThumbnail(f"not a PDF (mime type: {mime})")
    url = blobs.get_url(card.file_id)
    if not url:
        raise FileNotFoundError(f"No URL for file {card.file_id}")
    script = PDF_SCRIPT % {"width": config.THUMBNAIL_MAX_WIDTH + 50, "url": json.dumps(url)}
    return _render_in_browser(browser, script), "image/png"


def render_video(card: Card, blobs: LocalBlobStore, browser: BrowserClient) -> tuple[bytes, str] | None:
    url = blobs.get_url(card.file_id)
    if not url:
        raise FileNotFoundError(f"No URL for file {card.file_id}")
    script = VIDEO_SCRIPT % {
        "url": json.dumps(url),
        "width": config.THUMBNAIL_MAX_WIDTH,
        "height": config.THUMBNAIL_MAX_HEIGHT,
    }
    return _render_in_browser(browser, script), "image/jpeg"


RENDERERS: dict[CardType, Renderer] = {
    CardType.IMAGE: render_image,
    CardType.DOCUMENT: render_document,
    CardType.VIDEO: render_video,
}


def generate_renderables(store: CardStore, blobs: LocalBlobStore, browser: BrowserClient, card_id: str) -> dict:
    """
    Run the renderables stage for one card.

    Returns:
        {"thumbnail_generated": bool, "thumbnail_id": "...", "error": "..."}
    """
    log.info("[RENDER] Running for card %s", card_id)
    card = load_card(store, card_id)
    if card.thumbnail_id:
        log.info("[RENDER] Card %s already has a thumbnail, skipping", card_id)
        complete_stage(store, card_id, StageKey.RENDERABLES)
        return {"thumbnail_generated": False, "thumbnail_id": card.thumbnail_id}

    store.merge_stage_status(card_id, StageKey.RENDERABLES,
                             stage_in_progress(now_ms(), previous_status(card, StageKey.RENDERABLES)))
    try:
        renderer = RENDERERS.get(card.type)
        if renderer is None:
            raise SkipThumbnail(f"no renderer for {card.type.value} cards")
        if not card.file_id:
            raise SkipThumbnail("card has no file")
        rendered = renderer(card, blobs, browser)
    except CardNotFoundError:
        raise
    except SkipThumbnail as e:
        log.info("[RENDER] Card %s: skipped (%s)", card_id, e)
        complete_stage(store, card_id, StageKey.RENDERABLES)
        return {"thumbnail_generated": False}
    except Exception as e:
        log.warning("[RENDER] Card %s: thumbnail failed: %s", card_id, e)
        fail_stage(store, card_id, StageKey.RENDERABLES, str(e) or type(e).__name__)
        return {"thumbnail_generated": False, "error": str(e)}

    if rendered is None:
        complete_stage(store, card_id, StageKey.RENDERABLES)
        return {"thumbnail_generated": False}

    data, content_type = rendered
    thumbnail_id = blobs.store(data, content_type)
    store.patch(card_id, thumbnail_id=thumbnail_id)
    complete_stage(store, card_id, StageKey.RENDERABLES)
    log.info("[RENDER] Completed for card %s: %s (%d bytes)", card_id, thumbnail_id, len(data))
    return {"thumbnail_generated": True, "thumbnail_id": thumbnail_id}
