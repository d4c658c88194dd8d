"""
Activity: Fetch Link Preview — scrape a link card's page into a preview.

Field preference is OG tags, then platform (twitter/name) tags, then plain
HTML (<title>, meta description). URLs found on the page are resolved
against the page URL; a value that cannot be resolved is kept as found.

Network failures leave this module as RetryableFetchError so the tiered
retry loop in the workflow decides what happens next.
"""

from __future__ import annotations

import io
import logging
import re
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup
from PIL import Image

from activities.stages import load_card
from features.cards.store import CardStore
from models.processing_status import now_ms
from models.schemas import CardType
from utils.blob_store import LocalBlobStore
from utils.http import fetch_bytes, fetch_html

log = logging.getLogger(__name__)

# (selector, attribute) where attribute "text" means the element text.
Source = tuple[str, str]

TITLE_SOURCES: list[Source] = [
    ("meta[property='og:title']", "content"),
    ("meta[name='og:title']", "content"),
    ("meta[name='twitter:title']", "content"),
    ("meta[property='twitter:title']", "content"),
    ("meta[name='title']", "content"),
    ("head > title", "text"),
]

DESCRIPTION_SOURCES: list[Source] = [
    ("meta[property='og:description']", "content"),
    ("meta[name='og:description']", "content"),
    ("meta[name='twitter:description']", "content"),
    ("meta[property='twitter:description']", "content"),
    ("meta[name='description']", "content"),
    ("meta[property='description']", "content"),
]

IMAGE_SOURCES: list[Source] = [
    ("meta[property='og:image:secure_url']", "content"),
    ("meta[property='og:image:url']", "content"),
    ("meta[property='og:image']", "content"),
    ("meta[name='og:image']", "content"),
    ("meta[property='twitter:image']", "content"),
    ("meta[name='twitter:image']", "content"),
    ("meta[property='twitter:image:src']", "content"),
    ("meta[name='twitter:image:src']", "content"),
    ("link[rel='image_src']", "href"),
    ("meta[name='msapplication-TileImage']", "content"),
]

FAVICON_SOURCES: list[Source] = [
    ("link[rel='icon']", "href"),
    ("link[rel='shortcut icon']", "href"),
    ("link[rel='apple-touch-icon']", "href"),
    ("link[rel='apple-touch-icon-precomposed']", "href"),
    ("link[rel='mask-icon']", "href"),
]

SITE_NAME_SOURCES: list[Source] = [
    ("meta[property='og:site_name']", "content"),
    ("meta[name='og:site_name']", "content"),
    ("meta[name='application-name']", "content"),
    ("meta[name='publisher']", "content"),
]

AUTHOR_SOURCES: list[Source] = [
    ("meta[name='author']", "content"),
    ("meta[property='article:author']", "content"),
    ("meta[name='byl']", "content"),
    ("meta[property='book:author']", "content"),
]

PUBLISHER_SOURCES: list[Source] = [
    ("meta[property='article:publisher']", "content"),
    ("meta[name='publisher']", "content"),
    ("meta[property='og:site_name']", "content"),
]

PUBLISHED_TIME_SOURCES: list[Source] = [
    ("meta[property='article:published_time']", "content"),
    ("meta[name='article:published_time']", "content"),
    ("meta[name='pubdate']", "content"),
    ("meta[name='publication_date']", "content"),
    ("meta[name='date']", "content"),
]

CANONICAL_SOURCES: list[Source] = [
    ("link[rel='canonical']", "href"),
    ("meta[property='og:url']", "content"),
    ("meta[name='og:url']", "content"),
]

FINAL_URL_SOURCES: list[Source] = [
    ("meta[property='og:url']", "content"),
    ("meta[name='og:url']", "content"),
    ("meta[property='al:web:url']", "content"),
    ("meta[property='twitter:url']", "content"),
    ("meta[name='twitter:url']", "content"),
]

TITLE_MAX = 512
DESCRIPTION_MAX = 2048
SHORT_TEXT_MAX = 256
PUBLISHED_AT_MAX = 128


def _value(soup: BeautifulSoup, source: Source) -> str | None:
    selector, attribute = source
    for element in soup.select(selector):
        if attribute == "text":
            value = element.get_text(" ", strip=True)
        else:
            raw = element.get(attribute)
            value = " ".join(raw) if isinstance(raw, list) else raw
        if value and value.strip():
            return value.strip()
    return None


def first_from_sources(soup: BeautifulSoup, sources: list[Source]) -> str | None:
    for source in sources:
        value = _value(soup, source)
        if value:
            return value
    return None


def sanitize_text(value: str | None, max_length: int) -> str | None:
    if not value:
        return None
    normalized = re.sub(r"\s+", " ", value).strip()
    return normalized[:max_length] or None


def resolve_url(base_url: str, value: str | None) -> str | None:
    """Resolve ``value`` against ``base_url``; unresolvable values come back raw."""
    if not value:
        return None
    trimmed = value.strip()
    if not trimmed or re.match(r"^(javascript|mailto):", trimmed, re.IGNORECASE):
        return None
    if trimmed.lower().startswith("data:"):
        return trimmed
    try:
        resolved = urljoin(base_url, trimmed)
        scheme = urlparse(resolved).scheme
    except ValueError:
        return trimmed
    if scheme not in ("http", "https"):
        return trimmed
    return resolved


def normalize_link_url(url: str) -> str:
    trimmed = url.strip()
    if not re.match(r"^[a-z][a-z0-9+.-]*://", trimmed, re.IGNORECASE):
        trimmed = f"https://{trimmed}"
    return trimmed


def parse_link_preview(page_url: str, html: str) -> dict:
    """Extract preview fields from a page. Pure; no network."""
    soup = BeautifulSoup(html, "lxml")
    canonical = resolve_url(page_url, first_from_sources(soup, CANONICAL_SOURCES))
    final_url = resolve_url(page_url, first_from_sources(soup, FINAL_URL_SOURCES)) or canonical or page_url
    published_at = first_from_sources(soup, PUBLISHED_TIME_SOURCES)

    preview = {
        "title": sanitize_text(first_from_sources(soup, TITLE_SOURCES), TITLE_MAX),
        "description": sanitize_text(first_from_sources(soup, DESCRIPTION_SOURCES), DESCRIPTION_MAX),
        "image_url": resolve_url(page_url, first_from_sources(soup, IMAGE_SOURCES)),
        "favicon_url": resolve_url(page_url, first_from_sources(soup, FAVICON_SOURCES)),
        "site_name": sanitize_text(first_from_sources(soup, SITE_NAME_SOURCES), SHORT_TEXT_MAX),
        "author": sanitize_text(first_from_sources(soup, AUTHOR_SOURCES), SHORT_TEXT_MAX),
        "publisher": sanitize_text(first_from_sources(soup, PUBLISHER_SOURCES), SHORT_TEXT_MAX),
        "published_at": published_at[:PUBLISHED_AT_MAX] if published_at else None,
        "canonical_url": canonical,
        "final_url": final_url,
    }
    return {k: v for k, v in preview.items() if v is not None}


def store_preview_image(blobs: LocalBlobStore, image_url: str) -> dict | None:
    """Copy the OG image into blob storage. Best-effort."""
    try:
        data, content_type = fetch_bytes(image_url)
        if not content_type.startswith("image/"):
            log.warning("[LINK_META] OG image skipped, content type %s for %s", content_type, image_url)
            return None
        with Image.open(io.BytesIO(data)) as img:
            width, height = img.size
        blob_id = blobs.store(data, content_type)
    except Exception as e:
        log.warning("[LINK_META] OG image fetch failed for %s: %s", image_url, e)
        return None
    return {
        "image_blob_id": blob_id,
        "image_width": width,
        "image_height": height,
        "image_updated_at": now_ms(),
    }


def fetch_link_preview(store: CardStore, blobs: LocalBlobStore, card_id: str, attempt: int = 0) -> dict:
    """
    Fetch and store the link preview for a link card.

    Returns:
        {"status": "success" | "skipped" | "failed", "url": "...", ...}
    """
    card = load_card(store, card_id)
    if card.type is not CardType.LINK or not card.url:
        log.warning("[LINK_META] Card %s is not a link with a URL", card_id)
        record_preview_failure(store, card_id, card.url or "", "invalid_card", "Card is not a link with a URL")
        return {"status": "failed", "error_type": "invalid_card"}

    existing = card.link_preview
    if existing and existing.get("status") == "success":
        log.info("[LINK_META] Card %s already has a preview, skipping", card_id)
        return {"status": "skipped", "url": existing.get("url"), "final_url": existing.get("final_url")}

    url = normalize_link_url(card.url)
    log.info("[LINK_META] Fetching %s for card %s (attempt %d)", url, card_id, attempt + 1)
    page = fetch_html(url)
    preview = parse_link_preview(page.final_url or url, page.html)
    if preview.get("image_url", "").startswith("http"):
        stored = store_preview_image(blobs, preview["image_url"])
        if stored:
            preview.update(stored)

    preview.update({"status": "success", "url": url, "fetched_at": now_ms()})
    store.merge_metadata(card_id, "link_preview", preview)
    log.info("[LINK_META] Card %s: preview stored (%s)", card_id, preview.get("title", "untitled"))
    return {"status": "success", "url": url, "final_url": preview.get("final_url"), "title": preview.get("title")}


def record_preview_failure(store: CardStore, card_id: str, url: str, error_type: str, message: str = "") -> None:
    store.merge_metadata(card_id, "link_preview", {
        "status": "error",
        "url": url,
        "fetched_at": now_ms(),
        "error": {"type": error_type, "message": message},
    })

