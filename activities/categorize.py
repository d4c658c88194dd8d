"""
Activity: Categorize Link — resolve a link card's source category and
collect category facts.

Resolution is rule based (domain, path, provider hint, keyword heuristic,
fallback). The page is then scraped once: a host provider reads the raw
selector map, and JSON-LD structured data fills in category facts.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from bs4 import BeautifulSoup

import config
from activities.providers import (
    ProviderEnrichment,
    RawSelectorMap,
    build_raw_selector_map,
    enrich_provider,
    format_date,
)
from activities.stages import complete_stage, load_card, running_stage
from features.cards.store import DAY_MS, CardStore
from models.errors import RetryableFetchError
from models.processing_status import StageKey, now_ms
from models.schemas import Card, CardType
from utils.http import fetch_html

log = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.6
DOMAIN_CONFIDENCE = 0.98
PATH_CONFIDENCE = 0.8
PROVIDER_CONFIDENCE = 0.72
HEURISTIC_CONFIDENCE = 0.58
FALLBACK_CONFIDENCE = 0.35

STRUCTURED_DATA_MAX_ITEMS = 8
STRUCTURED_DATA_FIELDS = (
    "name", "url", "image", "@type", "sameAs", "datePublished", "dateModified",
    "startDate", "endDate", "author", "creator", "publisher", "headline",
    "description", "aggregateRating", "recipeIngredient", "recipeInstructions",
    "offers", "genre", "keywords", "duration", "performer", "byArtist",
)

TRACKING_PARAMS = frozenset({
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
    "fbclid", "gclid", "igshid", "mc_cid", "mc_eid", "mkt_tok",
})


@dataclass(frozen=True)
class DomainRule:
    domain: str
    category: str
    provider: str | None = None
    path_patterns: tuple[str, ...] = ()
    confidence: float = DOMAIN_CONFIDENCE


DOMAIN_RULES: tuple[DomainRule, ...] = (
    DomainRule("github.com", "software", "github"),
    DomainRule("gitlab.com", "software"),
    DomainRule("bitbucket.org", "software"),
    DomainRule("npmjs.com", "software"),
    DomainRule("pypi.org", "software"),
    DomainRule("rubygems.org", "software"),
    DomainRule("imdb.com", "movie", "imdb"),
    DomainRule("letterboxd.com", "movie"),
    DomainRule("goodreads.com", "book", "goodreads"),
    DomainRule("audible.com", "book"),
    DomainRule("amazon.com", "product", "amazon"),
    DomainRule("amazon.co.uk", "product", "amazon"),
    DomainRule("amazon.in", "product", "amazon"),
    DomainRule("dribbble.com", "design_portfolio", "dribbble"),
    DomainRule("behance.net", "design_portfolio"),
    DomainRule("figma.com", "design_portfolio", "figma"),
    DomainRule("youtube.com", "tv", "youtube"),
    DomainRule("youtu.be", "tv", "youtube"),
    DomainRule("vimeo.com", "tv"),
    DomainRule("medium.com", "article", "medium"),
    DomainRule("substack.com", "article", "substack"),
    DomainRule("dev.to", "article"),
    DomainRule("open.spotify.com", "podcast", "spotify", (r"^/episode/", r"^/show/"), 0.9),
    DomainRule("open.spotify.com", "music", "spotify"),
    DomainRule("spotify.com", "music", "spotify"),
    DomainRule("podcasts.apple.com", "podcast", "apple"),
    DomainRule("music.apple.com", "music", "apple"),
    DomainRule("netflix.com", "tv"),
    DomainRule("hulu.com", "tv"),
    DomainRule("itch.io", "software"),
    DomainRule("eventbrite.com", "event"),
    DomainRule("lu.ma", "event"),
    DomainRule("arxiv.org", "research"),
    DomainRule("doi.org", "research"),
)

PATH_RULES: tuple[tuple[str, str], ...] = (
    (r"\brecipes?\b", "recipe"),
    (r"\bpodcasts?\b|/episode/", "podcast"),
    (r"\bcourses?\b|tutorial|bootcamp|lesson|learn", "course"),
    (r"\bresearch\b|arxiv|doi\.org|paper\b", "research"),
    (r"\bevent\b|webinar|meetup|conference", "event"),
    (r"shop|store|product|listing|item|cart", "product"),
    (r"music|album|track|mixtape", "music"),
    (r"movie|film|trailer", "movie"),
    (r"series|season|episode", "tv"),
)

PROVIDER_CATEGORY_HINTS: dict[str, str] = {
    "youtube": "tv",
    "youtu": "tv",
    "spotify": "music",
    "soundcloud": "music",
    "bandcamp": "music",
    "github": "software",
    "gitlab": "software",
    "bitbucket": "software",
    "npm": "software",
    "pypi": "software",
    "dribbble": "design_portfolio",
    "behance": "design_portfolio",
    "figma": "design_portfolio",
    "medium": "article",
    "substack": "article",
    "devto": "article",
    "imdb": "movie",
    "goodreads": "book",
    "kindle": "book",
}

HEURISTIC_KEYWORDS: tuple[tuple[str, str], ...] = (
    (r"blog|post", "article"),
    (r"news|press", "news"),
    (r"docs?/|documentation|changelog", "software"),
    (r"design|portfolio", "design_portfolio"),
)


@dataclass(frozen=True)
class CategoryResolution:
    category: str
    confidence: float
    reason: str
    provider: str | None = None
    rule: str | None = None


# ── URL handling ─────────────────────────────────────────────────────

def normalize_url(value: str | None) -> str | None:
    """Drop tracking params, fragment and trailing slashes for cache comparison."""
    if not value:
        return None
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return value.strip() or None
    if not parsed.scheme or not parsed.netloc:
        return value.strip() or None
    query = urlencode([(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
                       if k not in TRACKING_PARAMS])
    path = parsed.path.rstrip("/")
    return urlunparse((parsed.scheme, parsed.netloc, path, parsed.params, query, ""))


def _host_matches(hostname: str, domain: str) -> bool:
    return hostname == domain or hostname.endswith(f".{domain}")


def _apex(hostname: str) -> str:
    parts = hostname.split(".")
    return hostname if len(parts) <= 2 else ".".join(parts[-2:])


def resolve_link_category(url: str, site_name: str | None = None, title: str | None = None) -> CategoryResolution:
    try:
        parsed = urlparse(url)
        hostname = (parsed.hostname or "").lower()
        path = parsed.path or ""
    except ValueError:
        hostname, path = "", ""

    provider_match = next(
        ((provider, category) for provider, category in PROVIDER_CATEGORY_HINTS.items() if provider in hostname),
        None,
    ) if hostname else None

    if hostname:
        apex = _apex(hostname)
        for rule in DOMAIN_RULES:
            if not (_host_matches(hostname, rule.domain) or _host_matches(apex, rule.domain)):
                continue
            if rule.path_patterns and not any(re.search(p, path, re.IGNORECASE) for p in rule.path_patterns):
                continue
            return CategoryResolution(
                rule.category, rule.confidence, "domain_rule",
                rule.provider or (provider_match[0] if provider_match else None), rule.domain,
            )

    for pattern, category in PATH_RULES:
        if path and re.search(pattern, path, re.IGNORECASE):
            return CategoryResolution(
                category, PATH_CONFIDENCE, "path_rule",
                provider_match[0] if provider_match else None, pattern,
            )

    if provider_match:
        provider, category = provider_match
        return CategoryResolution(category, PROVIDER_CONFIDENCE, "provider_mapping", provider, provider)

    ambient = f"{hostname} {path} {site_name or ''} {title or ''}".lower()
    for pattern, category in HEURISTIC_KEYWORDS:
        if re.search(pattern, ambient, re.IGNORECASE):
            return CategoryResolution(category, HEURISTIC_CONFIDENCE, "heuristic")

    return CategoryResolution("other", FALLBACK_CONFIDENCE, "fallback")


def detect_provider(url: str | None, hint: str | None = None) -> str | None:
    if hint:
        return hint
    if not url:
        return None
    hostname = (urlparse(url).hostname or "").lower()
    if not hostname:
        return None
    for needle, name in (
        ("github.com", "github"), ("goodreads.com", "goodreads"), ("amazon.", "amazon"),
        ("imdb.com", "imdb"), ("netflix.com", "netflix"), ("behance.net", "behance"),
        ("dribbble.com", "dribbble"), ("spotify.com", "spotify"), ("apple.com", "apple"),
        ("youtube.com", "youtube"), ("youtu.be", "youtube"), ("medium.com", "medium"),
        ("substack.com", "substack"),
    ):
        if needle in hostname:
            return name
    return hostname


# ── Structured data (JSON-LD) ────────────────────────────────────────

def _as_list(value) -> list:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def parse_structured_data(soup: BeautifulSoup) -> list[dict]:
    entities: list[dict] = []
    seen: set[str] = set()
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        text = (script.string or script.get_text() or "").strip()
        if not text:
            continue
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError as e:
            log.warning("[CATEGORIZE] Failed to parse JSON-LD block: %s", e)
            continue
        items = parsed.get("@graph", [parsed]) if isinstance(parsed, dict) else _as_list(parsed)
        for item in items:
            if not isinstance(item, dict):
                continue
            fingerprint = json.dumps({k: item.get(k) for k in ("@type", "name", "url")}, sort_keys=True, default=str)
            if fingerprint in seen:
                continue
            seen.add(fingerprint)
            entities.append(item)
            if len(entities) >= STRUCTURED_DATA_MAX_ITEMS:
                return entities
    return entities


def _find_by_type(entities: list[dict], types: tuple[str, ...]) -> dict | None:
    wanted = {t.lower() for t in types}
    for entity in entities:
        entity_types = {t.lower() for t in _as_list(entity.get("@type")) if isinstance(t, str)}
        if entity_types & wanted:
            return entity
    return None


def _names(value) -> list[str]:
    names = []
    for entry in _as_list(value):
        if isinstance(entry, str):
            names.append(entry)
        elif isinstance(entry, dict) and isinstance(entry.get("name"), str):
            names.append(entry["name"])
    return names


def _text(value) -> str | None:
    if isinstance(value, str):
        return value or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, dict) and value.get("name"):
        return str(value["name"])
    return None


def _image(value) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, list) and value:
        return _image(value[0])
    if isinstance(value, dict) and isinstance(value.get("url"), str):
        return value["url"]
    return None


def format_duration(value: str | None) -> str | None:
    if not value:
        return None
    m = re.fullmatch(r"PT(?:(\d+)H)?(?:(\d+)M)?(?:(\d+)S)?", value.strip(), re.IGNORECASE)
    if not m:
        return None
    parts = [f"{n}{unit}" for n, unit in zip(m.groups(), ("h", "m", "s")) if n]
    return " ".join(parts) or None


def _rating_count(entity: dict) -> str | None:
    rating = entity.get("aggregateRating") or {}
    if not isinstance(rating, dict):
        return None
    return _text(rating.get("ratingCount") or rating.get("reviewCount"))


def _rating_value(entity: dict) -> str | None:
    rating = entity.get("aggregateRating") or {}
    return _text(rating.get("ratingValue")) if isinstance(rating, dict) else None


def _facts_for(category: str, e: dict) -> list[tuple[str, str | None]]:
    if category == "book":
        return [
            ("Authors", ", ".join(_names(e.get("author"))) or None),
            ("Rating", _rating_value(e)),
            ("Reviews", _rating_count(e)),
            ("Length", _text(e.get("numberOfPages") or e.get("bookFormat"))),
            ("Published", format_date(_text(e.get("datePublished")))),
        ]
    if category == "movie":
        return [
            ("Rating", _rating_value(e)),
            ("Votes", _rating_count(e)),
            ("Release", format_date(_text(e.get("datePublished") or e.get("dateCreated")))),
        ]
    if category == "tv":
        return [
            ("Seasons", _text(e.get("numberOfSeasons") or e.get("seasonNumber"))),
            ("Episodes", _text(e.get("numberOfEpisodes"))),
            ("First aired", format_date(_text(e.get("datePublished") or e.get("dateCreated")))),
        ]
    if category in ("article", "news"):
        published = format_date(_text(e.get("datePublished")))
        updated = format_date(_text(e.get("dateModified")))
        return [("Published", published), ("Updated", updated if updated != published else None)]
    if category == "podcast":
        return [
            ("Duration", format_duration(_text(e.get("duration")))),
            ("Series", _text(e.get("partOfSeries")) or _text(e.get("isPartOf"))),
        ]
    if category == "music":
        return [
            ("Artist", ", ".join(_names(e.get("byArtist") or e.get("creator") or e.get("performer"))) or None),
            ("Length", format_duration(_text(e.get("duration")))),
        ]
    if category == "product":
        offers = e.get("offers")
        offer = offers[0] if isinstance(offers, list) and offers else offers
        price = None
        if isinstance(offer, dict) and offer.get("price") is not None:
            price = f"{offer['price']} {offer.get('priceCurrency') or ''}".strip()
        return [("Price", price), ("Brand", _text(e.get("brand")))]
    if category == "recipe":
        timing = " · ".join(
            f"{label} {value}" for label, value in (
                ("Prep", format_duration(_text(e.get("prepTime")))),
                ("Cook", format_duration(_text(e.get("cookTime")))),
                ("Total", format_duration(_text(e.get("totalTime")))),
            ) if value
        )
        ingredients = _names(e.get("recipeIngredient"))
        return [
            ("Servings", _text(e.get("recipeYield"))),
            ("Timing", timing or None),
            ("Ingredients", ", ".join(ingredients[:6]) or None),
        ]
    if category == "course":
        return [("Provider", _text(e.get("provider")) or _text(e.get("publisher")))]
    if category == "research":
        return [
            ("Authors", ", ".join(_names(e.get("author"))) or None),
            ("Published", format_date(_text(e.get("datePublished")))),
        ]
    if category == "event":
        start = format_date(_text(e.get("startDate")))
        end = format_date(_text(e.get("endDate")))
        dates = f"{start} → {end}" if start and end and start != end else start or end
        location = e.get("location")
        place = _text(location.get("name")) if isinstance(location, dict) else None
        return [("Dates", dates), ("Location", place or _text(location))]
    if category == "software":
        return [
            ("Platform", _text(e.get("operatingSystem"))),
            ("Category", _text(e.get("applicationCategory"))),
        ]
    if category == "design_portfolio":
        return [("Creator", _text(e.get("author")) or _text(e.get("creator")))]
    return []


STRUCTURED_TYPES: dict[str, tuple[str, ...]] = {
    "book": ("Book",),
    "movie": ("Movie", "VideoObject", "CreativeWork"),
    "tv": ("TVSeries", "TVEpisode", "VideoObject"),
    "article": ("NewsArticle", "Article", "BlogPosting"),
    "news": ("NewsArticle", "Article", "BlogPosting"),
    "podcast": ("PodcastEpisode", "PodcastSeries", "AudioObject"),
    "music": ("MusicRecording", "MusicAlbum", "MusicPlaylist"),
    "product": ("Product", "Offer"),
    "recipe": ("Recipe",),
    "course": ("Course", "EducationalOccupationalProgram"),
    "research": ("ScholarlyArticle", "ResearchArticle", "Report"),
    "event": ("Event", "MusicEvent", "BusinessEvent"),
    "software": ("SoftwareApplication", "SoftwareSourceCode"),
    "design_portfolio": ("CreativeWork", "CollectionPage", "Portfolio"),
}


def enrich_with_structured_data(category: str, entities: list[dict]) -> ProviderEnrichment | None:
    types = STRUCTURED_TYPES.get(category)
    entity = _find_by_type(entities, types) if types else None
    if entity is None:
        return None
    facts = [{"label": label, "value": value} for label, value in _facts_for(category, entity) if value]
    raw = {k: entity[k] for k in STRUCTURED_DATA_FIELDS if k in entity}
    return ProviderEnrichment(image_url=_image(entity.get("image")), facts=facts, raw=raw or None)


def merge_facts(target: list[dict], incoming: list[dict] | None) -> None:
    seen = {f"{f['label']}::{f['value']}" for f in target}
    for fact in incoming or []:
        key = f"{fact['label']}::{fact['value']}"
        if key not in seen:
            target.append(fact)
            seen.add(key)


# ── Stage runner ─────────────────────────────────────────────────────

def _successful_preview(card: Card) -> dict | None:
    preview = card.link_preview
    return preview if preview and preview.get("status") == "success" else None


def _scrape(url: str) -> tuple[RawSelectorMap, list[dict]]:
    try:
        page = fetch_html(url)
    except RetryableFetchError as e:
        log.warning("[CATEGORIZE] Could not scrape %s: %s", url, e)
        return {}, []
    soup = BeautifulSoup(page.html, "lxml")
    return build_raw_selector_map(soup), parse_structured_data(soup)


def build_link_category(card: Card, source_url: str, resolution: CategoryResolution,
                        raw_map: RawSelectorMap, entities: list[dict], now: int) -> dict:
    preview = _successful_preview(card) or {}
    image_url = preview.get("image_url")
    facts: list[dict] = []
    provider = detect_provider(source_url, resolution.provider)
    raw: dict = {}

    enrichment = enrich_provider(provider, resolution.category, raw_map)
    if enrichment:
        image_url = image_url or enrichment.image_url
        merge_facts(facts, enrichment.facts)
    if provider:
        raw["provider"] = {"name": provider, **((enrichment.raw or {}) if enrichment else {})}

    structured = enrich_with_structured_data(resolution.category, entities)
    if structured:
        image_url = image_url or structured.image_url
        merge_facts(facts, structured.facts)
        raw["structured"] = structured.raw
        raw["structured_meta"] = {"fetched_at": now}

    metadata = {
        "category": resolution.category,
        "confidence": resolution.confidence,
        "reason": resolution.reason,
        "detected_provider": provider,
        "fetched_at": now,
        "source_url": source_url,
        "raw": raw or None,
    }
    if image_url:
        metadata["image_url"] = image_url
    if facts:
        metadata["facts"] = facts
    return metadata


def _summary(metadata: dict) -> dict:
    result = {
        "category": metadata["category"],
        "confidence": metadata.get("confidence") or DEFAULT_CONFIDENCE,
        "facts_count": len(metadata.get("facts") or []),
    }
    if metadata.get("image_url"):
        result["image_url"] = metadata["image_url"]
    return result


def categorize_card(store: CardStore, card_id: str) -> dict:
    """
    Run the categorize stage for one link card.

    Returns:
        {"category": "...", "confidence": 0.98, "image_url": "...", "facts_count": 3}
    """
    log.info("[CATEGORIZE] Running for card %s", card_id)
    card = load_card(store, card_id)
    with running_stage(store, card, StageKey.CATEGORIZE):
        if card.type is not CardType.LINK:
            raise ValueError(f"Card {card_id} is not a link card (type: {card.type.value})")
        preview = _successful_preview(card) or {}
        raw_source = card.url or preview.get("final_url") or preview.get("url") or ""
        source_url = normalize_url(raw_source) or raw_source
        if not source_url:
            raise ValueError(f"Card {card_id} has no URL to categorize")

        now = now_ms()
        existing = card.link_category
        fresh = bool(existing and existing.get("fetched_at")
                     and now - existing["fetched_at"] < config.LINK_CATEGORY_TTL_DAYS * DAY_MS)
        if existing and existing.get("category") and fresh \
                and normalize_url(existing.get("source_url")) == source_url:
            log.info("[CATEGORIZE] Card %s: cached category %s", card_id, existing["category"])
            metadata = existing
        else:
            resolution = resolve_link_category(
                source_url, preview.get("site_name"), preview.get("title") or preview.get("description"),
            )
            log.info("[CATEGORIZE] Card %s: %s via %s (%.2f)",
                     card_id, resolution.category, resolution.reason, resolution.confidence)
            raw_map, entities = _scrape(source_url)
            metadata = build_link_category(card, source_url, resolution, raw_map, entities, now)
            store.merge_metadata(card_id, "link_category", metadata)

        result = _summary(metadata)
        complete_stage(store, card_id, StageKey.CATEGORIZE, result["confidence"])

    log.info("[CATEGORIZE] Completed for card %s: %s (%d facts)", card_id, result["category"], result["facts_count"])
    return result
