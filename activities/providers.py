"""
Host-specific enrichment providers for link categorisation.

A provider reads a raw selector map (CSS selector -> first matching
element's text and attributes) and returns facts, an optional image and a
raw payload. Providers never fetch anything themselves.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime

from bs4 import BeautifulSoup


@dataclass
class RawEntry:
    text: str | None = None
    attributes: dict[str, str] = field(default_factory=dict)


RawSelectorMap = dict[str, RawEntry]


@dataclass
class ProviderEnrichment:
    image_url: str | None = None
    facts: list[dict] = field(default_factory=list)
    raw: dict | None = None


# ── Common helpers ───────────────────────────────────────────────────

def normalize_whitespace(value: str | None) -> str | None:
    if not value:
        return None
    trimmed = re.sub(r"\s+", " ", value).strip()
    return trimmed or None


def get_raw_text(raw_map: RawSelectorMap, selector: str) -> str | None:
    entry = raw_map.get(selector)
    return normalize_whitespace(entry.text) if entry else None


def get_raw_attribute(raw_map: RawSelectorMap, selector: str, attribute: str) -> str | None:
    entry = raw_map.get(selector)
    if entry is None:
        return None
    needle = attribute.lower()
    for name, value in entry.attributes.items():
        if name.lower() == needle:
            return normalize_whitespace(value)
    return None


def _numeric_token(value: str | None) -> str | None:
    trimmed = normalize_whitespace(value)
    if not trimmed:
        return None
    for segment in trimmed.split(" "):
        if re.search(r"\d", segment.replace(",", "").replace(".", "")):
            return segment
    return trimmed


def parse_count(value: str | None) -> int | None:
    token = _numeric_token(value)
    if not token:
        return None
    lower = token.lower()
    multiplier = 1_000 if lower.endswith("k") else 1_000_000 if lower.endswith("m") else 1
    numeric = lower if multiplier == 1 else lower[:-1]
    try:
        return round(float(numeric.replace(",", "")) * multiplier)
    except ValueError:
        return None


def format_count_string(value: str | None) -> str | None:
    """Expand k/M suffixes and add thousands separators: 1.5k becomes 1,500."""
    number = parse_count(value)
    if number is not None:
        return f"{number:,}"
    return normalize_whitespace(value)


def format_rating(value: str | None) -> str | None:
    if not value:
        return None
    match = re.match(r"\s*[-+]?\d*\.?\d+", value)
    if not match:
        return normalize_whitespace(value)
    return f"{float(match.group(0)):.2f}"


def format_date(value: str | None) -> str | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return f"{parsed:%b} {parsed.day}, {parsed.year}"


def _first_attribute(raw_map: RawSelectorMap, selectors: list[str], attribute: str) -> str | None:
    for selector in selectors:
        value = get_raw_attribute(raw_map, selector, attribute)
        if value:
            return value
    return None


def _compact(data: dict) -> dict | None:
    kept = {k: v for k, v in data.items() if v is not None}
    return kept or None


# ── Dribbble ─────────────────────────────────────────────────────────

DRIBBBLE_STAT_SELECTORS = {
    "likes": [
        "a[href$='/likes']",
        "[data-testid='shot-likes']",
        "[data-testid='shot-likes-count']",
        ".shot-stats [data-label='Likes']",
    ],
    "views": [
        "a[href$='/views']",
        "[data-testid='shot-views']",
        "[data-testid='shot-views-count']",
        ".shot-stats [data-label='Views']",
    ],
    "comments": [
        "a[href$='/comments']",
        "[data-testid='shot-comments']",
        "[data-testid='shot-comments-count']",
        ".shot-stats [data-label='Comments']",
    ],
}
DRIBBBLE_DESIGNER_SELECTORS = ["meta[name='twitter:creator']", "a[rel='author']", ".shot-byline a"]
KEYWORD_SELECTORS = ["meta[name='keywords']", "meta[name='parsely-tags']", "meta[property='article:tag']"]
IMAGE_SELECTORS = [
    "meta[property='og:image:secure_url']",
    "meta[property='og:image']",
    "meta[name='og:image']",
    "meta[name='twitter:image']",
    "meta[property='twitter:image']",
]
MAX_KEYWORDS = 5


def _selector_value(raw_map: RawSelectorMap, selector: str) -> str | None:
    if selector.startswith("meta["):
        return get_raw_attribute(raw_map, selector, "content")
    return get_raw_text(raw_map, selector)


def _twitter_stats(raw_map: RawSelectorMap) -> dict[str, str]:
    stats: dict[str, str] = {}
    for index in range(1, 5):
        label = get_raw_attribute(raw_map, f"meta[name='twitter:label{index}']", "content")
        value = get_raw_attribute(raw_map, f"meta[name='twitter:data{index}']", "content")
        if not (label and value):
            continue
        lowered = label.lower()
        key = next((k for k, word in (("likes", "like"), ("views", "view"), ("comments", "comment"))
                    if word in lowered), None)
        if key and key not in stats:
            stats[key] = value
    return stats


def _stat(raw_map: RawSelectorMap, selectors: list[str], seed: str | None) -> tuple[str | None, str | None]:
    """Returns (raw, formatted)."""
    for value in [seed, *(_selector_value(raw_map, s) for s in selectors)]:
        normalized = normalize_whitespace(value)
        if normalized:
            return value, format_count_string(normalized) or normalized
    return None, None


def _sanitize_designer(value: str | None) -> str | None:
    normalized = normalize_whitespace(value)
    if not normalized:
        return None
    normalized = re.sub(r"\s+on\s+dribbble$", "", normalized.lstrip("@").strip(), flags=re.IGNORECASE)
    return normalized.strip() or None


def _designer(raw_map: RawSelectorMap) -> tuple[str | None, str | None]:
    candidates = [
        get_raw_attribute(raw_map, "meta[name='author']", "content")
        or get_raw_attribute(raw_map, "meta[property='article:author']", "content"),
        *(_selector_value(raw_map, s) for s in DRIBBBLE_DESIGNER_SELECTORS),
    ]
    title = get_raw_attribute(raw_map, "meta[property='og:title']", "content") or get_raw_text(raw_map, "head > title")
    if title:
        by_index = title.lower().rfind(" by ")
        if by_index != -1:
            tail = title[by_index + 4:]
            tail = re.sub(r"\|\s*dribbble$", "", tail, flags=re.IGNORECASE)
            tail = re.sub(r"\son\s+dribbble$", "", tail, flags=re.IGNORECASE)
            candidates.insert(0, normalize_whitespace(tail))
    for candidate in candidates:
        display = _sanitize_designer(candidate)
        if display:
            return display, candidate
    return None, None


def _keywords(raw_map: RawSelectorMap) -> list[str]:
    text = _first_attribute(raw_map, KEYWORD_SELECTORS, "content") or get_raw_text(raw_map, "a[rel='tag']")
    unique: list[str] = []
    for item in re.split(r"[,|]", text or ""):
        value = normalize_whitespace(item)
        if value and value not in unique:
            unique.append(value)
        if len(unique) == MAX_KEYWORDS:
            break
    return unique


def enrich_dribbble(raw_map: RawSelectorMap) -> ProviderEnrichment | None:
    designer, designer_raw = _designer(raw_map)
    seeds = _twitter_stats(raw_map)
    stats = {key: _stat(raw_map, selectors, seeds.get(key)) for key, selectors in DRIBBBLE_STAT_SELECTORS.items()}
    keywords = _keywords(raw_map)
    image_url = _first_attribute(raw_map, IMAGE_SELECTORS, "content")

    facts = []
    if designer:
        facts.append({"label": "Designer", "value": designer})
    for key in ("likes", "views", "comments"):
        formatted = stats[key][1]
        if formatted:
            facts.append({"label": key.capitalize(), "value": formatted})
    if keywords:
        facts.append({"label": "Tags" if len(keywords) > 1 else "Tag", "value": ", ".join(keywords[:3])})

    raw = _compact({
        "title": get_raw_attribute(raw_map, "meta[property='og:title']", "content")
        or get_raw_text(raw_map, "head > title"),
        "description": get_raw_attribute(raw_map, "meta[property='og:description']", "content")
        or get_raw_attribute(raw_map, "meta[name='description']", "content"),
        "designer": designer_raw or designer,
        "stats": _compact({key: raw_value or formatted for key, (raw_value, formatted) in stats.items()}),
        "keywords": keywords or None,
    })
    if not image_url and not facts and not raw:
        return None
    return ProviderEnrichment(image_url=image_url, facts=facts, raw=raw)


# ── GitHub / Goodreads / Amazon / IMDb ───────────────────────────────

def enrich_github(raw_map: RawSelectorMap) -> ProviderEnrichment | None:
    stars = format_count_string(get_raw_text(raw_map, "a[href$='/stargazers']"))
    forks = format_count_string(get_raw_text(raw_map, "a[href$='/network/members']"))
    watchers = format_count_string(get_raw_text(raw_map, "a[href$='/watchers']"))
    language = get_raw_text(raw_map, "span[itemprop='programmingLanguage']")
    updated_raw = get_raw_text(raw_map, "relative-time")

    facts = []
    for label, value in (("Stars", stars), ("Forks", forks), ("Watchers", watchers), ("Language", language)):
        if value:
            facts.append({"label": label, "value": value})
    if updated_raw:
        updated = normalize_whitespace(re.sub(r"^on\s+", "", updated_raw, flags=re.IGNORECASE))
        if updated:
            facts.append({"label": "Updated", "value": updated})
    if not facts:
        return None
    return ProviderEnrichment(facts=facts, raw={
        "stars": stars, "forks": forks, "watchers": watchers,
        "language": language, "updated": updated_raw,
    })


def enrich_goodreads(raw_map: RawSelectorMap) -> ProviderEnrichment | None:
    avg = format_rating(get_raw_attribute(raw_map, "meta[property='books:rating:average']", "content"))
    count = format_count_string(get_raw_attribute(raw_map, "meta[property='books:rating:count']", "content"))
    isbn = get_raw_attribute(raw_map, "meta[property='books:isbn']", "content")

    facts = []
    if avg:
        facts.append({"label": "Average rating", "value": f"{avg} / 5"})
    if count:
        facts.append({"label": "Ratings", "value": count})
    if isbn:
        facts.append({"label": "ISBN", "value": isbn})
    if not facts:
        return None
    return ProviderEnrichment(facts=facts, raw={"rating_average": avg, "rating_count": count, "isbn": isbn})


def enrich_amazon(raw_map: RawSelectorMap) -> ProviderEnrichment | None:
    price = (
        get_raw_text(raw_map, "#priceblock_ourprice")
        or get_raw_text(raw_map, "#priceblock_dealprice")
        or get_raw_text(raw_map, ".a-price .a-offscreen")
        or get_raw_attribute(raw_map, "meta[name='price']", "content")
        or get_raw_attribute(raw_map, "meta[property='og:price:amount']", "content")
    )
    currency = get_raw_attribute(raw_map, "meta[property='og:price:currency']", "content")
    if not price and not currency:
        return None
    label = f"{price or ''} {currency}".strip() if currency else price
    return ProviderEnrichment(
        facts=[{"label": "Price", "value": label}] if label else [],
        raw={"price": price, "currency": currency},
    )


def enrich_imdb(raw_map: RawSelectorMap) -> ProviderEnrichment | None:
    rating = format_rating(
        get_raw_attribute(raw_map, "meta[name='imdb:rating']", "content")
        or get_raw_text(raw_map, "span[data-testid='hero-rating-bar__aggregate-rating__score']")
    )
    votes = format_count_string(get_raw_attribute(raw_map, "meta[name='imdb:votes']", "content"))
    runtime = get_raw_text(raw_map, "span[data-testid='title-techspec_runtime'] span")
    release_raw = get_raw_attribute(raw_map, "meta[property='video:release_date']", "content")
    release = format_date(release_raw)

    facts = []
    if rating:
        facts.append({"label": "IMDb rating", "value": f"{rating} / 10"})
    if votes:
        facts.append({"label": "Votes", "value": votes})
    if runtime:
        facts.append({"label": "Runtime", "value": runtime})
    if release:
        facts.append({"label": "Released", "value": release})
    if not facts:
        return None
    return ProviderEnrichment(facts=facts, raw={
        "rating": rating, "votes": votes, "runtime": runtime, "release_date": release_raw,
    })


# provider -> (categories it understands, enricher)
PROVIDERS = {
    "dribbble": ({"design_portfolio"}, enrich_dribbble),
    "github": ({"software"}, enrich_github),
    "goodreads": ({"book"}, enrich_goodreads),
    "amazon": ({"product", "book"}, enrich_amazon),
    "imdb": ({"movie", "tv"}, enrich_imdb),
}


def enrich_provider(provider: str | None, category: str, raw_map: RawSelectorMap) -> ProviderEnrichment | None:
    if not provider or provider not in PROVIDERS:
        return None
    categories, enricher = PROVIDERS[provider]
    if category not in categories:
        return None
    return enricher(raw_map)


# ── Raw selector map ─────────────────────────────────────────────────

RAW_SELECTORS: list[str] = sorted({
    "head > title",
    "meta[name='author']",
    "meta[property='article:author']",
    "meta[property='og:title']",
    "meta[property='og:description']",
    "meta[name='description']",
    "a[rel='tag']",
    *(s for selectors in DRIBBBLE_STAT_SELECTORS.values() for s in selectors),
    *DRIBBBLE_DESIGNER_SELECTORS,
    *KEYWORD_SELECTORS,
    *IMAGE_SELECTORS,
    *(f"meta[name='twitter:label{i}']" for i in range(1, 5)),
    *(f"meta[name='twitter:data{i}']" for i in range(1, 5)),
    "a[href$='/stargazers']",
    "a[href$='/network/members']",
    "a[href$='/watchers']",
    "span[itemprop='programmingLanguage']",
    "relative-time",
    "meta[property='books:rating:average']",
    "meta[property='books:rating:count']",
    "meta[property='books:isbn']",
    "#priceblock_ourprice",
    "#priceblock_dealprice",
    ".a-price .a-offscreen",
    "meta[name='price']",
    "meta[property='og:price:amount']",
    "meta[property='og:price:currency']",
    "meta[name='imdb:rating']",
    "span[data-testid='hero-rating-bar__aggregate-rating__score']",
    "meta[name='imdb:votes']",
    "span[data-testid='title-techspec_runtime'] span",
    "meta[property='video:release_date']",
})


def build_raw_selector_map(soup: BeautifulSoup, selectors: list[str] | None = None) -> RawSelectorMap:
    raw_map: RawSelectorMap = {}
    for selector in selectors or RAW_SELECTORS:
        element = soup.select_one(selector)
        if element is None:
            continue
        attributes = {
            name: " ".join(value) if isinstance(value, list) else str(value)
            for name, value in element.attrs.items()
        }
        raw_map[selector] = RawEntry(text=element.get_text(" ", strip=True) or None, attributes=attributes)
    return raw_map
