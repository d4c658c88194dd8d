"""
Outbound page fetches and the network-boundary error classifier.

Every failure leaving ``fetch_html`` / ``fetch_bytes`` is a
RetryableFetchError whose FetchFailure says whether the retry loop may
try again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx

import config
from models.errors import FetchErrorKind, FetchFailure, RetryableFetchError

log = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": config.HTTP_USER_AGENT,
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


@dataclass
class FetchedPage:
    url: str
    final_url: str
    status_code: int
    html: str


def _looks_rate_limited(text: str) -> bool:
    lowered = text.lower()
    return ("rate" in lowered and "limit" in lowered) or "too many requests" in lowered


def classify_http_error(err: BaseException) -> FetchFailure:
    """Map an httpx (or browser service) failure onto a FetchFailure."""
    if isinstance(err, RetryableFetchError):
        return err.failure
    if isinstance(err, httpx.HTTPStatusError):
        status = err.response.status_code
        if status == 429:
            return FetchFailure(FetchErrorKind.RATE_LIMIT, f"HTTP {status}", status)
        return FetchFailure(FetchErrorKind.HTTP_ERROR, f"HTTP {status}", status)
    if isinstance(err, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
        return FetchFailure(FetchErrorKind.FATAL, str(err))
    if isinstance(err, httpx.HTTPError):
        if _looks_rate_limited(str(err)):
            return FetchFailure(FetchErrorKind.RATE_LIMIT, str(err))
        return FetchFailure(FetchErrorKind.HTTP_ERROR, f"{type(err).__name__}: {err}")
    if _looks_rate_limited(str(err)):
        return FetchFailure(FetchErrorKind.RATE_LIMIT, str(err))
    return FetchFailure(FetchErrorKind.HTTP_ERROR, str(err))


def _check_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise RetryableFetchError(FetchFailure(FetchErrorKind.FATAL, f"Invalid URL: {url}"))


def _client(timeout: float | None) -> httpx.Client:
    return httpx.Client(
        headers=DEFAULT_HEADERS,
        follow_redirects=True,
        timeout=timeout or config.HTTP_TIMEOUT_SEC,
    )


def fetch_html(url: str, timeout: float | None = None) -> FetchedPage:
    _check_url(url)
    try:
        with _client(timeout) as client:
            response = client.get(url)
            response.raise_for_status()
    except httpx.HTTPError as e:
        failure = classify_http_error(e)
        log.warning("[FETCH] %s failed (%s): %s", url, failure.kind.value, failure.detail)
        raise RetryableFetchError(failure) from e

    content_type = response.headers.get("content-type", "").lower()
    if content_type and not content_type.startswith(HTML_CONTENT_TYPES):
        raise RetryableFetchError(
            FetchFailure(FetchErrorKind.FATAL, f"Not an HTML page: {content_type}", response.status_code)
        )
    html = response.text[: config.MAX_HTML_BYTES]
    return FetchedPage(url=url, final_url=str(response.url), status_code=response.status_code, html=html)


def fetch_bytes(url: str, timeout: float | None = None) -> tuple[bytes, str]:
    """Download a binary resource; returns (content, content_type)."""
    _check_url(url)
    try:
        with _client(timeout) as client:
            response = client.get(url)
            response.raise_for_status()
    except httpx.HTTPError as e:
        raise RetryableFetchError(classify_http_error(e)) from e
    content_type = response.headers.get("content-type", "application/octet-stream").split(";")[0]
    return response.content, content_type.strip()
