"""Link preview extraction and the fetch_link_preview stage runner."""

import pytest

from activities.link_metadata import (
    fetch_link_preview,
    normalize_link_url,
    parse_link_preview,
    record_preview_failure,
    resolve_url,
    sanitize_text,
)
from conftest import ARTICLE_HTML, make_card
from models.errors import RetryableFetchError
from models.schemas import CardType


class TestParseLinkPreview:
    def test_prefers_og_title_over_title(self):
        preview = parse_link_preview("https://example.com/page", ARTICLE_HTML)
        assert preview["title"] == "OG Title"

    def test_resolves_relative_og_image(self):
        preview = parse_link_preview("https://example.com/page", ARTICLE_HTML)
        assert preview["image_url"] == "https://example.com/images/cover.png"
        assert preview["favicon_url"] == "https://example.com/favicon.ico"

    def test_platform_tags_before_html_fallback(self):
        html = """<html><head><title>Plain</title>
        <meta name="twitter:title" content="Tweet Title">
        <meta name="description" content="Plain description"></head></html>"""
        preview = parse_link_preview("https://example.com", html)
        assert preview["title"] == "Tweet Title"
        assert preview["description"] == "Plain description"

    def test_falls_back_to_html_title(self):
        preview = parse_link_preview("https://example.com", "<html><head><title> Just  HTML </title></head></html>")
        assert preview["title"] == "Just HTML"
        assert "image_url" not in preview

    def test_final_url_prefers_og_url(self):
        html = """<html><head>
        <link rel="canonical" href="/canonical">
        <meta property="og:url" content="https://example.com/og"></head></html>"""
        preview = parse_link_preview("https://example.com/page", html)
        assert preview["canonical_url"] == "https://example.com/canonical"
        assert preview["final_url"] == "https://example.com/og"

    def test_final_url_defaults_to_page(self):
        preview = parse_link_preview("https://example.com/page", "<html></html>")
        assert preview["final_url"] == "https://example.com/page"

    def test_text_is_truncated(self):
        html = f'<html><head><meta property="og:title" content="{"x" * 600}"></head></html>'
        assert len(parse_link_preview("https://example.com", html)["title"]) == 512


class TestUrlHelpers:
    def test_resolve_keeps_unresolvable_raw(self):
        assert resolve_url("https://example.com", "ftp://files.example.com/a.png") == "ftp://files.example.com/a.png"

    def test_resolve_drops_javascript(self):
        assert resolve_url("https://example.com", "javascript:alert(1)") is None

    def test_resolve_keeps_data_uri(self):
        assert resolve_url("https://example.com", "data:image/png;base64,AAAA") == "data:image/png;base64,AAAA"

    def test_normalize_adds_scheme(self):
        assert normalize_link_url(" example.com/a ") == "https://example.com/a"
        assert normalize_link_url("http://example.com") == "http://example.com"

    def test_sanitize_collapses_whitespace(self):
        assert sanitize_text("  a \n\t b ", 10) == "a b"
        assert sanitize_text("   ", 10) is None


class TestFetchLinkPreview:
    def test_stores_successful_preview(self, store, blobs, web):
        web.add("https://example.com/page", ARTICLE_HTML)
        store.insert(make_card(type=CardType.LINK, url="https://example.com/page"))

        result = fetch_link_preview(store, blobs, "card-1")

        assert result["status"] == "success"
        preview = store.get("card-1").link_preview
        assert preview["status"] == "success"
        assert preview["title"] == "OG Title"
        assert preview["url"] == "https://example.com/page"
        assert "fetched_at" in preview
        # OG image download failed; the preview is still stored without it.
        assert "image_blob_id" not in preview

    def test_skips_when_preview_exists(self, store, blobs, web):
        store.insert(make_card(type=CardType.LINK, url="https://example.com/page",
                               metadata={"link_preview": {"status": "success", "url": "https://example.com/page"}}))
        assert fetch_link_preview(store, blobs, "card-1")["status"] == "skipped"
        assert web.requests == []

    def test_non_link_card_records_failure(self, store, blobs, web):
        store.insert(make_card(content="just text"))
        result = fetch_link_preview(store, blobs, "card-1")
        assert result == {"status": "failed", "error_type": "invalid_card"}
        assert store.get("card-1").link_preview["error"]["type"] == "invalid_card"

    def test_fetch_failure_propagates_classified(self, store, blobs, web):
        store.insert(make_card(type=CardType.LINK, url="https://missing.example.com"))
        with pytest.raises(RetryableFetchError) as exc:
            fetch_link_preview(store, blobs, "card-1")
        assert exc.value.failure.kind.value == "http_error"

    def test_record_preview_failure(self, store):
        store.insert(make_card(type=CardType.LINK, url="https://example.com"))
        record_preview_failure(store, "card-1", "https://example.com", "rate_limit", "too many")
        preview = store.get("card-1").link_preview
        assert preview["status"] == "error"
        assert preview["error"] == {"type": "rate_limit", "message": "too many"}
