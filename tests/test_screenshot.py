"""Link screenshots and their tiered retry."""

import pytest

from activities.screenshot import capture_screenshot
from conftest import make_card
from models.errors import RetryableFetchError
from models.schemas import CardType
from workflows.engine import InProcessSteps
from workflows.screenshot import capture_link_screenshot

PREVIEW = {"status": "success", "url": "https://example.com/page", "title": "OG Title"}


@pytest.fixture
def link_card(store):
    card = make_card(type=CardType.LINK, url="https://example.com/page", metadata={"link_preview": dict(PREVIEW)})
    store.insert(card)
    return card


class TestCaptureScreenshot:
    def test_stores_screenshot_in_preview(self, store, blobs, browser, link_card):
        result = capture_screenshot(store, blobs, browser, link_card.id)

        assert result["status"] == "captured"
        preview = store.get(link_card.id).link_preview
        assert preview["screenshot_blob_id"] == result["screenshot_id"]
        assert (preview["screenshot_width"], preview["screenshot_height"]) == (128, 72)
        assert preview["title"] == "OG Title"
        assert '"https://example.com/page"' in browser.scripts[0]
        assert blobs.read(result["screenshot_id"])[1] == "image/jpeg"

    def test_not_a_link(self, store, blobs, browser):
        store.insert(make_card(content="text"))
        assert capture_screenshot(store, blobs, browser, "card-1")["reason"] == "not_a_link"

    def test_waits_for_preview(self, store, blobs, browser):
        store.insert(make_card(type=CardType.LINK, url="https://example.com"))
        assert capture_screenshot(store, blobs, browser, "card-1")["reason"] == "preview_not_ready"
        assert browser.scripts == []

    def test_existing_screenshot_only_replaced_on_retry(self, store, blobs, browser):
        preview = {**PREVIEW, "screenshot_blob_id": "old.jpg"}
        store.insert(make_card(type=CardType.LINK, url="https://example.com/page", metadata={"link_preview": preview}))

        assert capture_screenshot(store, blobs, browser, "card-1")["reason"] == "already_captured"
        assert capture_screenshot(store, blobs, browser, "card-1", attempt=1)["status"] == "captured"

    @pytest.mark.parametrize("message,kind", [
        ("429 Too Many Requests", "rate_limit"),
        ("Rate limit exceeded for session", "rate_limit"),
        ("net::ERR_CONNECTION_RESET", "http_error"),
    ])
    def test_failures_are_classified(self, store, blobs, browser, link_card, message, kind):
        browser.queue.append(RuntimeError(message))
        with pytest.raises(RetryableFetchError) as exc:
            capture_screenshot(store, blobs, browser, link_card.id)
        assert exc.value.failure.kind.value == kind


class TestScreenshotWorkflow:
    async def test_rate_limited_until_budget_runs_out(self, activities, browser, sleeps, link_card):
        browser.queue.extend(RuntimeError("429 Too Many Requests") for _ in range(4))

        result = await capture_link_screenshot(InProcessSteps(activities, sleep=sleeps), link_card.id)

        assert result == {"success": False, "error_type": "rate_limit"}
        assert sleeps.calls == [15_000, 15_000, 15_000]
        assert len(browser.scripts) == 4

    async def test_recovers_after_http_error(self, store, activities, browser, sleeps, link_card):
        browser.queue.append(RuntimeError("net::ERR_CONNECTION_RESET"))

        result = await capture_link_screenshot(InProcessSteps(activities, sleep=sleeps), link_card.id)

        assert result == {"success": True}
        assert sleeps.calls == [5_000]
        assert store.get(link_card.id).link_preview["screenshot_blob_id"]
