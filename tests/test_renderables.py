"""Thumbnails and image palettes."""

import io

import pytest
from PIL import Image

from activities.palette import dominant_colors, extract_image_palette
from activities.renderables import SkipThumbnail, generate_renderables, make_image_thumbnail, webp_quality
from conftest import image_bytes, make_card, noisy_png
from models.errors import CardNotFoundError
from models.processing_status import StageKey, StageState, parse_processing_status
from models.schemas import CardType, FileMetadata


def renderables_status(store, card_id):
    return parse_processing_status(store.get(card_id).processing_status)[StageKey.RENDERABLES]


def file_card(store, blobs, data, mime, card_type, file_name="file", card_id="card-1"):
    file_id = blobs.store(data, mime)
    store.insert(make_card(card_id, type=card_type, file_id=file_id,
                           file_metadata=FileMetadata(mime_type=mime, file_name=file_name)))
    return file_id


class TestWebpQuality:
    @pytest.mark.parametrize("size,quality", [
        (10_000, 70),
        (999_999, 70),
        (1_000_000, 65),
        (4_500_000, 60),
        (19_999_999, 50),
        (25_000_000, 40),
    ])
    def test_tiers(self, size, quality):
        assert webp_quality(size) == quality

    def test_small_source_is_skipped(self):
        with pytest.raises(SkipThumbnail):
            make_image_thumbnail(image_bytes())

    def test_large_source_is_downscaled(self):
        thumbnail = make_image_thumbnail(noisy_png())
        with Image.open(io.BytesIO(thumbnail)) as img:
            assert img.format == "WEBP"
            assert max(img.size) <= 400


class TestGenerateRenderables:
    def test_small_image_completes_without_thumbnail(self, store, blobs, browser, image_card):
        result = generate_renderables(store, blobs, browser, image_card.id)
        assert result == {"thumbnail_generated": False}
        assert renderables_status(store, image_card.id).status is StageState.COMPLETED

    def test_large_image_gets_webp_thumbnail(self, store, blobs, browser):
        file_card(store, blobs, noisy_png(), "image/png", CardType.IMAGE, "noise.png")

        result = generate_renderables(store, blobs, browser, "card-1")

        assert result["thumbnail_generated"] is True
        card = store.get("card-1")
        assert card.thumbnail_id == result["thumbnail_id"]
        _, content_type = blobs.read(card.thumbnail_id)
        assert content_type == "image/webp"
        assert renderables_status(store, "card-1").status is StageState.COMPLETED

    def test_svg_needs_no_thumbnail(self, store, blobs, browser):
        file_card(store, blobs, b"<svg/>", "image/svg+xml", CardType.IMAGE, "logo.svg")
        result = generate_renderables(store, blobs, browser, "card-1")
        assert result == {"thumbnail_generated": False}
        assert browser.scripts == []
        assert renderables_status(store, "card-1").status is StageState.COMPLETED

    def test_pdf_is_rendered_in_browser(self, store, blobs, browser):
        file_id = file_card(store, blobs, b"%PDF-1.4", "application/pdf", CardType.DOCUMENT, "doc.pdf")

        result = generate_renderables(store, blobs, browser, "card-1")

        assert result["thumbnail_generated"] is True
        assert len(browser.scripts) == 1
        assert "pdf.js" in browser.scripts[0]
        assert f"https://blobs.test/{file_id}" in browser.scripts[0]

    def test_non_pdf_document_is_skipped(self, store, blobs, browser):
        file_card(store, blobs, b"doc", "application/msword", CardType.DOCUMENT, "notes.doc")
        result = generate_renderables(store, blobs, browser, "card-1")
        assert result == {"thumbnail_generated": False}
        assert renderables_status(store, "card-1").status is StageState.COMPLETED

    def test_browser_failure_marks_stage_failed(self, store, blobs, browser):
        file_card(store, blobs, b"\x00\x00", "video/mp4", CardType.VIDEO, "clip.mp4")
        browser.queue.append(RuntimeError("Video load error"))

        result = generate_renderables(store, blobs, browser, "card-1")

        assert result == {"thumbnail_generated": False, "error": "Video load error"}
        status = renderables_status(store, "card-1")
        assert status.status is StageState.FAILED
        assert status.error == "Video load error"
        assert store.get("card-1").thumbnail_id is None

    def test_existing_thumbnail_is_kept(self, store, blobs, browser):
        store.insert(make_card(type=CardType.VIDEO, file_id="f1", thumbnail_id="thumb.webp"))
        result = generate_renderables(store, blobs, browser, "card-1")
        assert result == {"thumbnail_generated": False, "thumbnail_id": "thumb.webp"}
        assert browser.scripts == []

    def test_missing_card_raises(self, store, blobs, browser):
        with pytest.raises(CardNotFoundError):
            generate_renderables(store, blobs, browser, "nope")


class TestPalette:
    def test_solid_image_has_one_dominant_color(self):
        colors = dominant_colors(image_bytes(color=(200, 30, 30)))
        assert colors[0]["hex"] == "#C81E1E"
        assert colors[0]["share"] == 1.0

    def test_palette_is_stored_on_image_card(self, store, blobs, image_card):
        result = extract_image_palette(store, blobs, image_card.id)
        assert result["colors_count"] >= 1
        assert store.get(image_card.id).colors[0]["hex"] == "#C81E1E"

    def test_existing_colors_are_kept(self, store, blobs):
        store.insert(make_card(type=CardType.IMAGE, file_id="f1", colors=[{"hex": "#000000"}]))
        assert extract_image_palette(store, blobs, "card-1") == {"colors_count": 1}

    def test_unreadable_file_is_reported(self, store, blobs):
        store.insert(make_card(type=CardType.IMAGE, file_id="missing.png"))
        result = extract_image_palette(store, blobs, "card-1")
        assert result["colors_count"] == 0
        assert "error" in result
