"""
Temporal activity definitions for the card pipeline.

Each stage module exposes a plain function over explicit collaborators.
``CardActivities`` binds those collaborators once and exposes every step
as an ``@activity.defn`` method, so the worker registers bound methods and
the in-process engine calls the same methods directly.

The three launcher activities are async: they start another workflow
through the WorkflowManager and return its id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from temporalio import activity

import config
from activities import categorize, classify, cleanup, link_metadata, metadata, palette, renderables, screenshot
from activities.link_metadata import normalize_link_url
from activities.metadata import AIClient, AIMetadataGenerator
from activities.stages import fail_stage, settle_stage_statuses
from features.cards.store import CardStore, InMemoryCardStore
from models.processing_status import StageKey
from utils.blob_store import LocalBlobStore
from utils.browser import BrowserClient

log = logging.getLogger(__name__)


@dataclass
class Services:
    store: CardStore
    blobs: LocalBlobStore
    ai: AIClient
    browser: BrowserClient

    @classmethod
    def from_config(cls, use_db: bool = True) -> "Services":
        from features.cards.db import PostgresCardStore
        from utils.llm import OpenAIClient

        store: CardStore = PostgresCardStore() if use_db else InMemoryCardStore()
        return cls(store=store, blobs=LocalBlobStore(), ai=OpenAIClient(), browser=BrowserClient())


class CardActivities:
    def __init__(self, services: Services, manager: Any = None):
        self.services = services
        self.manager = manager
        self.generator = AIMetadataGenerator(services.ai, services.blobs)

    def all(self) -> list[Callable]:
        """Every activity, for Worker registration."""
        return [
            self.load_card_snapshot,
            self.classify_card,
            self.settle_stage_statuses,
            self.categorize_card,
            self.fetch_link_preview,
            self.record_link_preview_failure,
            self.generate_metadata,
            self.generate_renderables,
            self.extract_image_palette,
            self.mark_stage_failed,
            self.capture_screenshot,
            self.find_cards_missing_ai,
            self.find_cleanup_candidates,
            self.delete_card_with_assets,
            self.enqueue_card_processing,
            self.enqueue_screenshot,
            self.reschedule_cleanup,
            self.record_run_outcome,
        ]

    # ── Stage runners ────────────────────────────────────────────────

    @activity.defn(name="load_card_snapshot")
    def load_card_snapshot(self, card_id: str) -> dict | None:
        card = self.services.store.get(card_id)
        return card.to_dict() if card else None

    @activity.defn(name="classify_card")
    def classify_card(self, card_id: str) -> dict:
        return classify.classify_card(self.services.store, card_id)

    @activity.defn(name="settle_stage_statuses")
    def settle_stage_statuses(self, card_id: str, card_type: str) -> list[str]:
        return settle_stage_statuses(self.services.store, card_id, card_type)

    @activity.defn(name="categorize_card")
    def categorize_card(self, card_id: str) -> dict:
        return categorize.categorize_card(self.services.store, card_id)

    @activity.defn(name="fetch_link_preview")
    def fetch_link_preview(self, card_id: str, attempt: int = 0) -> dict:
        return link_metadata.fetch_link_preview(self.services.store, self.services.blobs, card_id, attempt)

    @activity.defn(name="record_link_preview_failure")
    def record_link_preview_failure(self, card_id: str, error_type: str, message: str = "") -> None:
        card = self.services.store.get(card_id)
        url = normalize_link_url(card.url) if card and card.url else ""
        link_metadata.record_preview_failure(self.services.store, card_id, url, error_type, message)

    @activity.defn(name="generate_metadata")
    def generate_metadata(self, card_id: str) -> dict:
        return metadata.generate_metadata(self.services.store, self.generator, card_id)

    @activity.defn(name="generate_renderables")
    def generate_renderables(self, card_id: str) -> dict:
        s = self.services
        return renderables.generate_renderables(s.store, s.blobs, s.browser, card_id)

    @activity.defn(name="extract_image_palette")
    def extract_image_palette(self, card_id: str) -> dict:
        return palette.extract_image_palette(self.services.store, self.services.blobs, card_id)

    @activity.defn(name="mark_stage_failed")
    def mark_stage_failed(self, card_id: str, stage: str, error: str) -> None:
        fail_stage(self.services.store, card_id, StageKey(stage), error)

    @activity.defn(name="capture_screenshot")
    def capture_screenshot(self, card_id: str, attempt: int = 0) -> dict:
        s = self.services
        return screenshot.capture_screenshot(s.store, s.blobs, s.browser, card_id, attempt)

    # ── Batch queries ────────────────────────────────────────────────

    @activity.defn(name="find_cards_missing_ai")
    def find_cards_missing_ai(self, limit: int = config.AI_BACKFILL_BATCH_SIZE) -> list[str]:
        return self.services.store.find_missing_ai(limit)

    @activity.defn(name="find_cleanup_candidates")
    def find_cleanup_candidates(self, limit: int = config.CLEANUP_BATCH_SIZE) -> list[str]:
        return cleanup.find_cleanup_candidates(self.services.store, limit)

    @activity.defn(name="delete_card_with_assets")
    def delete_card_with_assets(self, card_id: str) -> bool:
        return cleanup.delete_card_with_assets(self.services.store, self.services.blobs, card_id)

    # ── Launchers ────────────────────────────────────────────────────

    def _require_manager(self) -> Any:
        if self.manager is None:
            raise RuntimeError("No WorkflowManager bound to activities")
        return self.manager

    @activity.defn(name="enqueue_card_processing")
    async def enqueue_card_processing(self, card_id: str) -> str:
        started = await self._require_manager().start_card_processing_workflow(card_id, start_async=True)
        return started["workflow_id"]

    @activity.defn(name="enqueue_screenshot")
    async def enqueue_screenshot(self, card_id: str) -> str:
        started = await self._require_manager().start_screenshot_workflow(card_id, start_async=True)
        return started["workflow_id"]

    @activity.defn(name="reschedule_cleanup")
    async def reschedule_cleanup(self) -> str:
        started = await self._require_manager().start_card_cleanup_workflow(start_async=True)
        return started["workflow_id"]

    # ── Run journal ──────────────────────────────────────────────────

    @activity.defn(name="record_run_outcome")
    def record_run_outcome(self, workflow_id: str, result: Any = None, error: str | None = None) -> bool:
        return self._require_manager().journal.finish(workflow_id, result, error)
