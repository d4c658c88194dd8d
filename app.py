"""
FastAPI application — REST API for the card enrichment pipeline.

Endpoints:
  GET  /health                          — Health check
  POST /cards/{card_id}/process         — Run the card processing workflow
  POST /cards/{card_id}/link-enrichment — Re-categorize a link card
  POST /cards/{card_id}/screenshot      — Capture a link card screenshot
  GET  /cards/{card_id}/status          — Stage status of a card
  POST /admin/backfill                  — Enqueue cards missing AI metadata
  POST /admin/cleanup                   — Sweep long soft-deleted cards
  POST /admin/cards/{card_id}/retry     — Admin retry for one card
  GET  /runs                            — List workflow runs
  GET  /runs/{workflow_id}              — One workflow run

Every start endpoint takes ``start_async`` (default true): async returns
``{"workflow_id"}`` immediately, sync waits and returns the workflow result.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from temporalio.client import Client

import config
from activities.card_activities import CardActivities, Services
from features.cards import db as card_db
from features.runs import RunJournal, RunStatus
from features.runs import db as run_db
from models.errors import CardNotFoundError
from models.processing_status import parse_processing_status
from workflows.manager import WorkflowManager

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)

manager: WorkflowManager | None = None


async def _connect_temporal() -> Client | None:
    try:
        client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)
        log.info("Connected to Temporal at %s", config.TEMPORAL_HOST)
        return client
    except Exception as e:
        log.warning("Could not connect to Temporal: %s (workflows will run in-process)", e)
        return None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global manager
    if manager is None:
        use_db = True
        try:
            card_db.init_db()
            run_db.init_db()
            log.info("Postgres database initialized")
        except Exception as e:
            log.warning("Could not connect to Postgres: %s (cards and runs will be in-memory only)", e)
            use_db = False
        activities = CardActivities(Services.from_config(use_db=use_db))
        manager = WorkflowManager(activities, client=await _connect_temporal(),
                                  journal=RunJournal(persist=use_db))
        manager.resume_pending_runs()
    yield
    await manager.shutdown()


app = FastAPI(
    title="Card Enrichment Pipeline",
    description="Classification, categorization, AI metadata and renderables for saved cards",
    version="1.0.0",
    lifespan=lifespan,
)


class RetryResponse(BaseModel):
    requested_at: str
    success: bool
    reason: str | None = None
    workflow_id: str | None = None


def _manager() -> WorkflowManager:
    if manager is None:
        raise HTTPException(status_code=503, detail="Workflow manager not ready")
    return manager


def _require_card(card_id: str) -> Any:
    card = _manager().store.get(card_id)
    if card is None:
        raise HTTPException(status_code=404, detail=f"Card not found: {card_id}")
    return card


async def _run(start, *args, start_async: bool) -> dict:
    try:
        return await start(*args, start_async=start_async)
    except CardNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


# ── Health ────────────────────────────────────────────────────────────

@app.get("/health")
def health():
    return {
        "status": "ok",
        "service": "card-enrichment",
        "temporal_connected": manager is not None and manager.client is not None,
    }


# ── Cards ─────────────────────────────────────────────────────────────

@app.post("/cards/{card_id}/process")
async def process_card(card_id: str, start_async: bool = True):
    """Run classification, categorization, metadata and renderables."""
    _require_card(card_id)
    return await _run(_manager().start_card_processing_workflow, card_id, start_async=start_async)


@app.post("/cards/{card_id}/link-enrichment")
async def enrich_link(card_id: str, start_async: bool = True):
    _require_card(card_id)
    return await _run(_manager().start_link_enrichment_workflow, card_id, start_async=start_async)


@app.post("/cards/{card_id}/screenshot")
async def screenshot(card_id: str, start_async: bool = True):
    _require_card(card_id)
    return await _run(_manager().start_screenshot_workflow, card_id, start_async=start_async)


@app.get("/cards/{card_id}/status")
async def card_status(card_id: str):
    card = _require_card(card_id)
    stages = parse_processing_status(card.processing_status)
    return {
        "card_id": card.id,
        "type": card.type.value,
        "workflow_id": card.workflow_id,
        "metadata_status": card.metadata_status.value,
        "processing_status": {stage.value: status.to_dict() for stage, status in stages.items()},
    }


# ── Admin ─────────────────────────────────────────────────────────────

@app.post("/admin/backfill")
async def backfill(start_async: bool = True):
    """Enqueue the pipeline for cards missing AI tags or a summary."""
    return await _manager().start_ai_backfill_workflow(start_async=start_async)


@app.post("/admin/cleanup")
async def cleanup(start_async: bool = True):
    """Hard-delete cards soft-deleted more than the retention window ago."""
    return await _manager().start_card_cleanup_workflow(start_async=start_async)


@app.post("/admin/cards/{card_id}/retry", response_model=RetryResponse)
async def retry_card(card_id: str):
    return await _manager().retry_card_enrichment(card_id)


# ── Runs ──────────────────────────────────────────────────────────────

@app.get("/runs")
async def list_runs(status: str | None = None, limit: int = 50):
    try:
        run_status = RunStatus(status) if status else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown run status: {status}")
    records = _manager().journal.list(status=run_status, limit=limit)
    return {"runs": [r.to_dict() for r in records]}


@app.get("/runs/{workflow_id}")
async def get_run(workflow_id: str):
    record, temporal_status = await _manager().sync_temporal_run(workflow_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Run not found: {workflow_id}")
    run = record.to_dict()
    if temporal_status:
        run["temporal_status"] = temporal_status
    return run
