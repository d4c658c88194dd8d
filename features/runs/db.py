"""
Postgres backing store for workflow runs and their memoized steps.

Tables:
  workflow_runs   one row per (workflow_kind, card_id, attempt)
  workflow_steps  one row per completed step, FK to workflow_runs

A step row is written as soon as the step succeeds, so a run resumed after
a crash replays finished steps instead of repeating them.
"""

from __future__ import annotations

import json
import logging

from utils.db import execute_schema, get_cursor

log = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS workflow_runs (
    workflow_id     TEXT PRIMARY KEY,
    workflow_kind   TEXT NOT NULL,
    card_id         TEXT NOT NULL DEFAULT '',
    attempt         INTEGER NOT NULL,
    args            JSONB DEFAULT '[]'::jsonb,
    status          TEXT NOT NULL DEFAULT 'running',
    started_at      TIMESTAMPTZ,
    completed_at    TIMESTAMPTZ,
    result          JSONB,
    error           TEXT,
    created_at      TIMESTAMPTZ DEFAULT now(),
    UNIQUE (workflow_kind, card_id, attempt)
);

CREATE TABLE IF NOT EXISTS workflow_steps (
    workflow_id     TEXT NOT NULL REFERENCES workflow_runs(workflow_id) ON DELETE CASCADE,
    step_name       TEXT NOT NULL,
    result          JSONB,
    created_at      TIMESTAMPTZ DEFAULT now(),
    PRIMARY KEY (workflow_id, step_name)
);

CREATE INDEX IF NOT EXISTS idx_workflow_runs_status ON workflow_runs(status);
CREATE INDEX IF NOT EXISTS idx_workflow_runs_card ON workflow_runs(workflow_kind, card_id);
"""


def init_db() -> None:
    """Create tables if they don't exist."""
    execute_schema(SCHEMA_SQL, "workflow journal")


# ── Run CRUD ──────────────────────────────────────────────────────────

def upsert_run(run: dict) -> None:
    """Insert or update a run record."""
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO workflow_runs (
                workflow_id, workflow_kind, card_id, attempt, args,
                status, started_at, completed_at, result, error
            ) VALUES (
                %(workflow_id)s, %(workflow_kind)s, %(card_id)s, %(attempt)s, %(args)s,
                %(status)s, %(started_at)s, %(completed_at)s, %(result)s, %(error)s
            )
            ON CONFLICT (workflow_id) DO UPDATE SET
                status = EXCLUDED.status,
                completed_at = EXCLUDED.completed_at,
                result = EXCLUDED.result,
                error = EXCLUDED.error
        """, {
            "workflow_id": run["workflow_id"],
            "workflow_kind": run["workflow_kind"],
            "card_id": run.get("card_id", ""),
            "attempt": run["attempt"],
            "args": json.dumps(run.get("args", [])),
            "status": run.get("status", "running"),
            "started_at": run.get("started_at"),
            "completed_at": run.get("completed_at"),
            "result": json.dumps(run.get("result")),
            "error": run.get("error"),
        })


def get_run(workflow_id: str) -> dict | None:
    with get_cursor() as cur:
        cur.execute("SELECT * FROM workflow_runs WHERE workflow_id = %s", (workflow_id,))
        row = cur.fetchone()
        return dict(row) if row else None


def list_runs(limit: int = 50, status: str | None = None) -> list[dict]:
    """List runs, newest first."""
    with get_cursor() as cur:
        if status:
            cur.execute(
                "SELECT * FROM workflow_runs WHERE status = %s ORDER BY created_at DESC LIMIT %s",
                (status, limit),
            )
        else:
            cur.execute(
                "SELECT * FROM workflow_runs ORDER BY created_at DESC LIMIT %s",
                (limit,),
            )
        return [dict(row) for row in cur.fetchall()]


def max_attempt(workflow_kind: str, card_id: str) -> int:
    with get_cursor() as cur:
        cur.execute(
            "SELECT coalesce(max(attempt), 0) AS attempt FROM workflow_runs "
            "WHERE workflow_kind = %s AND card_id = %s",
            (workflow_kind, card_id),
        )
        row = cur.fetchone()
        return int(row["attempt"]) if row else 0


# ── Step CRUD ─────────────────────────────────────────────────────────

def insert_step(workflow_id: str, step_name: str, result) -> None:
    with get_cursor() as cur:
        cur.execute("""
            INSERT INTO workflow_steps (workflow_id, step_name, result)
            VALUES (%s, %s, %s)
            ON CONFLICT (workflow_id, step_name) DO NOTHING
        """, (workflow_id, step_name, json.dumps(result)))


def get_steps(workflow_id: str) -> dict:
    """All memoized step results for a run, keyed by step name."""
    with get_cursor() as cur:
        cur.execute(
            "SELECT step_name, result FROM workflow_steps WHERE workflow_id = %s",
            (workflow_id,),
        )
        return {row["step_name"]: row["result"] for row in cur.fetchall()}
