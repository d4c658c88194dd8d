"""
Postgres backing store for cards.

Table:
  cards  one row per card; the card body lives in ``data`` (JSONB) and the
         processing status in its own JSONB column so a stage update can
         merge a single key atomically.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from models.processing_status import StageKey, StageStatus
from models.schemas import Card, to_jsonable
from utils.db import execute_schema, get_cursor

log = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS cards (
    id                  TEXT PRIMARY KEY,
    data                JSONB NOT NULL DEFAULT '{}'::jsonb,
    processing_status   JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at          TIMESTAMPTZ DEFAULT now(),
    updated_at          TIMESTAMPTZ DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_cards_deleted
    ON cards (((data->>'is_deleted')::boolean), ((data->>'deleted_at')::bigint));
"""


def init_db() -> None:
    """Create tables if they don't exist."""
    execute_schema(SCHEMA_SQL, "cards")


def _row_to_card(row: dict) -> Card:
    data = dict(row["data"])
    data["id"] = row["id"]
    data["processing_status"] = row.get("processing_status") or {}
    return Card.from_dict(data)


class PostgresCardStore:
    def get(self, card_id: str) -> Card | None:
        with get_cursor() as cur:
            cur.execute("SELECT * FROM cards WHERE id = %s", (card_id,))
            row = cur.fetchone()
            return _row_to_card(row) if row else None

    def insert(self, card: Card) -> None:
        body = card.to_dict()
        status = body.pop("processing_status")
        body.pop("id")
        with get_cursor() as cur:
            cur.execute("""
                INSERT INTO cards (id, data, processing_status)
                VALUES (%s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    processing_status = EXCLUDED.processing_status,
                    updated_at = now()
            """, (card.id, json.dumps(body), json.dumps(status)))

    def patch(self, card_id: str, **fields: Any) -> bool:
        status = fields.pop("processing_status", None)
        body = to_jsonable(fields)
        with get_cursor() as cur:
            if status is not None:
                cur.execute(
                    "UPDATE cards SET data = data || %s::jsonb, processing_status = %s::jsonb, "
                    "updated_at = now() WHERE id = %s",
                    (json.dumps(body), json.dumps(status), card_id),
                )
            else:
                cur.execute(
                    "UPDATE cards SET data = data || %s::jsonb, updated_at = now() WHERE id = %s",
                    (json.dumps(body), card_id),
                )
            return cur.rowcount > 0

    def merge_stage_status(self, card_id: str, stage: StageKey, status: StageStatus) -> bool:
        with get_cursor() as cur:
            cur.execute("""
                UPDATE cards
                SET processing_status = processing_status || jsonb_build_object(%s::text, %s::jsonb),
                    updated_at = now()
                WHERE id = %s
            """, (StageKey(stage).value, json.dumps(status.to_dict()), card_id))
            return cur.rowcount > 0

    def merge_metadata(self, card_id: str, key: str, value: dict | None) -> bool:
        with get_cursor() as cur:
            cur.execute("""
                UPDATE cards
                SET data = data || jsonb_build_object(
                        'metadata',
                        coalesce(data->'metadata', '{}'::jsonb) || jsonb_build_object(%s::text, %s::jsonb)
                    ),
                    updated_at = now()
                WHERE id = %s
            """, (key, json.dumps(to_jsonable(value)), card_id))
            return cur.rowcount > 0

    def find_missing_ai(self, limit: int) -> list[str]:
        with get_cursor() as cur:
            cur.execute("""
                SELECT id FROM cards
                WHERE coalesce((data->>'is_deleted')::boolean, false) = false
                  AND (coalesce(data->>'ai_summary', '') = ''
                       OR jsonb_array_length(coalesce(data->'ai_tags', '[]'::jsonb)) = 0)
                ORDER BY created_at ASC
                LIMIT %s
            """, (limit,))
            return [row["id"] for row in cur.fetchall()]

    def find_pending_cleanup(self, cutoff_ms: int, limit: int) -> list[str]:
        with get_cursor() as cur:
            cur.execute("""
                SELECT id FROM cards
                WHERE (data->>'is_deleted')::boolean = true
                  AND (data->>'deleted_at')::bigint < %s
                ORDER BY (data->>'deleted_at')::bigint ASC
                LIMIT %s
            """, (cutoff_ms, limit))
            return [row["id"] for row in cur.fetchall()]

    def delete(self, card_id: str) -> bool:
        with get_cursor() as cur:
            cur.execute("DELETE FROM cards WHERE id = %s", (card_id,))
            return cur.rowcount > 0
