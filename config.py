"""
Configuration: loads settings from environment / .env file.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Paths
PROJECT_ROOT = Path(__file__).parent
BLOB_STORAGE_DIR = Path(os.getenv("BLOB_STORAGE_DIR", str(PROJECT_ROOT / "blobs")))
BLOB_PUBLIC_BASE_URL = os.getenv("BLOB_PUBLIC_BASE_URL", "")

# Postgres
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://localhost:5432/cards")

# OpenAI
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1-mini")
OPENAI_VISION_MODEL = os.getenv("OPENAI_VISION_MODEL", OPENAI_MODEL)
OPENAI_TRANSCRIBE_MODEL = os.getenv("OPENAI_TRANSCRIBE_MODEL", "whisper-1")

# Temporal
TEMPORAL_HOST = os.getenv("TEMPORAL_HOST", "localhost:7233")
TEMPORAL_TASK_QUEUE = os.getenv("TEMPORAL_TASK_QUEUE", "card-enrichment-queue")
TEMPORAL_NAMESPACE = os.getenv("TEMPORAL_NAMESPACE", "default")
ACTIVITY_WORKERS = int(os.getenv("ACTIVITY_WORKERS", "8"))

# Remote headless browser service
BROWSER_API_URL = os.getenv("BROWSER_API_URL", "http://localhost:8900")
BROWSER_API_KEY = os.getenv("BROWSER_API_KEY", "")
BROWSER_SESSION_TIMEOUT_SEC = int(os.getenv("BROWSER_SESSION_TIMEOUT_SEC", "120"))

# Outbound HTTP
HTTP_TIMEOUT_SEC = float(os.getenv("HTTP_TIMEOUT_SEC", "20"))
HTTP_USER_AGENT = os.getenv(
    "HTTP_USER_AGENT",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
)
MAX_HTML_BYTES = 250_000

# Backfill / cleanup
AI_BACKFILL_BATCH_SIZE = 50
CLEANUP_BATCH_SIZE = 10
CLEANUP_RETENTION_DAYS = 30

# Renderables
THUMBNAIL_MAX_WIDTH = 400
THUMBNAIL_MAX_HEIGHT = 400
THUMBNAIL_MIN_SOURCE_BYTES = 500_000
SCREENSHOT_VIEWPORT = (1280, 720)
PALETTE_MAX_COLORS = 6

# Link categorisation
LINK_CATEGORY_TTL_DAYS = 30
