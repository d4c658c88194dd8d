"""Shared fixtures: in-memory collaborators and fakes for AI, browser and network."""

import base64
import io

import pytest
from PIL import Image

from activities.card_activities import CardActivities, Services
from features.cards.store import DAY_MS, InMemoryCardStore
from features.runs.journal import RunJournal
from models.errors import FetchErrorKind, FetchFailure, RetryableFetchError
from models.processing_status import now_ms
from models.schemas import Card, CardType, FileMetadata
from utils.blob_store import LocalBlobStore
from utils.http import FetchedPage
from workflows.manager import WorkflowManager


def make_card(card_id="card-1", **fields):
    fields.setdefault("type", CardType.TEXT)
    return Card(id=card_id, **fields)


def image_bytes(width=64, height=36, fmt="PNG", color=(200, 30, 30)):
    out = io.BytesIO()
    Image.new("RGB", (width, height), color).save(out, format=fmt)
    return out.getvalue()


def noisy_png(width=800, height=800):
    """A PNG large enough (>500KB) to need a thumbnail."""
    import os

    img = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


def days_ago(days):
    return now_ms() - days * DAY_MS


class SleepRecorder:
    """Stands in for asyncio.sleep; records requested delays in ms."""

    def __init__(self):
        self.calls = []

    async def __call__(self, ms):
        self.calls.append(ms)


class FakeAI:
    def __init__(self, tags=("design", "inspiration"), summary="A saved item."):
        self.tags = list(tags)
        self.summary = summary
        self.calls = []
        self.error = None

    def _result(self):
        if self.error:
            raise self.error
        return {"tags": list(self.tags), "summary": self.summary}

    def tag_and_summarize(self, kind, text):
        self.calls.append(("tag_and_summarize", kind, text))
        return self._result()

    def describe_image(self, image_url, context=""):
        self.calls.append(("describe_image", image_url, context))
        return self._result()

    def transcribe(self, audio, file_name="audio.mp3"):
        self.calls.append(("transcribe", file_name))
        return "hello from the recording"


class FakeBrowser:
    """Returns queued results (or raises queued exceptions) per script run."""

    def __init__(self):
        self.queue = []
        self.scripts = []
        self.default = base64.b64encode(image_bytes(128, 72, fmt="JPEG")).decode()

    def run_script(self, code, timeout_sec=None):
        self.scripts.append(code)
        if self.queue:
            item = self.queue.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return self.default


class FakeWeb:
    """Serves canned HTML in place of utils.http fetches."""

    def __init__(self):
        self.pages = {}
        self.requests = []

    def add(self, url, html):
        self.pages[url.rstrip("/")] = html

    def fetch_html(self, url, timeout=None):
        self.requests.append(url)
        html = self.pages.get(url.rstrip("/"))
        if html is None:
            raise RetryableFetchError(FetchFailure(FetchErrorKind.HTTP_ERROR, f"HTTP 404 for {url}", 404))
        return FetchedPage(url=url, final_url=url, status_code=200, html=html)

    def fetch_bytes(self, url):
        raise RetryableFetchError(FetchFailure(FetchErrorKind.HTTP_ERROR, "no network in tests"))



class FakeRunDb:
    """Stands in for the workflow_runs / workflow_steps tables."""

    def __init__(self):
        self.rows = {}
        self.steps = {}

    def upsert_run(self, run):
        self.rows[run["workflow_id"]] = {k: v for k, v in run.items() if k != "steps"}

    def get_run(self, workflow_id):
        row = self.rows.get(workflow_id)
        return dict(row) if row else None

    def list_runs(self, limit=50, status=None):
        rows = [dict(r) for r in self.rows.values() if status is None or r["status"] == status]
        return rows[:limit]

    def max_attempt(self, workflow_kind, card_id):
        return max((r["attempt"] for r in self.rows.values()
                    if r["workflow_kind"] == workflow_kind and r["card_id"] == card_id), default=0)

    def insert_step(self, workflow_id, step_name, result):
        self.steps.setdefault(workflow_id, {})[step_name] = result

    def get_steps(self, workflow_id):
        return dict(self.steps.get(workflow_id, {}))

@pytest.fixture
def store():
    return InMemoryCardStore()


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(tmp_path / "blobs", public_base_url="https://blobs.test")


@pytest.fixture
def ai():
    return FakeAI()


@pytest.fixture
def browser():
    return FakeBrowser()


@pytest.fixture
def web(monkeypatch):
    fake = FakeWeb()
    monkeypatch.setattr("activities.link_metadata.fetch_html", fake.fetch_html)
    monkeypatch.setattr("activities.link_metadata.fetch_bytes", fake.fetch_bytes)
    monkeypatch.setattr("activities.categorize.fetch_html", fake.fetch_html)
    return fake


@pytest.fixture
def sleeps():
    return SleepRecorder()


@pytest.fixture
def activities(store, blobs, ai, browser, web):
    return CardActivities(Services(store=store, blobs=blobs, ai=ai, browser=browser))


@pytest.fixture
def journal():
    return RunJournal(persist=False)


@pytest.fixture
def run_db(monkeypatch):
    fake = FakeRunDb()
    monkeypatch.setattr("features.runs.journal.run_db", fake)
    return fake


@pytest.fixture
def manager(activities, journal, sleeps):
    return WorkflowManager(activities, client=None, journal=journal, sleep=sleeps)


@pytest.fixture
def image_card(store, blobs):
    file_id = blobs.store(image_bytes(), "image/png")
    card = make_card(
        "img-1", type=CardType.IMAGE, file_id=file_id,
        file_metadata=FileMetadata(mime_type="image/png", file_name="red.png", width=64, height=36),
    )
    store.insert(card)
    return card


ARTICLE_HTML = """
<html><head>
  <title>Plain title</title>
  <meta property="og:title" content="OG Title">
  <meta property="og:description" content="An article about things.">
  <meta property="og:image" content="/images/cover.png">
  <meta property="og:site_name" content="Example">
  <link rel="icon" href="/favicon.ico">
</head><body><p>Hello</p></body></html>
"""
