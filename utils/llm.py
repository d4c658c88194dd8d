"""
OpenAI helpers shared by the AI-backed activities.

Module functions wrap the raw API with rate-limit retry. ``OpenAIClient``
is the collaborator the metadata stage talks to; tests swap in a fake with
the same three methods.
"""

from __future__ import annotations

import io
import json
import logging
import time

from openai import OpenAI, RateLimitError

import config

log = logging.getLogger(__name__)

_client: OpenAI | None = None


def get_client() -> OpenAI:
    global _client
    if _client is None:
        _client = OpenAI(api_key=config.OPENAI_API_KEY)
    return _client


MAX_RETRIES = 5
BASE_DELAY = 10  # seconds


def _with_rate_limit_retry(call, what: str):
    for attempt in range(MAX_RETRIES):
        try:
            return call()
        except RateLimitError as e:
            if attempt == MAX_RETRIES - 1:
                raise
            delay = BASE_DELAY * (2 ** attempt)
            log.warning(
                "%s rate limited (attempt %d/%d), retrying in %ds: %s",
                what, attempt + 1, MAX_RETRIES, delay, e,
            )
            time.sleep(delay)
    raise RuntimeError("unreachable")


def chat(
    system: str,
    user: str | list,
    model: str | None = None,
    json_mode: bool = False,
    temperature: float = 0.3,
    max_tokens: int = 1024,
) -> str:
    """Send a chat completion request and return the assistant message.

    ``user`` may be a content-part list for vision requests.
    """
    client = get_client()
    kwargs: dict = {
        "model": model or config.OPENAI_MODEL,
        "messages": [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ],
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if json_mode:
        kwargs["response_format"] = {"type": "json_object"}

    resp = _with_rate_limit_retry(lambda: client.chat.completions.create(**kwargs), "Chat")
    return resp.choices[0].message.content or ""


def chat_json(system: str, user: str | list, **kwargs) -> dict:
    """Send a chat completion and parse the JSON response."""
    raw = chat(system, user, json_mode=True, **kwargs)
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        log.error("Failed to parse LLM JSON response: %s", raw[:500])
        return {}


def transcribe(audio: bytes, file_name: str = "audio.mp3") -> str:
    client = get_client()
    buf = io.BytesIO(audio)
    buf.name = file_name
    resp = _with_rate_limit_retry(
        lambda: client.audio.transcriptions.create(model=config.OPENAI_TRANSCRIBE_MODEL, file=buf),
        "Transcription",
    )
    return (resp.text or "").strip()


TAGGING_SYSTEM = (
    "You label items saved to a personal library. Return JSON with keys "
    "\"tags\" (3 to 8 short lowercase tags) and \"summary\" (one or two "
    "plain sentences). Do not invent facts that are not in the input."
)


def _tags_and_summary(data: dict) -> dict:
    tags = data.get("tags") or []
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",")]
    return {
        "tags": [str(t).strip().lower() for t in tags if str(t).strip()][:8],
        "summary": str(data.get("summary") or "").strip(),
    }


class OpenAIClient:
    """AI inference collaborator: tagging, image description, transcription."""

    def tag_and_summarize(self, kind: str, text: str) -> dict:
        data = chat_json(TAGGING_SYSTEM, f"Item type: {kind}\n\n{text[:12000]}")
        return _tags_and_summary(data)

    def describe_image(self, image_url: str, context: str = "") -> dict:
        content = [
            {"type": "text", "text": f"Item type: image\n{context}".strip()},
            {"type": "image_url", "image_url": {"url": image_url}},
        ]
        data = chat_json(TAGGING_SYSTEM, content, model=config.OPENAI_VISION_MODEL)
        return _tags_and_summary(data)

    def transcribe(self, audio: bytes, file_name: str = "audio.mp3") -> str:
        return transcribe(audio, file_name)
