"""
Client for the remote headless-browser service.

The service runs Playwright scripts inside short-lived browser sessions:
  POST   /browsers                                  -> {"session_id": ...}
  POST   /browsers/{id}/playwright/execute          -> {"success", "result", "error"}
  DELETE /browsers/{id}

``session()`` guarantees the session is released; a failed teardown is
logged as a structured release failure and never raised.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator

import httpx

import config
from utils.resources import log_release_failure

log = logging.getLogger(__name__)


class BrowserScriptError(RuntimeError):
    """The script ran but reported failure, or returned nothing."""


class BrowserClient:
    def __init__(self, base_url: str | None = None, api_key: str | None = None,
                 timeout_sec: int | None = None):
        self.base_url = (base_url or config.BROWSER_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else config.BROWSER_API_KEY
        self.timeout_sec = timeout_sec or config.BROWSER_SESSION_TIMEOUT_SEC

    def _http(self) -> httpx.Client:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        # Script execution can take as long as the session timeout.
        return httpx.Client(base_url=self.base_url, headers=headers, timeout=self.timeout_sec + 30)

    def create_session(self) -> str:
        with self._http() as client:
            resp = client.post("/browsers", json={"stealth": True})
            resp.raise_for_status()
            session_id = resp.json()["session_id"]
        log.info("[BROWSER] Session created: %s", session_id)
        return session_id

    def execute(self, session_id: str, code: str, timeout_sec: int | None = None) -> Any:
        """Run a Playwright script; return its ``result`` or raise BrowserScriptError."""
        with self._http() as client:
            resp = client.post(
                f"/browsers/{session_id}/playwright/execute",
                json={"code": code, "timeout_sec": timeout_sec or self.timeout_sec},
            )
            resp.raise_for_status()
            body = resp.json()
        if not body.get("success") or body.get("result") is None:
            raise BrowserScriptError(body.get("error") or body.get("stderr") or "empty script result")
        return body["result"]

    def delete_session(self, session_id: str) -> None:
        with self._http() as client:
            resp = client.delete(f"/browsers/{session_id}")
            resp.raise_for_status()
        log.info("[BROWSER] Session released: %s", session_id)

    @contextmanager
    def session(self) -> Iterator[str]:
        session_id = self.create_session()
        try:
            yield session_id
        finally:
            try:
                self.delete_session(session_id)
            except Exception as e:
                log_release_failure("browser_session", session_id, e)

    def run_script(self, code: str, timeout_sec: int | None = None) -> Any:
        """Create a session, run one script in it, release the session."""
        with self.session() as session_id:
            return self.execute(session_id, code, timeout_sec)
