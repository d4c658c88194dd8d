"""
Best-effort release of external resources (browser sessions, blobs).

Release failures are logged as structured records and never raised.
"""

from __future__ import annotations

import logging

log = logging.getLogger(__name__)


def log_release_failure(resource_kind: str, resource_id: str, error: BaseException | str) -> None:
    log.warning(
        "[RELEASE] resource_kind=%s resource_id=%s error=%s",
        resource_kind, resource_id, error,
        extra={
            "resource_kind": resource_kind,
            "resource_id": resource_id,
            "error": str(error),
        },
    )
