"""
Card domain models shared by activities, workflows and the API.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any


class CardType(str, Enum):
    TEXT = "text"
    LINK = "link"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"
    PALETTE = "palette"
    QUOTE = "quote"


class MetadataStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowKind(str, Enum):
    CARD_PROCESSING = "card_processing"
    LINK_ENRICHMENT = "link_enrichment"
    SCREENSHOT = "screenshot"
    AI_BACKFILL = "ai_backfill"
    CARD_CLEANUP = "card_cleanup"


@dataclass
class FileMetadata:
    """Facts about an uploaded file, captured at upload time."""
    mime_type: str | None = None
    file_name: str | None = None
    file_size: int | None = None
    width: int | None = None
    height: int | None = None
    duration: float | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> "FileMetadata | None":
        if not data:
            return None
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Card:
    """A user-saved content item.

    ``processing_status`` is kept in its serialized form (stage key to
    status dict); use models.processing_status to parse it.
    """
    id: str
    type: CardType = CardType.TEXT
    content: str = ""
    url: str | None = None
    file_id: str | None = None
    thumbnail_id: str | None = None
    file_metadata: FileMetadata | None = None
    notes: str | None = None
    tags: list[str] = field(default_factory=list)
    colors: list[dict] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    metadata_status: MetadataStatus = MetadataStatus.PENDING
    ai_tags: list[str] = field(default_factory=list)
    ai_summary: str | None = None
    ai_transcript: str | None = None
    processing_status: dict = field(default_factory=dict)
    workflow_id: str | None = None
    is_deleted: bool = False
    deleted_at: int | None = None
    created_at: int | None = None
    updated_at: int | None = None

    @property
    def link_preview(self) -> dict | None:
        return self.metadata.get("link_preview")

    @property
    def link_category(self) -> dict | None:
        return self.metadata.get("link_category")

    def to_dict(self) -> dict:
        data = asdict(self)
        data["type"] = self.type.value
        data["metadata_status"] = self.metadata_status.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Card":
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {k: v for k, v in data.items() if k in known}
        values["type"] = CardType(values.get("type", CardType.TEXT))
        values["metadata_status"] = MetadataStatus(values.get("metadata_status") or MetadataStatus.PENDING)
        values["file_metadata"] = FileMetadata.from_dict(values.get("file_metadata"))
        for key in ("tags", "colors", "ai_tags"):
            values[key] = list(values.get(key) or [])
        values["metadata"] = dict(values.get("metadata") or {})
        values["processing_status"] = dict(values.get("processing_status") or {})
        return cls(**values)


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses and enums into plain JSON types."""
    if isinstance(value, Enum):
        return value.value
    if hasattr(value, "__dataclass_fields__"):
        return to_jsonable(asdict(value))
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value
