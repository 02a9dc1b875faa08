from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlmodel import SQLModel, Field, Index


class ItemType(str, Enum):
    TEXT = "text"
    IMAGE = "image"


class OcrStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ClipboardRecord(SQLModel, table=True):
    """Defines the Schema of the table"""

    __tablename__ = "clipboard_items"
    __table_args__ = (
        Index('ix_items_last_copy', 'last_copy_time_ms'),  # newest first listing + "most recent item" dedup
        Index('ix_items_ocr_queue', 'type', 'ocr_status'),  # pending OCR lookups
    )

    id: str = Field(primary_key=True)

    type: str = Field(default=ItemType.TEXT.value)  # "text" or "image"

    content: str = Field(default="")  # clipboard text, empty for images

    content_hash: str  # xxhash64 of text or image bytes

    image_path: Optional[str] = Field(default=None)  # relative to config.clipboard_data_dir
    image_width: Optional[int] = Field(default=None)
    image_height: Optional[int] = Field(default=None)
    image_format: Optional[str] = Field(default=None)

    create_time_ms: int
    last_copy_time_ms: int  # refreshed on dedup

    source_app_id: str = Field(default="")

    ocr_status: Optional[str] = Field(default=None)  # None for text items
    ocr_text: Optional[str] = Field(default=None)


# ===== BOUNDARY MODELS (JSON in / out of the storage engine) =====

class _BoundaryModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class ClipboardItem(_BoundaryModel):
    id: str
    type: ItemType
    content: str = ""
    image_path: Optional[str] = None
    image_width: Optional[int] = None
    image_height: Optional[int] = None
    create_time_ms: int
    last_copy_time_ms: Optional[int] = None
    source_app_id: str = ""
    ocr_status: Optional[OcrStatus] = None
    ocr_text: Optional[str] = None

    @classmethod
    def from_record(cls, record: ClipboardRecord, preview_length: Optional[int] = None) -> "ClipboardItem":
        content = record.content or ""
        if preview_length is not None and preview_length >= 0:
            content = content[:preview_length]
        return cls(
            id=record.id,
            type=ItemType(record.type),
            content=content,
            image_path=record.image_path,
            image_width=record.image_width,
            image_height=record.image_height,
            create_time_ms=record.create_time_ms,
            last_copy_time_ms=record.last_copy_time_ms,
            source_app_id=record.source_app_id or "",
            ocr_status=OcrStatus(record.ocr_status) if record.ocr_status else None,
            ocr_text=record.ocr_text,
        )


class OcrTaskPayload(_BoundaryModel):
    id: str
    image_path: str


class OcrStatusInfo(_BoundaryModel):
    status: OcrStatus
    text: Optional[str] = None


class CaptureOutcome(BaseModel):
    """Result of one ingest call"""
    model_config = ConfigDict(frozen=True)

    ok: bool
    inserted: bool

    @classmethod
    def failed(cls) -> "CaptureOutcome":
        return cls(ok=False, inserted=False)
