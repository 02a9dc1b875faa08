# Purpose: turn a raw ClipboardSnapshot into a capture decision
# rules run in order, first match wins:
#   1. file / folder references  -> skip (never ingest file drops)
#   2. transient / concealed     -> skip (password managers, one-time copies)
#   3. text (rich text first)    -> text
#   4. first bitmap              -> image, re-encoded as PNG
#   5. anything else             -> skip
# pure: no storage, no exceptions, a failure is just another classification

import io
from dataclasses import dataclass
from typing import Callable, Optional

from loguru import logger
from PIL import Image

from clipkeep.core.errors import ClassificationSkip
from clipkeep.db.models import ItemType
from clipkeep.ingest.clipboard import ClipboardSnapshot, SENSITIVE_TYPES, rich_text_to_plain

IMAGE_FORMAT = "png"

ForegroundAppProvider = Callable[[], Optional[str]]


@dataclass(frozen=True)
class Classification:
    kind: Optional[ItemType]  # None when skipped
    source_app_id: str = ""
    skip_reason: Optional[str] = None
    text: Optional[str] = None
    image_bytes: Optional[bytes] = None
    image_width: int = 0
    image_height: int = 0
    image_format: str = IMAGE_FORMAT

    @property
    def skipped(self) -> bool:
        return self.kind is None

    @classmethod
    def skip(cls, reason: str, source_app_id: str = "") -> "Classification":
        return cls(kind=None, skip_reason=reason, source_app_id=source_app_id)

    def as_error(self) -> Optional[ClassificationSkip]:
        return ClassificationSkip(self.skip_reason) if self.skipped else None


def no_foreground_app() -> Optional[str]:
    return None


def encode_png(image: Image.Image) -> bytes:
    """Normalize any clipboard bitmap to PNG bytes"""
    if image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
        image = image.convert("RGBA")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


class PayloadClassifier:
    def __init__(self, foreground_app: ForegroundAppProvider = no_foreground_app):
        self.foreground_app = foreground_app

    def detect_source_app_id(self, snapshot: ClipboardSnapshot) -> str:
        """Explicit marker from the source app > foreground app > "" """
        if snapshot.source_marker:
            return snapshot.source_marker

        try:
            frontmost = self.foreground_app()
        except Exception as e:
            logger.debug(f"[CLASSIFY] Foreground app lookup failed: {e}")
            frontmost = None

        return frontmost or ""

    @staticmethod
    def has_file_references(snapshot: ClipboardSnapshot) -> bool:
        return len(snapshot.file_paths) > 0

    @staticmethod
    def has_sensitive_markers(snapshot: ClipboardSnapshot) -> bool:
        return not SENSITIVE_TYPES.isdisjoint(snapshot.types)

    @staticmethod
    def read_text(snapshot: ClipboardSnapshot) -> Optional[str]:
        if snapshot.rich_text:
            plain = rich_text_to_plain(snapshot.rich_text)
            if plain:
                return plain

        if snapshot.text:
            return snapshot.text

        return None

    def classify(self, snapshot: ClipboardSnapshot) -> Classification:
        if self.has_file_references(snapshot):
            return Classification.skip(ClassificationSkip.FILE_REFERENCE)

        if self.has_sensitive_markers(snapshot):
            return Classification.skip(ClassificationSkip.SENSITIVE_MARKER)

        source_app_id = self.detect_source_app_id(snapshot)

        text = self.read_text(snapshot)
        if text:
            return Classification(kind=ItemType.TEXT, text=text, source_app_id=source_app_id)

        for image in snapshot.images:
            try:
                data = encode_png(image)
            except (OSError, ValueError) as e:
                logger.debug(f"[CLASSIFY] Could not encode clipboard image: {e}")
                continue
            width, height = image.size
            return Classification(
                kind=ItemType.IMAGE,
                image_bytes=data,
                image_width=int(width),
                image_height=int(height),
                source_app_id=source_app_id,
            )

        return Classification.skip(ClassificationSkip.UNSUPPORTED, source_app_id=source_app_id)
