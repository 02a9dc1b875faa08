# Purpose: storage engine contract + the SQLite reference engine behind it
# the rest of ClipKeep only talks to StorageEngine, query results cross the
# boundary as JSON strings (decoded by search/history.py)
#
# Rules:
# - dedup compares against the MOST RECENT item only (exact content equality),
#   a repeat of something older becomes a new row
# - pending OCR tasks come out oldest first
# - at most one image is "processing" at a time, the scheduler guarantees it,
#   mark_ocr_processing only accepts pending items

import json
import os
import threading
import time
from typing import Callable, Optional, Protocol

import xxhash
from loguru import logger
from sqlmodel import select, func, or_, col

from clipkeep.core import config
from clipkeep.core.errors import RuntimeUnavailable
from clipkeep.db.models import (
    CaptureOutcome,
    ClipboardItem,
    ClipboardRecord,
    ItemType,
    OcrStatus,
    OcrStatusInfo,
    OcrTaskPayload,
)
from clipkeep.db.session import build_engine, get_session, init_db

IMAGES_SUBDIR = "images"


class StorageEngine(Protocol):
    """Request / response operations the pipeline needs from a store"""

    def ingest_text(self, text: str, source_app_id: str) -> CaptureOutcome: ...

    def ingest_image(self, data: bytes, width: int, height: int, format_hint: str,
                     source_app_id: str) -> CaptureOutcome: ...

    def search(self, query: str, limit: int, preview_length: int, type_filter: Optional[str],
               include_ocr_text: bool) -> str: ...

    def get(self, item_id: str) -> Optional[str]: ...

    def delete(self, item_id: str) -> bool: ...

    def clear_all(self) -> bool: ...

    def next_pending_ocr_task(self) -> Optional[str]: ...

    def mark_ocr_processing(self, item_id: str) -> bool: ...

    def report_ocr_success(self, item_id: str, text: str) -> bool: ...

    def report_ocr_failed(self, item_id: str) -> bool: ...


# ===== HASHING / IDS =====

def compute_hash(data: bytes) -> str:
    """xxhash64 of raw bytes"""
    return xxhash.xxh64(data).hexdigest()


def make_item_id(time_ms: int, source_app_id: str, content_hash: str) -> str:
    return xxhash.xxh64(f"{time_ms}|{source_app_id}|{content_hash}".encode("utf-8")).hexdigest()


def _wall_clock_ms() -> int:
    return int(time.time() * 1000)


class SqliteStorageEngine:
    """
    StorageEngine on top of SQLite (sqlmodel)
    - rows in table clipboard_items
    - image bytes in <clipboard_data_dir>/images/<hash>.<format>
    """

    def __init__(
            self,
            sqlite_url: str = config.sqlite_url,
            clipboard_data_dir: str = config.clipboard_data_dir,
            max_items: Callable[[], int] = lambda: 1000,
            clock: Callable[[], int] = _wall_clock_ms,
    ):
        self.sqlite_url = sqlite_url
        self.clipboard_data_dir = clipboard_data_dir
        self._max_items = max_items
        self._clock = clock
        self._engine = None
        self._lock = threading.RLock()
        self._last_time_ms = 0

    # ----- lifecycle -----

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def open(self) -> bool:
        with self._lock:
            if self._engine is not None:
                return True
            os.makedirs(os.path.join(self.clipboard_data_dir, IMAGES_SUBDIR), exist_ok=True)
            engine = build_engine(self.sqlite_url)
            init_db(engine, self.sqlite_url)
            self._engine = engine
            logger.info(f"[STORE] Opened {self.sqlite_url}")
            return True

    def close(self):
        with self._lock:
            if self._engine is None:
                return
            self._engine.dispose()
            self._engine = None
            logger.info("[STORE] Closed")

    def _require_open(self):
        if self._engine is None:
            raise RuntimeUnavailable()
        return self._engine

    def _next_time_ms(self) -> int:
        # capture timestamps are strictly increasing so "most recent" is never ambiguous
        now = max(self._clock(), self._last_time_ms + 1)
        self._last_time_ms = now
        return now

    @staticmethod
    def _latest(session) -> Optional[ClipboardRecord]:
        statement = select(ClipboardRecord).order_by(col(ClipboardRecord.last_copy_time_ms).desc()).limit(1)
        return session.exec(statement).first()

    def _unique_id(self, session, time_ms: int, source_app_id: str, content_hash: str) -> str:
        item_id = make_item_id(time_ms, source_app_id, content_hash)
        salt = 0
        while session.get(ClipboardRecord, item_id) is not None:
            salt += 1
            item_id = make_item_id(time_ms, f"{source_app_id}#{salt}", content_hash)
        return item_id

    def _keeps_nothing(self) -> bool:
        # history.maxCount == 0: a new row would be removed by retention right away
        if self._max_items() <= 0:
            logger.debug("[STORE] History max count is 0, capture not stored")
            return True
        return False

    # ----- ingest -----

    def ingest_text(self, text: str, source_app_id: str) -> CaptureOutcome:
        with self._lock:
            engine = self._require_open()
            if self._keeps_nothing():
                return CaptureOutcome.failed()
            now = self._next_time_ms()
            content_hash = compute_hash(text.encode("utf-8"))

            with get_session(engine) as session:
                latest = self._latest(session)
                if latest is not None and latest.type == ItemType.TEXT.value and latest.content == text:
                    latest.last_copy_time_ms = now
                    latest.source_app_id = source_app_id
                    session.add(latest)
                    session.commit()
                    logger.debug(f"[STORE] Dedup hit on text item #{latest.id}")
                    return CaptureOutcome(ok=True, inserted=False)

                record = ClipboardRecord(
                    id=self._unique_id(session, now, source_app_id, content_hash),
                    type=ItemType.TEXT.value,
                    content=text,
                    content_hash=content_hash,
                    create_time_ms=now,
                    last_copy_time_ms=now,
                    source_app_id=source_app_id,
                )
                session.add(record)
                session.commit()
                logger.debug(f"[STORE] Inserted text item #{record.id}")

            self.enforce_retention(self._max_items())
            return CaptureOutcome(ok=True, inserted=True)

    def ingest_image(self, data: bytes, width: int, height: int, format_hint: str,
                     source_app_id: str) -> CaptureOutcome:
        with self._lock:
            engine = self._require_open()
            if not data or self._keeps_nothing():
                return CaptureOutcome.failed()

            now = self._next_time_ms()
            content_hash = compute_hash(data)
            image_format = (format_hint or "png").lower()

            with get_session(engine) as session:
                latest = self._latest(session)
                if latest is not None and latest.type == ItemType.IMAGE.value and latest.content_hash == content_hash:
                    latest.last_copy_time_ms = now
                    latest.source_app_id = source_app_id
                    session.add(latest)
                    session.commit()
                    logger.debug(f"[STORE] Dedup hit on image item #{latest.id}")
                    return CaptureOutcome(ok=True, inserted=False)

                relative_path = f"{IMAGES_SUBDIR}/{content_hash}.{image_format}"
                absolute_path = os.path.join(self.clipboard_data_dir, relative_path)
                try:
                    if not os.path.exists(absolute_path):
                        os.makedirs(os.path.dirname(absolute_path), exist_ok=True)
                        with open(absolute_path, "wb") as f:
                            f.write(data)
                except OSError as e:
                    logger.error(f"[STORE] Could not write image {relative_path}: {e}")
                    return CaptureOutcome.failed()

                record = ClipboardRecord(
                    id=self._unique_id(session, now, source_app_id, content_hash),
                    type=ItemType.IMAGE.value,
                    content="",
                    content_hash=content_hash,
                    image_path=relative_path,
                    image_width=int(width),
                    image_height=int(height),
                    image_format=image_format,
                    create_time_ms=now,
                    last_copy_time_ms=now,
                    source_app_id=source_app_id,
                    ocr_status=OcrStatus.PENDING.value,
                )
                session.add(record)
                session.commit()
                logger.debug(f"[STORE] Inserted image item #{record.id} ({width}x{height})")

            self.enforce_retention(self._max_items())
            return CaptureOutcome(ok=True, inserted=True)

    # ----- queries (JSON out) -----

    def search(self, query: str, limit: int, preview_length: int, type_filter: Optional[str],
               include_ocr_text: bool) -> str:
        """Substring search, newest first. Empty query lists the newest items"""
        engine = self._require_open()
        with get_session(engine) as session:
            statement = select(ClipboardRecord)

            query = (query or "").strip()
            if query:
                condition = col(ClipboardRecord.content).contains(query, autoescape=True)
                if include_ocr_text:
                    condition = or_(condition, col(ClipboardRecord.ocr_text).contains(query, autoescape=True))
                statement = statement.where(condition)

            if type_filter:
                statement = statement.where(ClipboardRecord.type == type_filter)

            statement = statement.order_by(col(ClipboardRecord.last_copy_time_ms).desc()).limit(max(int(limit), 0))
            rows = session.exec(statement).all()

        items = [ClipboardItem.from_record(row, preview_length).model_dump(mode="json", by_alias=True) for row in rows]
        return json.dumps(items, ensure_ascii=False)

    def get(self, item_id: str) -> Optional[str]:
        engine = self._require_open()
        with get_session(engine) as session:
            record = session.get(ClipboardRecord, item_id)
            if record is None:
                return None
            return ClipboardItem.from_record(record).to_json()

    def stats(self) -> dict:
        engine = self._require_open()
        with get_session(engine) as session:
            total = session.exec(select(func.count()).select_from(ClipboardRecord)).one()
            images = session.exec(
                select(func.count()).select_from(ClipboardRecord).where(ClipboardRecord.type == ItemType.IMAGE.value)
            ).one()
            pending = session.exec(
                select(func.count()).select_from(ClipboardRecord)
                .where(ClipboardRecord.ocr_status == OcrStatus.PENDING.value)
            ).one()
        return {
            "total_items": int(total),
            "text_items": int(total) - int(images),
            "image_items": int(images),
            "pending_ocr": int(pending),
        }

    # ----- deletion / retention -----

    def _remove_image_file(self, session, record: ClipboardRecord):
        """Delete the image file unless another row still points at it"""
        if not record.image_path:
            return
        still_used = session.exec(
            select(ClipboardRecord.id)
            .where(ClipboardRecord.image_path == record.image_path, ClipboardRecord.id != record.id)
            .limit(1)
        ).first()
        if still_used is not None:
            return
        absolute_path = os.path.join(self.clipboard_data_dir, record.image_path)
        try:
            if os.path.exists(absolute_path):
                os.remove(absolute_path)
        except OSError as e:
            logger.warning(f"[STORE] Could not remove image file {record.image_path}: {e}")

    def delete(self, item_id: str) -> bool:
        with self._lock:
            engine = self._require_open()
            with get_session(engine) as session:
                record = session.get(ClipboardRecord, item_id)
                if record is None:
                    return False
                self._remove_image_file(session, record)
                session.delete(record)
                session.commit()
        return True

    def enforce_retention(self, max_count: int) -> bool:
        """Keep only the newest max_count items"""
        with self._lock:
            engine = self._require_open()
            with get_session(engine) as session:
                statement = (
                    select(ClipboardRecord)
                    .order_by(col(ClipboardRecord.last_copy_time_ms).desc())
                    .offset(max(int(max_count), 0))
                )
                expired = session.exec(statement).all()
                for record in expired:
                    session.delete(record)
                session.flush()
                for record in expired:
                    self._remove_image_file(session, record)
                session.commit()

            if expired:
                logger.info(f"[STORE] Retention removed {len(expired)} item(s)")
        return True

    def clear_all(self) -> bool:
        return self.enforce_retention(0)

    # ----- OCR task queue -----

    def next_pending_ocr_task(self) -> Optional[str]:
        engine = self._require_open()
        with get_session(engine) as session:
            statement = (
                select(ClipboardRecord)
                .where(ClipboardRecord.type == ItemType.IMAGE.value,
                       ClipboardRecord.ocr_status == OcrStatus.PENDING.value)
                .order_by(col(ClipboardRecord.create_time_ms).asc())
                .limit(1)
            )
            record = session.exec(statement).first()
            if record is None or not record.image_path:
                return None
            return OcrTaskPayload(id=record.id, image_path=record.image_path).to_json()

    def _set_ocr_state(self, item_id: str, status: OcrStatus, text: Optional[str] = None,
                       required: Optional[OcrStatus] = None) -> bool:
        with self._lock:
            engine = self._require_open()
            with get_session(engine) as session:
                record = session.get(ClipboardRecord, item_id)
                if record is None or record.type != ItemType.IMAGE.value:
                    return False
                if required is not None and record.ocr_status != required.value:
                    return False
                record.ocr_status = status.value
                if status == OcrStatus.COMPLETED:
                    record.ocr_text = text or None
                session.add(record)
                session.commit()
        return True

    def mark_ocr_processing(self, item_id: str) -> bool:
        return self._set_ocr_state(item_id, OcrStatus.PROCESSING, required=OcrStatus.PENDING)

    def report_ocr_success(self, item_id: str, text: str) -> bool:
        return self._set_ocr_state(item_id, OcrStatus.COMPLETED, text=text)

    def report_ocr_failed(self, item_id: str) -> bool:
        return self._set_ocr_state(item_id, OcrStatus.FAILED)

    def get_ocr_status(self, item_id: str) -> Optional[str]:
        engine = self._require_open()
        with get_session(engine) as session:
            record = session.get(ClipboardRecord, item_id)
            if record is None or record.type != ItemType.IMAGE.value or not record.ocr_status:
                return None
            return OcrStatusInfo(status=OcrStatus(record.ocr_status), text=record.ocr_text).to_json()

    def recover_interrupted_ocr_tasks(self) -> int:
        """
        Put items stuck in "processing" (process died mid-task) back to "pending"
        Only call while no OCR task is in flight, eg: scheduler start
        """
        with self._lock:
            engine = self._require_open()
            with get_session(engine) as session:
                stuck = session.exec(
                    select(ClipboardRecord).where(ClipboardRecord.ocr_status == OcrStatus.PROCESSING.value)
                ).all()
                for record in stuck:
                    record.ocr_status = OcrStatus.PENDING.value
                    session.add(record)
                session.commit()

        if stuck:
            logger.warning(f"[STORE] Recovered {len(stuck)} interrupted OCR task(s)")
        return len(stuck)
