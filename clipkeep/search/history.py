# Purpose: the history operations the UI / API use (search, get, delete, clear)
# every storage call runs on the storage work queue and comes back as a Future
# search results go through the LRU SearchCache, delete / clear / a stored OCR result empty it
# JSON coming out of the storage engine is decoded here -> DecodeError when malformed

from concurrent.futures import Future
from typing import Callable, List, Optional, TypeVar

from loguru import logger
from pydantic import TypeAdapter, ValidationError

from clipkeep.core import config
from clipkeep.core.config import Settings
from clipkeep.core.context import AppContext
from clipkeep.core.errors import DecodeError
from clipkeep.core.events import AppEvent
from clipkeep.db.models import ClipboardItem, ItemType, OcrStatusInfo
from clipkeep.search.cache import CacheKey, SearchCache

T = TypeVar("T")

_item_list = TypeAdapter(List[ClipboardItem])


def decode_items(raw: Optional[str]) -> List[ClipboardItem]:
    if raw is None or raw == "":
        return []
    try:
        return _item_list.validate_json(raw)
    except ValidationError as e:
        raise DecodeError(f"invalid search result: {e}") from e


def decode_item(raw: Optional[str]) -> Optional[ClipboardItem]:
    if raw is None or raw == "":
        return None
    try:
        return ClipboardItem.model_validate_json(raw)
    except ValidationError as e:
        raise DecodeError(f"invalid item: {e}") from e


class ClipboardHistoryService:
    def __init__(self, context: AppContext, cache: Optional[SearchCache] = None,
                 preview_length: int = config.preview_length):
        self.context = context
        self.cache = cache if cache is not None else SearchCache()
        self.preview_length = preview_length
        context.settings_store.subscribe(self._settings_changed)
        # OCR text / status changed under cached results
        context.events.subscribe(AppEvent.OCR_RESULT_STORED, self._ocr_result_stored)

    def _ocr_result_stored(self, event: AppEvent):
        self.invalidate_search_cache()

    def _settings_changed(self, old: Settings, new: Settings):
        # cached results were computed with the old OCR search setting
        if old.ocr.include_in_search != new.ocr.include_in_search:
            self.invalidate_search_cache()

    def _run(self, job: Callable[[], T]) -> "Future[T]":
        queue = self.context.work_queue
        if queue is not None:
            return queue.submit(job)

        future = Future()
        try:
            future.set_result(job())
        except Exception as e:
            future.set_exception(e)
        return future

    def invalidate_search_cache(self):
        self.cache.invalidate()

    def search(self, query: str, limit: int = config.search_limit,
               filter_type: Optional[ItemType] = None) -> "Future[List[ClipboardItem]]":
        filter_value = filter_type.value if filter_type is not None else None
        key = CacheKey(query=query, limit=limit, preview_length=self.preview_length, filter_type=filter_value)

        cached = self.cache.get(key)
        if cached is not None:
            future = Future()
            future.set_result(list(cached))
            return future

        def job():
            include_ocr = self.context.settings.ocr.include_in_search
            raw = self.context.storage.search(query, limit, self.preview_length, filter_value, include_ocr)
            try:
                items = decode_items(raw)
            except DecodeError as e:
                logger.error(f"[HISTORY] Search decode failed: {e}")
                raise
            self.cache.put(key, tuple(items))
            return items

        return self._run(job)

    def get(self, item_id: str) -> "Future[Optional[ClipboardItem]]":
        return self._run(lambda: decode_item(self.context.storage.get(item_id)))

    def delete(self, item_id: str) -> "Future[bool]":
        def job():
            deleted = self.context.storage.delete(item_id)
            if deleted:
                logger.info(f"[HISTORY] Deleted history item: {item_id}")
                self.invalidate_search_cache()
            else:
                logger.warning(f"[HISTORY] Failed to delete history item: {item_id}")
            return deleted

        return self._run(job)

    def clear_all(self) -> "Future[bool]":
        def job():
            cleared = self.context.storage.clear_all()
            if cleared:
                logger.info("[HISTORY] Cleared all history")
                self.invalidate_search_cache()
            else:
                logger.error("[HISTORY] Clear all history failed")
            return cleared

        return self._run(job)

    def ocr_status(self, item_id: str) -> "Future[Optional[OcrStatusInfo]]":
        def job():
            raw = self.context.storage.get_ocr_status(item_id)
            if raw is None:
                return None
            try:
                return OcrStatusInfo.model_validate_json(raw)
            except ValidationError as e:
                raise DecodeError(f"invalid OCR status: {e}") from e

        return self._run(job)

    def stats(self) -> "Future[dict]":
        return self._run(self.context.storage.stats)
