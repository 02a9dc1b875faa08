"""
Tests for clipkeep/search/history.py

Cache behaviour in front of the store, invalidation and JSON decoding.
"""

from unittest.mock import MagicMock

import pytest

from clipkeep.core.dispatch import SerialQueue
from clipkeep.core.errors import DecodeError, RuntimeUnavailable
from clipkeep.db.models import ItemType, OcrStatus
from clipkeep.ocr.engine import OcrEngine, RecognizedLine
from clipkeep.ocr.scheduler import OcrTaskScheduler
from clipkeep.search.history import ClipboardHistoryService, decode_item, decode_items
from conftest import FakeRecognizer, ManualQueue, png_bytes


@pytest.fixture
def counting_storage(context):
    """Wrap the real store so tests can count search calls"""
    storage = context.storage
    spy = MagicMock(wraps=storage)
    context.storage = spy
    return spy


class TestSearch:
    def test_newest_first_with_preview(self, context, storage):
        storage.ingest_text("first entry", "")
        storage.ingest_text("second entry " + "x" * 300, "")

        items = ClipboardHistoryService(context).search("entry").result()

        assert [item.content[:6] for item in items] == ["second", "first "]
        assert len(items[0].content) == 200

    def test_repeated_query_hits_cache(self, context, storage, counting_storage):
        storage.ingest_text("cached", "")
        history = ClipboardHistoryService(context)

        first = history.search("cache").result()
        second = history.search("cache").result()

        assert first == second
        assert counting_storage.search.call_count == 1

    def test_type_filter(self, context, storage):
        storage.ingest_text("some text", "")
        storage.ingest_image(png_bytes(), 32, 16, "png", "")

        items = ClipboardHistoryService(context).search("", filter_type=ItemType.IMAGE).result()

        assert [item.type for item in items] == [ItemType.IMAGE]
        assert items[0].ocr_status == OcrStatus.PENDING

    def test_delete_invalidates_cache(self, context, storage, counting_storage):
        storage.ingest_text("to delete", "")
        history = ClipboardHistoryService(context)
        item = history.search("delete").result()[0]

        assert history.delete(item.id).result() is True
        assert history.search("delete").result() == []
        assert counting_storage.search.call_count == 2

    def test_failed_delete_keeps_cache(self, context, counting_storage):
        history = ClipboardHistoryService(context)
        history.search("").result()

        assert history.delete("missing").result() is False
        history.search("").result()
        assert counting_storage.search.call_count == 1

    def test_clear_all_invalidates_cache(self, context, storage, counting_storage):
        storage.ingest_text("one", "")
        storage.ingest_text("two", "")
        history = ClipboardHistoryService(context)
        assert len(history.search("").result()) == 2

        assert history.clear_all().result() is True
        assert history.search("").result() == []
        assert counting_storage.search.call_count == 2

    def test_ocr_text_toggle(self, context, storage):
        storage.ingest_image(png_bytes(), 32, 16, "png", "")
        history = ClipboardHistoryService(context)
        image = history.search("", filter_type=ItemType.IMAGE).result()[0]
        storage.mark_ocr_processing(image.id)
        storage.report_ocr_success(image.id, "Quarterly revenue")

        assert [item.id for item in history.search("revenue").result()] == [image.id]

        # toggling the setting drops cached results computed with the old value
        context.settings_store.update(ocr={"include_in_search": False})
        assert history.search("revenue").result() == []

    def test_stored_ocr_result_invalidates_cache(self, context, storage, counting_storage):
        storage.ingest_image(png_bytes(), 32, 16, "png", "")
        history = ClipboardHistoryService(context)
        assert history.search("invoice").result() == []

        queue = ManualQueue()
        recognizer = FakeRecognizer(passes=[[RecognizedLine("invoice 42", 0.95)], []])
        scheduler = OcrTaskScheduler(context, engine=OcrEngine(context, recognizer), queue=queue, clock=lambda: 0.0)
        scheduler.process_next()

        assert [item.type for item in history.search("invoice").result()] == [ItemType.IMAGE]
        assert counting_storage.search.call_count == 2

    def test_store_unavailable_propagates(self, context, storage):
        storage.close()
        with pytest.raises(RuntimeUnavailable):
            ClipboardHistoryService(context).search("x").result()


class TestDecoding:
    def test_malformed_search_json(self, context):
        context.storage = MagicMock()
        context.storage.search.return_value = '[{"id": 1'

        with pytest.raises(DecodeError):
            ClipboardHistoryService(context).search("x").result()

    def test_malformed_result_not_cached(self, context):
        context.storage = MagicMock()
        context.storage.search.return_value = "not json"
        history = ClipboardHistoryService(context)

        with pytest.raises(DecodeError):
            history.search("x").result()
        assert len(history.cache) == 0

    def test_empty_and_none(self):
        assert decode_items(None) == []
        assert decode_items("") == []
        assert decode_items("[]") == []
        assert decode_item(None) is None

    def test_wrong_shape(self):
        with pytest.raises(DecodeError):
            decode_items('{"id": "a"}')
        with pytest.raises(DecodeError):
            decode_item('{"id": "a", "type": "video", "createTimeMs": 1}')


class TestOtherOperations:
    def test_get(self, context, storage):
        storage.ingest_text("full content " + "y" * 500, "com.example")
        history = ClipboardHistoryService(context)
        summary = history.search("").result()[0]

        item = history.get(summary.id).result()

        assert len(item.content) == len("full content ") + 500
        assert item.source_app_id == "com.example"
        assert history.get("missing").result() is None

    def test_ocr_status(self, context, storage):
        storage.ingest_image(png_bytes(), 32, 16, "png", "")
        storage.ingest_text("text", "")
        history = ClipboardHistoryService(context)
        image, text = (history.search("", filter_type=t).result()[0] for t in (ItemType.IMAGE, ItemType.TEXT))

        assert history.ocr_status(image.id).result().status == OcrStatus.PENDING
        assert history.ocr_status(text.id).result() is None

    def test_runs_on_work_queue(self, context, storage):
        storage.ingest_text("queued", "")
        context.work_queue = SerialQueue("test-history")
        try:
            items = ClipboardHistoryService(context).search("queued").result(timeout=5)
        finally:
            context.shutdown()
        assert [item.content for item in items] == ["queued"]
