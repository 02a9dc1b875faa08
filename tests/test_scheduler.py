"""
Tests for clipkeep/ocr/scheduler.py

Most tests drive the scheduler through ManualQueue so every step is explicit,
the last class runs it on a real SerialQueue with concurrent capture events.
"""

import json
import threading
import time
from unittest.mock import MagicMock

from PIL import Image

from clipkeep.core.dispatch import SerialQueue
from clipkeep.core.events import AppEvent
from clipkeep.ingest.classifier import Classification
from clipkeep.db.models import ItemType
from clipkeep.ingest.gateway import IngestionGateway
from clipkeep.ocr.engine import OcrEngine, RecognizedLine
from clipkeep.ocr.scheduler import OcrTaskScheduler
from conftest import FakeRecognizer, png_bytes


def add_image(storage, color=(200, 30, 30)):
    storage.ingest_image(png_bytes(color=color), 32, 16, "png", "")
    items = json.loads(storage.search("", 1, 200, "image", True))
    return items[0]["id"]


def ocr_state(storage, item_id):
    return json.loads(storage.get_ocr_status(item_id))


def make_scheduler(context, queue, recognizer=None, clock=lambda: 0.0):
    recognizer = recognizer or FakeRecognizer(passes=[[RecognizedLine("invoice 42", 0.95)], []])
    return OcrTaskScheduler(context, engine=OcrEngine(context, recognizer), queue=queue, clock=clock)


class TestBackoff:
    def test_disabled_rechecks_after_idle_delay(self, context, storage, manual_queue):
        context.settings_store.update(ocr={"enabled": False})
        item_id = add_image(storage)
        scheduler = make_scheduler(context, manual_queue)

        scheduler.process_next()

        assert manual_queue.pending_delays() == [10.0]
        assert ocr_state(storage, item_id)["status"] == "pending"

    def test_no_task_rechecks_after_idle_delay(self, context, manual_queue):
        scheduler = make_scheduler(context, manual_queue)
        scheduler.process_next()
        assert manual_queue.pending_delays() == [10.0]

    def test_forced_wake_while_busy(self, context, manual_queue):
        scheduler = make_scheduler(context, manual_queue)
        scheduler.is_processing = True

        scheduler.process_next(force=False)
        assert manual_queue.pending_delays() == []

        scheduler.process_next(force=True)
        assert manual_queue.pending_delays() == [0.6]

    def test_mark_failure_retries_soon(self, context, manual_queue):
        context.storage = MagicMock()
        context.storage.next_pending_ocr_task.return_value = '{"id": "abc", "imagePath": "images/abc.png"}'
        context.storage.mark_ocr_processing.return_value = False
        scheduler = make_scheduler(context, manual_queue)

        scheduler.process_next()

        assert manual_queue.pending_delays() == [2.0]
        assert scheduler.is_processing is False
        context.storage.report_ocr_success.assert_not_called()

    def test_malformed_task_payload(self, context, manual_queue):
        context.storage = MagicMock()
        context.storage.next_pending_ocr_task.return_value = "{not json"
        scheduler = make_scheduler(context, manual_queue)

        scheduler.process_next()

        assert manual_queue.pending_delays() == [10.0]
        context.storage.mark_ocr_processing.assert_not_called()


class TestCoalescing:
    def test_earlier_check_replaces_later_one(self, context, manual_queue):
        scheduler = make_scheduler(context, manual_queue)

        scheduler.schedule_check(10.0)
        scheduler.schedule_check(5.0)
        scheduler.schedule_check(10.0)

        assert manual_queue.pending_delays() == [5.0]

    def test_new_check_allowed_after_previous_fired(self, context, manual_queue):
        scheduler = make_scheduler(context, manual_queue)
        scheduler.schedule_check(5.0)

        manual_queue.fire_delayed()
        manual_queue.run_all()

        # the fired check found nothing and re-armed the idle check
        assert manual_queue.pending_delays() == [10.0]


class TestTasks:
    def test_success_stores_text(self, context, storage, manual_queue):
        item_id = add_image(storage)
        scheduler = make_scheduler(context, manual_queue)

        scheduler.process_next()
        manual_queue.run_all()

        state = ocr_state(storage, item_id)
        assert state == {"status": "completed", "text": "invoice 42"}
        assert scheduler.completed == 1
        assert scheduler.is_processing is False

    def test_low_confidence_completes_without_text(self, context, storage, manual_queue):
        item_id = add_image(storage)
        recognizer = FakeRecognizer(passes=[[RecognizedLine("¤¤", 0.1)], []])
        scheduler = make_scheduler(context, manual_queue, recognizer)

        scheduler.process_next()

        assert ocr_state(storage, item_id)["status"] == "completed"
        assert ocr_state(storage, item_id)["text"] is None

    def test_failure_is_terminal(self, context, storage, manual_queue):
        item_id = add_image(storage)
        scheduler = make_scheduler(context, manual_queue, FakeRecognizer(error=RuntimeError("broken model")))

        scheduler.process_next()
        manual_queue.run_all()
        manual_queue.fire_delayed()
        manual_queue.run_all()

        assert ocr_state(storage, item_id)["status"] == "failed"
        assert scheduler.failed == 1
        assert storage.next_pending_ocr_task() is None

    def test_missing_image_file_fails_task(self, context, storage, data_dir, manual_queue):
        item_id = add_image(storage)
        for path in (data_dir / "images").iterdir():
            path.unlink()
        scheduler = make_scheduler(context, manual_queue)

        scheduler.process_next()

        assert ocr_state(storage, item_id)["status"] == "failed"

    def test_backlog_is_drained_oldest_first(self, context, storage, manual_queue):
        ids = [add_image(storage, color=(i * 60, 10, 10)) for i in range(3)]
        recognizer = FakeRecognizer(passes=[[RecognizedLine("text", 0.9)], []])
        scheduler = make_scheduler(context, manual_queue, recognizer)
        order = []
        real_mark = storage.mark_ocr_processing

        def recording_mark(item_id):
            order.append(item_id)
            return real_mark(item_id)

        storage.mark_ocr_processing = recording_mark

        scheduler.process_next()
        manual_queue.run_all()

        assert order == ids
        assert all(ocr_state(storage, item_id)["status"] == "completed" for item_id in ids)
        assert manual_queue.pending_delays() == [10.0]

    def test_oversized_image_fails_task(self, context, storage, manual_queue, monkeypatch):
        """Pillow's decompression bomb guard ends the task as failed, not stuck in processing"""
        item_id = add_image(storage)
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
        scheduler = make_scheduler(context, manual_queue)

        scheduler.process_next()

        assert ocr_state(storage, item_id)["status"] == "failed"
        assert scheduler.is_processing is False

    def test_unexpected_engine_error_fails_task(self, context, storage, manual_queue):
        class BrokenEngine:
            def recognize_file(self, image_path):
                raise KeyError(image_path)

        item_id = add_image(storage)
        scheduler = OcrTaskScheduler(context, engine=BrokenEngine(), queue=manual_queue, clock=lambda: 0.0)

        scheduler.process_next()
        manual_queue.run_all()

        assert ocr_state(storage, item_id)["status"] == "failed"
        assert scheduler.failed == 1
        assert manual_queue.pending_delays() == [10.0]

    def test_stored_results_are_announced(self, context, storage, manual_queue):
        announced = []
        context.events.subscribe(AppEvent.OCR_RESULT_STORED, announced.append)
        add_image(storage, color=(1, 1, 1))
        scheduler = make_scheduler(context, manual_queue)

        scheduler.process_next()
        manual_queue.run_all()

        assert announced == [AppEvent.OCR_RESULT_STORED]


class TestPeriodicChecks:
    def test_idle_loop_keeps_rearming(self, context, manual_queue):
        scheduler = make_scheduler(context, manual_queue)
        scheduler.start()
        manual_queue.run_all()
        assert manual_queue.pending_delays() == [5.0]

        for _ in range(5):
            manual_queue.fire_delayed()
            manual_queue.run_all()
            assert manual_queue.pending_delays() == [10.0]

    def test_task_without_event_is_picked_up(self, context, storage, manual_queue):
        scheduler = make_scheduler(context, manual_queue)
        scheduler.start()
        manual_queue.run_all()

        # written straight to the store, no IMAGE_CAPTURED
        item_id = add_image(storage)
        assert manual_queue.jobs == []

        manual_queue.fire_delayed()
        manual_queue.run_all()

        assert ocr_state(storage, item_id)["status"] == "completed"
        assert manual_queue.pending_delays() == [10.0]

    def test_disabled_scheduler_still_polls(self, context, storage, manual_queue):
        scheduler = make_scheduler(context, manual_queue)
        scheduler.start()
        manual_queue.run_all()
        item_id = add_image(storage)
        context.settings_store.update(ocr={"enabled": False})

        for _ in range(3):
            manual_queue.fire_delayed()
            manual_queue.run_all()
            assert manual_queue.pending_delays() == [10.0]
        assert ocr_state(storage, item_id)["status"] == "pending"


class TestLifecycle:
    def test_start_recovers_and_schedules_bootstrap(self, context, storage, manual_queue):
        item_id = add_image(storage)
        storage.mark_ocr_processing(item_id)
        scheduler = make_scheduler(context, manual_queue)

        scheduler.start()
        manual_queue.run_all()

        assert scheduler.started is True
        assert ocr_state(storage, item_id)["status"] == "pending"
        assert manual_queue.pending_delays() == [5.0]

    def test_image_captured_event_wakes_scheduler(self, context, storage, manual_queue):
        scheduler = make_scheduler(context, manual_queue)
        scheduler.start()
        manual_queue.run_all()

        gateway = IngestionGateway(context)
        gateway.capture(Classification(kind=ItemType.IMAGE, image_bytes=png_bytes(), image_width=32, image_height=16))
        manual_queue.run_all()

        assert scheduler.completed == 1

    def test_disabled_at_start_then_enabled(self, context, manual_queue):
        context.settings_store.update(ocr={"enabled": False})
        scheduler = make_scheduler(context, manual_queue)

        scheduler.start()
        manual_queue.run_all()
        assert scheduler.started is False

        context.settings_store.update(ocr={"enabled": True})
        manual_queue.run_all()
        assert scheduler.started is True

    def test_stop_unsubscribes(self, context, manual_queue):
        scheduler = make_scheduler(context, manual_queue)
        scheduler.start()
        manual_queue.run_all()

        scheduler.stop()
        context.events.emit(AppEvent.IMAGE_CAPTURED)

        assert manual_queue.jobs == []


class SlowRecognizer:
    """Counts overlapping recognize() calls and how many items are processing meanwhile"""

    def __init__(self, storage):
        self.storage = storage
        self.active = 0
        self.max_active = 0
        self.max_processing = 0
        self._lock = threading.Lock()

    def recognize(self, image, languages, level, upscale=False):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        items = json.loads(self.storage.search("", 100, 0, "image", True))
        processing = sum(1 for item in items if item["ocrStatus"] == "processing")
        with self._lock:
            self.max_processing = max(self.max_processing, processing)
        time.sleep(0.01)
        with self._lock:
            self.active -= 1
        return [RecognizedLine("ok", 0.9)]


class TestSingleFlight:
    def test_concurrent_captures_never_overlap(self, context, storage):
        recognizer = SlowRecognizer(storage)
        scheduler = OcrTaskScheduler(context, engine=OcrEngine(context, recognizer),
                                     queue=SerialQueue("test-ocr"))
        scheduler.start()
        try:
            deadline = time.time() + 5
            while not scheduler.started and time.time() < deadline:
                time.sleep(0.01)

            gateway = IngestionGateway(context)

            def capture(i):
                gateway.capture(Classification(
                    kind=ItemType.IMAGE,
                    image_bytes=png_bytes(color=(i * 20, 100, 50)),
                    image_width=32,
                    image_height=16,
                ))

            threads = [threading.Thread(target=capture, args=(i,)) for i in range(8)]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            def all_done():
                items = json.loads(storage.search("", 100, 0, "image", True))
                return len(items) == 8 and all(item["ocrStatus"] == "completed" for item in items)

            deadline = time.time() + 10
            while not all_done() and time.time() < deadline:
                time.sleep(0.05)
        finally:
            scheduler.stop()

        assert all_done()
        assert recognizer.max_active == 1
        assert recognizer.max_processing == 1
        assert scheduler.completed == 8
