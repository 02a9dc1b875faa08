# Purpose: background consumer of the pending-OCR queue
# - single flight: every step runs on ONE serial queue and only one task is in flight,
#   mutual exclusion comes from the queue, there is no lock
# - low latency: IMAGE_CAPTURED wakes it right away (force=True)
# - self healing: periodic re-checks cover missed events (5s bootstrap, 10s idle)
# - drains the backlog: after each task it immediately looks for the next one
# failed tasks are terminal, nothing is retried automatically

import itertools
import time
from typing import Callable, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from clipkeep.core.config import Settings
from clipkeep.core.context import AppContext
from clipkeep.core.dispatch import SerialQueue
from clipkeep.core.errors import DecodeError, OcrFailure, RuntimeUnavailable
from clipkeep.core.events import AppEvent
from clipkeep.db.models import OcrTaskPayload
from clipkeep.ocr.engine import OcrEngine

BOOTSTRAP_DELAY = 5.0
IDLE_DELAY = 10.0
BUSY_RECHECK_DELAY = 0.6
MARK_RETRY_DELAY = 2.0


class OcrTaskScheduler:
    def __init__(self, context: AppContext, engine: Optional[OcrEngine] = None, queue=None,
                 clock: Callable[[], float] = time.monotonic):
        self.context = context
        self.engine = engine or OcrEngine(context)
        self.queue = queue or SerialQueue("clipkeep-ocr")
        self.clock = clock

        self.is_processing = False
        self.started = False

        # at most one delayed check is pending: (token, due, handle)
        self._pending_check = None
        self._tokens = itertools.count(1)
        self._unsubscribe: Optional[Callable[[], None]] = None

        # stats counters
        self.completed = 0
        self.failed = 0

        context.settings_store.subscribe(self._settings_changed)

    # ----- lifecycle -----

    def start(self):
        self.queue.submit(self._start)

    def _start(self):
        if self.started:
            return
        if not self.context.settings.ocr.enabled:
            logger.info("[OCR] OCR disabled, scheduler not started")
            return

        self.started = True
        # nothing is in flight yet, so anything still "processing" was interrupted by a crash
        recover = getattr(self.context.storage, "recover_interrupted_ocr_tasks", None)
        if recover is not None:
            try:
                recover()
            except RuntimeUnavailable as e:
                logger.warning(f"[OCR] Could not recover interrupted tasks: {e}")

        self._unsubscribe = self.context.events.subscribe(AppEvent.IMAGE_CAPTURED, self._image_captured)
        self.schedule_check(BOOTSTRAP_DELAY)
        logger.info("[OCR] OCR scheduler started")

    def stop(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.started = False
        if isinstance(self.queue, SerialQueue):
            self.queue.shutdown(wait=True)

    def _settings_changed(self, old: Settings, new: Settings):
        if new.ocr.enabled and not old.ocr.enabled:
            self.start()

    def _image_captured(self, event: AppEvent):
        # called on the capture thread, hop onto our own queue
        self.queue.submit(self.process_next, True)

    # ----- delayed checks -----

    def schedule_check(self, delay: float):
        """
        Re-run process_next after `delay` seconds
        Keeps a single pending check: an earlier one already pending wins
        """
        due = self.clock() + delay
        if self._pending_check is not None:
            _, pending_due, handle = self._pending_check
            if pending_due <= due:
                return
            handle.cancel()

        token = next(self._tokens)
        handle = self.queue.submit_after(delay, self._run_scheduled_check, token)
        self._pending_check = (token, due, handle)

    def _run_scheduled_check(self, token: int):
        if self._pending_check is not None and self._pending_check[0] == token:
            self._pending_check = None
        self.process_next()

    # ----- the loop -----

    def fetch_next_task(self) -> Optional[OcrTaskPayload]:
        raw = self.context.storage.next_pending_ocr_task()
        if raw is None:
            return None
        try:
            return OcrTaskPayload.model_validate_json(raw)
        except ValueError as e:
            raise DecodeError(f"invalid OCR task payload: {e}") from e

    def process_next(self, force: bool = False):
        if not self.context.settings.ocr.enabled:
            self.schedule_check(IDLE_DELAY)
            return

        if self.is_processing:
            if force:
                self.schedule_check(BUSY_RECHECK_DELAY)
            return

        try:
            task = self.fetch_next_task()
        except (RuntimeUnavailable, DecodeError, SQLAlchemyError) as e:
            logger.error(f"[OCR] Could not fetch next task: {e}")
            self.schedule_check(IDLE_DELAY)
            return

        if task is None:
            self.schedule_check(IDLE_DELAY)
            return

        logger.info(f"[OCR] Starting task {task.id}")

        self.is_processing = True
        try:
            marked = self.context.storage.mark_ocr_processing(task.id)
        except (RuntimeUnavailable, SQLAlchemyError) as e:
            logger.error(f"[OCR] Store error while marking task {task.id}: {e}")
            marked = False

        if not marked:
            logger.error(f"[OCR] Failed to mark processing for task {task.id}")
            self.is_processing = False
            self.schedule_check(MARK_RETRY_DELAY)
            return

        try:
            self._run_task(task)
        finally:
            self.is_processing = False
            # drain the backlog before idling
            self.queue.submit(self.process_next)

    def _run_task(self, task: OcrTaskPayload):
        storage = self.context.storage
        try:
            text = self.engine.recognize_file(task.image_path)
        except OcrFailure as e:
            self.failed += 1
            logger.error(f"[OCR] Task {task.id} failed: {e}")
            self._report(lambda: storage.report_ocr_failed(task.id), task.id)
            return
        except Exception as e:
            # anything else would leave the item in "processing" forever
            self.failed += 1
            logger.exception(f"[OCR] Task {task.id} failed unexpectedly: {e}")
            self._report(lambda: storage.report_ocr_failed(task.id), task.id)
            return

        self.completed += 1
        if text:
            shortened_text = text[:80] + "..." if len(text) > 80 else text
            logger.info(f"[OCR] Task {task.id} completed: {shortened_text!r}")
        else:
            logger.info(f"[OCR] Task {task.id} completed with no confident text")
        self._report(lambda: storage.report_ocr_success(task.id, text), task.id)

    def _report(self, call: Callable[[], bool], task_id: str):
        try:
            accepted = call()
        except (RuntimeUnavailable, SQLAlchemyError) as e:
            logger.error(f"[OCR] Could not report result for task {task_id}: {e}")
            return

        if not accepted:
            logger.warning(f"[OCR] Store did not accept result for task {task_id}")
            return
        self.context.events.emit(AppEvent.OCR_RESULT_STORED)
