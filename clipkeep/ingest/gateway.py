# Purpose: size policy + the actual write for every accepted clipboard capture
# - text: UTF-8 byte length must be <= clipboard.maxContentSizeBytes
# - image: encoded PNG byte length must be <= the same limit
# - dedup is done by the storage engine (against the most recent item only)
# - a newly inserted image wakes the OCR scheduler through IMAGE_CAPTURED
# no retries here, the next distinct clipboard change is the next attempt

from concurrent.futures import Future
from typing import Callable, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from clipkeep.core.context import AppContext
from clipkeep.core.errors import RuntimeUnavailable, SizeLimitExceeded
from clipkeep.core.events import AppEvent
from clipkeep.db.models import CaptureOutcome, ItemType
from clipkeep.ingest.classifier import Classification

CaptureCallback = Callable[[CaptureOutcome], None]


class IngestionGateway:
    def __init__(self, context: AppContext):
        self.context = context

    @property
    def max_payload_bytes(self) -> int:
        return self.context.settings.clipboard.max_content_size_bytes

    def check_size(self, classification: Classification):
        """Raise SizeLimitExceeded when the payload is over the configured limit"""
        limit = self.max_payload_bytes
        if classification.kind == ItemType.TEXT:
            size = len(classification.text.encode("utf-8"))
            if size > limit:
                raise SizeLimitExceeded("text", size, limit)
        elif classification.kind == ItemType.IMAGE:
            size = len(classification.image_bytes or b"")
            if size > limit:
                raise SizeLimitExceeded("image", size, limit)

    def capture(self, classification: Classification) -> CaptureOutcome:
        """Write one classified capture, returns what the store did"""
        if classification.skipped:
            logger.debug(f"[SKIP] {classification.as_error()}")
            return CaptureOutcome.failed()

        try:
            self.check_size(classification)
        except SizeLimitExceeded as e:
            logger.debug(f"[SKIP] {e}")
            return CaptureOutcome.failed()

        storage = self.context.storage
        try:
            if classification.kind == ItemType.TEXT:
                outcome = storage.ingest_text(classification.text, classification.source_app_id)
            else:
                outcome = storage.ingest_image(
                    classification.image_bytes,
                    classification.image_width,
                    classification.image_height,
                    classification.image_format,
                    classification.source_app_id,
                )
        except RuntimeUnavailable as e:
            logger.error(f"[CAPTURE] Store unavailable, {classification.kind.value} capture dropped: {e}")
            return CaptureOutcome.failed()
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"[CAPTURE] Store failed to write {classification.kind.value} capture: {e}")
            return CaptureOutcome.failed()

        kind = classification.kind.value
        if not outcome.ok:
            logger.warning(f"[CAPTURE] capture_{kind}_failed")
            return outcome

        logger.info(f"[CAPTURE] capture_{kind}_success inserted={outcome.inserted}")

        if classification.kind == ItemType.IMAGE and outcome.inserted:
            self.context.events.emit(AppEvent.IMAGE_CAPTURED)

        return outcome

    def submit(self, classification: Classification, on_done: Optional[CaptureCallback] = None) -> Future:
        """
        Run capture() on the storage work queue so polling never waits for disk I/O
        Without a work queue (tests) the capture runs inline
        """

        def job():
            outcome = self.capture(classification)
            if on_done is not None:
                on_done(outcome)
            return outcome

        queue = self.context.work_queue
        if queue is None:
            future = Future()
            future.set_result(job())
            return future
        return queue.submit(job)
