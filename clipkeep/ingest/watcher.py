# Purpose: watch OS clipboard. Whenever it changes, classify it and hand it to the gateway
# polls a generation counter every clipboard.pollingIntervalMs (re-read every tick)
# the stored generation is updated BEFORE the capture runs, so a slow or failing
# capture is never retried for the same change

from typing import Callable, Optional

from loguru import logger

from clipkeep.core.context import AppContext
from clipkeep.core.dispatch import RepeatingTimer
from clipkeep.db.models import CaptureOutcome
from clipkeep.ingest.classifier import PayloadClassifier
from clipkeep.ingest.clipboard import ClipboardSource
from clipkeep.ingest.gateway import IngestionGateway

ChangeCallback = Callable[[bool], None]


class ChangeDetector:
    def __init__(
            self,
            context: AppContext,
            source: ClipboardSource,
            gateway: Optional[IngestionGateway] = None,
            classifier: Optional[PayloadClassifier] = None,
    ):
        self.context = context
        self.source = source
        self.gateway = gateway or IngestionGateway(context)
        self.classifier = classifier or PayloadClassifier()
        self.last_generation = source.generation()
        self._on_change: Optional[ChangeCallback] = None
        self._timer: Optional[RepeatingTimer] = None

        # stats counters
        self.total_changes = 0
        self.skipped = 0

    def poll_interval(self) -> float:
        return self.context.settings.clipboard.polling_interval_ms / 1000.0

    def start(self, on_change: Optional[ChangeCallback] = None):
        """
        Starts polling
        on_change(inserted) fires after a capture was persisted:
        inserted=True for a new row, False for a dedup refresh
        """
        self.stop()
        self._on_change = on_change
        self._timer = RepeatingTimer("ClipboardWatcher", self.poll_interval, self.poll_for_changes)
        self._timer.start()
        logger.info(f"[WATCHER] Clipboard watcher started (every {self.context.settings.clipboard.polling_interval_ms} ms)")

    def stop(self):
        if self._timer is not None:
            self._timer.stop()
            self._timer = None
            logger.info("[WATCHER] Clipboard watcher stopped")
        self._on_change = None

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.running

    def poll_for_changes(self):
        """One tick: capture the clipboard if its generation moved"""
        current = self.source.generation()
        if current == self.last_generation:
            return

        self.last_generation = current
        self.total_changes += 1

        classification = self.classifier.classify(self.source.read_snapshot())
        if classification.skipped:
            self.skipped += 1
            logger.debug(f"[SKIP] {classification.as_error()} (total skipped: {self.skipped})")
            return

        self.gateway.submit(classification, on_done=self._captured)

    def _captured(self, outcome: CaptureOutcome):
        callback = self._on_change
        if outcome.ok and callback is not None:
            callback(outcome.inserted)
