# Purpose: tiny in-process event bus (replaces global notifications)
# emit() calls every subscriber on the caller's thread, subscribers that need
# another thread hop onto their own queue

import threading
from enum import Enum
from typing import Callable, Dict, List

from loguru import logger


class AppEvent(str, Enum):
    IMAGE_CAPTURED = "clipboard_image_captured"
    OCR_RESULT_STORED = "ocr_result_stored"  # an image moved to completed / failed


EventHandler = Callable[[AppEvent], None]


class EventBus:
    def __init__(self):
        self._lock = threading.Lock()
        self._handlers: Dict[AppEvent, List[EventHandler]] = {}

    def subscribe(self, event: AppEvent, handler: EventHandler) -> Callable[[], None]:
        """Register handler, returns a function that removes it again"""
        with self._lock:
            self._handlers.setdefault(event, []).append(handler)

        def unsubscribe():
            with self._lock:
                handlers = self._handlers.get(event, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def emit(self, event: AppEvent):
        with self._lock:
            handlers = list(self._handlers.get(event, []))

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                # one broken subscriber must not stop the capture pipeline
                logger.error(f"[EVENTS] Handler for {event.value} failed: {e}")
