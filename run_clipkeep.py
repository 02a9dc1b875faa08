"""
Complete ClipKeep startup script
Runs everything: settings, store, clipboard watcher, OCR scheduler, API server
"""
import sys

import uvicorn
from loguru import logger

from clipkeep.api.server import create_app
from clipkeep.core import config
from clipkeep.core.config import SettingsStore
from clipkeep.core.context import AppContext, build_context
from clipkeep.core.logging import setup_logging
from clipkeep.ingest.classifier import PayloadClassifier
from clipkeep.ingest.clipboard import SystemClipboard
from clipkeep.ingest.desktop import foreground_app_id
from clipkeep.ingest.watcher import ChangeDetector
from clipkeep.ocr.scheduler import OcrTaskScheduler
from clipkeep.search.history import ClipboardHistoryService


def run_clipboard_watcher(context: AppContext, history: ClipboardHistoryService) -> ChangeDetector:
    """Start clipboard polling on its own timer thread"""
    logger.info("[STARTUP] Starting clipboard watcher...")
    watcher = ChangeDetector(context, SystemClipboard(), classifier=PayloadClassifier(foreground_app=foreground_app_id))

    def on_change(inserted: bool):
        # new row or refreshed timestamp, either way cached searches are stale
        history.invalidate_search_cache()

    watcher.start(on_change=on_change)
    logger.info("[STARTUP] ✓ Clipboard watcher started (background)")
    return watcher


def run_ocr_scheduler(context: AppContext) -> OcrTaskScheduler:
    """Start the background OCR consumer"""
    logger.info("[STARTUP] Starting OCR scheduler...")
    scheduler = OcrTaskScheduler(context)
    scheduler.start()
    return scheduler


def run_api_server(context: AppContext, history: ClipboardHistoryService):
    """Start FastAPI server (blocks)"""
    logger.info(f"[STARTUP] Starting API server on http://{config.api_host}:{config.api_port}...")
    uvicorn.run(
        create_app(context, history),
        host=config.api_host,
        port=config.api_port,
        log_level="info",
    )


def main():
    setup_logging()

    logger.info("=" * 60)
    logger.info("ClipKeep - Complete Startup")
    logger.info("=" * 60)

    settings_store = SettingsStore()
    settings_store.save()  # writes defaults on first run

    context = build_context(settings_store)
    history = ClipboardHistoryService(context)

    watcher = run_clipboard_watcher(context, history)
    scheduler = run_ocr_scheduler(context)

    logger.info("[STARTUP] ✓ All services running! Press Ctrl+C to stop")

    try:
        run_api_server(context, history)
    except KeyboardInterrupt:
        pass
    finally:
        logger.info("[SHUTDOWN] Stopping ClipKeep...")
        watcher.stop()
        scheduler.stop()
        context.shutdown()
        context.storage.close()


if __name__ == "__main__":
    sys.exit(main())
