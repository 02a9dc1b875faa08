# Purpose: the one object every component receives instead of reaching for globals
# built once at startup (run_clipkeep.py) or per test (tests/conftest.py)

import os
from dataclasses import dataclass, field
from typing import Optional

from clipkeep.core import config
from clipkeep.core.config import Settings, SettingsStore
from clipkeep.core.dispatch import SerialQueue
from clipkeep.core.events import EventBus
from clipkeep.db.engine import StorageEngine, SqliteStorageEngine


@dataclass
class AppContext:
    settings_store: SettingsStore
    storage: StorageEngine
    clipboard_data_dir: str = config.clipboard_data_dir
    events: EventBus = field(default_factory=EventBus)
    # storage work queue: ingestion writes + history search/get/delete/clear
    work_queue: Optional[SerialQueue] = None

    @property
    def settings(self) -> Settings:
        """Current settings snapshot, read it at the moment you need a value"""
        return self.settings_store.current

    def image_file(self, relative_path: str) -> str:
        return os.path.join(self.clipboard_data_dir, relative_path)

    def shutdown(self):
        if self.work_queue is not None:
            self.work_queue.shutdown(wait=True)


def build_context(
        settings_store: Optional[SettingsStore] = None,
        sqlite_url: str = config.sqlite_url,
        clipboard_data_dir: str = config.clipboard_data_dir,
) -> AppContext:
    """Wire settings + SQLite engine + queues the way the app runs them"""
    settings_store = settings_store or SettingsStore()
    storage = SqliteStorageEngine(
        sqlite_url=sqlite_url,
        clipboard_data_dir=clipboard_data_dir,
        max_items=lambda: settings_store.current.history.max_count,
    )
    storage.open()
    return AppContext(
        settings_store=settings_store,
        storage=storage,
        clipboard_data_dir=clipboard_data_dir,
        work_queue=SerialQueue("clipkeep-storage"),
    )
