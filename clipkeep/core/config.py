# Purpose: paths + user settings for ClipKeep
# paths are module constants (override with CLIPKEEP_* env vars)
# user settings live in a JSON file and can be changed while the pipeline runs,
# components always read context.settings at the moment they need a value

import json
import os
import threading
from pathlib import Path
from typing import Callable, List, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

# ===== PATHS =====

data_dir = os.environ.get("CLIPKEEP_DATA_DIR", os.path.join(os.path.expanduser("~"), ".clipkeep"))
sqlite_url = os.environ.get("CLIPKEEP_SQLITE_URL", "sqlite:///" + os.path.join(data_dir, "clipkeep.db"))
clipboard_data_dir = os.path.join(data_dir, "ClipboardData")  # image paths in the DB are relative to this
settings_file = os.path.join(data_dir, "settings.json")
log_file = os.path.join(data_dir, "logs", "clipkeep.log")
log_level = os.environ.get("CLIPKEEP_LOG_LEVEL", "INFO")

api_host = os.environ.get("CLIPKEEP_API_HOST", "127.0.0.1")
api_port = int(os.environ.get("CLIPKEEP_API_PORT", "8000"))

# search defaults
search_limit = 100
preview_length = 200
search_cache_size = 50


# ===== SETTINGS =====

class _SettingsModel(BaseModel):
    # camelCase on disk, snake_case in python; unknown keys are ignored
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ClipboardSettings(_SettingsModel):
    polling_interval_ms: int = Field(default=400, ge=50)
    max_content_size_bytes: int = Field(default=10 * 1024 * 1024, ge=1)


class HistorySettings(_SettingsModel):
    max_count: int = Field(default=1000, ge=0)


class OcrSettings(_SettingsModel):
    enabled: bool = True
    languages: List[str] = Field(default_factory=lambda: ["en", "zh-Hans"])
    confidence_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    recognition_level: str = "accurate"  # "accurate" or "fast"
    include_in_search: bool = True


class Settings(_SettingsModel):
    version: int = 1
    clipboard: ClipboardSettings = Field(default_factory=ClipboardSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    ocr: OcrSettings = Field(default_factory=OcrSettings)


SettingsListener = Callable[[Settings, Settings], None]


class SettingsStore:
    """
    Holds the current Settings snapshot
    - load/save the JSON file
    - update() swaps in a new snapshot and tells every listener (old, new)
    Snapshots are immutable, readers never see a half-applied change
    """

    def __init__(self, path: Optional[str] = settings_file, settings: Optional[Settings] = None):
        self.path = path
        self._lock = threading.Lock()
        self._listeners: List[SettingsListener] = []
        self._current = settings if settings is not None else self._load()

    @property
    def current(self) -> Settings:
        return self._current

    def _load(self) -> Settings:
        """Read settings file, fall back to defaults when missing or broken"""
        if not self.path or not os.path.exists(self.path):
            return Settings()
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return Settings.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"[CONFIG] Could not load settings from {self.path}: {e}")
            return Settings()

    def save(self):
        """Write the current snapshot to disk"""
        if not self.path:
            return
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(self._current.model_dump_json(by_alias=True, indent=2))

    def subscribe(self, listener: SettingsListener):
        with self._lock:
            self._listeners.append(listener)

    def replace(self, settings: Settings):
        with self._lock:
            old = self._current
            self._current = settings
            listeners = list(self._listeners)

        if old == settings:
            return
        for listener in listeners:
            listener(old, settings)

    def update(self, clipboard: Optional[dict] = None, history: Optional[dict] = None, ocr: Optional[dict] = None):
        """
        Apply partial changes, eg: update(ocr={"enabled": False})
        Keys are snake_case field names
        """
        current = self._current
        changes = {}
        if clipboard:
            changes["clipboard"] = current.clipboard.model_copy(update=clipboard)
        if history:
            changes["history"] = current.history.model_copy(update=history)
        if ocr:
            changes["ocr"] = current.ocr.model_copy(update=ocr)
        self.replace(current.model_copy(update=changes))

    def reload(self):
        """Re-read the settings file (eg: after an external edit)"""
        self.replace(self._load())
