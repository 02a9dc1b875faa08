"""
Shared pytest fixtures for the ClipKeep test suite.

Provides a throwaway SQLite store, an AppContext without background threads,
a scriptable fake clipboard, a manual queue for the OCR scheduler and a fake
recognizer so OCR tests run without EasyOCR models.
"""

import io
import itertools
from typing import Callable, List, Optional, Sequence

import pytest
from PIL import Image

from clipkeep.core.config import Settings, SettingsStore
from clipkeep.core.context import AppContext
from clipkeep.db.engine import SqliteStorageEngine
from clipkeep.ingest.clipboard import ClipboardSnapshot
from clipkeep.ocr.engine import RecognizedLine


def make_image(width: int = 32, height: int = 16, color=(200, 30, 30)) -> Image.Image:
    return Image.new("RGB", (width, height), color)


def png_bytes(width: int = 32, height: int = 16, color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    make_image(width, height, color).save(buffer, format="PNG")
    return buffer.getvalue()


class StepClock:
    """Millisecond clock that moves forward 10 ms per call"""

    def __init__(self, start: int = 1_700_000_000_000):
        self._counter = itertools.count(start, 10)

    def __call__(self) -> int:
        return next(self._counter)


class FakeClipboard:
    """ClipboardSource driven by the test: copy() bumps the generation"""

    def __init__(self):
        self._generation = 0
        self.snapshot = ClipboardSnapshot()
        self.generation_reads = 0

    def copy(self, snapshot: ClipboardSnapshot):
        self.snapshot = snapshot
        self._generation += 1

    def copy_text(self, text: str, **kwargs):
        self.copy(ClipboardSnapshot(text=text, **kwargs))

    def generation(self) -> int:
        self.generation_reads += 1
        return self._generation

    def read_snapshot(self) -> ClipboardSnapshot:
        return self.snapshot


class _Handle:
    def __init__(self, delay: float, fn: Callable, args):
        self.delay = delay
        self.fn = fn
        self.args = args
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualQueue:
    """
    Stand-in for SerialQueue: nothing runs until the test says so
    - run_all(): run submitted jobs (and what they submit) in FIFO order
    - fire_delayed(): move every non-cancelled delayed job onto the queue
    """

    def __init__(self):
        self.jobs = []
        self.delayed: List[_Handle] = []

    def submit(self, fn, *args):
        self.jobs.append((fn, args))

    def submit_after(self, delay, fn, *args):
        handle = _Handle(delay, fn, args)
        self.delayed.append(handle)
        return handle

    def pending_delays(self) -> List[float]:
        return [h.delay for h in self.delayed if not h.cancelled]

    def run_all(self, max_jobs: int = 1000):
        ran = 0
        while self.jobs:
            fn, args = self.jobs.pop(0)
            fn(*args)
            ran += 1
            if ran >= max_jobs:
                raise AssertionError("queue did not drain")
        return ran

    def fire_delayed(self):
        handles = [h for h in self.delayed if not h.cancelled]
        self.delayed = []
        for handle in handles:
            self.jobs.append((handle.fn, handle.args))


class FakeRecognizer:
    """
    Returns scripted lines per pass: passes[0] for the primary, passes[1] for the fallback
    `error` makes every call raise
    """

    def __init__(self, passes: Optional[Sequence[Sequence[RecognizedLine]]] = None, error: Exception = None):
        self.passes = list(passes or [[], []])
        self.error = error
        self.calls = []

    def recognize(self, image, languages, level, upscale=False):
        self.calls.append({"languages": list(languages), "level": level, "upscale": upscale})
        if self.error is not None:
            raise self.error
        index = 1 if upscale else 0
        return list(self.passes[index])


@pytest.fixture
def settings_store():
    return SettingsStore(path=None, settings=Settings())


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / "ClipboardData"
    path.mkdir()
    return path


@pytest.fixture
def storage(tmp_path, data_dir, settings_store):
    engine = SqliteStorageEngine(
        sqlite_url=f"sqlite:///{tmp_path / 'clipkeep-test.db'}",
        clipboard_data_dir=str(data_dir),
        max_items=lambda: settings_store.current.history.max_count,
        clock=StepClock(),
    )
    engine.open()
    yield engine
    engine.close()


@pytest.fixture
def context(settings_store, storage, data_dir):
    # no work queue: storage calls run inline on the test thread
    return AppContext(settings_store=settings_store, storage=storage, clipboard_data_dir=str(data_dir))


@pytest.fixture
def clipboard():
    return FakeClipboard()


@pytest.fixture
def manual_queue():
    return ManualQueue()
