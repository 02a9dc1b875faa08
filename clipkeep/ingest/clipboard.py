# Purpose: read the OS clipboard into a ClipboardSnapshot
# pyperclip for text, Pillow's ImageGrab for bitmaps and file drops,
# desktop.read_clipboard_formats for flavour names, HTML and the source marker
# there is no cross-platform "clipboard changed" signal, so SystemClipboard keeps its
# own generation counter: it bumps whenever the clipboard fingerprint changes

import threading
from dataclasses import dataclass, field, replace
from html.parser import HTMLParser
from typing import Callable, FrozenSet, Optional, Protocol, Tuple

import pyperclip
import xxhash
from loguru import logger
from PIL import Image, ImageGrab

from clipkeep.ingest.desktop import ClipboardFormats, read_clipboard_formats

# pasteboard type conventions (nspasteboard.org) that well-behaved apps set
TRANSIENT_TYPE = "org.nspasteboard.TransientType"
CONCEALED_TYPE = "org.nspasteboard.ConcealedType"
# windows / KDE equivalents used by password managers
WINDOWS_EXCLUDE_TYPE = "ExcludeClipboardContentFromMonitorProcessing"
KDE_PASSWORD_HINT_TYPE = "x-kde-passwordManagerHint"

SENSITIVE_TYPES = frozenset({TRANSIENT_TYPE, CONCEALED_TYPE, WINDOWS_EXCLUDE_TYPE, KDE_PASSWORD_HINT_TYPE})


@dataclass(frozen=True)
class ClipboardSnapshot:
    """Everything the classifier may look at, read in one go"""
    types: FrozenSet[str] = frozenset()
    file_paths: Tuple[str, ...] = ()
    rich_text: Optional[str] = None  # HTML flavour
    text: Optional[str] = None
    images: Tuple[Image.Image, ...] = field(default=(), compare=False)
    source_marker: Optional[str] = None


class ClipboardSource(Protocol):
    def generation(self) -> int: ...

    def read_snapshot(self) -> ClipboardSnapshot: ...


class _TextExtractor(HTMLParser):
    BLOCK_TAGS = {"p", "div", "br", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6"}

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.parts = []
        self._skip = 0

    def handle_starttag(self, tag, attrs):
        if tag in ("script", "style"):
            self._skip += 1
        elif tag in self.BLOCK_TAGS and self.parts:
            self.parts.append("\n")

    def handle_endtag(self, tag):
        if tag in ("script", "style") and self._skip:
            self._skip -= 1

    def handle_data(self, data):
        if not self._skip:
            self.parts.append(data)


def rich_text_to_plain(html: str) -> str:
    """Flatten an HTML clipboard flavour into its visible text"""
    extractor = _TextExtractor()
    extractor.feed(html)
    extractor.close()
    lines = [line.strip() for line in "".join(extractor.parts).splitlines()]
    return "\n".join(line for line in lines if line)


class SystemClipboard:
    """
    ClipboardSource for the real OS clipboard
    generation() reads the clipboard and compares a fingerprint, read_snapshot()
    hands back what the last generation() call saw
    flavour names / HTML / source marker are only read once a change is detected
    """

    def __init__(self, formats_reader: Callable[[], ClipboardFormats] = read_clipboard_formats):
        self._formats_reader = formats_reader
        self._lock = threading.Lock()
        self._generation = 0
        self._fingerprint: Optional[str] = None
        self._snapshot = ClipboardSnapshot()
        self._warned = set()

    def _warn_once(self, key: str, message: str):
        if key not in self._warned:
            self._warned.add(key)
            logger.warning(message)

    def _read_text(self) -> Optional[str]:
        try:
            raw = pyperclip.paste()
        except pyperclip.PyperclipException as e:
            self._warn_once("text", f"[CLIPBOARD] Text clipboard unavailable: {e}")
            return None
        if not isinstance(raw, str) or raw == "":
            return None
        return raw

    def _read_grab(self):
        try:
            return ImageGrab.grabclipboard()
        except (OSError, NotImplementedError) as e:
            self._warn_once("image", f"[CLIPBOARD] Image clipboard unavailable: {e}")
            return None

    def _read(self) -> ClipboardSnapshot:
        text = self._read_text()
        grabbed = self._read_grab()

        file_paths: Tuple[str, ...] = ()
        images: Tuple[Image.Image, ...] = ()
        if isinstance(grabbed, list):
            file_paths = tuple(str(p) for p in grabbed)
        elif isinstance(grabbed, Image.Image):
            images = (grabbed,)

        return ClipboardSnapshot(text=text, file_paths=file_paths, images=images)

    @staticmethod
    def _fingerprint_of(snapshot: ClipboardSnapshot) -> str:
        hasher = xxhash.xxh64()
        hasher.update((snapshot.text or "").encode("utf-8", errors="replace"))
        hasher.update("\0".join(snapshot.file_paths).encode("utf-8", errors="replace"))
        for image in snapshot.images:
            hasher.update(f"{image.mode}{image.size}".encode("ascii"))
            hasher.update(image.tobytes())
        return hasher.hexdigest()

    def _with_formats(self, snapshot: ClipboardSnapshot) -> ClipboardSnapshot:
        formats = self._formats_reader()
        return replace(
            snapshot,
            types=formats.types,
            rich_text=formats.rich_text,
            source_marker=formats.source_marker,
        )

    def generation(self) -> int:
        snapshot = self._read()
        fingerprint = self._fingerprint_of(snapshot)
        with self._lock:
            if fingerprint == self._fingerprint:
                return self._generation

        snapshot = self._with_formats(snapshot)
        with self._lock:
            if fingerprint != self._fingerprint:
                self._fingerprint = fingerprint
                self._snapshot = snapshot
                self._generation += 1
            return self._generation

    def read_snapshot(self) -> ClipboardSnapshot:
        with self._lock:
            return self._snapshot
