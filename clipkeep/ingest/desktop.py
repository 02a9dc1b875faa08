# Purpose: desktop helpers the clipboard reader needs beyond pyperclip / ImageGrab
# - clipboard flavour names (password-manager markers), the HTML flavour and the
#   explicit source marker some apps attach
# - the foreground application, used as the capture's source when no marker is set
# linux / macOS shell out to the platform tools (xclip, wl-paste, xdotool, osascript),
# windows goes through user32 via ctypes
# every helper returns an empty result when the platform or tool is missing

import ctypes
import json
import os
import platform
import subprocess
from dataclasses import dataclass
from typing import Callable, FrozenSet, Optional, Sequence

from loguru import logger

TOOL_TIMEOUT = 2

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True)
class ClipboardFormats:
    types: FrozenSet[str] = frozenset()
    rich_text: Optional[str] = None
    source_marker: Optional[str] = None


def _run_tool(run: Runner, args: Sequence[str]) -> Optional[str]:
    """stdout of a platform tool, None when it is missing or fails"""
    try:
        result = run(list(args), capture_output=True, text=True, timeout=TOOL_TIMEOUT)
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError) as e:
        logger.debug(f"[DESKTOP] {args[0]} unavailable: {e}")
        return None
    if result.returncode != 0:
        return None
    return result.stdout


# ===== LINUX =====

HTML_TYPE = "text/html"


def _linux_formats(run: Runner) -> ClipboardFormats:
    if os.environ.get("WAYLAND_DISPLAY"):
        list_types = ["wl-paste", "--list-types"]
        read_html = ["wl-paste", "--no-newline", "--type", HTML_TYPE]
    else:
        list_types = ["xclip", "-selection", "clipboard", "-t", "TARGETS", "-o"]
        read_html = ["xclip", "-selection", "clipboard", "-t", HTML_TYPE, "-o"]

    listed = _run_tool(run, list_types)
    if not listed:
        return ClipboardFormats()

    types = frozenset(line.strip() for line in listed.splitlines() if line.strip())
    rich_text = _run_tool(run, read_html) if HTML_TYPE in types else None
    return ClipboardFormats(types=types, rich_text=rich_text or None)


def _linux_foreground_app(run: Runner) -> Optional[str]:
    pid = _run_tool(run, ["xdotool", "getactivewindow", "getwindowpid"])
    if not pid or not pid.strip().isdigit():
        return None
    try:
        with open(f"/proc/{pid.strip()}/comm", "r", encoding="utf-8") as f:
            return f.read().strip() or None
    except OSError:
        return None


# ===== MACOS =====

# JXA: reads pasteboard type identifiers, the nspasteboard.org source marker and the HTML flavour
_MAC_PASTEBOARD_SCRIPT = """
ObjC.import('AppKit');
var pb = $.NSPasteboard.generalPasteboard;
var types = ObjC.deepUnwrap(pb.types) || [];
function read(type) { var value = pb.stringForType(type); return value.isNil() ? null : ObjC.unwrap(value); }
JSON.stringify({types: types, source: read('org.nspasteboard.source'), html: read('public.html')});
"""


def _mac_formats(run: Runner) -> ClipboardFormats:
    output = _run_tool(run, ["osascript", "-l", "JavaScript", "-e", _MAC_PASTEBOARD_SCRIPT])
    if not output:
        return ClipboardFormats()
    try:
        data = json.loads(output)
    except ValueError:
        logger.debug("[DESKTOP] Unexpected pasteboard output")
        return ClipboardFormats()
    return ClipboardFormats(
        types=frozenset(str(t) for t in data.get("types") or []),
        rich_text=data.get("html") or None,
        source_marker=data.get("source") or None,
    )


def _mac_foreground_app(run: Runner) -> Optional[str]:
    output = _run_tool(run, ["osascript", "-e", "id of application (path to frontmost application as text)"])
    return output.strip() if output and output.strip() else None


# ===== WINDOWS =====

CF_REGISTERED_FIRST = 0xC000
PROCESS_QUERY_LIMITED_INFORMATION = 0x1000


def _parse_cf_html(raw: bytes) -> Optional[str]:
    """CF_HTML carries a header with byte offsets of the copied fragment"""
    header = raw[:1024].decode("ascii", errors="ignore")
    offsets = {}
    for line in header.splitlines():
        key, _, value = line.partition(":")
        if key in ("StartFragment", "EndFragment") and value.strip().isdigit():
            offsets[key] = int(value.strip())
    if "StartFragment" in offsets and "EndFragment" in offsets:
        raw = raw[offsets["StartFragment"]:offsets["EndFragment"]]
    return raw.decode("utf-8", errors="replace").strip("\0") or None


def _windows_formats() -> ClipboardFormats:
    user32 = ctypes.windll.user32
    kernel32 = ctypes.windll.kernel32
    user32.GetClipboardData.restype = ctypes.c_void_p
    kernel32.GlobalLock.restype = ctypes.c_void_p
    kernel32.GlobalLock.argtypes = [ctypes.c_void_p]
    kernel32.GlobalUnlock.argtypes = [ctypes.c_void_p]
    kernel32.GlobalSize.restype = ctypes.c_size_t
    kernel32.GlobalSize.argtypes = [ctypes.c_void_p]

    if not user32.OpenClipboard(None):
        return ClipboardFormats()
    try:
        names = {}
        buffer = ctypes.create_unicode_buffer(256)
        fmt = user32.EnumClipboardFormats(0)
        while fmt:
            if fmt >= CF_REGISTERED_FIRST and user32.GetClipboardFormatNameW(fmt, buffer, len(buffer)):
                names[buffer.value] = fmt
            fmt = user32.EnumClipboardFormats(fmt)

        rich_text = None
        html_format = names.get("HTML Format")
        if html_format:
            handle = user32.GetClipboardData(html_format)
            pointer = kernel32.GlobalLock(handle) if handle else None
            if pointer:
                try:
                    rich_text = _parse_cf_html(ctypes.string_at(pointer, kernel32.GlobalSize(handle)))
                finally:
                    kernel32.GlobalUnlock(handle)
    finally:
        user32.CloseClipboard()

    return ClipboardFormats(types=frozenset(names), rich_text=rich_text)


def _windows_foreground_app() -> Optional[str]:
    user32 = ctypes.windll.user32
    kernel32 = ctypes.windll.kernel32

    hwnd = user32.GetForegroundWindow()
    if not hwnd:
        return None
    pid = ctypes.c_ulong()
    user32.GetWindowThreadProcessId(hwnd, ctypes.byref(pid))
    process = kernel32.OpenProcess(PROCESS_QUERY_LIMITED_INFORMATION, False, pid.value)
    if not process:
        return None
    try:
        buffer = ctypes.create_unicode_buffer(1024)
        size = ctypes.c_ulong(len(buffer))
        if not kernel32.QueryFullProcessImageNameW(process, 0, buffer, ctypes.byref(size)):
            return None
        return os.path.basename(buffer.value) or None
    finally:
        kernel32.CloseHandle(process)


# ===== ENTRY POINTS =====

def read_clipboard_formats(system: Optional[str] = None, run: Runner = subprocess.run) -> ClipboardFormats:
    system = system or platform.system()
    try:
        if system == "Linux":
            return _linux_formats(run)
        if system == "Darwin":
            return _mac_formats(run)
        if system == "Windows":
            return _windows_formats()
    except (OSError, AttributeError, ValueError) as e:
        logger.debug(f"[DESKTOP] Could not read clipboard formats: {e}")
    return ClipboardFormats()


def foreground_app_id(system: Optional[str] = None, run: Runner = subprocess.run) -> Optional[str]:
    system = system or platform.system()
    try:
        if system == "Linux":
            return _linux_foreground_app(run)
        if system == "Darwin":
            return _mac_foreground_app(run)
        if system == "Windows":
            return _windows_foreground_app()
    except (OSError, AttributeError, ValueError) as e:
        logger.debug(f"[DESKTOP] Could not read foreground app: {e}")
    return None
