"""Putting text where the user is typing."""

from __future__ import annotations

import logging
import subprocess
import time
from typing import Any, Optional, Tuple

COPY_SETTLE_DELAY = 0.15

logger = logging.getLogger(__name__)


def _appkit() -> Tuple[Any, Any]:
    try:
        from AppKit import NSPasteboard, NSPasteboardTypeString  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "The `pyobjc` packages are required to access the clipboard. Install dictaid[mac]."
        ) from exc
    return NSPasteboard.generalPasteboard(), NSPasteboardTypeString


def _keystroke(key: str) -> None:
    subprocess.run(
        [
            "/usr/bin/osascript",
            "-e",
            f'tell application "System Events" to keystroke "{key}" using {{command down}}',
        ],
        check=True,
        timeout=2,
    )


def copy_to_pasteboard(text: str) -> None:
    pasteboard, string_type = _appkit()
    pasteboard.clearContents()
    pasteboard.setString_forType_(text, string_type)


def paste_from_clipboard() -> None:
    try:
        _keystroke("v")
    except (OSError, subprocess.SubprocessError) as exc:  # pragma: no cover - best effort
        logger.debug("Failed to trigger paste: %s", exc)


def deliver(text: str, destination: str = "paste") -> None:
    copy_to_pasteboard(text)
    if destination == "paste":
        paste_from_clipboard()
    elif destination != "clipboard":
        logger.debug("Unknown insert destination %s; leaving text on the clipboard.", destination)


def selected_text() -> Optional[str]:
    """Text selected in the focused application, copied through the pasteboard.

    Returns None when nothing was selected, i.e. the copy left the pasteboard untouched.
    """

    pasteboard, string_type = _appkit()
    before = pasteboard.changeCount()
    try:
        _keystroke("c")
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("Failed to copy the selection: %s", exc)
        return None
    time.sleep(COPY_SETTLE_DELAY)
    if pasteboard.changeCount() == before:
        return None
    text = pasteboard.stringForType_(string_type)
    return str(text) if text else None


def frontmost_application() -> Optional[str]:
    """Name of the focused application, if it can be determined."""

    try:
        result = subprocess.run(
            [
                "/usr/bin/osascript",
                "-e",
                'tell application "System Events" to get name of first application process whose frontmost is true',
            ],
            capture_output=True,
            text=True,
            timeout=2,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("Could not detect frontmost application: %s", exc)
        return None
    name = result.stdout.strip()
    return name or None
