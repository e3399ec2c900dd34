"""Personal dictionary persistence and prompt builders."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from .config import APP_DIR, ConfigError
from .models import DictionaryEntry

DICTIONARY_PATH = APP_DIR / "dictionary.json"

# The transcription model sometimes echoes its prompt back when nothing was
# said; transcripts starting with this prefix are treated as silence.
DICTIONARY_HINT_PREFIX = "Personal dictionary:"


def load_entries(path: Optional[Path] = None) -> List[DictionaryEntry]:
    path = path or DICTIONARY_PATH
    if not path.exists():
        return []
    try:
        payload = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse dictionary file: {exc}") from exc
    return [
        DictionaryEntry(
            original=item["original"],
            correction=item["correction"],
            added_at=datetime.fromisoformat(item["added_at"]),
        )
        for item in payload
    ]


def save_entries(entries: Sequence[DictionaryEntry], path: Optional[Path] = None) -> None:
    path = path or DICTIONARY_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    data = [
        {"original": e.original, "correction": e.correction, "added_at": e.added_at.isoformat()}
        for e in entries
    ]
    path.write_text(json.dumps(data, indent=2, ensure_ascii=False))


def add_entry(original: str, correction: str, path: Optional[Path] = None) -> DictionaryEntry:
    original, correction = original.strip(), correction.strip()
    if not original or not correction:
        raise ConfigError("Both the original phrase and its correction are required.")
    entries = load_entries(path)
    entry = DictionaryEntry(original=original, correction=correction, added_at=datetime.now(timezone.utc))
    entries.append(entry)
    save_entries(entries, path)
    return entry


def remove_entry(index: int, path: Optional[Path] = None) -> DictionaryEntry:
    entries = load_entries(path)
    if not 0 <= index < len(entries):
        raise ConfigError(f"No dictionary entry at position {index + 1}")
    removed = entries.pop(index)
    save_entries(entries, path)
    return removed


def build_dictionary_hint(entries: Sequence[DictionaryEntry]) -> str:
    """Single-line hint passed as the transcription prompt."""

    if not entries:
        return ""
    corrections = ", ".join(f'"{e.original}" should be "{e.correction}"' for e in entries)
    return f"{DICTIONARY_HINT_PREFIX} {corrections}."


def build_dictionary_prompt(entries: Sequence[DictionaryEntry]) -> str:
    """Multi-line instructions used when corrections are applied after transcription."""

    if not entries:
        return ""
    lines = "\n".join(f'"{e.original}" should be transcribed as "{e.correction}"' for e in entries)
    return (
        "Here is a list of personal dictionary entries to use for improving transcription accuracy:\n\n"
        f"{lines}\n\n"
        "Please use these corrections when transcribing the text, but only when you are "
        "confident that the word or phrase matches exactly."
    )


def looks_like_hint_echo(text: str) -> bool:
    return text.strip().lower().startswith(DICTIONARY_HINT_PREFIX.lower())
