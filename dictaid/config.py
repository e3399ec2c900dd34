"""Persisted settings management."""

from __future__ import annotations

import json
import logging
import os
import threading
from dataclasses import asdict, fields, replace
from pathlib import Path
from typing import Any, Optional, Protocol

from .models import Engine, Settings

APP_DIR = (Path.home() / ".dictaid").expanduser()
CONFIG_PATH = APP_DIR / "settings.json"

ENGINE_KEYS = frozenset({"engine", "transcribe_model", "whisper_model", "parakeet_model"})
STRATEGIES = ("unified", "legacy")
DESTINATIONS = ("paste", "clipboard")

logger = logging.getLogger(__name__)


class ConfigError(RuntimeError):
    """Raised when configuration cannot be loaded or saved."""


class Invalidatable(Protocol):
    def invalidate(self) -> None:
        ...


def _validate(settings: Settings) -> None:
    try:
        Engine(settings.engine)
    except ValueError as exc:
        choices = ", ".join(engine.value for engine in Engine)
        raise ConfigError(f"Unknown engine '{settings.engine}'. Choose one of: {choices}") from exc
    if settings.strategy not in STRATEGIES:
        raise ConfigError(f"Unknown strategy '{settings.strategy}'. Choose one of: {', '.join(STRATEGIES)}")
    if settings.insert_destination not in DESTINATIONS:
        raise ConfigError(
            f"Unknown insert destination '{settings.insert_destination}'. Choose one of: {', '.join(DESTINATIONS)}"
        )
    if not 0 <= int(settings.silence_sensitivity) <= 10:
        raise ConfigError("Silence sensitivity must be between 0 and 10.")
    if float(settings.silence_timeout) <= 0:
        raise ConfigError("Silence timeout must be a positive number of seconds.")


def load_settings(path: Optional[Path] = None) -> Settings:
    path = path or CONFIG_PATH
    if not path.exists():
        return Settings()
    try:
        payload = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Failed to parse settings file: {exc}") from exc

    known = {f.name for f in fields(Settings)}
    unknown = set(payload) - known
    if unknown:
        logger.debug("Ignoring unknown settings keys: %s", ", ".join(sorted(unknown)))
    settings = Settings(**{k: v for k, v in payload.items() if k in known})
    _validate(settings)
    return settings


def save_settings(settings: Settings, path: Optional[Path] = None) -> None:
    path = path or CONFIG_PATH
    _validate(settings)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {k: v for k, v in asdict(settings).items() if v is not None}
    path.write_text(json.dumps(data, indent=2))


def update_settings(path: Optional[Path] = None, **kwargs: Any) -> Settings:
    settings = load_settings(path)
    for key, value in kwargs.items():
        if hasattr(settings, key):
            setattr(settings, key, value)
        else:
            raise ConfigError(f"Unknown configuration key: {key}")
    save_settings(settings, path)
    return settings


def resolve_api_key(settings: Settings) -> Optional[str]:
    return settings.openai_api_key or os.environ.get("OPENAI_API_KEY") or None


class SettingsStore:
    """Read-through settings cache.

    Every write goes to disk and drops the cached copy. Writes touching the
    engine or one of the model ids also invalidate the engine availability
    cache, since installed/downloaded state is keyed on those values.
    """

    def __init__(self, path: Optional[Path] = None, engine_cache: Optional[Invalidatable] = None) -> None:
        self.path = path or CONFIG_PATH
        self._engine_cache = engine_cache
        self._cached: Optional[Settings] = None
        self._lock = threading.Lock()

    def load(self) -> Settings:
        with self._lock:
            if self._cached is None:
                self._cached = load_settings(self.path)
            # Callers get their own copy so edits are only seen through save().
            return replace(self._cached)

    def save(self, settings: Settings) -> None:
        previous = self._cached
        with self._lock:
            save_settings(settings, self.path)
            self._cached = None
        if previous is None or any(
            getattr(previous, key) != getattr(settings, key) for key in ENGINE_KEYS
        ):
            self._invalidate_engines()

    def update(self, **kwargs: Any) -> Settings:
        with self._lock:
            settings = update_settings(self.path, **kwargs)
            self._cached = None
        if ENGINE_KEYS.intersection(kwargs):
            self._invalidate_engines()
        return settings

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None

    def _invalidate_engines(self) -> None:
        if self._engine_cache is not None:
            logger.debug("Engine settings changed; clearing engine availability cache")
            self._engine_cache.invalidate()
