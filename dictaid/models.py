"""Dataclasses describing persistent and per-invocation objects for dictaid."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

AUTO = "auto"


class Engine(str, Enum):
    """Transcription backends known to dictaid."""

    CLOUD = "cloud"
    LOCAL_WHISPER = "whisper"
    LOCAL_PARAKEET = "parakeet"

    @property
    def is_local(self) -> bool:
        return self is not Engine.CLOUD


@dataclass(slots=True)
class DictionaryEntry:
    """A misrecognised phrase and the phrase it should become."""

    original: str
    correction: str
    added_at: datetime


@dataclass(slots=True)
class TranscriptionRequest:
    """Everything the orchestrator needs for one transcription."""

    audio_path: Path
    engine: Engine
    model_id: str
    language_hint: str = AUTO
    dictionary_entries: List[DictionaryEntry] = field(default_factory=list)
    fix_text: bool = False
    target_language: str = AUTO
    separate_dictionary_pass: bool = False

    @property
    def translates(self) -> bool:
        return bool(self.target_language) and self.target_language != AUTO

    @property
    def language(self) -> Optional[str]:
        if not self.language_hint or self.language_hint == AUTO:
            return None
        return self.language_hint


@dataclass(slots=True)
class TranscriptionMetadata:
    engine_used: Engine
    model_id: str
    strategy: str
    dictionary_applied: bool = False
    text_improved: bool = False
    translated: bool = False
    processing_time_ms: int = 0
    api_call_count: int = 0


@dataclass(slots=True)
class TranscriptionResult:
    text: str
    metadata: TranscriptionMetadata


@dataclass(slots=True)
class NoAudioDetected:
    """Returned instead of a result when the recording holds no speech."""

    reason: str


Outcome = Union[TranscriptionResult, NoAudioDetected]


@dataclass(slots=True)
class TranscriptionDetails:
    engine: str
    model: Optional[str] = None
    text_correction_enabled: bool = False
    target_language: str = AUTO
    active_app: Optional[str] = None


@dataclass(slots=True)
class HistoryRecord:
    """Represents a stored transcription entry."""

    id: str
    text: str
    timestamp: datetime
    language: str
    recording_path: Optional[str]
    transcribed: bool
    details: Optional[TranscriptionDetails] = None


@dataclass(slots=True)
class EngineAvailability:
    engine: Engine
    model_id: str
    is_installed: bool
    is_compatible: bool

    @property
    def is_ready(self) -> bool:
        return self.is_installed and self.is_compatible


@dataclass(slots=True)
class LocalModel:
    id: str
    name: str
    description: str
    engine: Engine
    is_installed: bool
    is_compatible: bool
    requirements: Optional[str] = None


@dataclass(slots=True)
class Settings:
    """User configuration stored on disk."""

    engine: str = "cloud"
    transcribe_model: str = "gpt-4o-mini-transcribe"
    whisper_model: str = "base"
    parakeet_model: str = "parakeet-tdt-0.6b-v2"
    llm_model: str = "gpt-4o-mini"
    input_language: str = AUTO
    target_language: str = AUTO
    primary_language: str = "en"
    secondary_language: str = "fr"
    fix_text: bool = False
    use_personal_dictionary: bool = False
    mute_during_dictation: bool = True
    silence_timeout: float = 2.0
    silence_sensitivity: int = 2
    strategy: str = "unified"
    separate_dictionary_pass: bool = False
    openai_api_key: Optional[str] = None
    insert_destination: str = "paste"

    @property
    def engine_kind(self) -> Engine:
        return Engine(self.engine)

    def current_model_id(self) -> str:
        engine = self.engine_kind
        if engine is Engine.LOCAL_WHISPER:
            return self.whisper_model
        if engine is Engine.LOCAL_PARAKEET:
            return self.parakeet_model
        return self.transcribe_model
