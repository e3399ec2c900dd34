"""One end-to-end dictation: record, transcribe, deliver, remember."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, List, Optional

from .audio import AudioCapture, VolumeController, muted_output, sensitivity_to_percent
from .config import resolve_api_key
from .delivery import deliver, frontmost_application, selected_text
from .dictionary import load_entries
from .engines import EngineRegistry
from .models import (
    AUTO,
    NoAudioDetected,
    Settings,
    TranscriptionDetails,
    TranscriptionRequest,
    TranscriptionResult,
)
from .pipeline import TranscriptionOrchestrator
from .postprocess import PostProcessor, TranslationMemo, clean_output_text
from .startup import AudioSetupCache, StartupValidator
from .storage import (
    RECORDINGS_DIR,
    HistoryStore,
    RecordingTracker,
    new_recording_path,
    sweep_recordings,
)
from .timing import PerformanceLog
from .transcriber import ClientProvider

OK = "ok"
NO_AUDIO = "no_audio"
PROMPT_LANGUAGE = "prompt"

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DictationOutcome:
    status: str
    text: str = ""
    result: Optional[TranscriptionResult] = None
    recording_path: Optional[Path] = None


def run_in_background(target: Callable[..., Any], *args: Any, name: str = "dictaid-background") -> threading.Thread:
    """Start ``target`` on a daemon thread; its failures are logged and dropped."""

    def runner() -> None:
        try:
            target(*args)
        except Exception:
            logger.exception("Background task %s failed", name)

    thread = threading.Thread(target=runner, name=name, daemon=True)
    thread.start()
    return thread


class DictationSession:
    def __init__(
        self,
        settings: Settings,
        registry: EngineRegistry,
        validator: StartupValidator,
        orchestrator: TranscriptionOrchestrator,
        history: HistoryStore,
        capture: Optional[AudioCapture] = None,
        volume: Optional[VolumeController] = None,
        tracker: Optional[RecordingTracker] = None,
        recordings_dir: Path = RECORDINGS_DIR,
        dictionary_loader: Callable[[], list] = load_entries,
        deliver_text: Callable[[str, str], None] = deliver,
        active_app: Callable[[], Optional[str]] = frontmost_application,
        selection: Callable[[], Optional[str]] = selected_text,
        postprocessor: Optional[PostProcessor] = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.validator = validator
        self.orchestrator = orchestrator
        self.history = history
        self.capture = capture or AudioCapture()
        self.volume = volume or VolumeController()
        self.tracker = tracker or RecordingTracker()
        self.recordings_dir = recordings_dir
        self._load_dictionary = dictionary_loader
        self._deliver = deliver_text
        self._active_app = active_app
        self._selection = selection
        self._postprocessor = postprocessor
        self._background: List[threading.Thread] = []

    @property
    def postprocessor(self) -> PostProcessor:
        return self._postprocessor or self.orchestrator.postprocessor

    @property
    def language(self) -> Optional[str]:
        lang = self.settings.input_language
        return None if lang == "auto" else lang

    def preflight(self) -> None:
        """Fail before touching the microphone or the volume."""

        engine = self.settings.engine_kind
        model_id = self.settings.current_model_id()
        self.registry.ensure_ready(engine, model_id, self.language)
        self.validator.check(engine, model_id, self.language)

    def build_request(self, audio_path: Path) -> TranscriptionRequest:
        settings = self.settings
        entries = self._load_dictionary() if settings.use_personal_dictionary else []
        return TranscriptionRequest(
            audio_path=audio_path,
            engine=settings.engine_kind,
            model_id=settings.current_model_id(),
            language_hint=settings.input_language,
            dictionary_entries=list(entries),
            fix_text=settings.fix_text,
            target_language=settings.target_language,
            separate_dictionary_pass=settings.separate_dictionary_pass,
        )

    def run(self) -> DictationOutcome:
        self.preflight()
        active_app = self._active_app()
        path = new_recording_path(self.recordings_dir)
        with self.tracker.track(path):
            self._record(path)
            return self.transcribe(path, active_app=active_app)

    def run_prompt(self) -> DictationOutcome:
        """Record a spoken instruction and apply it to the selected text.

        With nothing selected the instruction is answered with new text. Either
        way the result replaces the selection through the usual delivery path.
        """

        self.preflight()
        active_app = self._active_app()
        selection = self._selection()
        path = new_recording_path(self.recordings_dir)
        with self.tracker.track(path):
            self._record(path)
            request = replace(
                self.build_request(path),
                dictionary_entries=[],
                fix_text=False,
                target_language=AUTO,
            )
            outcome = self.orchestrator.run(request)
            if isinstance(outcome, NoAudioDetected):
                logger.info("No audio detected: %s", outcome.reason)
                return DictationOutcome(status=NO_AUDIO, text=outcome.reason, recording_path=path)

            instruction = clean_output_text(outcome.text)
            details = replace(
                self._details(active_app),
                text_correction_enabled=False,
                target_language=PROMPT_LANGUAGE,
            )
            self._spawn(self._record_instruction, instruction, path, details)

            entries = self._load_dictionary() if self.settings.use_personal_dictionary else []
            logger.info("Applying instruction to %s", "the selection" if selection else "new text")
            text = self.postprocessor.apply_instruction(instruction, selection, entries)
            self._deliver(text, self.settings.insert_destination)
            return DictationOutcome(status=OK, text=text, result=outcome, recording_path=path)

    def _record(self, path: Path) -> None:
        with muted_output(self.volume, self.settings.mute_during_dictation):
            size = self.capture.record(
                path,
                self.settings.silence_timeout,
                sensitivity_to_percent(self.settings.silence_sensitivity),
            )
        logger.info("Recorded %d bytes to %s", size, path.name)

    def transcribe(
        self,
        path: Path,
        record_id: Optional[str] = None,
        active_app: Optional[str] = None,
        deliver_result: bool = True,
    ) -> DictationOutcome:
        """Transcribe ``path``; ``record_id`` names an existing history entry to complete."""

        request = self.build_request(path)
        details = self._details(active_app)
        try:
            outcome = self.orchestrator.run(request)
        except Exception:
            if record_id is None:
                self._spawn(self._record_failure, path, details)
            raise

        if isinstance(outcome, NoAudioDetected):
            logger.info("No audio detected: %s", outcome.reason)
            return DictationOutcome(status=NO_AUDIO, text=outcome.reason, recording_path=path)

        text = clean_output_text(outcome.text)
        if deliver_result:
            self._deliver(text, self.settings.insert_destination)
        self._spawn(self._record_success, text, path, details, record_id)
        return DictationOutcome(status=OK, text=text, result=outcome, recording_path=path)

    def wait_for_background(self, timeout: Optional[float] = None) -> None:
        for thread in self._background:
            thread.join(timeout)
        self._background = [t for t in self._background if t.is_alive()]

    def _spawn(self, target: Callable[..., Any], *args: Any) -> None:
        self._background.append(run_in_background(target, *args, name=target.__name__))

    def _details(self, active_app: Optional[str]) -> TranscriptionDetails:
        return TranscriptionDetails(
            engine=self.settings.engine,
            model=self.settings.current_model_id(),
            text_correction_enabled=self.settings.fix_text,
            target_language=self.settings.target_language,
            active_app=active_app,
        )

    def _history_language(self) -> str:
        target = self.settings.target_language
        if target and target != "auto":
            return target
        return self.settings.input_language

    def _record_success(
        self,
        text: str,
        path: Path,
        details: TranscriptionDetails,
        record_id: Optional[str],
    ) -> None:
        if record_id is not None:
            self.history.mark_transcribed(record_id, text, details)
        else:
            self.history.append(text, self._history_language(), path, transcribed=True, details=details)
        self._sweep()

    def _record_instruction(self, instruction: str, path: Path, details: TranscriptionDetails) -> None:
        self.history.append(instruction, PROMPT_LANGUAGE, path, transcribed=True, details=details)
        self._sweep()

    def _record_failure(self, path: Path, details: TranscriptionDetails) -> None:
        if not path.exists():
            return
        self.history.append("", self._history_language(), path, transcribed=False, details=details)
        logger.info("Kept %s for a later retry", path.name)

    def _sweep(self) -> None:
        removed = sweep_recordings(
            self.recordings_dir,
            self.history.recordings_to_keep(),
            self.tracker.snapshot(),
        )
        if removed:
            logger.debug("Swept %d old recordings", len(removed))


def build_orchestrator(
    settings: Settings,
    registry: EngineRegistry,
    clients: ClientProvider,
    memo: Optional[TranslationMemo] = None,
    performance_log: Optional[PerformanceLog] = None,
) -> TranscriptionOrchestrator:
    return TranscriptionOrchestrator(
        clients,
        registry,
        strategy=settings.strategy,
        llm_model=settings.llm_model,
        memo=memo,
        performance_log=performance_log,
    )


def client_provider(settings: Settings) -> ClientProvider:
    return ClientProvider(lambda: resolve_api_key(settings))


def build_session(
    settings: Settings,
    registry: Optional[EngineRegistry] = None,
    history: Optional[HistoryStore] = None,
    audio_cache: Optional[AudioSetupCache] = None,
    performance_log: Optional[PerformanceLog] = None,
) -> DictationSession:
    registry = registry or EngineRegistry()
    clients = client_provider(settings)
    log = performance_log or PerformanceLog()
    return DictationSession(
        settings=settings,
        registry=registry,
        validator=StartupValidator(registry, clients, audio_cache=audio_cache),
        orchestrator=build_orchestrator(settings, registry, clients, performance_log=log),
        history=history or HistoryStore(),
    )
