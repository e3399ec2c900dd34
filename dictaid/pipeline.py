"""Transcription orchestration.

A request goes through three steps:

1. validation and no-audio detection, which need no network access;
2. transcription through exactly one backend, chosen by ``get_backend``;
3. for the cloud engine only, optional post-processing, using either the
   *unified* strategy (dictionary hint at transcription time plus at most one
   chat call) or the *legacy* strategy (dictionary, improvement and
   translation applied after transcription).

Strategies report back with ``Ok`` or ``Retry``. A ``Retry`` from the unified
strategy runs the legacy strategy once for the whole request; failures inside
the legacy strategy propagate to the caller.
"""

from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .dictionary import build_dictionary_hint, looks_like_hint_echo
from .engines import EngineRegistry, check_language_support
from .models import (
    Engine,
    NoAudioDetected,
    Outcome,
    TranscriptionMetadata,
    TranscriptionRequest,
    TranscriptionResult,
)
from .postprocess import PostProcessor, TranslationMemo
from .timing import PerformanceLog, measure
from .transcriber import ClientProvider, TranscriptionBackend, TranscriptionFailed, get_backend

MIN_AUDIO_BYTES = 3500
UNIFIED = "unified"
LEGACY = "legacy"
LOCAL = "local"

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Ok:
    value: Outcome


@dataclass(slots=True)
class Retry:
    reason: str


StrategyResult = Union[Ok, Retry]
BackendFactory = Callable[[Engine], TranscriptionBackend]


class TranscriptionOrchestrator:
    def __init__(
        self,
        clients: ClientProvider,
        registry: EngineRegistry,
        strategy: str = UNIFIED,
        llm_model: str = "gpt-4o-mini",
        memo: Optional[TranslationMemo] = None,
        performance_log: Optional[PerformanceLog] = None,
        backend_factory: Optional[BackendFactory] = None,
    ) -> None:
        self.strategy = strategy
        self.postprocessor = PostProcessor(clients, llm_model, memo)
        self._log = performance_log
        self._backend_factory = backend_factory or (
            lambda engine: get_backend(engine, clients, registry, subprocess.run)
        )

    def run(self, request: TranscriptionRequest) -> Outcome:
        check_language_support(request.engine, request.model_id, request.language)

        try:
            size = request.audio_path.stat().st_size
        except OSError as exc:
            raise TranscriptionFailed(f"Cannot read recording {request.audio_path}: {exc}") from exc
        if size < MIN_AUDIO_BYTES:
            logger.info("Recording is %d bytes, below %d; treating as silence", size, MIN_AUDIO_BYTES)
            return NoAudioDetected(reason="No audio detected in the recording")

        started = time.perf_counter()
        backend = self._backend_factory(request.engine)
        with measure(
            "transcription-pipeline",
            self._log,
            engine=request.engine.value,
            model=request.model_id,
            strategy=LOCAL if request.engine.is_local else self.strategy,
        ):
            if request.engine.is_local:
                attempt = self._local(request, backend)
            elif self.strategy == UNIFIED:
                unified = self._try_unified(request, backend)
                if isinstance(unified, Retry):
                    logger.warning("Unified transcription failed (%s); retrying with legacy strategy", unified.reason)
                    attempt = self._legacy(request, backend)
                else:
                    attempt = unified
            else:
                attempt = self._legacy(request, backend)

        outcome = attempt.value
        if isinstance(outcome, TranscriptionResult):
            outcome.metadata.processing_time_ms = int((time.perf_counter() - started) * 1000)
        return outcome

    def _transcribe(
        self,
        request: TranscriptionRequest,
        backend: TranscriptionBackend,
        prompt: Optional[str] = None,
    ) -> str:
        with measure("transcription", self._log, engine=request.engine.value, model=request.model_id):
            return backend.transcribe(request.audio_path, request.model_id, request.language, prompt)

    def _local(self, request: TranscriptionRequest, backend: TranscriptionBackend) -> Ok:
        raw = self._transcribe(request, backend)
        silent = _silence(raw)
        if silent is not None:
            return Ok(silent)
        metadata = TranscriptionMetadata(
            engine_used=request.engine,
            model_id=request.model_id,
            strategy=LOCAL,
        )
        return Ok(TranscriptionResult(text=raw, metadata=metadata))

    def _try_unified(self, request: TranscriptionRequest, backend: TranscriptionBackend) -> StrategyResult:
        try:
            return self._unified(request, backend)
        except Exception as exc:  # noqa: BLE001 - any failure falls back to legacy
            logger.debug("Unified strategy error", exc_info=True)
            return Retry(reason=str(exc) or exc.__class__.__name__)

    def _unified(self, request: TranscriptionRequest, backend: TranscriptionBackend) -> Ok:
        hint = build_dictionary_hint(request.dictionary_entries)
        raw = self._transcribe(request, backend, prompt=hint or None)
        silent = _silence(raw)
        if silent is not None:
            return Ok(silent)

        calls_before = self.postprocessor.call_count
        text = raw
        if request.fix_text or request.translates:
            with measure("post-processing", self._log, strategy=UNIFIED):
                text = self.postprocessor.process(
                    raw,
                    fix_text=request.fix_text,
                    target_language=request.target_language,
                    source_language=request.language,
                )
        metadata = TranscriptionMetadata(
            engine_used=request.engine,
            model_id=request.model_id,
            strategy=UNIFIED,
            dictionary_applied=bool(hint),
            text_improved=request.fix_text,
            translated=request.translates,
            api_call_count=1 + self.postprocessor.call_count - calls_before,
        )
        return Ok(TranscriptionResult(text=text, metadata=metadata))

    def _legacy(self, request: TranscriptionRequest, backend: TranscriptionBackend) -> Ok:
        raw = self._transcribe(request, backend)
        silent = _silence(raw)
        if silent is not None:
            return Ok(silent)

        entries = request.dictionary_entries
        calls_before = self.postprocessor.call_count
        text = raw
        with measure("post-processing", self._log, strategy=LEGACY):
            if request.separate_dictionary_pass and entries:
                text = self.postprocessor.apply_dictionary(text, entries)
                text = self.postprocessor.process(
                    text,
                    fix_text=request.fix_text,
                    target_language=request.target_language,
                    source_language=request.language,
                )
            else:
                text = self.postprocessor.process(
                    text,
                    entries,
                    fix_text=request.fix_text,
                    target_language=request.target_language,
                    source_language=request.language,
                )
        metadata = TranscriptionMetadata(
            engine_used=request.engine,
            model_id=request.model_id,
            strategy=LEGACY,
            dictionary_applied=bool(entries),
            text_improved=request.fix_text,
            translated=request.translates,
            api_call_count=1 + self.postprocessor.call_count - calls_before,
        )
        return Ok(TranscriptionResult(text=text, metadata=metadata))


def _silence(raw: str) -> Optional[NoAudioDetected]:
    if not raw.strip():
        return NoAudioDetected(reason="The transcription came back empty")
    if looks_like_hint_echo(raw):
        logger.info("Transcript echoes the dictionary hint; treating as silence")
        return NoAudioDetected(reason="No speech detected")
    return None
