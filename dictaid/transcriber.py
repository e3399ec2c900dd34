"""Audio transcription backends."""

from __future__ import annotations

import logging
import subprocess
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from .dependencies import DependencyError, require_tool
from .engines import EngineRegistry, find_uv, homebrew_env, parakeet_command
from .models import Engine

TRANSCRIBE_TEMPERATURE = 0.1

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]


class TranscriptionFailed(RuntimeError):
    """Raised when a backend could not produce a transcript."""


class ClientError(RuntimeError):
    """Raised when no OpenAI client can be built."""


class TranscriptionBackend(Protocol):
    """Common interface for transcription backends."""

    def transcribe(
        self,
        audio_path: Path,
        model: str,
        language: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> str:
        """Return the raw transcript text."""


def _openai_client(api_key: str) -> Any:
    try:
        from openai import OpenAI
    except Exception as exc:  # pragma: no cover - optional dependency
        raise ClientError("The `openai` package is required for cloud transcription.") from exc
    return OpenAI(api_key=api_key)


class ClientProvider:
    """Builds the OpenAI client lazily and reuses it while the key is unchanged."""

    def __init__(
        self,
        key_source: Callable[[], Optional[str]],
        factory: Callable[[str], Any] = _openai_client,
    ) -> None:
        self._key_source = key_source
        self._factory = factory
        self._client: Any = None
        self._key: Optional[str] = None
        self._lock = threading.Lock()

    def get(self) -> Any:
        api_key = self._key_source()
        if not api_key:
            raise ClientError(
                "An OpenAI API key is required. Set it with `dictaid config --openai-api-key ...` "
                "or the OPENAI_API_KEY environment variable."
            )
        with self._lock:
            if self._client is None or api_key != self._key:
                self._client = self._factory(api_key)
                self._key = api_key
            return self._client

    def clear(self) -> None:
        with self._lock:
            self._client = None
            self._key = None


class CloudBackend:
    """Cloud transcription using the OpenAI API."""

    def __init__(self, clients: ClientProvider) -> None:
        self._clients = clients

    def transcribe(
        self,
        audio_path: Path,
        model: str,
        language: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> str:
        from openai import OpenAIError

        client = self._clients.get()
        options: dict = {"model": model, "temperature": TRANSCRIBE_TEMPERATURE}
        if language:
            options["language"] = language
        if prompt:
            options["prompt"] = prompt
        try:
            with audio_path.open("rb") as fh:
                response = client.audio.transcriptions.create(file=fh, **options)
        except (OpenAIError, OSError) as exc:
            raise TranscriptionFailed(f"Cloud transcription failed: {exc}") from exc
        return (response.text or "").strip()


def convert_for_local(audio_path: Path, runner: Runner = subprocess.run) -> Path:
    """Resample to 16 kHz mono PCM next to the input file."""

    try:
        ffmpeg = require_tool("ffmpeg")
    except DependencyError as exc:
        raise TranscriptionFailed(str(exc)) from exc
    converted = audio_path.with_name(f"{audio_path.name}.converted.wav")
    result = runner(
        [
            str(ffmpeg), "-y", "-i", str(audio_path),
            "-ar", "16000", "-ac", "1", "-c:a", "pcm_s16le",
            str(converted),
        ],
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        converted.unlink(missing_ok=True)
        raise TranscriptionFailed(f"Audio conversion failed: {result.stderr.strip()}")
    return converted


def _read_transcript(transcript_file: Path, stdout: str) -> str:
    if transcript_file.exists():
        return transcript_file.read_text(encoding="utf-8").strip()
    logger.debug("No transcript file at %s; using stdout", transcript_file)
    return (stdout or "").strip()


class WhisperCppBackend:
    """Local transcription with the whisper.cpp binary."""

    def __init__(self, registry: EngineRegistry, runner: Runner = subprocess.run) -> None:
        self._registry = registry
        self._run = runner

    def transcribe(
        self,
        audio_path: Path,
        model: str,
        language: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> str:
        converted = convert_for_local(audio_path, self._run)
        transcript_file = Path(f"{converted}.txt")
        try:
            result = self._run(
                [
                    str(self._registry.whisper_binary),
                    "-m", str(self._registry.whisper_model_path(model)),
                    "-f", str(converted),
                    "-otxt",
                    "-nt",
                    "-l", language or "auto",
                ],
                capture_output=True,
                text=True,
            )
            if result.returncode != 0:
                raise TranscriptionFailed(f"Whisper transcription failed: {result.stderr.strip()}")
            return _read_transcript(transcript_file, result.stdout)
        finally:
            converted.unlink(missing_ok=True)
            transcript_file.unlink(missing_ok=True)


class ParakeetBackend:
    """Local transcription with parakeet-mlx, run through ``uv``."""

    def __init__(self, runner: Runner = subprocess.run) -> None:
        self._run = runner

    def transcribe(
        self,
        audio_path: Path,
        model: str,
        language: Optional[str] = None,
        prompt: Optional[str] = None,
    ) -> str:
        uv_path = find_uv()
        if uv_path is None:
            raise TranscriptionFailed("uv is not installed; it is required to run Parakeet.")
        converted = convert_for_local(audio_path, self._run)
        try:
            with tempfile.TemporaryDirectory(prefix="dictaid-parakeet-") as tmp:
                output_dir = Path(tmp)
                result = self._run(
                    parakeet_command(uv_path, output_dir, converted),
                    capture_output=True,
                    text=True,
                    env=homebrew_env(),
                )
                if result.returncode != 0:
                    raise TranscriptionFailed(f"Parakeet transcription failed: {result.stderr.strip()}")
                return _read_transcript(output_dir / f"{converted.stem}.txt", result.stdout)
        finally:
            converted.unlink(missing_ok=True)


def get_backend(
    engine: Engine,
    clients: ClientProvider,
    registry: EngineRegistry,
    runner: Runner = subprocess.run,
) -> TranscriptionBackend:
    """Return the backend for ``engine``."""

    if engine is Engine.CLOUD:
        return CloudBackend(clients)
    if engine is Engine.LOCAL_WHISPER:
        return WhisperCppBackend(registry, runner)
    if engine is Engine.LOCAL_PARAKEET:
        return ParakeetBackend(runner)
    raise TranscriptionFailed(f"Unsupported engine: {engine}")
