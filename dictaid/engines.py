"""Engine catalog, availability probes and local model management."""

from __future__ import annotations

import logging
import os
import platform
import shutil
import stat
import subprocess
import tarfile
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import httpx

from .config import APP_DIR
from .models import AUTO, Engine, EngineAvailability, LocalModel

WHISPER_DIR = APP_DIR / "whisper"
WHISPER_SOURCE_URL = "https://github.com/ggerganov/whisper.cpp/archive/refs/tags/v1.5.4.tar.gz"
WHISPER_SOURCE_DIRNAME = "whisper.cpp-1.5.4"
WHISPER_MODELS: Dict[str, str] = {
    "tiny": "https://huggingface.co/ggerganov/whisper.cpp/resolve/main/ggml-tiny.bin",
    "base": "https://huggingface.co/ggerganov/whisper.cpp/resolve/main/ggml-base.bin",
    "small": "https://huggingface.co/ggerganov/whisper.cpp/resolve/main/ggml-small.bin",
    "medium": "https://huggingface.co/ggerganov/whisper.cpp/resolve/main/ggml-medium.bin",
}
WHISPER_DESCRIPTIONS = {
    "tiny": "Fastest model, ~75MB. Good for quick transcriptions with decent accuracy.",
    "base": "Balanced model, ~150MB. Good accuracy for most use cases.",
    "small": "More accurate model, ~500MB. Better for complex audio.",
    "medium": "Most accurate model, ~1.5GB. Best quality but slower.",
}
PARAKEET_MODELS: Dict[str, Dict[str, object]] = {
    "parakeet-tdt-0.6b-v2": {
        "name": "Parakeet TDT 0.6B v2",
        "description": "600M params, optimized for Apple Silicon, 6.05% WER - English only",
        "hugging_face_id": "mlx-community/parakeet-tdt-0.6b-v2",
        "requirements": "2GB+ unified memory, Apple Silicon",
        "languages": ("en",),
    },
    "parakeet-rnnt-1.1b": {
        "name": "Parakeet RNNT 1.1B",
        "description": "1.1B params, higher accuracy, FastConformer-RNNT - English only",
        "hugging_face_id": "mlx-community/parakeet-rnnt-1.1b",
        "requirements": "4GB+ unified memory, Apple Silicon",
        "languages": ("en",),
    },
}
UV_SEARCH_PATHS = (
    Path.home() / ".local" / "bin" / "uv",
    Path("/usr/local/bin/uv"),
    Path("/opt/homebrew/bin/uv"),
)
PROBE_TIMEOUT = 2.0
DOWNLOAD_TIMEOUT = 60.0

logger = logging.getLogger(__name__)


class EngineNotReady(RuntimeError):
    """Raised when the requested engine or model cannot be used."""


class ModelInstallError(RuntimeError):
    """Raised when installing an engine or downloading a model fails."""


def is_apple_silicon() -> bool:
    return platform.system() == "Darwin" and platform.machine() == "arm64"


def find_uv() -> Optional[Path]:
    for candidate in UV_SEARCH_PATHS:
        if candidate.exists():
            return candidate
    found = shutil.which("uv")
    return Path(found) if found else None


def parakeet_command(uv_path: Path, output_dir: Path, audio_path: Path) -> List[str]:
    return [
        str(uv_path),
        "tool",
        "run",
        "--from",
        "parakeet-mlx",
        "parakeet-mlx",
        "--output-dir",
        str(output_dir),
        "--output-format",
        "txt",
        str(audio_path),
    ]


def supported_languages(engine: Engine, model_id: str) -> Optional[Tuple[str, ...]]:
    """Languages a local model accepts, or None when any language works."""

    if engine is Engine.LOCAL_PARAKEET:
        model = PARAKEET_MODELS.get(model_id)
        if model is not None:
            return tuple(model["languages"])  # type: ignore[arg-type]
    return None


def check_language_support(engine: Engine, model_id: str, language: Optional[str]) -> None:
    if not language or language == AUTO:
        return
    languages = supported_languages(engine, model_id)
    if languages is not None and language not in languages:
        name = PARAKEET_MODELS[model_id]["name"]
        raise EngineNotReady(
            f"{name} only supports: {', '.join(languages)}. "
            "For other languages, use the whisper or cloud engine."
        )


class EngineRegistry:
    """Knows which engines and models exist and whether they are usable.

    Availability lookups are memoised per (engine, model) pair until
    ``invalidate`` is called; the settings store calls it whenever the
    engine or a model id changes.
    """

    def __init__(self, whisper_dir: Path = WHISPER_DIR) -> None:
        self.whisper_dir = whisper_dir
        self._cache: Dict[Tuple[Engine, str], EngineAvailability] = {}
        self._lock = threading.Lock()

    @property
    def models_dir(self) -> Path:
        return self.whisper_dir / "models"

    @property
    def whisper_binary(self) -> Path:
        return self.whisper_dir / "bin" / "whisper"

    def whisper_model_path(self, model: str) -> Path:
        return self.models_dir / f"ggml-{model}.bin"

    def invalidate(self) -> None:
        with self._lock:
            self._cache.clear()

    # -- probes -----------------------------------------------------------

    def is_whisper_installed(self) -> bool:
        binary = self.whisper_binary
        return binary.exists() and bool(binary.stat().st_mode & stat.S_IXUSR)

    def is_whisper_model_downloaded(self, model: str) -> bool:
        return self.whisper_model_path(model).exists()

    def downloaded_whisper_models(self) -> List[str]:
        if not self.models_dir.exists():
            return []
        return sorted(
            p.name[len("ggml-"):-len(".bin")]
            for p in self.models_dir.glob("ggml-*.bin")
        )

    def is_parakeet_installed(self) -> bool:
        uv_path = find_uv()
        if uv_path is None:
            return False
        try:
            result = subprocess.run(
                [str(uv_path), "tool", "list"],
                capture_output=True,
                text=True,
                timeout=PROBE_TIMEOUT,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug("uv tool list failed: %s", exc)
            return False
        return result.returncode == 0 and "parakeet-mlx" in result.stdout

    def availability(self, engine: Engine, model_id: str) -> EngineAvailability:
        key = (engine, model_id)
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        if engine is Engine.CLOUD:
            result = EngineAvailability(engine, model_id, is_installed=True, is_compatible=True)
        elif engine is Engine.LOCAL_WHISPER:
            installed = (
                model_id in WHISPER_MODELS
                and self.is_whisper_installed()
                and self.is_whisper_model_downloaded(model_id)
            )
            result = EngineAvailability(engine, model_id, is_installed=installed, is_compatible=True)
        else:
            # parakeet-mlx fetches model weights on first use, so a working CLI is enough.
            installed = model_id in PARAKEET_MODELS and self.is_parakeet_installed()
            result = EngineAvailability(
                engine, model_id, is_installed=installed, is_compatible=is_apple_silicon()
            )
        logger.debug("Availability for %s/%s: %s", engine.value, model_id, result)

        with self._lock:
            self._cache[key] = result
        return result

    def is_available(self, engine: Engine, model_id: str) -> bool:
        return self.availability(engine, model_id).is_ready

    def ensure_ready(self, engine: Engine, model_id: str, language: Optional[str] = None) -> None:
        check_language_support(engine, model_id, language)
        if engine is Engine.CLOUD:
            return

        catalog = WHISPER_MODELS if engine is Engine.LOCAL_WHISPER else PARAKEET_MODELS
        if model_id not in catalog:
            raise EngineNotReady(f"Unknown {engine.value} model: {model_id}")

        status = self.availability(engine, model_id)
        name = "Whisper" if engine is Engine.LOCAL_WHISPER else "Parakeet"
        if not status.is_compatible:
            raise EngineNotReady(f"{name} requires an Apple Silicon (M-series) Mac")
        if not status.is_installed:
            raise EngineNotReady(
                f"{name} engine or model {model_id} is not available - "
                f"install it with `dictaid models install {engine.value}` and "
                f"`dictaid models download {model_id}`"
            )

    def list_local_models(self) -> List[LocalModel]:
        models = []
        for model_id in WHISPER_MODELS:
            models.append(
                LocalModel(
                    id=f"whisper-{model_id}",
                    name=f"Whisper {model_id.capitalize()}",
                    description=WHISPER_DESCRIPTIONS.get(model_id, "Whisper model"),
                    engine=Engine.LOCAL_WHISPER,
                    is_installed=self.is_whisper_model_downloaded(model_id),
                    is_compatible=True,
                )
            )
        parakeet_ready = self.is_parakeet_installed()
        for model_id, info in PARAKEET_MODELS.items():
            models.append(
                LocalModel(
                    id=f"parakeet-{model_id}",
                    name=str(info["name"]),
                    description=str(info["description"]),
                    engine=Engine.LOCAL_PARAKEET,
                    is_installed=parakeet_ready,
                    is_compatible=is_apple_silicon(),
                    requirements=str(info["requirements"]),
                )
            )
        return models

    # -- installation -----------------------------------------------------

    def download_whisper_model(
        self,
        model: str,
        progress: Optional[Callable[[int, Optional[int]], None]] = None,
    ) -> Path:
        url = WHISPER_MODELS.get(model)
        if url is None:
            raise ModelInstallError(f"Invalid Whisper model: {model}")

        destination = self.whisper_model_path(model)
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = destination.with_suffix(".part")
        try:
            _download(url, partial, progress)
            partial.replace(destination)
        except httpx.HTTPError as exc:
            raise ModelInstallError(f"Failed to download model {model}: {exc}") from exc
        finally:
            partial.unlink(missing_ok=True)
            self.invalidate()
        logger.info("Downloaded Whisper model %s to %s", model, destination)
        return destination

    def install_whisper(self, progress: Optional[Callable[[str], None]] = None) -> Path:
        """Build the whisper.cpp binary from its source release."""

        notify = progress or (lambda _message: None)
        if self.is_whisper_installed() and self._binary_works():
            notify("Whisper is already installed and working")
            return self.whisper_binary

        binary = self.whisper_binary
        binary.parent.mkdir(parents=True, exist_ok=True)
        src_dir = self.whisper_dir / "src"
        shutil.rmtree(src_dir, ignore_errors=True)

        try:
            with tempfile.TemporaryDirectory(dir=self.whisper_dir) as tmp:
                archive = Path(tmp) / "whisper.tar.gz"
                notify("Downloading source code...")
                _download(WHISPER_SOURCE_URL, archive)
                notify("Extracting source code...")
                with tarfile.open(archive) as tar:
                    tar.extractall(tmp, filter="data")
                shutil.move(str(Path(tmp) / WHISPER_SOURCE_DIRNAME), str(src_dir))

            notify("Compiling Whisper...")
            subprocess.run(["make", "clean"], cwd=src_dir, check=True, capture_output=True)
            subprocess.run(["make"], cwd=src_dir, check=True, capture_output=True)
            shutil.copyfile(src_dir / "main", binary)
            binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        except (httpx.HTTPError, OSError, tarfile.TarError, subprocess.CalledProcessError) as exc:
            raise ModelInstallError(f"Failed to install Whisper: {exc}") from exc
        finally:
            self.invalidate()

        if not self._binary_works():
            raise ModelInstallError("Installation verification failed - binary not working properly")
        notify("Whisper installed successfully")
        return binary

    def _binary_works(self) -> bool:
        try:
            subprocess.run(
                [str(self.whisper_binary), "--help"],
                capture_output=True,
                timeout=PROBE_TIMEOUT * 5,
                check=True,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("Whisper binary check failed: %s", exc)
            return False
        return True

    def install_parakeet(self) -> None:
        if not is_apple_silicon():
            raise ModelInstallError("Parakeet requires an Apple Silicon (M-series) Mac")
        uv_path = find_uv()
        if uv_path is None:
            raise ModelInstallError(
                "uv is required but not installed. Install it first: "
                "curl -LsSf https://astral.sh/uv/install.sh | sh"
            )
        try:
            subprocess.run(
                [str(uv_path), "tool", "install", "parakeet-mlx", "-U"],
                check=True,
                capture_output=True,
                text=True,
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            raise ModelInstallError(f"Failed to install parakeet-mlx: {exc}") from exc
        finally:
            self.invalidate()
        if not self.is_parakeet_installed():
            raise ModelInstallError("Installation verification failed")

    def prepare_parakeet_model(self, model_id: str) -> None:
        """Run the model once on a second of silence so its weights get fetched."""

        if model_id not in PARAKEET_MODELS:
            raise ModelInstallError(f"Invalid Parakeet model: {model_id}")
        if not is_apple_silicon():
            raise ModelInstallError("Parakeet models require Apple Silicon")
        uv_path = find_uv()
        if uv_path is None or not self.is_parakeet_installed():
            raise ModelInstallError("Parakeet is not installed. Run `dictaid models install parakeet` first.")

        with tempfile.TemporaryDirectory(prefix="dictaid-parakeet-") as tmp:
            sample = Path(tmp) / "silence.wav"
            _write_silence(sample)
            try:
                subprocess.run(
                    parakeet_command(uv_path, Path(tmp), sample),
                    check=True,
                    capture_output=True,
                    text=True,
                    env=homebrew_env(),
                )
            except (OSError, subprocess.CalledProcessError) as exc:
                raise ModelInstallError(f"Model test failed: {exc}") from exc
        self.invalidate()

    def cleanup_local_models(self) -> int:
        """Remove local engines and models; return the number of bytes freed."""

        freed = 0
        if self.whisper_dir.exists():
            for path in self.whisper_dir.rglob("*"):
                try:
                    if path.is_file():
                        freed += path.stat().st_size
                except OSError as exc:
                    logger.debug("Skipping %s: %s", path, exc)
            shutil.rmtree(self.whisper_dir, ignore_errors=True)

        uv_path = find_uv()
        if uv_path is not None:
            result = subprocess.run(
                [str(uv_path), "tool", "uninstall", "parakeet-mlx"],
                capture_output=True,
                text=True,
            )
            if result.returncode != 0:
                logger.info("parakeet-mlx was not installed via uv tool")
        self.invalidate()
        return freed


def _download(
    url: str,
    destination: Path,
    progress: Optional[Callable[[int, Optional[int]], None]] = None,
) -> None:
    with httpx.stream("GET", url, follow_redirects=True, timeout=DOWNLOAD_TIMEOUT) as response:
        response.raise_for_status()
        total = response.headers.get("content-length")
        total_bytes = int(total) if total else None
        done = 0
        with destination.open("wb") as fh:
            for chunk in response.iter_bytes():
                fh.write(chunk)
                done += len(chunk)
                if progress is not None:
                    progress(done, total_bytes)


def _write_silence(path: Path, seconds: float = 1.0, samplerate: int = 16000) -> None:
    try:
        import numpy as np
        import soundfile as sf  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise ModelInstallError(
            "The `numpy` and `soundfile` packages are required to prepare Parakeet models. Install dictaid[mac]."
        ) from exc
    sf.write(path, np.zeros(int(seconds * samplerate), dtype=np.int16), samplerate, subtype="PCM_16")


def homebrew_env() -> Dict[str, str]:
    env = dict(os.environ)
    env["PATH"] = "/opt/homebrew/bin:" + env.get("PATH", "")
    return env
