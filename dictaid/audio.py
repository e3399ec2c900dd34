"""Microphone capture through sox and system output volume control."""

from __future__ import annotations

import logging
import subprocess
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Tuple

from .dependencies import require_tool

SAMPLE_RATE = 16000
MAX_RECORDING_SECONDS = 300.0
REAP_TIMEOUT = 2.0

logger = logging.getLogger(__name__)


class RecordingFailed(RuntimeError):
    """Raised when sox exits without producing a recording."""


def sensitivity_to_percent(value: int) -> float:
    """Map a 0-10 sensitivity to a 1%-6% amplitude floor."""

    value = max(0, min(10, int(value)))
    return 1 + value * 0.5


def check_audio_setup() -> Dict[str, str]:
    """Verify sox is installed and that an input device exists."""

    sox = require_tool("sox")
    try:
        import sounddevice as sd  # type: ignore
    except Exception as exc:  # pragma: no cover - optional dependency
        raise RuntimeError(
            "The `sounddevice` package is required to detect input devices. Install dictaid[mac]."
        ) from exc
    try:
        device = sd.query_devices(kind="input")
    except Exception as exc:
        raise RuntimeError(f"No audio input device available: {exc}") from exc
    return {"sox": str(sox), "device": str(device["name"])}


class AudioCapture:
    """Records 16 kHz mono 16-bit PCM until sox detects trailing silence."""

    def __init__(
        self,
        sox_path: Optional[Path] = None,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        max_duration: float = MAX_RECORDING_SECONDS,
    ) -> None:
        self._sox_path = sox_path
        self._popen = popen
        self.max_duration = max_duration

    def command(self, output_path: Path, timeout_seconds: float, threshold_percent: float) -> list:
        sox = self._sox_path or require_tool("sox")
        threshold = f"{threshold_percent:g}%"
        return [
            str(sox), "-d",
            "-r", str(SAMPLE_RATE), "-c", "1", "-b", "16",
            str(output_path),
            "silence", "1", "0.1", threshold, "1", f"{timeout_seconds:g}", threshold,
        ]

    def record(self, output_path: Path, timeout_seconds: float, threshold_percent: float) -> int:
        """Record into ``output_path`` and return the file size in bytes."""

        output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = self.command(output_path, timeout_seconds, threshold_percent)
        logger.debug("Starting recorder: %s", " ".join(cmd))
        process = self._popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE, text=True)
        stderr = ""
        try:
            _, stderr = process.communicate(timeout=self.max_duration)
        except subprocess.TimeoutExpired:
            logger.warning("Recording reached %.0fs; stopping", self.max_duration)
        finally:
            _reap(process)
            size = output_path.stat().st_size if output_path.exists() else 0
            if output_path.exists() and size == 0:
                output_path.unlink()

        if size == 0:
            raise RecordingFailed(f"Recording failed: {(stderr or '').strip() or 'no audio was written'}")
        return size


def _reap(process: subprocess.Popen) -> None:
    if process.poll() is not None:
        return
    process.terminate()
    try:
        process.wait(timeout=REAP_TIMEOUT)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


class VolumeController:
    """Ducks system output while recording and fades it back in afterwards.

    ``unmute`` only acts after a successful ``mute`` and never raises, so it
    can sit in a ``finally`` block regardless of what happened in between.
    """

    def __init__(
        self,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        sleep: Callable[[float], None] = time.sleep,
        release_delay: float = 1.5,
        fade_steps: int = 10,
        fade_duration: float = 0.5,
    ) -> None:
        self._run = runner
        self._sleep = sleep
        self.release_delay = release_delay
        self.fade_steps = fade_steps
        self.fade_duration = fade_duration
        self._saved: Optional[Tuple[int, bool]] = None

    @property
    def is_muted(self) -> bool:
        return self._saved is not None

    def _osascript(self, script: str) -> str:
        result = self._run(["/usr/bin/osascript", "-e", script], capture_output=True, text=True, check=True)
        return (result.stdout or "").strip()

    def _read_settings(self) -> Tuple[int, bool]:
        # "output volume:50, input volume:75, alert volume:100, output muted:false"
        raw = self._osascript("get volume settings")
        fields = dict(part.split(":", 1) for part in raw.split(", ") if ":" in part)
        return int(fields["output volume"]), fields.get("output muted") == "true"

    def mute(self) -> None:
        if self._saved is not None:
            return
        try:
            saved = self._read_settings()
            self._osascript("set volume with output muted")
        except (OSError, subprocess.SubprocessError, KeyError, ValueError) as exc:
            logger.warning("Could not mute system output: %s", exc)
            return
        self._saved = saved
        logger.debug("Muted output (saved level %d)", saved[0])

    def unmute(self) -> None:
        saved, self._saved = self._saved, None
        if saved is None:
            return
        level, was_muted = saved
        try:
            self._sleep(self.release_delay)
            self._osascript("set volume output volume 0")
            self._osascript("set volume without output muted")
            for step in range(1, self.fade_steps + 1):
                self._osascript(f"set volume output volume {round(level * step / self.fade_steps)}")
                if step < self.fade_steps:
                    self._sleep(self.fade_duration / self.fade_steps)
            if was_muted:
                self._osascript("set volume with output muted")
        except (OSError, subprocess.SubprocessError) as exc:
            logger.warning("Could not restore system output: %s", exc)


@contextmanager
def muted_output(controller: VolumeController, enabled: bool = True) -> Iterator[None]:
    if not enabled:
        yield
        return
    controller.mute()
    try:
        yield
    finally:
        controller.unmute()
