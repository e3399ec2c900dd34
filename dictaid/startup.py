"""Readiness checks run before any recording starts."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .audio import check_audio_setup
from .engines import EngineRegistry
from .models import Engine
from .transcriber import ClientProvider

PROBE_TIMEOUT = 5.0
AUDIO, MODEL, API = "audio", "model", "api"

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProbeResult:
    name: str
    success: bool
    data: Any = None
    error: Optional[str] = None


@dataclass(slots=True)
class StartupReport:
    engine: Engine
    results: Dict[str, ProbeResult] = field(default_factory=dict)

    def required(self) -> List[str]:
        names = [AUDIO, API]
        if self.engine.is_local:
            names.insert(1, MODEL)
        return names

    def failures(self) -> List[ProbeResult]:
        return [self.results[name] for name in self.required() if not self.results[name].success]

    @property
    def ok(self) -> bool:
        return not self.failures()


class StartupFailed(RuntimeError):
    """One or more required readiness probes failed."""

    def __init__(self, failures: List[ProbeResult]) -> None:
        self.failures = failures
        details = "; ".join(f"{f.name}: {f.error}" for f in failures)
        super().__init__(f"Startup checks failed - {details}")


class AudioSetupCache:
    """Remembers a successful audio probe until invalidated."""

    def __init__(self) -> None:
        self._result: Optional[ProbeResult] = None
        self._lock = threading.Lock()

    def get(self) -> Optional[ProbeResult]:
        with self._lock:
            return self._result

    def store(self, result: ProbeResult) -> None:
        if not result.success:
            return
        with self._lock:
            self._result = result

    def invalidate(self) -> None:
        with self._lock:
            self._result = None


def _start_probe(name: str, probe: Callable[[], Any]) -> Future:
    """Run ``probe`` on a daemon thread so a hung one never keeps the process alive."""

    future: Future = Future()

    def runner() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = probe()
        except Exception as exc:  # noqa: BLE001 - handed to the caller through the future
            future.set_exception(exc)
        else:
            future.set_result(result)

    threading.Thread(target=runner, name=f"dictaid-probe-{name}", daemon=True).start()
    return future


class StartupValidator:
    """Runs the audio, model and API probes concurrently.

    Every probe is given the same deadline; one that does not finish in time
    is reported as failed while the others still complete.
    """

    def __init__(
        self,
        registry: EngineRegistry,
        clients: ClientProvider,
        audio_cache: Optional[AudioSetupCache] = None,
        audio_probe: Callable[[], Any] = check_audio_setup,
        timeout: float = PROBE_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._clients = clients
        self.audio_cache = audio_cache or AudioSetupCache()
        self._audio_probe = audio_probe
        self.timeout = timeout

    def run_probes(self, engine: Engine, model_id: str, language: Optional[str] = None) -> StartupReport:
        report = StartupReport(engine=engine)
        probes: Dict[str, Callable[[], Any]] = {
            MODEL: lambda: self._probe_model(engine, model_id, language),
            API: self._clients.get,
        }
        cached_audio = self.audio_cache.get()
        if cached_audio is not None:
            report.results[AUDIO] = cached_audio
        else:
            probes[AUDIO] = self._audio_probe

        futures = {name: _start_probe(name, probe) for name, probe in probes.items()}
        deadline = time.monotonic() + self.timeout
        for name, future in futures.items():
            try:
                data = future.result(timeout=max(0.0, deadline - time.monotonic()))
            except FutureTimeout:
                report.results[name] = ProbeResult(name, False, error=f"timed out after {self.timeout:g}s")
            except Exception as exc:  # noqa: BLE001 - every probe failure is reported
                report.results[name] = ProbeResult(name, False, error=str(exc))
            else:
                report.results[name] = ProbeResult(name, True, data=data)

        if AUDIO in probes:
            self.audio_cache.store(report.results[AUDIO])
        for result in report.results.values():
            logger.debug("Probe %s: success=%s error=%s", result.name, result.success, result.error)
        return report

    def check(self, engine: Engine, model_id: str, language: Optional[str] = None) -> StartupReport:
        report = self.run_probes(engine, model_id, language)
        failures = report.failures()
        if failures:
            raise StartupFailed(failures)
        return report

    def _probe_model(self, engine: Engine, model_id: str, language: Optional[str]) -> Any:
        if not engine.is_local:
            return "cloud"
        self._registry.ensure_ready(engine, model_id, language)
        return self._registry.availability(engine, model_id)
