import subprocess
import sys
import textwrap
import threading
import time
from pathlib import Path

from dictaid.engines import EngineRegistry
from dictaid.models import Engine
from dictaid.startup import AudioSetupCache, StartupFailed, StartupValidator
from dictaid.transcriber import ClientProvider


def _validator(tmp_path, key="sk-test", audio_probe=None, **kwargs):
    return StartupValidator(
        EngineRegistry(whisper_dir=tmp_path / "whisper"),
        ClientProvider(lambda: key, factory=lambda _key: object()),
        audio_probe=audio_probe or (lambda: {"device": "MacBook Microphone"}),
        **kwargs,
    )


def test_cloud_mode_passes_with_audio_and_key(tmp_path):
    report = _validator(tmp_path).check(Engine.CLOUD, "gpt-4o-mini-transcribe")

    assert report.ok
    assert report.results["model"].data == "cloud"
    assert report.results["audio"].data == {"device": "MacBook Microphone"}


def test_failures_are_aggregated(tmp_path):
    def no_microphone():
        raise RuntimeError("no input device")

    validator = _validator(tmp_path, key=None, audio_probe=no_microphone)
    try:
        validator.check(Engine.CLOUD, "gpt-4o-mini-transcribe")
    except StartupFailed as exc:
        assert [f.name for f in exc.failures] == ["audio", "api"]
        assert "no input device" in str(exc)
        assert "API key" in str(exc)
    else:
        raise AssertionError("Expected StartupFailed")


def test_model_probe_only_required_for_local_engines(tmp_path):
    validator = _validator(tmp_path)

    report = validator.run_probes(Engine.LOCAL_WHISPER, "base")
    assert not report.ok
    assert [f.name for f in report.failures()] == ["model"]
    assert "not available" in report.results["model"].error

    assert "model" not in _validator(tmp_path).run_probes(Engine.CLOUD, "whisper-1").required()


def test_hung_probe_times_out_without_blocking_the_others(tmp_path):
    release = threading.Event()

    def hung_audio():
        release.wait(5)
        return {}

    validator = _validator(tmp_path, audio_probe=hung_audio, timeout=0.2)
    started = time.monotonic()
    try:
        report = validator.run_probes(Engine.CLOUD, "whisper-1")
    finally:
        release.set()

    assert time.monotonic() - started < 2
    assert report.results["audio"].success is False
    assert "timed out" in report.results["audio"].error
    assert report.results["api"].success is True
    assert report.results["model"].success is True


def test_hung_probe_does_not_keep_the_process_alive(tmp_path):
    script = textwrap.dedent(
        """
        import sys
        import time
        from pathlib import Path

        from dictaid.engines import EngineRegistry
        from dictaid.models import Engine
        from dictaid.startup import StartupValidator
        from dictaid.transcriber import ClientProvider

        validator = StartupValidator(
            EngineRegistry(whisper_dir=Path(sys.argv[1])),
            ClientProvider(lambda: "sk-test", factory=lambda key: object()),
            audio_probe=lambda: time.sleep(30),
            timeout=0.2,
        )
        report = validator.run_probes(Engine.CLOUD, "whisper-1")
        print(report.results["audio"].error)
        """
    )
    started = time.monotonic()
    completed = subprocess.run(
        [sys.executable, "-c", script, str(tmp_path / "whisper")],
        capture_output=True,
        text=True,
        cwd=Path(__file__).resolve().parents[1],
        timeout=20,
    )

    assert completed.returncode == 0, completed.stderr
    assert "timed out" in completed.stdout
    assert time.monotonic() - started < 15


def test_audio_probe_is_cached_until_invalidated(tmp_path):
    calls = []

    def probe():
        calls.append(1)
        return {"device": "mic"}

    cache = AudioSetupCache()
    validator = _validator(tmp_path, audio_probe=probe, audio_cache=cache)

    validator.check(Engine.CLOUD, "whisper-1")
    validator.check(Engine.CLOUD, "whisper-1")
    assert len(calls) == 1

    cache.invalidate()
    validator.check(Engine.CLOUD, "whisper-1")
    assert len(calls) == 2


def test_failed_audio_probe_is_not_cached(tmp_path):
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("sox missing")
        return {"device": "mic"}

    validator = _validator(tmp_path, audio_probe=flaky)
    assert not validator.run_probes(Engine.CLOUD, "whisper-1").ok
    assert validator.run_probes(Engine.CLOUD, "whisper-1").ok
