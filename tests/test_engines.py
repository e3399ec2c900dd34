import stat

from dictaid import engines
from dictaid.engines import EngineNotReady, EngineRegistry, ModelInstallError, check_language_support
from dictaid.models import Engine


def _install_whisper(registry, model="base"):
    binary = registry.whisper_binary
    binary.parent.mkdir(parents=True, exist_ok=True)
    binary.write_text("#!/bin/sh\n")
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR)
    registry.models_dir.mkdir(parents=True, exist_ok=True)
    registry.whisper_model_path(model).write_bytes(b"ggml")


def _expect_not_ready(call, fragment):
    try:
        call()
    except EngineNotReady as exc:
        assert fragment in str(exc)
    else:
        raise AssertionError("Expected EngineNotReady")


def test_language_support():
    check_language_support(Engine.LOCAL_PARAKEET, "parakeet-tdt-0.6b-v2", "en")
    check_language_support(Engine.LOCAL_PARAKEET, "parakeet-tdt-0.6b-v2", "auto")
    check_language_support(Engine.LOCAL_PARAKEET, "parakeet-tdt-0.6b-v2", None)
    check_language_support(Engine.LOCAL_WHISPER, "base", "fr")
    check_language_support(Engine.CLOUD, "whisper-1", "ja")
    _expect_not_ready(
        lambda: check_language_support(Engine.LOCAL_PARAKEET, "parakeet-rnnt-1.1b", "fr"),
        "only supports: en",
    )


def test_whisper_requires_binary_and_model(tmp_path):
    registry = EngineRegistry(whisper_dir=tmp_path / "whisper")
    _expect_not_ready(lambda: registry.ensure_ready(Engine.LOCAL_WHISPER, "base"), "dictaid models")

    _install_whisper(registry)
    registry.invalidate()
    registry.ensure_ready(Engine.LOCAL_WHISPER, "base")
    _expect_not_ready(lambda: registry.ensure_ready(Engine.LOCAL_WHISPER, "small"), "small")
    _expect_not_ready(lambda: registry.ensure_ready(Engine.LOCAL_WHISPER, "gigantic"), "Unknown")


def test_availability_is_cached_until_invalidated(tmp_path):
    registry = EngineRegistry(whisper_dir=tmp_path / "whisper")
    assert registry.is_available(Engine.LOCAL_WHISPER, "base") is False

    _install_whisper(registry)
    assert registry.is_available(Engine.LOCAL_WHISPER, "base") is False

    registry.invalidate()
    assert registry.is_available(Engine.LOCAL_WHISPER, "base") is True


def test_cloud_is_always_ready(tmp_path):
    registry = EngineRegistry(whisper_dir=tmp_path / "whisper")

    registry.ensure_ready(Engine.CLOUD, "gpt-4o-transcribe")
    assert registry.availability(Engine.CLOUD, "gpt-4o-transcribe").is_ready


def test_parakeet_requires_apple_silicon(tmp_path, monkeypatch):
    registry = EngineRegistry(whisper_dir=tmp_path / "whisper")
    monkeypatch.setattr(engines, "is_apple_silicon", lambda: False)
    monkeypatch.setattr(registry, "is_parakeet_installed", lambda: True)

    _expect_not_ready(
        lambda: registry.ensure_ready(Engine.LOCAL_PARAKEET, "parakeet-tdt-0.6b-v2"),
        "Apple Silicon",
    )


def test_list_local_models(tmp_path, monkeypatch):
    registry = EngineRegistry(whisper_dir=tmp_path / "whisper")
    monkeypatch.setattr(registry, "is_parakeet_installed", lambda: False)
    _install_whisper(registry, "tiny")

    models = registry.list_local_models()

    assert [m.id for m in models] == [
        "whisper-tiny",
        "whisper-base",
        "whisper-small",
        "whisper-medium",
        "parakeet-parakeet-tdt-0.6b-v2",
        "parakeet-parakeet-rnnt-1.1b",
    ]
    assert [m.is_installed for m in models[:2]] == [True, False]
    assert models[-1].requirements == "4GB+ unified memory, Apple Silicon"


def test_download_whisper_model_writes_file_and_invalidates(tmp_path, monkeypatch):
    registry = EngineRegistry(whisper_dir=tmp_path / "whisper")
    _install_whisper(registry, "tiny")
    assert registry.is_available(Engine.LOCAL_WHISPER, "small") is False
    fetched = []

    def fake_download(url, destination, progress=None):
        fetched.append(url)
        destination.write_bytes(b"weights")
        if progress:
            progress(7, 7)

    monkeypatch.setattr(engines, "_download", fake_download)
    progress = []
    path = registry.download_whisper_model("small", progress=lambda done, total: progress.append((done, total)))

    assert path.read_bytes() == b"weights"
    assert fetched == [engines.WHISPER_MODELS["small"]]
    assert progress == [(7, 7)]
    assert registry.downloaded_whisper_models() == ["small", "tiny"]
    assert registry.is_available(Engine.LOCAL_WHISPER, "small") is True


def test_download_rejects_unknown_model(tmp_path):
    try:
        EngineRegistry(whisper_dir=tmp_path / "whisper").download_whisper_model("large-v9")
    except ModelInstallError:
        pass
    else:
        raise AssertionError("Expected ModelInstallError")


def test_cleanup_reports_freed_bytes(tmp_path, monkeypatch):
    registry = EngineRegistry(whisper_dir=tmp_path / "whisper")
    _install_whisper(registry)
    monkeypatch.setattr(engines, "find_uv", lambda: None)

    freed = registry.cleanup_local_models()

    assert freed == len("#!/bin/sh\n") + len(b"ggml")
    assert not registry.whisper_dir.exists()
