from pathlib import Path
from types import SimpleNamespace

import httpx
import openai

from dictaid import transcriber
from dictaid.engines import EngineRegistry
from dictaid.models import Engine
from dictaid.transcriber import (
    ClientError,
    ClientProvider,
    CloudBackend,
    ParakeetBackend,
    TranscriptionFailed,
    WhisperCppBackend,
    get_backend,
)


class LocalRunner:
    """Pretends to be ffmpeg plus one local engine."""

    def __init__(self, transcript_file=True, stdout="from stdout", returncode=0):
        self.transcript_file = transcript_file
        self.stdout = stdout
        self.returncode = returncode
        self.commands = []
        self.kwargs = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)
        self.kwargs.append(kwargs)
        if cmd[0].endswith("ffmpeg"):
            Path(cmd[-1]).write_bytes(b"RIFF")
            return SimpleNamespace(returncode=0, stdout="", stderr="")
        if self.transcript_file:
            self._write_transcript(cmd)
        return SimpleNamespace(returncode=self.returncode, stdout=self.stdout, stderr="boom")

    def _write_transcript(self, cmd):
        if "-otxt" in cmd:
            wav = cmd[cmd.index("-f") + 1]
            Path(f"{wav}.txt").write_text(" from file \n")
        else:
            outdir = Path(cmd[cmd.index("--output-dir") + 1])
            outdir.joinpath(Path(cmd[-1]).stem + ".txt").write_text("from parakeet file")


def _patch_tools(monkeypatch):
    monkeypatch.setattr(transcriber, "require_tool", lambda name: Path(f"/opt/homebrew/bin/{name}"))
    monkeypatch.setattr(transcriber, "find_uv", lambda: Path("/opt/homebrew/bin/uv"))


def test_client_provider_requires_a_key():
    provider = ClientProvider(lambda: None, factory=lambda key: object())

    try:
        provider.get()
    except ClientError:
        pass
    else:
        raise AssertionError("Expected ClientError without an API key")


def test_client_provider_rebuilds_when_key_changes():
    keys = ["sk-one"]
    built = []

    def factory(key):
        built.append(key)
        return SimpleNamespace(key=key)

    provider = ClientProvider(lambda: keys[0], factory=factory)
    assert provider.get() is provider.get()

    keys[0] = "sk-two"
    assert provider.get().key == "sk-two"
    assert built == ["sk-one", "sk-two"]


def test_cloud_backend_sends_prompt_language_and_temperature(tmp_path):
    calls = []

    def create(**kwargs):
        calls.append(kwargs)
        return SimpleNamespace(text=" Hello. ")

    client = SimpleNamespace(audio=SimpleNamespace(transcriptions=SimpleNamespace(create=create)))
    audio = tmp_path / "a.wav"
    audio.write_bytes(b"RIFF")

    backend = CloudBackend(ClientProvider(lambda: "sk", factory=lambda key: client))
    text = backend.transcribe(audio, "gpt-4o-mini-transcribe", language="en", prompt="Personal dictionary: x.")

    assert text == "Hello."
    assert calls[0]["model"] == "gpt-4o-mini-transcribe"
    assert calls[0]["language"] == "en"
    assert calls[0]["prompt"] == "Personal dictionary: x."
    assert calls[0]["temperature"] == 0.1

    backend.transcribe(audio, "whisper-1")
    assert "language" not in calls[1] and "prompt" not in calls[1]


def test_cloud_backend_wraps_api_errors(tmp_path):
    def create(**kwargs):
        raise openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/audio"))

    client = SimpleNamespace(audio=SimpleNamespace(transcriptions=SimpleNamespace(create=create)))
    audio = tmp_path / "a.wav"
    audio.write_bytes(b"RIFF")

    try:
        CloudBackend(ClientProvider(lambda: "sk", factory=lambda key: client)).transcribe(audio, "whisper-1")
    except TranscriptionFailed:
        pass
    else:
        raise AssertionError("Expected TranscriptionFailed")


def test_whisper_prefers_transcript_file_and_cleans_up(tmp_path, monkeypatch):
    _patch_tools(monkeypatch)
    audio = tmp_path / "recording-1.wav"
    audio.write_bytes(b"RIFF")
    runner = LocalRunner()
    registry = EngineRegistry(whisper_dir=tmp_path / "whisper")

    text = WhisperCppBackend(registry, runner).transcribe(audio, "base", language="de")

    assert text == "from file"
    whisper_cmd = runner.commands[1]
    assert whisper_cmd[0] == str(registry.whisper_binary)
    assert whisper_cmd[whisper_cmd.index("-l") + 1] == "de"
    assert whisper_cmd[whisper_cmd.index("-m") + 1].endswith("ggml-base.bin")
    assert sorted(p.name for p in tmp_path.iterdir() if p.is_file()) == ["recording-1.wav"]


def test_whisper_falls_back_to_stdout(tmp_path, monkeypatch):
    _patch_tools(monkeypatch)
    audio = tmp_path / "recording-1.wav"
    audio.write_bytes(b"RIFF")

    backend = WhisperCppBackend(EngineRegistry(tmp_path / "whisper"), LocalRunner(transcript_file=False))

    assert backend.transcribe(audio, "base") == "from stdout"


def test_whisper_failure_still_removes_converted_audio(tmp_path, monkeypatch):
    _patch_tools(monkeypatch)
    audio = tmp_path / "recording-1.wav"
    audio.write_bytes(b"RIFF")
    backend = WhisperCppBackend(EngineRegistry(tmp_path / "whisper"), LocalRunner(transcript_file=False, returncode=1))

    try:
        backend.transcribe(audio, "base")
    except TranscriptionFailed:
        pass
    else:
        raise AssertionError("Expected TranscriptionFailed")
    assert not (tmp_path / "recording-1.wav.converted.wav").exists()


def test_parakeet_reads_output_directory(tmp_path, monkeypatch):
    _patch_tools(monkeypatch)
    audio = tmp_path / "recording-1.wav"
    audio.write_bytes(b"RIFF")
    runner = LocalRunner()

    assert ParakeetBackend(runner).transcribe(audio, "parakeet-tdt-0.6b-v2") == "from parakeet file"
    assert runner.commands[1][:6] == ["/opt/homebrew/bin/uv", "tool", "run", "--from", "parakeet-mlx", "parakeet-mlx"]
    assert runner.kwargs[1]["env"]["PATH"].startswith("/opt/homebrew/bin:")


def test_get_backend_dispatches_on_engine(tmp_path):
    clients = ClientProvider(lambda: "sk")
    registry = EngineRegistry(tmp_path / "whisper")

    assert isinstance(get_backend(Engine.CLOUD, clients, registry), CloudBackend)
    assert isinstance(get_backend(Engine.LOCAL_WHISPER, clients, registry), WhisperCppBackend)
    assert isinstance(get_backend(Engine.LOCAL_PARAKEET, clients, registry), ParakeetBackend)
