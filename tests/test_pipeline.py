from dataclasses import asdict
from datetime import datetime, timezone

from fakes import FakeBackend, FakeClient, provider_for

from dictaid.engines import EngineNotReady, EngineRegistry
from dictaid.models import DictionaryEntry, Engine, NoAudioDetected, TranscriptionRequest, TranscriptionResult
from dictaid.pipeline import MIN_AUDIO_BYTES, TranscriptionOrchestrator
from dictaid.postprocess import PostProcessingFailed
from dictaid.transcriber import TranscriptionFailed

ENTRIES = [DictionaryEntry("pie torch", "PyTorch", datetime(2024, 1, 1, tzinfo=timezone.utc))]


def _audio(tmp_path, size=10_000):
    path = tmp_path / "recording-1.wav"
    path.write_bytes(b"\0" * size)
    return path


def _orchestrator(tmp_path, backend, client, strategy="unified"):
    return TranscriptionOrchestrator(
        provider_for(client),
        EngineRegistry(whisper_dir=tmp_path / "whisper"),
        strategy=strategy,
        backend_factory=lambda engine: backend,
    )


def _request(path, **kwargs):
    options = {"engine": Engine.CLOUD, "model_id": "gpt-4o-mini-transcribe"}
    options.update(kwargs)
    return TranscriptionRequest(audio_path=path, **options)


def test_small_recording_is_silence_without_transcribing(tmp_path):
    backend, client = FakeBackend(), FakeClient()
    orchestrator = _orchestrator(tmp_path, backend, client)

    outcome = orchestrator.run(_request(_audio(tmp_path, size=3_000), fix_text=True))

    assert isinstance(outcome, NoAudioDetected)
    assert backend.calls == []
    assert client.chat_calls == []


def test_threshold_is_inclusive_of_min_size(tmp_path):
    backend = FakeBackend()
    outcome = _orchestrator(tmp_path, backend, FakeClient()).run(_request(_audio(tmp_path, MIN_AUDIO_BYTES)))

    assert isinstance(outcome, TranscriptionResult)
    assert len(backend.calls) == 1


def test_plain_request_makes_a_single_call(tmp_path):
    backend, client = FakeBackend("hello world"), FakeClient()

    outcome = _orchestrator(tmp_path, backend, client).run(_request(_audio(tmp_path)))

    assert outcome.text == "hello world"
    assert outcome.metadata.api_call_count == 1
    assert outcome.metadata.strategy == "unified"
    assert not outcome.metadata.text_improved and not outcome.metadata.translated
    assert client.chat_calls == []


def test_unified_post_processing_is_one_extra_call(tmp_path):
    for options in ({"fix_text": True}, {"target_language": "fr"}, {"fix_text": True, "target_language": "de"}):
        backend, client = FakeBackend(), FakeClient("Bonjour le monde.")

        outcome = _orchestrator(tmp_path, backend, client).run(
            _request(_audio(tmp_path), dictionary_entries=ENTRIES, **options)
        )

        assert outcome.metadata.api_call_count == 2
        assert len(client.chat_calls) == 1
        assert outcome.text == "Bonjour le monde."


def test_unified_passes_dictionary_as_transcription_prompt(tmp_path):
    backend = FakeBackend()

    outcome = _orchestrator(tmp_path, backend, FakeClient()).run(_request(_audio(tmp_path), dictionary_entries=ENTRIES))

    assert backend.calls[0]["prompt"] == 'Personal dictionary: "pie torch" should be "PyTorch".'
    assert outcome.metadata.dictionary_applied is True
    assert outcome.metadata.api_call_count == 1


def test_legacy_applies_dictionary_after_transcription(tmp_path):
    backend, client = FakeBackend("I use pie torch"), FakeClient("I use PyTorch")

    outcome = _orchestrator(tmp_path, backend, client, strategy="legacy").run(
        _request(_audio(tmp_path), dictionary_entries=ENTRIES)
    )

    assert backend.calls[0]["prompt"] is None
    assert outcome.text == "I use PyTorch"
    assert outcome.metadata.strategy == "legacy"
    assert outcome.metadata.api_call_count == 2
    assert "Apply personal dictionary corrections" in client.chat_calls[0]["messages"][1]["content"]


def test_legacy_separate_dictionary_pass_makes_three_calls(tmp_path):
    backend, client = FakeBackend(), FakeClient("Fixed.")

    outcome = _orchestrator(tmp_path, backend, client, strategy="legacy").run(
        _request(_audio(tmp_path), dictionary_entries=ENTRIES, fix_text=True, separate_dictionary_pass=True)
    )

    assert outcome.metadata.api_call_count == 3
    assert len(client.chat_calls) == 2


def test_unified_failure_falls_back_to_legacy_transparently(tmp_path):
    request_options = {"dictionary_entries": ENTRIES, "fix_text": True}

    fallback = _orchestrator(tmp_path, FakeBackend(fail_with_prompt=True), FakeClient("Done.")).run(
        _request(_audio(tmp_path), **request_options)
    )
    legacy = _orchestrator(tmp_path, FakeBackend(), FakeClient("Done."), strategy="legacy").run(
        _request(_audio(tmp_path), **request_options)
    )

    fallback_meta, legacy_meta = asdict(fallback.metadata), asdict(legacy.metadata)
    fallback_meta.pop("processing_time_ms")
    legacy_meta.pop("processing_time_ms")
    assert fallback.text == legacy.text
    assert fallback_meta == legacy_meta


def test_legacy_failures_propagate(tmp_path):
    class BrokenBackend(FakeBackend):
        def transcribe(self, *args, **kwargs):
            raise TranscriptionFailed("network down")

    orchestrator = _orchestrator(tmp_path, BrokenBackend(), FakeClient())
    try:
        orchestrator.run(_request(_audio(tmp_path)))
    except TranscriptionFailed as exc:
        assert "network down" in str(exc)
    else:
        raise AssertionError("Expected TranscriptionFailed")


def test_post_processing_failure_in_legacy_propagates(tmp_path):
    orchestrator = _orchestrator(tmp_path, FakeBackend(), FakeClient(""), strategy="legacy")

    try:
        orchestrator.run(_request(_audio(tmp_path), fix_text=True))
    except PostProcessingFailed:
        pass
    else:
        raise AssertionError("Expected PostProcessingFailed")


def test_dictionary_echo_is_reported_as_silence_before_post_processing(tmp_path):
    backend = FakeBackend('Personal dictionary: "pie torch" should be "PyTorch".')
    client = FakeClient()

    outcome = _orchestrator(tmp_path, backend, client).run(
        _request(_audio(tmp_path), dictionary_entries=ENTRIES, fix_text=True)
    )

    assert isinstance(outcome, NoAudioDetected)
    assert client.chat_calls == []


def test_parakeet_rejects_unsupported_language_before_transcribing(tmp_path):
    backend = FakeBackend()
    orchestrator = _orchestrator(tmp_path, backend, FakeClient())

    try:
        orchestrator.run(
            _request(_audio(tmp_path), engine=Engine.LOCAL_PARAKEET, model_id="parakeet-tdt-0.6b-v2", language_hint="fr")
        )
    except EngineNotReady as exc:
        assert "en" in str(exc)
    else:
        raise AssertionError("Expected EngineNotReady")
    assert backend.calls == []


def test_local_engine_never_post_processes(tmp_path):
    backend, client = FakeBackend("local words"), FakeClient()

    outcome = _orchestrator(tmp_path, backend, client).run(
        _request(_audio(tmp_path), engine=Engine.LOCAL_WHISPER, model_id="base", fix_text=True, target_language="fr")
    )

    assert outcome.text == "local words"
    assert outcome.metadata.api_call_count == 0
    assert outcome.metadata.strategy == "local"
    assert not outcome.metadata.text_improved and not outcome.metadata.translated
    assert client.chat_calls == []


def test_language_hint_is_forwarded_to_backend(tmp_path):
    backend = FakeBackend()
    _orchestrator(tmp_path, backend, FakeClient()).run(_request(_audio(tmp_path), language_hint="de"))

    assert backend.calls[0]["language"] == "de"
