"""Test doubles shared by the pipeline, post-processing and session tests."""

from types import SimpleNamespace

from dictaid.transcriber import ClientProvider


class FakeCompletions:
    def __init__(self, reply):
        self.reply = reply
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        content = self.reply(kwargs) if callable(self.reply) else self.reply
        return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeClient:
    def __init__(self, reply="Processed text."):
        self.chat = SimpleNamespace(completions=FakeCompletions(reply))

    @property
    def chat_calls(self):
        return self.chat.completions.calls


def provider_for(client, key="sk-test"):
    return ClientProvider(lambda: key, factory=lambda _key: client)


class FakeBackend:
    def __init__(self, text="hello world", fail_with_prompt=False):
        self.text = text
        self.fail_with_prompt = fail_with_prompt
        self.calls = []

    def transcribe(self, audio_path, model, language=None, prompt=None):
        self.calls.append({"audio_path": audio_path, "model": model, "language": language, "prompt": prompt})
        if self.fail_with_prompt and prompt is not None:
            from dictaid.transcriber import TranscriptionFailed

            raise TranscriptionFailed("prompted transcription rejected")
        return self.text
