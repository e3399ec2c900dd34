from datetime import datetime, timezone

from dictaid import dictionary
from dictaid.config import ConfigError
from dictaid.models import DictionaryEntry


def _entry(original, correction):
    return DictionaryEntry(original, correction, datetime(2024, 1, 1, tzinfo=timezone.utc))


def test_hint_lists_every_pair_once_in_order():
    entries = [_entry("chat gpt", "ChatGPT"), _entry("pie torch", "PyTorch"), _entry("chat gpt", "ChatGPT")]

    hint = dictionary.build_dictionary_hint(entries)

    assert hint == (
        'Personal dictionary: "chat gpt" should be "ChatGPT", '
        '"pie torch" should be "PyTorch", "chat gpt" should be "ChatGPT".'
    )
    first = hint.index('"pie torch" should be "PyTorch"')
    assert hint.index('"chat gpt" should be "ChatGPT"') < first
    assert hint.count('"pie torch" should be "PyTorch"') == 1


def test_empty_dictionary_builds_nothing():
    assert dictionary.build_dictionary_hint([]) == ""
    assert dictionary.build_dictionary_prompt([]) == ""


def test_hint_echo_detection():
    assert dictionary.looks_like_hint_echo('  personal dictionary: "a" should be "b".')
    assert not dictionary.looks_like_hint_echo("My personal dictionary: is great")


def test_add_and_remove_entries(tmp_path):
    path = tmp_path / "dictionary.json"
    dictionary.add_entry(" kubernetes ", "Kubernetes", path)
    dictionary.add_entry("get hub", "GitHub", path)

    entries = dictionary.load_entries(path)
    assert [(e.original, e.correction) for e in entries] == [("kubernetes", "Kubernetes"), ("get hub", "GitHub")]

    removed = dictionary.remove_entry(0, path)
    assert removed.original == "kubernetes"
    assert [e.original for e in dictionary.load_entries(path)] == ["get hub"]


def test_invalid_entries_are_rejected(tmp_path):
    path = tmp_path / "dictionary.json"
    for call in (
        lambda: dictionary.add_entry("", "x", path),
        lambda: dictionary.remove_entry(3, path),
    ):
        try:
            call()
        except ConfigError:
            continue
        raise AssertionError("Expected ConfigError")
