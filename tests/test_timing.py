import logging

from dictaid.timing import PerformanceLog, measure


def test_measure_records_success_and_failure(tmp_path):
    log = PerformanceLog(tmp_path / "performance.jsonl")

    with measure("transcription", log, engine="cloud"):
        pass
    try:
        with measure("transcription", log, engine="cloud"):
            raise ValueError("boom")
    except ValueError:
        pass

    entries = log.entries()
    assert [e["success"] for e in entries] == [True, False]
    assert entries[0]["metadata"] == {"engine": "cloud"}

    stats = log.summarize()
    assert len(stats) == 1
    assert stats[0].name == "transcription"
    assert stats[0].count == 2
    assert stats[0].success_rate == 0.5


def test_log_is_trimmed_to_most_recent_entries(tmp_path):
    log = PerformanceLog(tmp_path / "performance.jsonl", max_entries=3)
    for n in range(5):
        log.record(f"op{n}", n, True)

    assert [e["operation"] for e in log.entries()] == ["op2", "op3", "op4"]


def test_unwritable_log_is_logged_not_raised(tmp_path, caplog):
    blocked = tmp_path / "performance.jsonl"
    blocked.mkdir()
    log = PerformanceLog(blocked)

    with caplog.at_level(logging.WARNING, logger="dictaid.timing"):
        log.record("op", 1, True)

    assert "Could not write performance log" in caplog.text


def test_clear_removes_log(tmp_path):
    log = PerformanceLog(tmp_path / "performance.jsonl")
    log.record("op", 1, True)
    log.clear()

    assert log.entries() == []
    assert log.summarize() == []
