from pathlib import Path

from dictaid import dependencies
from dictaid.dependencies import DependencyError


def test_check_dependencies_reports_versions_and_missing(monkeypatch):
    installed = {"sox": Path("/opt/homebrew/bin/sox"), "uv": Path("/usr/local/bin/uv")}
    monkeypatch.setattr(dependencies, "find_tool", lambda name: installed.get(name))
    monkeypatch.setattr(dependencies, "tool_version", lambda path, flag: f"{path.name} 1.0")

    statuses = {s.name: s for s in dependencies.check_dependencies()}

    assert statuses["sox"].version == "sox 1.0"
    assert statuses["ffmpeg"].installed is False
    assert statuses["uv"].required is False
    assert [s.name for s in dependencies.missing_required(list(statuses.values()))] == ["ffmpeg"]


def test_find_tool_searches_homebrew_prefixes(tmp_path, monkeypatch):
    (tmp_path / "ffmpeg").write_text("")
    monkeypatch.setattr(dependencies.shutil, "which", lambda name: None)
    monkeypatch.setattr(dependencies, "HOMEBREW_PREFIXES", (tmp_path,))

    assert dependencies.find_tool("ffmpeg") == tmp_path / "ffmpeg"
    assert dependencies.find_tool("sox") is None


def test_install_requires_homebrew(monkeypatch):
    monkeypatch.setattr(dependencies, "find_tool", lambda name: None)

    try:
        dependencies.install_with_homebrew("sox")
    except DependencyError as exc:
        assert "Homebrew" in str(exc)
    else:
        raise AssertionError("Expected DependencyError")
