"""Command line interface for the dictaid application."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, replace
from pathlib import Path
from typing import Dict, List, NoReturn, Optional

import typer
from rich.progress import BarColumn, DownloadColumn, Progress, TextColumn, TransferSpeedColumn

from . import __version__
from . import config as config_mod
from . import dictionary as dictionary_mod
from .config import ConfigError, SettingsStore
from .dependencies import check_dependencies, install_with_homebrew, missing_required
from .dictation import NO_AUDIO, build_orchestrator, build_session, client_provider
from .engines import PARAKEET_MODELS, WHISPER_MODELS, EngineRegistry
from .models import Engine, HistoryRecord, NoAudioDetected, Settings, TranscriptionDetails, TranscriptionRequest
from .postprocess import PostProcessor, clean_output_text
from .startup import StartupValidator
from .storage import HistoryStore, StorageError
from .timing import PerformanceLog

app = typer.Typer(add_completion=False, help="Voice dictation from the command line.")
history_app = typer.Typer(help="Browse and manage past transcriptions.")
dictionary_app = typer.Typer(help="Manage personal dictionary corrections.")
models_app = typer.Typer(help="Install and manage local transcription models.")
app.add_typer(history_app, name="history")
app.add_typer(dictionary_app, name="dictionary")
app.add_typer(models_app, name="models")

BACKGROUND_WAIT = 10.0


def _fail(exc: Exception) -> NoReturn:
    typer.secho(str(exc), fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1) from exc


def _load_settings() -> Settings:
    try:
        return config_mod.load_settings()
    except ConfigError as exc:
        _fail(exc)


def _open_history() -> HistoryStore:
    try:
        return HistoryStore()
    except StorageError as exc:
        _fail(exc)


def _find_record(store: HistoryStore, key: str) -> HistoryRecord:
    matches = [record for record in store.list_records() if record.id.startswith(key)]
    if len(matches) != 1:
        problem = "No" if not matches else "More than one"
        typer.secho(f"{problem} history record matches '{key}'.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    return matches[0]


def _short(text: str, width: int = 50) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= width else flat[: width - 1] + "…"


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="Log progress to stderr."),
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    if version:
        typer.echo(f"dictaid v{__version__}")
        raise typer.Exit()

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command()
def dictate(
    fix_text: Optional[bool] = typer.Option(None, "--fix-text/--no-fix-text", help="Fix grammar after transcription."),
    target: Optional[str] = typer.Option(None, "--target", help="Translate the result to this language code."),
    language: Optional[str] = typer.Option(None, "--language", help="Language spoken in the recording."),
    clipboard: bool = typer.Option(False, "--clipboard", help="Only copy the result, do not paste it."),
) -> None:
    """Record until silence, transcribe and insert the text."""

    settings = _load_settings()
    overrides: Dict[str, object] = {}
    if fix_text is not None:
        overrides["fix_text"] = fix_text
    if target:
        overrides["target_language"] = target
    if language:
        overrides["input_language"] = language
    if clipboard:
        overrides["insert_destination"] = "clipboard"
    settings = replace(settings, **overrides)

    session = build_session(settings, history=_open_history())
    typer.secho("Listening… (stops after silence)", fg=typer.colors.BLUE, err=True)
    try:
        outcome = session.run()
    except RuntimeError as exc:
        session.wait_for_background(BACKGROUND_WAIT)
        _fail(exc)
    session.wait_for_background(BACKGROUND_WAIT)

    if outcome.status == NO_AUDIO:
        typer.secho(outcome.text, fg=typer.colors.YELLOW, err=True)
        return
    typer.echo(outcome.text)
    if outcome.result is not None:
        meta = outcome.result.metadata
        typer.secho(
            f"{meta.engine_used.value}/{meta.model_id} via {meta.strategy}: "
            f"{meta.api_call_count} API call(s), {meta.processing_time_ms}ms",
            fg=typer.colors.BLUE,
            err=True,
        )


@app.command()
def prompt(
    clipboard: bool = typer.Option(False, "--clipboard", help="Only copy the result, do not paste it."),
) -> None:
    """Speak an instruction; rewrite the selected text with it, or write new text."""

    settings = _load_settings()
    if clipboard:
        settings = replace(settings, insert_destination="clipboard")

    session = build_session(settings, history=_open_history())
    typer.secho("Listening for an instruction… (stops after silence)", fg=typer.colors.BLUE, err=True)
    try:
        outcome = session.run_prompt()
    except RuntimeError as exc:
        session.wait_for_background(BACKGROUND_WAIT)
        _fail(exc)
    session.wait_for_background(BACKGROUND_WAIT)

    if outcome.status == NO_AUDIO:
        typer.secho(outcome.text, fg=typer.colors.YELLOW, err=True)
        return
    typer.echo(outcome.text)


@app.command()
def transcribe(
    audio: Path = typer.Argument(..., exists=True, readable=True, help="Path to the audio file."),
    fix_text: Optional[bool] = typer.Option(None, "--fix-text/--no-fix-text", help="Fix grammar after transcription."),
    target: Optional[str] = typer.Option(None, "--target", help="Translate the result to this language code."),
    save: bool = typer.Option(True, "--save/--no-save", help="Store the transcript in the history."),
) -> None:
    """Transcribe an existing audio file."""

    settings = _load_settings()
    if fix_text is not None:
        settings.fix_text = fix_text
    if target:
        settings.target_language = target

    registry = EngineRegistry()
    engine = settings.engine_kind
    orchestrator = build_orchestrator(settings, registry, client_provider(settings), performance_log=PerformanceLog())
    try:
        entries = dictionary_mod.load_entries() if settings.use_personal_dictionary else []
        request = TranscriptionRequest(
            audio_path=audio,
            engine=engine,
            model_id=settings.current_model_id(),
            language_hint=settings.input_language,
            dictionary_entries=entries,
            fix_text=settings.fix_text,
            target_language=settings.target_language,
            separate_dictionary_pass=settings.separate_dictionary_pass,
        )
        registry.ensure_ready(engine, request.model_id, request.language)
        outcome = orchestrator.run(request)
    except RuntimeError as exc:
        _fail(exc)

    if isinstance(outcome, NoAudioDetected):
        typer.secho(outcome.reason, fg=typer.colors.YELLOW, err=True)
        return
    text = clean_output_text(outcome.text)
    typer.echo(text)

    if save:
        details = TranscriptionDetails(
            engine=settings.engine,
            model=request.model_id,
            text_correction_enabled=settings.fix_text,
            target_language=settings.target_language,
        )
        language = settings.target_language if request.translates else settings.input_language
        record = _open_history().append(text, language, audio.resolve(), details=details)
        typer.secho(f"\nSaved to history as {record.id[:8]}.", fg=typer.colors.BLUE)


@app.command()
def translate(
    text: str = typer.Argument(..., help="Text to translate."),
    fix_text: Optional[bool] = typer.Option(None, "--fix-text/--no-fix-text", help="Also fix grammar."),
    copy: bool = typer.Option(False, "--copy", help="Copy the translation to the clipboard."),
) -> None:
    """Translate between your primary and secondary languages."""

    settings = _load_settings()
    processor = PostProcessor(client_provider(settings), settings.llm_model)
    try:
        result = processor.translate_between(
            text,
            settings.primary_language,
            settings.secondary_language,
            fix_text=settings.fix_text if fix_text is None else fix_text,
        )
    except RuntimeError as exc:
        _fail(exc)
    typer.echo(result)
    if copy:
        from .delivery import copy_to_pasteboard

        try:
            copy_to_pasteboard(result)
        except RuntimeError as exc:
            _fail(exc)


@app.command()
def doctor(
    install: bool = typer.Option(False, "--install", help="Install missing tools with Homebrew."),
) -> None:
    """Check tools, audio input, model and API readiness."""

    statuses = check_dependencies()
    typer.echo(f"{'Tool':<8}  {'Required':<8}  {'Status':<40}")
    typer.echo("-" * 60)
    for status in statuses:
        state = status.version or ("installed" if status.installed else "missing")
        typer.echo(f"{status.name:<8}  {'yes' if status.required else 'no':<8}  {_short(state, 40):<40}")

    missing = missing_required(statuses)
    if missing and install:
        for status in missing:
            try:
                install_with_homebrew(status.name)
            except RuntimeError as exc:
                _fail(exc)
            typer.secho(f"Installed {status.name}.", fg=typer.colors.BLUE)
        missing = missing_required(check_dependencies())

    settings = _load_settings()
    registry = EngineRegistry()
    validator = StartupValidator(registry, client_provider(settings))
    language = None if settings.input_language == "auto" else settings.input_language
    report = validator.run_probes(settings.engine_kind, settings.current_model_id(), language)
    typer.echo("")
    required = report.required()
    for name, result in report.results.items():
        label = "ok" if result.success else f"FAILED: {result.error}"
        suffix = "" if name in required else " (optional)"
        color = typer.colors.GREEN if result.success else typer.colors.RED
        typer.secho(f"{name:<8}{suffix}  {label}", fg=color)

    if missing or not report.ok:
        raise typer.Exit(code=1)


@app.command()
def stats(
    clear: bool = typer.Option(False, "--clear", help="Delete the performance log."),
) -> None:
    """Show timing statistics for recent operations."""

    log = PerformanceLog()
    if clear:
        log.clear()
        typer.secho("Performance log cleared.", fg=typer.colors.BLUE)
        return

    rows = log.summarize()
    if not rows:
        typer.echo("No performance data recorded yet.")
        return
    header = f"{'Operation':<26}  {'Count':>5}  {'OK %':>5}  {'Avg ms':>8}  {'Min':>6}  {'Max':>6}"
    typer.echo(header)
    typer.echo("-" * len(header))
    for row in rows:
        typer.echo(
            f"{row.name:<26}  {row.count:>5}  {row.success_rate * 100:>5.0f}  "
            f"{row.avg_ms:>8.0f}  {row.min_ms:>6}  {row.max_ms:>6}"
        )


@app.command()
def config(
    engine: Optional[str] = typer.Option(None, help="Transcription engine (cloud, whisper, parakeet)."),
    transcribe_model: Optional[str] = typer.Option(None, help="OpenAI transcription model id."),
    whisper_model: Optional[str] = typer.Option(None, help="Local whisper.cpp model (tiny, base, small, medium)."),
    parakeet_model: Optional[str] = typer.Option(None, help="Local Parakeet model id."),
    llm_model: Optional[str] = typer.Option(None, help="Chat model used for post-processing."),
    input_language: Optional[str] = typer.Option(None, help="Spoken language code, or auto."),
    target_language: Optional[str] = typer.Option(None, help="Translate results to this language code, or auto."),
    primary_language: Optional[str] = typer.Option(None, help="Primary language for `dictaid translate`."),
    secondary_language: Optional[str] = typer.Option(None, help="Secondary language for `dictaid translate`."),
    fix_text: Optional[bool] = typer.Option(None, "--fix-text/--no-fix-text", help="Fix grammar after transcription."),
    use_personal_dictionary: Optional[bool] = typer.Option(
        None,
        "--use-dictionary/--no-use-dictionary",
        help="Apply personal dictionary corrections.",
    ),
    mute_during_dictation: Optional[bool] = typer.Option(
        None,
        "--mute/--no-mute",
        help="Mute system output while recording.",
    ),
    silence_timeout: Optional[float] = typer.Option(None, help="Seconds of silence that end a recording."),
    silence_sensitivity: Optional[int] = typer.Option(None, help="Silence sensitivity from 0 to 10."),
    strategy: Optional[str] = typer.Option(None, help="Post-processing strategy (unified or legacy)."),
    separate_dictionary_pass: Optional[bool] = typer.Option(
        None,
        "--separate-dictionary-pass/--no-separate-dictionary-pass",
        help="Legacy strategy: run dictionary correction as its own call.",
    ),
    openai_api_key: Optional[str] = typer.Option(None, help="API key for OpenAI."),
    insert_destination: Optional[str] = typer.Option(None, help="Where to place recognised text (paste or clipboard)."),
    show: bool = typer.Option(False, "--show", help="Display the active configuration."),
) -> None:
    """Update or inspect configuration settings."""

    updates: Dict[str, object] = {
        key: value
        for key, value in {
            "engine": engine,
            "transcribe_model": transcribe_model,
            "whisper_model": whisper_model,
            "parakeet_model": parakeet_model,
            "llm_model": llm_model,
            "input_language": input_language,
            "target_language": target_language,
            "primary_language": primary_language,
            "secondary_language": secondary_language,
            "fix_text": fix_text,
            "use_personal_dictionary": use_personal_dictionary,
            "mute_during_dictation": mute_during_dictation,
            "silence_timeout": silence_timeout,
            "silence_sensitivity": silence_sensitivity,
            "strategy": strategy,
            "separate_dictionary_pass": separate_dictionary_pass,
            "openai_api_key": openai_api_key,
            "insert_destination": insert_destination,
        }.items()
        if value is not None
    }

    if show or not updates:
        data = asdict(_load_settings())
        if data.get("openai_api_key"):
            data["openai_api_key"] = data["openai_api_key"][:7] + "…"
        typer.echo(json.dumps(data, indent=2, default=str))
        return

    store = SettingsStore(engine_cache=EngineRegistry())
    try:
        store.update(**updates)
    except ConfigError as exc:
        _fail(exc)
    typer.secho("Configuration updated.", fg=typer.colors.BLUE)


@app.command()
def setup() -> None:
    """Run the interactive setup wizard."""

    try:
        from .onboarding import run_onboarding
    except ImportError as exc:
        typer.secho(
            "Missing dependencies for setup. Install with `pip install dictaid`.",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1) from exc

    try:
        run_onboarding()
    except Exception as exc:
        typer.secho(f"Setup failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


@app.command()
def settings() -> None:
    """Open the interactive settings configuration."""

    try:
        from .settings_ui import show_settings_ui
    except ImportError as exc:
        typer.secho(
            "Missing dependencies for settings UI. Install with `pip install dictaid`.",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(code=1) from exc

    try:
        show_settings_ui()
    except Exception as exc:
        typer.secho(f"Settings UI failed: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc


# -- history -----------------------------------------------------------------


@history_app.command("list")
def history_list(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of records to show."),
) -> None:
    """List recent transcriptions."""

    rows: List[HistoryRecord] = list(_open_history().list_records())[:limit]
    if not rows:
        typer.echo("No transcriptions yet. Use `dictaid dictate` to create one.")
        return
    header = f"{'ID':<8}  {'When':<16}  {'Lang':<5}  {'Text':<50}"
    typer.echo(header)
    typer.echo("-" * len(header))
    for record in rows:
        when = record.timestamp.astimezone().strftime("%Y-%m-%d %H:%M")
        text = _short(record.text) if record.transcribed else "(not transcribed)"
        typer.echo(f"{record.id[:8]:<8}  {when:<16}  {record.language:<5}  {text:<50}")


@history_app.command("show")
def history_show(record_id: str = typer.Argument(..., help="Record id or unique prefix.")) -> None:
    """Show one transcription with its details."""

    record = _find_record(_open_history(), record_id)
    typer.secho(f"ID: {record.id}", fg=typer.colors.BLUE)
    typer.echo(f"When: {record.timestamp.astimezone():%Y-%m-%d %H:%M:%S}")
    typer.echo(f"Language: {record.language}")
    if record.details is not None:
        details = record.details
        typer.echo(f"Engine: {details.engine} ({details.model or '-'})")
        typer.echo(f"Text correction: {'on' if details.text_correction_enabled else 'off'}")
        if details.active_app:
            typer.echo(f"Application: {details.active_app}")
    if record.recording_path:
        typer.echo(f"Recording: {record.recording_path}")
    if record.transcribed:
        typer.echo("\n" + record.text)
    else:
        typer.secho("\nNot transcribed yet. Run `dictaid history retry`.", fg=typer.colors.YELLOW)


@history_app.command("delete")
def history_delete(record_id: str = typer.Argument(..., help="Record id or unique prefix.")) -> None:
    """Delete one transcription."""

    store = _open_history()
    record = _find_record(store, record_id)
    try:
        store.delete(record.id)
    except StorageError as exc:
        _fail(exc)
    typer.secho(f"Record {record.id[:8]} deleted.", fg=typer.colors.BLUE)


@history_app.command("clear")
def history_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Delete every transcription."""

    if not yes:
        typer.confirm("Delete the whole history?", abort=True)
    removed = _open_history().clear()
    typer.secho(f"Removed {removed} record(s).", fg=typer.colors.BLUE)


@history_app.command("retry")
def history_retry(
    record_id: Optional[str] = typer.Argument(None, help="Record to retry; defaults to the latest failure."),
) -> None:
    """Transcribe a recording that failed earlier."""

    store = _open_history()
    record = _find_record(store, record_id) if record_id else store.last_untranscribed()
    if record is None or not record.recording_path:
        typer.echo("Nothing to retry.")
        return
    path = Path(record.recording_path)
    if not path.exists():
        typer.secho(f"Recording {path} no longer exists.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    session = build_session(_load_settings(), history=store)
    try:
        session.preflight()
        outcome = session.transcribe(path, record_id=record.id, deliver_result=False)
    except RuntimeError as exc:
        _fail(exc)
    finally:
        session.wait_for_background(BACKGROUND_WAIT)

    if outcome.status == NO_AUDIO:
        typer.secho(outcome.text, fg=typer.colors.YELLOW, err=True)
        return
    typer.echo(outcome.text)


# -- dictionary --------------------------------------------------------------


@dictionary_app.command("list")
def dictionary_list() -> None:
    """List dictionary entries."""

    try:
        entries = dictionary_mod.load_entries()
    except ConfigError as exc:
        _fail(exc)
    if not entries:
        typer.echo("The dictionary is empty. Add entries with `dictaid dictionary add`.")
        return
    for position, entry in enumerate(entries, start=1):
        typer.echo(f"{position:>3}. {entry.original} → {entry.correction}")


@dictionary_app.command("add")
def dictionary_add(
    original: str = typer.Argument(..., help="What the transcription gets wrong."),
    correction: str = typer.Argument(..., help="What it should be."),
) -> None:
    """Add a correction."""

    try:
        entry = dictionary_mod.add_entry(original, correction)
    except ConfigError as exc:
        _fail(exc)
    typer.secho(f'Added "{entry.original}" → "{entry.correction}".', fg=typer.colors.BLUE)


@dictionary_app.command("remove")
def dictionary_remove(position: int = typer.Argument(..., help="Position shown by `dictaid dictionary list`.")) -> None:
    """Remove a correction."""

    try:
        entry = dictionary_mod.remove_entry(position - 1)
    except ConfigError as exc:
        _fail(exc)
    typer.secho(f'Removed "{entry.original}".', fg=typer.colors.BLUE)


# -- models ------------------------------------------------------------------


@models_app.command("list")
def models_list() -> None:
    """List local models and their state."""

    registry = EngineRegistry()
    typer.echo(f"{'Model':<30}  {'Engine':<9}  {'Status':<13}  Description")
    typer.echo("-" * 90)
    for model in registry.list_local_models():
        if not model.is_compatible:
            state = "incompatible"
        elif model.is_installed:
            state = "installed"
        else:
            state = "not installed"
        typer.echo(f"{model.name:<30}  {model.engine.value:<9}  {state:<13}  {model.description}")


@models_app.command("download")
def models_download(model: str = typer.Argument(..., help="Whisper model: tiny, base, small or medium.")) -> None:
    """Download a whisper.cpp model."""

    if model not in WHISPER_MODELS:
        typer.secho(f"Unknown Whisper model '{model}'. Choose one of: {', '.join(WHISPER_MODELS)}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    registry = EngineRegistry()
    with Progress(
        TextColumn(f"ggml-{model}.bin"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
    ) as progress:
        task = progress.add_task("download", total=None)

        def update(done: int, total: Optional[int]) -> None:
            progress.update(task, completed=done, total=total)

        try:
            path = registry.download_whisper_model(model, progress=update)
        except RuntimeError as exc:
            _fail(exc)
    typer.secho(f"Model saved to {path}.", fg=typer.colors.BLUE)


@models_app.command("install")
def models_install(engine: str = typer.Argument(..., help="Engine to install: whisper or parakeet.")) -> None:
    """Install a local transcription engine."""

    if engine not in (Engine.LOCAL_WHISPER.value, Engine.LOCAL_PARAKEET.value):
        typer.secho("Engine must be 'whisper' or 'parakeet'.", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    registry = EngineRegistry()
    try:
        if engine == Engine.LOCAL_WHISPER.value:
            registry.install_whisper(progress=typer.echo)
        else:
            registry.install_parakeet()
    except RuntimeError as exc:
        _fail(exc)
    typer.secho(f"{engine} is installed.", fg=typer.colors.BLUE)


@models_app.command("prepare")
def models_prepare(model: str = typer.Argument(..., help=f"Parakeet model id ({', '.join(PARAKEET_MODELS)}).")) -> None:
    """Fetch Parakeet model weights by running it once."""

    typer.echo(f"Preparing {model}; the first run downloads the weights…")
    try:
        EngineRegistry().prepare_parakeet_model(model)
    except RuntimeError as exc:
        _fail(exc)
    typer.secho(f"{model} is ready.", fg=typer.colors.BLUE)


@models_app.command("cleanup")
def models_cleanup(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
) -> None:
    """Remove every local engine and model."""

    if not yes:
        typer.confirm("Remove all local engines and models?", abort=True)
    freed = EngineRegistry().cleanup_local_models()
    typer.secho(f"Freed {freed / (1024 * 1024):.1f} MB.", fg=typer.colors.BLUE)


if __name__ == "__main__":  # pragma: no cover
    app()
