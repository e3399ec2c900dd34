from __future__ import annotations

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, FloatPrompt, IntPrompt, Prompt
from rich.table import Table
from rich.text import Text

from .config import CONFIG_PATH, SettingsStore
from .dependencies import check_dependencies, missing_required
from .engines import PARAKEET_MODELS, WHISPER_MODELS, EngineRegistry, is_apple_silicon
from .models import Settings
from .postprocess import LANGUAGE_NAMES


def _language_choices() -> list:
    return ["auto", *LANGUAGE_NAMES]


def run_onboarding() -> Settings:
    console = Console()

    console.clear()

    welcome_text = Text()
    welcome_text.append("🎤 Welcome to dictaid!\n\n", style="bold cyan")
    welcome_text.append("Voice dictation for macOS\n", style="dim")

    console.print(Panel(welcome_text, border_style="cyan", expand=False))
    console.print()

    missing = missing_required(check_dependencies())
    if missing:
        names = ", ".join(status.name for status in missing)
        console.print(f"[yellow]Missing tools: {names}. Run `dictaid doctor --install` afterwards.[/yellow]")
        console.print()

    settings = Settings()

    console.print("[bold]Transcription Engine[/bold]")
    console.print()

    console.print("Choose your transcription engine:")
    console.print("  1. OpenAI API (best quality, requires internet)")
    console.print("  2. Local Whisper (private, offline)")
    if is_apple_silicon():
        console.print("  3. Local Parakeet (fastest on Apple Silicon, English only)")
        choices = ["1", "2", "3"]
    else:
        choices = ["1", "2"]
    console.print()

    engine_choice = Prompt.ask("Select option", choices=choices, default="1")

    if engine_choice == "2":
        settings.engine = "whisper"
        console.print()
        console.print("Whisper model (base is recommended for speed):")
        console.print("  " + ", ".join(WHISPER_MODELS))
        settings.whisper_model = Prompt.ask("Model", choices=list(WHISPER_MODELS), default="base")
    elif engine_choice == "3":
        settings.engine = "parakeet"
        settings.parakeet_model = Prompt.ask("Model", choices=list(PARAKEET_MODELS), default=settings.parakeet_model)
    else:
        settings.engine = "cloud"

    console.print()
    console.print("Enter your OpenAI API key (used for cloud transcription and text fixing):")
    console.print("(Get one at https://platform.openai.com/api-keys, leave empty to use OPENAI_API_KEY)")
    api_key = Prompt.ask("API Key", password=True, default="", show_default=False)
    if api_key:
        settings.openai_api_key = api_key

    console.print()
    console.print("[bold]Processing[/bold]")
    console.print()
    settings.input_language = Prompt.ask("Spoken language", choices=_language_choices(), default="auto")
    settings.target_language = Prompt.ask("Translate to", choices=_language_choices(), default="auto")
    settings.fix_text = Confirm.ask("Fix grammar and punctuation?", default=False)
    settings.use_personal_dictionary = Confirm.ask("Apply your personal dictionary?", default=False)

    console.print()
    console.print("[bold]Recording[/bold]")
    console.print()
    settings.silence_timeout = FloatPrompt.ask("Seconds of silence before stopping", default=2.0)
    settings.silence_sensitivity = IntPrompt.ask(
        "Silence sensitivity (0-10)",
        choices=[str(n) for n in range(11)],
        default=2,
        show_choices=False,
    )
    settings.mute_during_dictation = Confirm.ask("Mute system audio while recording?", default=True)

    console.print()
    console.print("[bold]Text Insertion[/bold]")
    console.print()

    console.print("Where should transcribed text go?")
    console.print("  1. Paste immediately (recommended)")
    console.print("  2. Copy to clipboard only")
    console.print()

    insert_choice = Prompt.ask("Select option", choices=["1", "2"], default="1")
    settings.insert_destination = "clipboard" if insert_choice == "2" else "paste"

    console.print()
    console.print("[bold green]✓ Setup Complete![/bold green]")
    console.print()

    summary = Table(show_header=False, box=None, padding=(0, 2))
    summary.add_column(style="cyan")
    summary.add_column()

    summary.add_row("Engine:", f"{settings.engine} ({settings.current_model_id()})")
    summary.add_row("Languages:", f"{settings.input_language} → {settings.target_language}")
    summary.add_row("Fix text:", "yes" if settings.fix_text else "no")
    summary.add_row("Insert mode:", settings.insert_destination)

    console.print(Panel(summary, title="Your Configuration", border_style="green"))
    console.print()

    if not Confirm.ask("Save this configuration?", default=True):
        console.print("[yellow]Configuration not saved. Run 'dictaid setup' to try again.[/yellow]")
        return settings

    registry = EngineRegistry()
    SettingsStore(engine_cache=registry).save(settings)
    console.print("[green]Configuration saved to[/green]", CONFIG_PATH)
    console.print()
    if settings.engine_kind.is_local and not registry.is_available(settings.engine_kind, settings.current_model_id()):
        console.print("[bold]Install the local engine first:[/bold]")
        console.print(f"  [cyan]dictaid models install {settings.engine}[/cyan]")
        if settings.engine == "whisper":
            console.print(f"  [cyan]dictaid models download {settings.whisper_model}[/cyan]")
        else:
            console.print(f"  [cyan]dictaid models prepare {settings.parakeet_model}[/cyan]")
        console.print()
    console.print("[bold]To dictate, run:[/bold]")
    console.print("  [cyan]dictaid dictate[/cyan]")
    console.print()
    return settings
