from __future__ import annotations

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, VerticalScroll
from textual.widgets import Button, Footer, Header, Input, Label, Select, Static, Switch

from .config import CONFIG_PATH, SettingsStore
from .engines import PARAKEET_MODELS, WHISPER_MODELS, EngineRegistry
from .postprocess import LANGUAGE_NAMES

LANGUAGE_OPTIONS = [("Auto-detect", "auto")] + [(name, code) for code, name in LANGUAGE_NAMES.items()]


class SettingsApp(App):
    CSS = """
    Screen {
        align: center middle;
    }

    #settings-container {
        width: 76;
        height: 90%;
        border: solid $primary;
        background: $surface;
        padding: 1 2;
    }

    .section-title {
        text-style: bold;
        color: $accent;
        margin: 1 0;
    }

    .field-row {
        height: 3;
        margin: 0 0 0 2;
    }

    .field-label {
        width: 24;
        content-align: left middle;
    }

    .field-input {
        width: 36;
    }

    #button-container {
        height: 3;
        margin: 1 0 0 0;
        align: center middle;
    }

    Button {
        margin: 0 1;
    }
    """

    BINDINGS = [
        Binding("ctrl+s", "save", "Save"),
        Binding("escape", "cancel", "Cancel"),
        Binding("ctrl+c", "quit", "Quit"),
    ]

    def __init__(self, store: SettingsStore | None = None):
        super().__init__()
        self.store = store or SettingsStore(engine_cache=EngineRegistry())
        self.settings = self.store.load()

    def _select(self, label: str, field: str, options: list) -> ComposeResult:
        current = getattr(self.settings, field)
        if current not in [value for _, value in options]:
            options = [*options, (str(current), current)]
        with Horizontal(classes="field-row"):
            yield Label(label, classes="field-label")
            yield Select(options=options, value=getattr(self.settings, field), id=field, allow_blank=False)

    def _switch(self, label: str, field: str) -> ComposeResult:
        with Horizontal(classes="field-row"):
            yield Label(label, classes="field-label")
            yield Switch(value=bool(getattr(self.settings, field)), id=field)

    def _input(self, label: str, field: str, placeholder: str = "", password: bool = False) -> ComposeResult:
        value = getattr(self.settings, field)
        with Horizontal(classes="field-row"):
            yield Label(label, classes="field-label")
            yield Input(
                value="" if value is None else str(value),
                placeholder=placeholder,
                password=password,
                id=field,
                classes="field-input",
            )

    def compose(self) -> ComposeResult:
        yield Header()

        with VerticalScroll(id="settings-container"):
            yield Static("⚙️  dictaid Settings", classes="section-title")

            yield Static("Transcription", classes="section-title")
            yield from self._select(
                "Engine:",
                "engine",
                [("OpenAI API", "cloud"), ("Local Whisper", "whisper"), ("Local Parakeet", "parakeet")],
            )
            yield from self._select(
                "Cloud Model:",
                "transcribe_model",
                [("GPT-4o mini (fast)", "gpt-4o-mini-transcribe"), ("GPT-4o (accurate)", "gpt-4o-transcribe"), ("Whisper-1", "whisper-1")],
            )
            yield from self._select("Whisper Model:", "whisper_model", [(m.capitalize(), m) for m in WHISPER_MODELS])
            yield from self._select(
                "Parakeet Model:",
                "parakeet_model",
                [(str(info["name"]), model_id) for model_id, info in PARAKEET_MODELS.items()],
            )
            yield from self._input("OpenAI API Key:", "openai_api_key", placeholder="sk-...", password=True)

            yield Static("Processing", classes="section-title")
            yield from self._select("Spoken Language:", "input_language", LANGUAGE_OPTIONS)
            yield from self._select("Translate To:", "target_language", LANGUAGE_OPTIONS)
            yield from self._switch("Fix Text:", "fix_text")
            yield from self._switch("Personal Dictionary:", "use_personal_dictionary")
            yield from self._select("Strategy:", "strategy", [("Unified (fewer calls)", "unified"), ("Legacy", "legacy")])
            yield from self._input("Chat Model:", "llm_model", placeholder="gpt-4o-mini")

            yield Static("Recording", classes="section-title")
            yield from self._input("Silence Timeout (s):", "silence_timeout", placeholder="2.0")
            yield from self._select("Sensitivity:", "silence_sensitivity", [(str(n), n) for n in range(11)])
            yield from self._switch("Mute While Recording:", "mute_during_dictation")

            yield Static("Insertion", classes="section-title")
            yield from self._select(
                "Destination:",
                "insert_destination",
                [("Paste immediately", "paste"), ("Clipboard only", "clipboard")],
            )

            with Horizontal(id="button-container"):
                yield Button("Save", variant="primary", id="save-button")
                yield Button("Cancel", variant="default", id="cancel-button")

        yield Footer()

    def action_save(self) -> None:
        self.save_settings()

    def action_cancel(self) -> None:
        self.exit()

    def on_button_pressed(self, event: Button.Pressed) -> None:
        if event.button.id == "save-button":
            self.save_settings()
        elif event.button.id == "cancel-button":
            self.exit()

    def save_settings(self) -> None:
        settings = self.settings
        try:
            for field in (
                "engine", "transcribe_model", "whisper_model", "parakeet_model",
                "input_language", "target_language", "strategy", "insert_destination",
            ):
                setattr(settings, field, str(self.query_one(f"#{field}", Select).value))
            settings.silence_sensitivity = int(self.query_one("#silence_sensitivity", Select).value)
            for field in ("fix_text", "use_personal_dictionary", "mute_during_dictation"):
                setattr(settings, field, self.query_one(f"#{field}", Switch).value)

            api_key = self.query_one("#openai_api_key", Input).value.strip()
            settings.openai_api_key = api_key or None
            settings.llm_model = self.query_one("#llm_model", Input).value.strip() or "gpt-4o-mini"
            settings.silence_timeout = float(self.query_one("#silence_timeout", Input).value or 2.0)

            self.store.save(settings)
            self.notify(f"Settings saved to {CONFIG_PATH}", severity="information")
            self.exit()
        except (RuntimeError, ValueError) as exc:
            self.notify(f"Failed to save settings: {exc}", severity="error")


def show_settings_ui() -> None:
    app = SettingsApp()
    app.run()
