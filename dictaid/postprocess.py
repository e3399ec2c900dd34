"""LLM post-processing: dictionary correction, text improvement and translation."""

from __future__ import annotations

import logging
import re
import threading
from collections import OrderedDict
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .dictionary import build_dictionary_prompt
from .models import AUTO, DictionaryEntry
from .transcriber import ClientProvider

CHAT_TEMPERATURE = 0.3
INSTRUCTION_TEMPERATURE = 0.7
MEMO_SIZE = 50

LANGUAGE_NAMES = {
    "en": "English",
    "fr": "French",
    "es": "Spanish",
    "de": "German",
    "it": "Italian",
    "pt": "Portuguese",
    "zh": "Chinese",
    "ja": "Japanese",
    "ko": "Korean",
    "ru": "Russian",
    "ar": "Arabic",
}

_TRANSLATION_SUFFIX_RE = re.compile(r"(?<=\S)\s*Translation:.*\Z", re.DOTALL)
_QUOTE_PAIRS = (('"', '"'), ("“", "”"), ("‘", "’"), ("«", "»"))

logger = logging.getLogger(__name__)


class PostProcessingFailed(RuntimeError):
    """Raised when a chat completion call fails or returns nothing."""


def language_name(code: str) -> str:
    return LANGUAGE_NAMES.get(code, code)


def clean_output_text(text: str) -> str:
    """Drop an echoed ``Translation:`` suffix and one pair of wrapping quotes."""

    cleaned = _TRANSLATION_SUFFIX_RE.sub("", text).strip()
    for opening, closing in _QUOTE_PAIRS:
        if len(cleaned) >= 2 and cleaned.startswith(opening) and cleaned.endswith(closing):
            cleaned = cleaned[1:-1].strip()
            break
    return cleaned


@dataclass(slots=True)
class ProcessingPrompt:
    system: str
    user: str
    tasks: List[str]


def build_processing_prompt(
    text: str,
    dictionary_prompt: str = "",
    fix_text: bool = False,
    target_language: Optional[str] = None,
) -> Optional[ProcessingPrompt]:
    """Compose the single-call prompt, or return None when there is nothing to do.

    Tasks always appear in the order dictionary, improve, translate.
    """

    translate = bool(target_language) and target_language != AUTO
    if not dictionary_prompt and not fix_text and not translate:
        return None

    system = "You are an expert text processing assistant."
    tasks: List[str] = []
    if dictionary_prompt:
        system += " Apply personal dictionary corrections while preserving original meaning."
        tasks.append("Apply personal dictionary corrections")
    if fix_text:
        system += " Improve grammar, punctuation, capitalization, and overall text quality while preserving meaning and tone."
        tasks.append("Improve grammar and clarity")
    if translate:
        name = language_name(target_language or "")
        system += f" Translate the text to {name}, maintaining tone, style, and meaning."
        tasks.append(f"Translate to {name}")
    system += " Respond ONLY with the processed text, no explanations."

    user = ""
    if dictionary_prompt:
        user += f"{dictionary_prompt}\n\n"
    user += f"Tasks to perform in order: {', '.join(tasks)}\n\n"
    user += f'Original text: "{text}"\n\n'
    user += "Processed text:"
    return ProcessingPrompt(system=system, user=user, tasks=tasks)


class TranslationMemo:
    """Small LRU of translations keyed by (text, source, target)."""

    def __init__(self, max_size: int = MEMO_SIZE) -> None:
        self.max_size = max_size
        self._items: "OrderedDict[Tuple[str, str, str], str]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, text: str, source: str, target: str) -> Optional[str]:
        key = (text, source, target)
        with self._lock:
            value = self._items.get(key)
            if value is not None:
                self._items.move_to_end(key)
            return value

    def put(self, text: str, source: str, target: str, translation: str) -> None:
        with self._lock:
            self._items[(text, source, target)] = translation
            self._items.move_to_end((text, source, target))
            while len(self._items) > self.max_size:
                self._items.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class PostProcessor:
    """Runs chat-completion passes over a transcript."""

    def __init__(self, clients: ClientProvider, model: str, memo: Optional[TranslationMemo] = None) -> None:
        self._clients = clients
        self.model = model
        self.memo = memo if memo is not None else TranslationMemo()
        # Chat round trips issued so far, memo hits excluded.
        self.call_count = 0

    def chat(self, system: str, user: str, temperature: float = CHAT_TEMPERATURE) -> str:
        from openai import OpenAIError

        client = self._clients.get()
        self.call_count += 1
        try:
            completion = client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
                temperature=temperature,
            )
        except OpenAIError as exc:
            raise PostProcessingFailed(f"Post-processing request failed: {exc}") from exc
        content = (completion.choices[0].message.content or "").strip() if completion.choices else ""
        if not content:
            raise PostProcessingFailed("Post-processing returned an empty response")
        return content

    def process(
        self,
        text: str,
        dictionary_entries: Sequence[DictionaryEntry] = (),
        fix_text: bool = False,
        target_language: Optional[str] = None,
        source_language: Optional[str] = None,
    ) -> str:
        prompt = build_processing_prompt(
            text,
            dictionary_prompt=build_dictionary_prompt(dictionary_entries),
            fix_text=fix_text,
            target_language=target_language,
        )
        if prompt is None:
            return text

        translate_only = prompt.tasks == [f"Translate to {language_name(target_language or '')}"]
        source = source_language or AUTO
        if translate_only:
            cached = self.memo.get(text, source, target_language or "")
            if cached is not None:
                logger.info("Using cached translation")
                return cached

        logger.debug("Post-processing tasks: %s", ", ".join(prompt.tasks))
        result = clean_output_text(self.chat(prompt.system, prompt.user))
        if translate_only:
            self.memo.put(text, source, target_language or "", result)
        return result

    def apply_dictionary(self, text: str, dictionary_entries: Sequence[DictionaryEntry]) -> str:
        """Dictionary correction as a call of its own."""

        dictionary_prompt = build_dictionary_prompt(dictionary_entries)
        if not dictionary_prompt:
            return text
        return clean_output_text(
            self.chat(
                "You are a transcription correction assistant. Respond ONLY with the corrected text.",
                "Please correct this transcribed text according to the personal dictionary:\n\n"
                f'{dictionary_prompt}\n\nText to correct:\n"{text}"\n\nRespond ONLY with the corrected text.',
            )
        )

    def translate_between(self, text: str, primary: str, secondary: str, fix_text: bool = False) -> str:
        """Translate ``text`` to whichever of the two languages it is not written in."""

        cached = self.memo.get(text, primary, secondary)
        if cached is not None:
            logger.info("Using cached translation")
            return cached

        first, second = language_name(primary), language_name(secondary)
        rules = [
            f"- First detect the source language between {first}, {second}",
            "- Translate to the other language",
            f"- If the source language is not {first} or {second}, translate to {first}",
            "- Keep formatting and punctuation",
            "- Preserve special characters and technical terms",
            "- Match the original tone",
        ]
        if fix_text:
            rules.append("- Fix any grammar, punctuation and spelling issues")
        user = (
            f'Translate this text between {first} and {second}:\n"{text}"\n\nRules:\n'
            + "\n".join(rules)
            + "\n\nRespond ONLY with the translation, no explanations or language detection info."
        )
        result = clean_output_text(
            self.chat(
                "You are a translation assistant. Respond ONLY with the translated text, "
                "without any additional text, quotes, or explanations.",
                user,
            )
        )
        self.memo.put(text, primary, secondary, result)
        return result

    def apply_instruction(
        self,
        instruction: str,
        selected_text: Optional[str] = None,
        dictionary_entries: Sequence[DictionaryEntry] = (),
    ) -> str:
        """Carry out a spoken instruction on ``selected_text``, or write new text when there is none."""

        system, user = build_instruction_prompt(instruction, selected_text, build_dictionary_prompt(dictionary_entries))
        return clean_output_text(self.chat(system, user, temperature=INSTRUCTION_TEMPERATURE))


def build_instruction_prompt(instruction: str, selected_text: Optional[str] = None, dictionary_prompt: str = "") -> Tuple[str, str]:
    if selected_text:
        system = (
            "You are an AI assistant that helps users modify text based on voice commands. "
            "Apply the user's prompt to modify the text. "
            "Respond ONLY with the modified text, without any explanations or context."
        )
        user = f'Please modify the following text according to this instruction: "{instruction}"'
        if dictionary_prompt:
            user += f"\n\nPlease also apply these dictionary rules:\n{dictionary_prompt}"
        user += f'\n\nText to modify: "{selected_text}"'
        return system, user

    system = (
        "You are an AI assistant that helps users generate text based on voice commands. "
        "Respond ONLY with the generated text, without any explanations or context."
    )
    user = instruction
    if dictionary_prompt:
        user += f"\n\nPlease apply these dictionary rules:\n{dictionary_prompt}"
    return system, user
