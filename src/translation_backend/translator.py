"""
Translation capability used by the worker.

The worker only depends on ``Translator.translate``; backends are chosen by
name from configuration. The bundled backend is a deterministic placeholder.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Dict


class Translator(ABC):
    """A function from (text, target_language) to translated text that may raise."""

    name = "base"

    @abstractmethod
    def translate(self, text: str, target_language: str) -> str: ...


class ReverseTranslator(Translator):
    """Placeholder backend: reverses the text and appends the language code."""

    name = "reverse"

    def translate(self, text: str, target_language: str) -> str:
        return f"{text[::-1]} ({target_language})"


TRANSLATORS: Dict[str, Callable[[], Translator]] = {
    ReverseTranslator.name: ReverseTranslator,
}


def build_translator(name: str) -> Translator:
    try:
        factory = TRANSLATORS[name]
    except KeyError:
        raise ValueError(f"Unknown translator backend '{name}'; available: {', '.join(sorted(TRANSLATORS))}") from None
    return factory()
