"""
Declarative text matchers.

Every piece of free-text parsing in SUMMON (trigger extraction, priority
keywords, complexity signals, backend log markers) is written as an ordered
table of Matcher entries. Tables are evaluated top to bottom and the first
entry that produces a value wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Sequence


@dataclass(frozen=True)
class Matcher:
    """A compiled pattern paired with the function that turns a hit into a value."""
    pattern: re.Pattern[str]
    extract: Callable[[re.Match[str]], Any]
    name: str = ""

    def apply(self, text: str) -> Any | None:
        match = self.pattern.search(text)
        if match is None:
            return None
        return self.extract(match)


def first_match(matchers: Sequence[Matcher], text: str, default: Any = None) -> Any:
    """Return the value of the first matcher that fires, or ``default``."""
    for matcher in matchers:
        value = matcher.apply(text)
        if value is not None:
            return value
    return default


def word_start_pattern(words: Iterable[str], flags: int = re.IGNORECASE) -> re.Pattern[str]:
    """Compile an alternation that only matches at the start of a word.

    ``refactor`` matches "refactoring" but ``format`` does not match
    "information".
    """
    alternation = "|".join(re.escape(w) for w in words)
    return re.compile(rf"\b(?:{alternation})", flags)


def whole_word_pattern(words: Iterable[str], flags: int = re.IGNORECASE) -> re.Pattern[str]:
    alternation = "|".join(re.escape(w) for w in words)
    return re.compile(rf"\b(?:{alternation})\b", flags)
