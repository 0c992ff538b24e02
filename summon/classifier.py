"""
SUMMON Complexity Classifier

Three-tier, keyword-first heuristic. Keyword signals always beat the
length fallback. No side effects.
"""

from __future__ import annotations

from typing import Literal

from summon.matchers import Matcher, first_match, word_start_pattern

Complexity = Literal["simple", "medium", "complex"]

COMPLEX_SIGNALS = (
    "architecture", "refactor", "redesign", "framework", "database",
    "security", "performance", "algorithm", "complex", "integration",
)

# "update" counts as simple, so "Update the user service" classifies as
# simple rather than medium. See DESIGN.md, classifier precedence.
SIMPLE_SIGNALS = (
    "typo", "format", "lint", "comment", "rename", "simple",
    "update", "change text", "add line", "remove line",
)

LONG_INSTRUCTION_CHARS = 500
SHORT_INSTRUCTION_CHARS = 100

SIGNAL_MATCHERS = (
    Matcher(word_start_pattern(COMPLEX_SIGNALS), lambda m: "complex", "complex"),
    Matcher(word_start_pattern(SIMPLE_SIGNALS), lambda m: "simple", "simple"),
)


def classify(text: str) -> Complexity:
    """Map instruction text to simple, medium or complex."""
    signal = first_match(SIGNAL_MATCHERS, text)
    if signal is not None:
        return signal

    if len(text) > LONG_INSTRUCTION_CHARS:
        return "complex"
    if len(text) < SHORT_INSTRUCTION_CHARS:
        return "simple"
    return "medium"
