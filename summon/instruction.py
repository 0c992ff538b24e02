"""
SUMMON Instruction Extractor

Turns the raw body of a comment or issue into a structured Instruction.
Pure functions only: no I/O, no config lookups. A body without the trigger
mention yields None and the caller must stop there.
"""

from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from summon.matchers import Matcher, first_match, whole_word_pattern

Priority = Literal["low", "medium", "high"]

DEFAULT_TRIGGER = "@agent"

DEFAULT_FILE_PATTERNS: list[str] = [
    "**/*.ts", "**/*.js", "**/*.tsx", "**/*.jsx",
    "**/*.py", "**/*.java", "**/*.go", "**/*.rs",
    "**/*.md", "package.json", "requirements.txt",
]


# ---------------------------------------------------------------------------
# Instruction
# ---------------------------------------------------------------------------

class Instruction(BaseModel):
    """One actionable request pulled out of free text."""
    model_config = ConfigDict(frozen=True)

    trigger_tag: str = DEFAULT_TRIGGER
    raw_text: str
    explicit_files: list[str] | None = None
    explicit_model: str | None = None
    priority: Priority = "medium"


class DescriptionContext(BaseModel):
    """Hints mined from an issue or PR description."""
    related_files: list[str] = Field(default_factory=list)
    requirements: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Matcher tables
# ---------------------------------------------------------------------------

def _split_files(match: re.Match[str]) -> list[str] | None:
    files = [f.strip() for f in match.group(1).split(",")]
    files = [f for f in files if f]
    return files or None


FILE_MATCHERS = (
    Matcher(re.compile(r"\b(?:files?|in)\s*:\s*([^\n]+)", re.IGNORECASE), _split_files, "files"),
)

MODEL_MATCHERS = (
    Matcher(
        re.compile(r"\b(?:model|using)\s*:\s*([\w.\-/]+)", re.IGNORECASE),
        lambda m: m.group(1).lower(),
        "model",
    ),
)

HIGH_PRIORITY_WORDS = ("urgent", "critical", "important", "high")
LOW_PRIORITY_WORDS = ("minor", "simple", "low")

# High is listed first so it wins when both sets appear.
PRIORITY_MATCHERS = (
    Matcher(whole_word_pattern(HIGH_PRIORITY_WORDS), lambda m: "high", "high"),
    Matcher(whole_word_pattern(LOW_PRIORITY_WORDS), lambda m: "low", "low"),
)


def trigger_pattern(trigger: str = DEFAULT_TRIGGER) -> re.Pattern[str]:
    """``@agent`` and ``@agents`` followed by whitespace and the rest of the line."""
    return re.compile(rf"{re.escape(trigger)}s?\s+(.+)", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def extract(text: str | None, trigger: str = DEFAULT_TRIGGER) -> Instruction | None:
    """Extract an Instruction from ``text``, or None when the trigger is absent."""
    if not text:
        return None

    match = trigger_pattern(trigger).search(text)
    if not match:
        return None

    body = match.group(1).strip()
    if not body:
        return None

    return Instruction(
        trigger_tag=trigger,
        raw_text=body,
        explicit_files=first_match(FILE_MATCHERS, text),
        explicit_model=first_match(MODEL_MATCHERS, text),
        # Priority looks at the whole text, not just the instruction line.
        priority=first_match(PRIORITY_MATCHERS, text, default="medium"),
    )


def validate_permissions(user: str, allowed_users: list[str] | None) -> bool:
    """An empty allow-list admits everyone."""
    if not allowed_users:
        return True
    return user in allowed_users


_BACKTICK_FILE = re.compile(r"`([^`\s]+\.[A-Za-z]+)`")
_BULLET_LINE = re.compile(r"^\s*[-*]\s*(?:\[[ xX]\]\s*)?(.+)$", re.MULTILINE)
_CONSTRAINT_WORDS = whole_word_pattern(("must", "should", "cannot"))


def extract_context_from_description(description: str | None) -> DescriptionContext:
    """Collect back-ticked file names, bullet requirements and must/should lines."""
    if not description:
        return DescriptionContext()

    related: list[str] = []
    for name in _BACKTICK_FILE.findall(description):
        if name not in related:
            related.append(name)

    requirements = [m.strip() for m in _BULLET_LINE.findall(description) if m.strip()]
    constraints = [
        line.strip() for line in description.splitlines()
        if _CONSTRAINT_WORDS.search(line)
    ]

    return DescriptionContext(
        related_files=related,
        requirements=requirements,
        constraints=constraints,
    )
