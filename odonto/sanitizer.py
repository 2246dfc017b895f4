"""Prompt-injection sanitizer for free text headed into an LLM prompt.

Clinical notes and aesthetic goals are typed by users and interpolated
verbatim into prompts.  Before that happens we strip the shapes that are
known to hijack the model:

* fenced ```system / ```instruction / ```prompt blocks
* role-override line prefixes (``system:``, ``assistant:`` ...)
* English and Portuguese "ignore previous instructions" / "act as" phrasings
* XML-like ``<system>`` / ``<instruction>`` tags

The sanitizer returns new strings.  The persisted user input is never
touched; only the prompt copy is cleaned.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

_REMOVED = "[removed]"

# (pattern, replacement) applied in order
_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"```(?:system|instruction|prompt)[\s\S]*?```", re.IGNORECASE), ""),
    (re.compile(r"(?:^|\n)\s*(?:system|assistant|user|instruction|role)\s*:", re.IGNORECASE), ""),
    # English
    (
        re.compile(
            r"(?:ignore|forget|disregard|override|bypass)\s+(?:all\s+)?"
            r"(?:previous|above|prior|earlier)\s+(?:instructions?|context|prompts?|rules?)",
            re.IGNORECASE,
        ),
        _REMOVED,
    ),
    (
        re.compile(
            r"(?:you\s+are\s+now|act\s+as|pretend\s+(?:to\s+be|you\s+are)|from\s+now\s+on\s+you\s+are)",
            re.IGNORECASE,
        ),
        _REMOVED,
    ),
    # Portuguese
    (
        re.compile(
            r"(?:ignore|ignor[ea]|esqueça|desconsider[ea]|sobrescreva|pule|burle)\s+.*?\s+"
            r"(?:instruções?|contexto|prompts?|regras?|anteriores?|sistema)",
            re.IGNORECASE,
        ),
        _REMOVED,
    ),
    (re.compile(r"(?:aja|atue|comporte-se|finja|simule)\s+como\s+", re.IGNORECASE), _REMOVED + " "),
    (re.compile(r"não\s+sig[au]\s+", re.IGNORECASE), _REMOVED + " "),
    (re.compile(r"novo\s+(?:papel|role)\s*", re.IGNORECASE), _REMOVED + " "),
    (re.compile(r"a\s+partir\s+de\s+agora\s+", re.IGNORECASE), _REMOVED + " "),
    (re.compile(r"</?(?:system|instruction|prompt|context|role)[^>]*>", re.IGNORECASE), ""),
]

_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")


def sanitize_for_prompt(text: str | None) -> str | None:
    """Return ``text`` with injection patterns removed.

    Empty and ``None`` inputs are returned unchanged.
    """
    if not text:
        return text

    sanitized = text
    for pattern, replacement in _RULES:
        sanitized = pattern.sub(replacement, sanitized)

    return _EXCESS_BLANK_LINES.sub("\n\n", sanitized).strip()


def sanitize_fields_for_prompt(data: Mapping[str, Any], fields: Iterable[str]) -> dict[str, Any]:
    """Copy ``data`` and sanitize the named string fields of the copy."""
    copy = dict(data)
    for key in fields:
        value = copy.get(key)
        if isinstance(value, str):
            copy[key] = sanitize_for_prompt(value)
    return copy
