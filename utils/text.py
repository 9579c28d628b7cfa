"""
Text Utilities — Shared Message Processing Helpers

THIS MODULE DEFINES NO COMMANDS.

Provides reusable helpers for:
- Tokenization
- Whitespace normalization
- Safe truncation
- Question extraction

Used by the detector, jury commentary and case notifications.
"""

from __future__ import annotations

import re
from typing import List

__all__ = [
    "tokenize",
    "normalize_whitespace",
    "safe_truncate",
    "is_question",
    "question_key",
]

# Splits into "word" tokens and single punctuation tokens, ignoring whitespace.
_TOKEN_RE = re.compile(r"[A-Za-z0-9']+|[^\w\s]")
_WHITESPACE_RE = re.compile(r"\s+")


def tokenize(text: str) -> List[str]:
    """
    Tokenize text into words and punctuation. Whitespace is not returned.
    """
    return _TOKEN_RE.findall(text)


def normalize_whitespace(text: str) -> str:
    """Collapse runs of whitespace into single spaces and strip ends."""
    return _WHITESPACE_RE.sub(" ", text).strip()


def safe_truncate(text: str, limit: int, *, suffix: str = "…") -> str:
    """Truncate text to at most `limit` characters, suffix included."""
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    if len(suffix) >= limit:
        return text[:limit]
    return text[: limit - len(suffix)].rstrip() + suffix


def is_question(text: str) -> bool:
    return normalize_whitespace(text).endswith("?")


def question_key(text: str) -> str:
    """
    Reduce a question to a comparison key: lowercase words only.
    "Is this OK??" and "is this ok?" share a key.
    """
    return " ".join(token.lower() for token in tokenize(text) if token[0].isalnum())
