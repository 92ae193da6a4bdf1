"""Typo suggestions for commands, subcommands and flags."""

from __future__ import annotations

import difflib
from typing import Iterable

SUGGESTION_CUTOFF = 0.6
MAX_SUGGESTIONS = 3


def suggest(word: str, candidates: Iterable[str], limit: int = MAX_SUGGESTIONS) -> list[str]:
    """Close matches for ``word``, best first. An exact match is not a suggestion."""
    options = sorted({c for c in candidates if c != word})
    return difflib.get_close_matches(word, options, n=limit, cutoff=SUGGESTION_CUTOFF)


def did_you_mean(word: str, candidates: Iterable[str], prefix: str = "") -> str:
    """``Did you mean ...?`` line, or an empty string when nothing is close."""
    matches = [f"'{prefix}{m}'" for m in suggest(word, candidates)]
    if not matches:
        return ""
    if len(matches) == 1:
        return f"Did you mean {matches[0]}?"
    return f"Did you mean one of: {', '.join(matches)}?"
