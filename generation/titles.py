"""Lyrics heuristics and title helpers."""
from __future__ import annotations

import re
from typing import Optional

_SECTION_RE = re.compile(
    r"\[(?:verse|chorus|bridge|intro|outro|hook|pre-chorus|куплет|припев|бридж)[^\]]*\]"
    r"|\b(?:verse|chorus|bridge|куплет|припев)\b",
    re.IGNORECASE,
)
_BRACKETED_RE = re.compile(r"^\s*[\[(].*[\])]\s*$")
_EDGE_PUNCT_RE = re.compile(r"^[\W_]+|[\W_]+$", re.UNICODE)
_MAX_TITLE_LEN = 60


def looks_like_lyrics(text: Optional[str]) -> bool:
    """Guess whether free text is song lyrics rather than a style prompt."""

    if not text:
        return False
    stripped = text.strip()
    if not stripped:
        return False
    if _SECTION_RE.search(stripped):
        return True
    if "\n" in stripped:
        return True
    return len(stripped.split()) > 12


def smart_title(lyrics: Optional[str], fallback: str = "Untitled") -> str:
    """Derive a title from the first meaningful lyric line."""

    for raw_line in (lyrics or "").splitlines():
        line = raw_line.strip()
        if not line or _BRACKETED_RE.match(line):
            continue
        line = _SECTION_RE.sub("", line)
        line = _EDGE_PUNCT_RE.sub("", line).strip()
        if len(line) < 2:
            continue
        if len(line) > _MAX_TITLE_LEN:
            cut = line[:_MAX_TITLE_LEN].rsplit(" ", 1)[0].strip()
            line = cut or line[:_MAX_TITLE_LEN]
        return line
    return fallback


def variant_title(base: Optional[str], number: int) -> str:
    return f"{(base or 'Untitled').strip()} (variant {number})"


def extended_title(base: Optional[str]) -> str:
    return f"{(base or 'Untitled').strip()} (Extended)"


__all__ = ["extended_title", "looks_like_lyrics", "smart_title", "variant_title"]
