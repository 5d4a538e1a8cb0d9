"""Text normalisation helpers for submitted responses."""

from __future__ import annotations

import unicodedata
from typing import Optional

LISTEN_TAGS = frozenset({"need", "data", "want", "problem", "risk", "proposal"})

_WHITESPACE = tuple("\u0009\u000a\u000b\u000c\u000d\u0020\u00a0\u1680\u2000\u2001\u2002\u2003\u2004\u2005\u2006\u2007\u2008\u2009\u200a\u202f\u205f\u3000")


def collapse_whitespace(text: str) -> str:
    """Collapse consecutive whitespace characters into single spaces."""

    if not text:
        return ""

    parts: list[str] = []
    current: list[str] = []
    for char in text:
        if char in _WHITESPACE:
            if current:
                parts.append("".join(current))
                current.clear()
        else:
            current.append(char)
    if current:
        parts.append("".join(current))
    return " ".join(parts)


def normalise_for_embedding(text: str) -> str:
    """Return the NFKC-normalised, whitespace-collapsed text sent to the embeddings API."""

    stripped = (text or "").strip()
    if not stripped:
        return ""
    return unicodedata.normalize("NFKC", collapse_whitespace(stripped))


def normalise_tag(tag: Optional[str]) -> Optional[str]:
    """Lower-case and trim a response tag; unknown or blank tags become None."""

    if tag is None:
        return None
    cleaned = tag.strip().lower()
    if cleaned not in LISTEN_TAGS:
        return None
    return cleaned
