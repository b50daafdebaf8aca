"""
Text canonicalization for rule matching.

Strings that differ only by accents, case, punctuation or spacing
normalize to the same key:

    >>> normalize_text("  Pão de Açúcar -- LTDA. ")
    'pao de acucar ltda'
"""

from __future__ import annotations

import re
import unicodedata

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_SPACES = re.compile(r"\s+")


def strip_diacritics(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_text(text: str | None) -> str:
    """Strip diacritics, lowercase, turn non-alphanumerics into single spaces, trim."""
    if not text:
        return ""
    out = strip_diacritics(text).lower()
    out = _NON_ALNUM.sub(" ", out)
    return _SPACES.sub(" ", out).strip()
