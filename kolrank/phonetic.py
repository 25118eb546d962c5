"""American Soundex encoding for person-name tokens.

Used twice: to precompute ``phonetic_key`` columns on persons and aliases
(so the registry can prefilter candidates in SQL) and as the phonetic
component of the similarity stage.

Example:
    >>> soundex("smith"), soundex("smyth"), soundex("smth")
    ('S530', 'S530', 'S530')
"""
from __future__ import annotations

import re

CODE_LENGTH = 4

_CODES = {
    **dict.fromkeys("BFPV", "1"),
    **dict.fromkeys("CGJKQSXZ", "2"),
    **dict.fromkeys("DT", "3"),
    "L": "4",
    **dict.fromkeys("MN", "5"),
    "R": "6",
}
_VOWELS = set("AEIOUY")


def soundex(token: str) -> str:
    """Encode a single name token. Returns ``""`` for tokens without letters."""
    clean = re.sub(r"[^A-Z]", "", (token or "").upper())
    if not clean:
        return ""

    code = [clean[0]]
    prev = _CODES.get(clean[0], "")
    for char in clean[1:]:
        if char in _VOWELS:
            prev = ""
            continue
        # H and W are transparent: they neither emit a code nor reset the run
        if char in "HW":
            continue
        digit = _CODES.get(char, "")
        if digit and digit != prev:
            code.append(digit)
        prev = digit
        if len(code) >= CODE_LENGTH:
            break

    return "".join(code).ljust(CODE_LENGTH, "0")[:CODE_LENGTH]


def phonetic_key(tokens: list[str]) -> str:
    """Space-joined codes for every token with two or more letters."""
    codes = [soundex(t) for t in tokens if len(t) > 1]
    return " ".join(c for c in codes if c)
