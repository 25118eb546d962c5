"""Shared utility functions used across KOL Rank modules."""
from __future__ import annotations

import json
import re
import unicodedata
from typing import Any

from kolrank.errors import NotFoundError

_MISSING = object()

# Titles, credentials and generational suffixes dropped before matching
HONORIFICS = frozenset({
    "dr", "doctor", "prof", "professor", "mr", "mrs", "ms", "miss", "mx", "sir",
    "md", "do", "phd", "mbbs", "dds", "pharmd", "rn", "np", "pa", "facp", "facc",
    "jr", "sr", "ii", "iii", "iv",
})


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def get_entity(session, model, entity_id: Any, label: str | None = None):
    """Fetch a row by primary key or raise NotFoundError."""
    obj = session.get(model, entity_id)
    if obj is None:
        raise NotFoundError(f"{label or model.__name__} {entity_id} not found", entity_id=entity_id)
    return obj


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def normalize_name(value: str | None) -> str:
    """Fold accents and case, drop apostrophes, turn other punctuation into spaces."""
    normalized = unicodedata.normalize("NFKD", value or "")
    normalized = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    normalized = normalized.casefold()
    normalized = re.sub(r"['’`]", "", normalized)
    normalized = re.sub(r"[^a-z0-9]+", " ", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def name_tokens(value: str | None) -> list[str]:
    """Normalized name parts with honorifics removed.

    A name made only of honorifics (``"Dr. Do"``) keeps its tokens rather
    than collapsing to nothing.
    """
    tokens = [t for t in normalize_name(value).split() if not t.isdigit()]
    kept = [t for t in tokens if t not in HONORIFICS]
    return kept or tokens


def name_key(value: str | None) -> str:
    """Order-insensitive comparison key: sorted tokens joined by spaces."""
    return " ".join(sorted(name_tokens(value)))
