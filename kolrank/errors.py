"""Domain errors raised by the registry, resolution and scoring layers."""
from __future__ import annotations

from typing import Any


class KolRankError(Exception):
    """Base error. Carries enough detail to point at the offending input."""
    status_code = 400

    def __init__(self, message: str, *, field: str | None = None, entity_id: Any = None):
        super().__init__(message)
        self.message = message
        self.field = field
        self.entity_id = entity_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "field": self.field,
            "entity_id": self.entity_id,
        }


class ValidationError(KolRankError):
    """Input violates a domain invariant (weights, NPI format, required fields)."""
    status_code = 400


class NotFoundError(KolRankError):
    status_code = 404


class ConflictError(KolRankError):
    """Operation is not allowed in the entity's current state."""
    status_code = 409


class DuplicateIdentifierError(ConflictError):
    """A person with this NPI already exists."""


class ConcurrencyError(KolRankError):
    """Another batch operation holds the same scope."""
    status_code = 409
