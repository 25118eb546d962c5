"""Identity registry: canonical person records and their alias sets."""
from __future__ import annotations

import logging
import re
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from kolrank.errors import DuplicateIdentifierError, ValidationError
from kolrank.models import Person, PersonAlias
from kolrank.phonetic import phonetic_key, soundex
from kolrank.utils import get_entity, name_key, name_tokens

log = logging.getLogger(__name__)

NPI_RE = re.compile(r"^\d{10}$")

PERSON_FIELDS = ("npi", "first_name", "last_name", "email", "specialty", "city", "state")

FINGERPRINT_LIMIT = 200


def validate_npi(npi: Any) -> str:
    value = str(npi or "").strip()
    if not NPI_RE.match(value):
        raise ValidationError("NPI must be exactly 10 digits", field="npi")
    return value


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def get_person(session: Session, person_id: int) -> Person:
    return get_entity(session, Person, person_id)


def create_person(session: Session, attributes: dict[str, Any], created_by: str | None = None) -> Person:
    """Validate and insert a new person (caller must commit).

    Raises ValidationError for a malformed NPI or missing name parts and
    DuplicateIdentifierError when the NPI is already registered.
    """
    npi = validate_npi(attributes.get("npi"))
    first_name = _clean(attributes.get("first_name"))
    last_name = _clean(attributes.get("last_name"))
    if not first_name:
        raise ValidationError("First name is required", field="first_name")
    if not last_name:
        raise ValidationError("Last name is required", field="last_name")
    state = _clean(attributes.get("state"))
    if state is not None:
        state = state.upper()
        if len(state) != 2:
            raise ValidationError("State must be a two-letter code", field="state")

    existing = session.execute(select(Person.id).where(Person.npi == npi)).scalar()
    if existing is not None:
        raise DuplicateIdentifierError(
            f"A person with NPI {npi} already exists", field="npi", entity_id=existing,
        )

    person = Person(
        npi=npi,
        first_name=first_name,
        last_name=last_name,
        email=_clean(attributes.get("email")),
        specialty=_clean(attributes.get("specialty")),
        city=_clean(attributes.get("city")),
        state=state,
        phonetic_key=phonetic_key(name_tokens(f"{first_name} {last_name}")),
        name_key=name_key(f"{first_name} {last_name}"),
        created_by=created_by,
    )
    session.add(person)
    try:
        session.flush()
    except IntegrityError as exc:
        # Lost a race with a concurrent insert of the same NPI
        raise DuplicateIdentifierError(
            f"A person with NPI {npi} already exists", field="npi",
        ) from exc
    log.info("Created person %s (NPI %s)", person.id, npi)
    return person


def add_alias(
    session: Session, person_id: int, text: str, created_by: str | None = None,
) -> tuple[PersonAlias, bool]:
    """Attach *text* as an alias of the person unless it is already known.

    Comparison is case-insensitive and per person only. Returns the alias
    and whether it was newly created (caller must commit).
    """
    person = get_person(session, person_id)
    alias_name = (text or "").strip()
    if not alias_name:
        raise ValidationError("Alias text must not be blank", field="alias_name")

    folded = alias_name.casefold()
    for alias in person.aliases:
        if alias.alias_name.casefold() == folded:
            return alias, False

    alias = PersonAlias(
        alias_name=alias_name,
        phonetic_key=phonetic_key(name_tokens(alias_name)),
        name_key=name_key(alias_name),
        created_by=created_by,
    )
    person.aliases.append(alias)
    session.flush()
    log.debug("Added alias %r to person %s", alias_name, person.id)
    return alias, True


def find_by_fingerprint(session: Session, text: str, limit: int = FINGERPRINT_LIMIT) -> list[Person]:
    """Prefilter active persons that could plausibly be *text*.

    Persons whose canonical name or an alias has the same name key as
    *text* are always returned, ahead of and outside the *limit*. The rest
    qualify when any name token appears inside their first name, last name
    or an alias, or when any token's phonetic code appears in their (or an
    alias's) phonetic key; that pool is ordered by NPI so truncation is
    deterministic.
    """
    key = name_key(text)
    if not key:
        return []
    exact = list(session.execute(
        select(Person)
        .where(
            Person.is_active.is_(True),
            or_(Person.name_key == key, Person.aliases.any(PersonAlias.name_key == key)),
        )
        .options(selectinload(Person.aliases))
        .order_by(Person.npi)
    ).scalars().all())

    tokens = [t for t in name_tokens(text) if len(t) > 1]
    if not tokens:
        return exact

    conditions = []
    for token in tokens:
        pattern = f"%{token}%"
        conditions.append(Person.first_name.ilike(pattern))
        conditions.append(Person.last_name.ilike(pattern))
        conditions.append(Person.aliases.any(PersonAlias.alias_name.ilike(pattern)))
    for code in {soundex(t) for t in tokens}:
        conditions.append(Person.phonetic_key.contains(code))
        conditions.append(Person.aliases.any(PersonAlias.phonetic_key.contains(code)))

    filters = [Person.is_active.is_(True), or_(*conditions)]
    if exact:
        filters.append(Person.id.not_in([p.id for p in exact]))
    query = (
        select(Person)
        .where(*filters)
        .options(selectinload(Person.aliases))
        .order_by(Person.npi)
        .limit(limit)
    )
    return exact + list(session.execute(query).scalars().all())


def person_summary(person: Person) -> dict[str, Any]:
    return {
        "id": person.id,
        "npi": person.npi,
        "first_name": person.first_name,
        "last_name": person.last_name,
        "email": person.email,
        "specialty": person.specialty,
        "city": person.city,
        "state": person.state,
        "is_active": person.is_active,
        "aliases": [{"id": a.id, "alias_name": a.alias_name} for a in person.aliases],
    }
