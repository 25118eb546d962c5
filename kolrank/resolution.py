"""Nomination resolution state machine and bulk auto-match.

Every nomination starts ``UNMATCHED`` and can leave that state exactly once:

    UNMATCHED --match_nomination-------> MATCHED
    UNMATCHED --create_person_and_match-> NEW_HCP
    UNMATCHED --exclude_nomination-----> EXCLUDED

Resolved states are terminal; any further transition raises ConflictError
without touching the record. Single-item operations flush but never commit
(caller must commit), so a failure anywhere in a transition leaves nothing
behind once the caller rolls back.
"""
from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from kolrank import registry
from kolrank.errors import ConflictError, ValidationError
from kolrank.locks import scope_locks
from kolrank.matching import HIGH_CONFIDENCE, Suggestion, nomination_context, rank_candidates, suggest_matches
from kolrank.models import (
    EXCLUDED, MATCH_STATUSES, MATCHED, NEW_HCP, NOMINATION_TYPES, UNMATCHED,
    Campaign, Nomination, SurveyResponse,
)
from kolrank.utils import get_entity

log = logging.getLogger(__name__)

AUTO_MATCH_THRESHOLD = HIGH_CONFIDENCE


def _now() -> datetime:
    return datetime.now(UTC)


def get_nomination(session: Session, nomination_id: int) -> Nomination:
    return get_entity(session, Nomination, nomination_id)


def _require_unmatched(nomination: Nomination) -> None:
    if nomination.match_status != UNMATCHED:
        raise ConflictError(
            f"Nomination {nomination.id} is already {nomination.match_status}",
            field="match_status", entity_id=nomination.id,
        )


def _claim(session: Session, nomination: Nomination, **values: Any) -> None:
    """Write *values* only if the stored row is still UNMATCHED.

    The in-memory state may be stale when another session resolved the
    nomination after it was loaded, so the check runs in the UPDATE itself.
    """
    claimed = session.execute(
        update(Nomination)
        .where(Nomination.id == nomination.id, Nomination.match_status == UNMATCHED)
        .values(**values)
        .execution_options(synchronize_session=False)
    ).rowcount
    if claimed != 1:
        raise ConflictError(
            f"Nomination {nomination.id} was resolved by another request",
            field="match_status", entity_id=nomination.id,
        )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def record_nomination(
    session: Session,
    response_id: int,
    nomination_type: str,
    raw_name: str,
    nominator_person_id: int | None = None,
) -> Nomination:
    """Store a nomination from a submitted survey response (caller must commit)."""
    response = get_entity(session, SurveyResponse, response_id, "Survey response")
    name = (raw_name or "").strip()
    if not name:
        raise ValidationError("Nominated name is required", field="raw_name_entered")
    if nomination_type not in NOMINATION_TYPES:
        raise ValidationError(f"Unknown nomination type {nomination_type!r}", field="nomination_type")
    if nominator_person_id is not None:
        registry.get_person(session, nominator_person_id)
    else:
        nominator_person_id = response.respondent_person_id

    nomination = Nomination(
        response_id=response.id,
        nomination_type=nomination_type,
        raw_name_entered=name,
        nominator_person_id=nominator_person_id,
        match_status=UNMATCHED,
    )
    session.add(nomination)
    session.flush()
    return nomination


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def match_nomination(
    session: Session,
    nomination_id: int,
    person_id: int,
    add_alias: bool = True,
    matched_by: str | None = None,
    match_type: str = "manual",
    confidence: float | None = None,
) -> Nomination:
    """UNMATCHED -> MATCHED against an existing person.

    With *add_alias* the raw entered name becomes an alias of the
    person so future suggestions find it as an exact alias match. When no
    *confidence* is given, the name is scored against the chosen person.
    """
    nomination = get_nomination(session, nomination_id)
    _require_unmatched(nomination)
    person = registry.get_person(session, person_id)
    if not person.is_active:
        raise ConflictError(f"Person {person_id} is inactive", field="person_id", entity_id=person_id)

    if confidence is None:
        ranked = rank_candidates(
            nomination.raw_name_entered, [person], nomination_context(nomination), floor=0.0,
        )
        confidence = ranked[0].score if ranked else 0.0

    if add_alias:
        registry.add_alias(session, person.id, nomination.raw_name_entered, created_by=matched_by)

    _claim(session, nomination, match_status=MATCHED)
    nomination.match_status = MATCHED
    nomination.matched_person = person
    nomination.match_type = match_type
    nomination.match_confidence = confidence
    nomination.matched_by = matched_by
    nomination.matched_at = _now()
    session.flush()
    log.info("Nomination %s matched to person %s (%s, %.1f)", nomination.id, person.id, match_type, confidence)
    return nomination


def create_person_and_match(
    session: Session,
    nomination_id: int,
    attributes: dict[str, Any],
    matched_by: str | None = None,
) -> Nomination:
    """UNMATCHED -> NEW_HCP: register a new person and assign the nomination.

    The raw entered name is always recorded as an alias of the new person.
    Person creation and assignment form one unit of work: if creation fails
    (bad or duplicate NPI) the nomination is left UNMATCHED.
    """
    nomination = get_nomination(session, nomination_id)
    _require_unmatched(nomination)

    person = registry.create_person(session, attributes, created_by=matched_by)
    registry.add_alias(session, person.id, nomination.raw_name_entered, created_by=matched_by)

    _claim(session, nomination, match_status=NEW_HCP)
    nomination.match_status = NEW_HCP
    nomination.matched_person = person
    nomination.match_type = "new"
    nomination.match_confidence = None
    nomination.matched_by = matched_by
    nomination.matched_at = _now()
    session.flush()
    log.info("Nomination %s resolved to new person %s", nomination.id, person.id)
    return nomination


def exclude_nomination(
    session: Session,
    nomination_id: int,
    reason: str | None = None,
    matched_by: str | None = None,
) -> Nomination:
    """UNMATCHED -> EXCLUDED. Terminal: there is no way back to UNMATCHED."""
    nomination = get_nomination(session, nomination_id)
    _require_unmatched(nomination)
    _claim(session, nomination, match_status=EXCLUDED)
    nomination.match_status = EXCLUDED
    nomination.matched_person = None
    nomination.match_confidence = None
    nomination.match_type = None
    nomination.matched_by = matched_by
    nomination.matched_at = _now()
    nomination.exclude_reason = (reason or "").strip() or None
    session.flush()
    log.info("Nomination %s excluded", nomination.id)
    return nomination


def update_raw_name(session: Session, nomination_id: int, raw_name: str) -> Nomination:
    """Correct the entered name of a nomination that is still UNMATCHED."""
    nomination = get_nomination(session, nomination_id)
    _require_unmatched(nomination)
    name = (raw_name or "").strip()
    if not name:
        raise ValidationError("Nominated name is required", field="raw_name_entered")
    _claim(session, nomination, raw_name_entered=name)
    nomination.raw_name_entered = name
    session.flush()
    return nomination


# ---------------------------------------------------------------------------
# Bulk auto-match
# ---------------------------------------------------------------------------


def auto_match_decision(
    suggestions: list[Suggestion], threshold: float = AUTO_MATCH_THRESHOLD,
) -> tuple[Suggestion | None, str | None]:
    """Pick the suggestion to auto-accept, or the reason for skipping."""
    if not suggestions:
        return None, "no_candidates"
    best = suggestions[0]
    if best.score < threshold:
        return None, "below_threshold"
    if len(suggestions) > 1 and suggestions[1].score == best.score and suggestions[1].person.id != best.person.id:
        return None, "ambiguous_top_candidates"
    return best, None


def bulk_auto_match(session: Session, campaign_id: int, matched_by: str = "auto") -> dict[str, Any]:
    """Auto-resolve every UNMATCHED nomination of a campaign that clears the threshold.

    Auto-matches never add aliases. Each accepted match is committed on its
    own; an item that fails is rolled back, recorded and skipped, and the
    run continues. Re-running immediately yields ``matched == 0``.
    """
    with scope_locks.hold(campaign_id, "bulk auto-match"):
        get_entity(session, Campaign, campaign_id)
        # Load ids + names upfront so a rollback doesn't expire ORM objects
        rows = session.execute(
            select(Nomination.id, Nomination.raw_name_entered)
            .join(SurveyResponse, Nomination.response_id == SurveyResponse.id)
            .where(SurveyResponse.campaign_id == campaign_id, Nomination.match_status == UNMATCHED)
            .order_by(Nomination.id)
        ).all()

        matched = 0
        skipped: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        for nomination_id, raw_name in rows:
            try:
                best, reason = auto_match_decision(suggest_matches(session, nomination_id))
                if best is None:
                    skipped.append({"nomination_id": nomination_id, "raw_name": raw_name, "reason": reason})
                    log.debug("Auto-match skipped nomination %s (%s)", nomination_id, reason)
                    continue
                match_nomination(
                    session, nomination_id, best.person.id, add_alias=False,
                    matched_by=matched_by, match_type=best.match_type, confidence=best.score,
                )
                session.commit()
                matched += 1
            except Exception as exc:
                session.rollback()
                log.warning("Auto-match failed for nomination %s (%r): %s", nomination_id, raw_name, exc)
                errors.append({"nomination_id": nomination_id, "raw_name": raw_name, "reason": str(exc)})

        log.info(
            "Bulk auto-match campaign %s: %d/%d matched, %d skipped, %d failed",
            campaign_id, matched, len(rows), len(skipped), len(errors),
        )
        return {"matched": matched, "total": len(rows), "skipped": skipped, "errors": errors}


# ---------------------------------------------------------------------------
# Queries & serialization
# ---------------------------------------------------------------------------


def _campaign_nominations(campaign_id: int):
    return (
        select(Nomination)
        .join(SurveyResponse, Nomination.response_id == SurveyResponse.id)
        .where(SurveyResponse.campaign_id == campaign_id)
    )


def list_nominations(
    session: Session, campaign_id: int, status: str | None = None, page: int = 1, per_page: int = 50,
) -> dict[str, Any]:
    get_entity(session, Campaign, campaign_id)
    if status is not None and status not in MATCH_STATUSES:
        raise ValidationError(f"Unknown match status {status!r}", field="status")
    query = _campaign_nominations(campaign_id)
    if status:
        query = query.where(Nomination.match_status == status)
    total = session.execute(select(func.count()).select_from(query.subquery())).scalar() or 0
    items = session.execute(
        query.order_by(Nomination.match_status, Nomination.raw_name_entered, Nomination.id)
        .offset((page - 1) * per_page)
        .limit(per_page)
    ).scalars().all()
    return {
        "items": [nomination_dict(n) for n in items],
        "pagination": {
            "page": page, "per_page": per_page, "total": total,
            "pages": (total + per_page - 1) // per_page,
        },
    }


def nomination_stats(session: Session, campaign_id: int) -> dict[str, int]:
    get_entity(session, Campaign, campaign_id)
    rows = session.execute(
        select(Nomination.match_status, func.count(Nomination.id))
        .join(SurveyResponse, Nomination.response_id == SurveyResponse.id)
        .where(SurveyResponse.campaign_id == campaign_id)
        .group_by(Nomination.match_status)
    ).all()
    stats = {status: 0 for status in MATCH_STATUSES}
    stats.update({status: count for status, count in rows})
    return stats


def nomination_dict(nomination: Nomination) -> dict[str, Any]:
    person = nomination.matched_person
    return {
        "id": nomination.id,
        "response_id": nomination.response_id,
        "campaign_id": nomination.response.campaign_id if nomination.response else None,
        "nomination_type": nomination.nomination_type,
        "raw_name_entered": nomination.raw_name_entered,
        "nominator_person_id": nomination.nominator_person_id,
        "match_status": nomination.match_status,
        "matched_person": (
            {"id": person.id, "npi": person.npi, "first_name": person.first_name, "last_name": person.last_name}
            if person is not None else None
        ),
        "match_type": nomination.match_type,
        "match_confidence": nomination.match_confidence,
        "matched_by": nomination.matched_by,
        "matched_at": nomination.matched_at.isoformat() if nomination.matched_at else None,
        "exclude_reason": nomination.exclude_reason,
    }
