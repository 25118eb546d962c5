"""Shared business logic for the KOL Rank API and MCP server: scope-level
score recalculation, weight configuration and segment score intake."""
from __future__ import annotations

import json
import logging
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from kolrank.errors import ConflictError, NotFoundError, ValidationError
from kolrank.locks import scope_locks
from kolrank.models import (
    EXCLUDED, RESOLVED_STATUSES, SEGMENTS, UNMATCHED,
    Campaign, Nomination, Person, PersonScore, ScoreWeightConfig, SegmentScore, SurveyResponse,
)
from kolrank.registry import validate_npi
from kolrank.scoring import (
    DEFAULT_WEIGHTS, WEIGHT_FIELDS, WeightVector, blend, compute_survey_scores, validate_segment_score,
)
from kolrank.utils import apply_updates, get_entity, json_parse

log = logging.getLogger(__name__)

SEGMENT_FIELDS = tuple(f"score_{s}" for s in SEGMENTS)

# Campaign states in which derived scores may be (re)written
SCORABLE_STATUSES = ("ACTIVE", "CLOSED")


def _now() -> datetime:
    return datetime.now(UTC)


def get_campaign(session: Session, campaign_id: int) -> Campaign:
    return get_entity(session, Campaign, campaign_id)


def _require_scorable(campaign: Campaign) -> None:
    if campaign.status == "DRAFT":
        raise ValidationError(
            f"Campaign {campaign.id} is still in draft; scores cannot be calculated yet",
            field="status", entity_id=campaign.id,
        )
    if campaign.status == "PUBLISHED":
        raise ConflictError(
            f"Campaign {campaign.id} is published; its scores are read-only",
            field="status", entity_id=campaign.id,
        )


def _segment_rows(session: Session, disease_area: str) -> dict[int, SegmentScore]:
    rows = session.execute(
        select(SegmentScore).where(SegmentScore.disease_area == disease_area)
    ).scalars().all()
    return {
        row.person_id: row for row in rows
        if any(getattr(row, f) is not None for f in SEGMENT_FIELDS)
    }


def _person_scores(session: Session, campaign_id: int) -> dict[int, PersonScore]:
    rows = session.execute(
        select(PersonScore).where(PersonScore.campaign_id == campaign_id)
    ).scalars().all()
    return {row.person_id: row for row in rows}


# ---------------------------------------------------------------------------
# Survey scores
# ---------------------------------------------------------------------------


def calculate_survey_scores(session: Session, campaign_id: int) -> dict[str, int]:
    """Recompute every survey score in the campaign from current nominations.

    Counts MATCHED and NEW_HCP nominations of completed responses. The
    population is every nominated person plus anyone already holding a
    score row in the campaign; those without nominations drop to 0.
    Commits once at the end. ``updated`` counts rows whose values changed.
    """
    with scope_locks.hold(campaign_id, "survey score calculation"):
        campaign = get_campaign(session, campaign_id)
        _require_scorable(campaign)

        rows = session.execute(
            select(Nomination.matched_person_id, Nomination.nomination_type, func.count(Nomination.id))
            .join(SurveyResponse, Nomination.response_id == SurveyResponse.id)
            .where(
                SurveyResponse.campaign_id == campaign_id,
                SurveyResponse.status == "COMPLETED",
                Nomination.match_status.in_(RESOLVED_STATUSES),
                Nomination.matched_person_id.is_not(None),
            )
            .group_by(Nomination.matched_person_id, Nomination.nomination_type)
        ).all()

        counts: dict[int, dict[str, int]] = defaultdict(dict)
        for person_id, nomination_type, count in rows:
            counts[person_id][nomination_type] = count

        existing = _person_scores(session, campaign_id)
        for person_id in existing:
            counts.setdefault(person_id, {})

        results = compute_survey_scores(counts)
        now = _now()
        updated = 0
        try:
            for person_id in sorted(results):
                result = results[person_id]
                row = existing.get(person_id)
                if row is None:
                    row = PersonScore(person_id=person_id, campaign_id=campaign_id)
                    session.add(row)
                    changed = True
                else:
                    changed = (
                        row.nomination_count != result.total
                        or row.survey_score != result.survey_score
                        or json_parse(row.nomination_counts_json) != result.by_type
                        or json_parse(row.type_scores_json) != result.type_scores
                    )
                row.nomination_count = result.total
                row.nomination_counts_json = json.dumps(result.by_type)
                row.type_scores_json = json.dumps(result.type_scores)
                row.survey_score = result.survey_score
                row.calculated_at = now
                updated += int(changed)
            session.commit()
        except Exception:
            session.rollback()
            raise

        log.info("Survey scores for campaign %s: %d processed, %d updated", campaign_id, len(results), updated)
        return {"processed": len(results), "updated": updated}


# ---------------------------------------------------------------------------
# Composite scores
# ---------------------------------------------------------------------------


def _recalculate_composites(session: Session, campaign: Campaign, weights: WeightVector) -> dict[str, int]:
    """Blend composites for the campaign; the caller holds the scope lock and commits.

    Every existing score row is rewritten, so segment copies that were
    cleared at the source are cleared here too.
    """
    segments = _segment_rows(session, campaign.disease_area)
    existing = _person_scores(session, campaign.id)
    population = set(segments) | set(existing)

    now = _now()
    updated = 0
    for person_id in sorted(population):
        row = existing.get(person_id)
        if row is None:
            row = PersonScore(person_id=person_id, campaign_id=campaign.id, nomination_count=0)
            session.add(row)
        seg = segments.get(person_id)
        values = {s: getattr(seg, f"score_{s}") if seg is not None else None for s in SEGMENTS}
        composite = blend(values, row.survey_score, weights)
        changed = row.composite_score != composite or any(
            getattr(row, f"score_{s}") != values[s] for s in SEGMENTS
        )
        for segment, value in values.items():
            setattr(row, f"score_{segment}", value)
        row.composite_score = composite
        row.calculated_at = now
        updated += int(changed)

    log.info("Composite scores for campaign %s: %d processed, %d updated", campaign.id, len(population), updated)
    return {"processed": len(population), "updated": updated}


def recalculate_composites(session: Session, campaign_id: int) -> dict[str, int]:
    """Re-blend every composite in the campaign under its current weights (commits)."""
    with scope_locks.hold(campaign_id, "composite recalculation"):
        campaign = get_campaign(session, campaign_id)
        _require_scorable(campaign)
        try:
            weights = WeightVector.from_model(_ensure_config(session, campaign_id))
            result = _recalculate_composites(session, campaign, weights)
            session.commit()
        except Exception:
            session.rollback()
            raise
        return result


# ---------------------------------------------------------------------------
# Weight configuration
# ---------------------------------------------------------------------------


def _ensure_config(session: Session, campaign_id: int) -> ScoreWeightConfig:
    config = session.execute(
        select(ScoreWeightConfig).where(ScoreWeightConfig.campaign_id == campaign_id)
    ).scalars().first()
    if config is None:
        config = ScoreWeightConfig(campaign_id=campaign_id, **DEFAULT_WEIGHTS.as_dict())
        session.add(config)
        session.flush()
    return config


def weight_config_dict(config: ScoreWeightConfig) -> dict[str, Any]:
    return {
        "id": config.id,
        "campaign_id": config.campaign_id,
        **{name: getattr(config, name) for name in WEIGHT_FIELDS},
        "total": round(sum(getattr(config, name) for name in WEIGHT_FIELDS), 4),
        "updated_at": config.updated_at.isoformat() if config.updated_at else None,
    }


def get_score_weight_config(session: Session, campaign_id: int) -> dict[str, Any]:
    """Current weights for the campaign, created from defaults on first access (caller must commit)."""
    get_campaign(session, campaign_id)
    return weight_config_dict(_ensure_config(session, campaign_id))


def _store_weights(session: Session, campaign_id: int, weights: WeightVector) -> dict[str, Any]:
    with scope_locks.hold(campaign_id, "weight update"):
        campaign = get_campaign(session, campaign_id)
        if campaign.status == "PUBLISHED":
            raise ConflictError(
                f"Campaign {campaign_id} is published; its weights are read-only",
                field="status", entity_id=campaign_id,
            )
        try:
            config = _ensure_config(session, campaign_id)
            apply_updates(config, weights.as_dict(), WEIGHT_FIELDS)
            session.flush()
            recalculation = None
            if campaign.status in SCORABLE_STATUSES:
                recalculation = _recalculate_composites(session, campaign, weights)
            session.commit()
        except Exception:
            session.rollback()
            raise
        return {**weight_config_dict(config), "recalculation": recalculation}


def update_score_weight_config(session: Session, campaign_id: int, weights: Mapping[str, Any]) -> dict[str, Any]:
    """Validate and store new weights, then re-blend composites in one commit.

    The sum-to-100 check runs before anything is written.
    """
    vector = WeightVector.from_mapping(weights)
    result = _store_weights(session, campaign_id, vector)
    log.info("Weights updated for campaign %s", campaign_id)
    return result


def reset_score_weight_config(session: Session, campaign_id: int) -> dict[str, Any]:
    return _store_weights(session, campaign_id, DEFAULT_WEIGHTS)


# ---------------------------------------------------------------------------
# Segment scores
# ---------------------------------------------------------------------------


def upsert_segment_scores(session: Session, disease_area: str, rows: list[Mapping[str, Any]]) -> dict[str, int]:
    """Replace externally supplied segment scores, keyed by NPI (caller must commit).

    Every row is validated before anything is written; a missing segment is
    stored as null.
    """
    area = (disease_area or "").strip()
    if not area:
        raise ValidationError("Disease area is required", field="disease_area")

    staged: list[tuple[int, dict[str, float | None]]] = []
    for index, row in enumerate(rows):
        try:
            npi = validate_npi(row.get("npi"))
            values = {f"score_{s}": validate_segment_score(s, row.get(f"score_{s}")) for s in SEGMENTS}
        except ValidationError as exc:
            raise ValidationError(f"Row {index}: {exc.message}", field=exc.field, entity_id=row.get("npi")) from exc
        person_id = session.execute(select(Person.id).where(Person.npi == npi)).scalar()
        if person_id is None:
            raise NotFoundError(f"Row {index}: no person with NPI {npi}", field="npi", entity_id=npi)
        staged.append((person_id, values))

    existing = {
        row.person_id: row for row in session.execute(
            select(SegmentScore).where(SegmentScore.disease_area == area)
        ).scalars().all()
    }
    updated = 0
    for person_id, values in staged:
        record = existing.get(person_id)
        if record is None:
            record = existing[person_id] = SegmentScore(person_id=person_id, disease_area=area)
            session.add(record)
        elif all(getattr(record, f) == v for f, v in values.items()):
            continue
        for field, value in values.items():
            setattr(record, field, value)
        updated += 1
    session.flush()
    return {"processed": len(staged), "updated": updated}


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


def calculation_status(session: Session, campaign_id: int) -> dict[str, Any]:
    campaign = get_campaign(session, campaign_id)
    by_status = dict(session.execute(
        select(Nomination.match_status, func.count(Nomination.id))
        .join(SurveyResponse, Nomination.response_id == SurveyResponse.id)
        .where(SurveyResponse.campaign_id == campaign_id)
        .group_by(Nomination.match_status)
    ).all())
    rows = _person_scores(session, campaign_id).values()
    survey_rows = sum(1 for r in rows if r.survey_score is not None)
    composite_rows = sum(1 for r in rows if r.composite_score is not None)
    resolved = sum(by_status.get(s, 0) for s in RESOLVED_STATUSES)
    return {
        "campaign_id": campaign_id,
        "status": campaign.status,
        "total_nominations": sum(by_status.values()),
        "resolved_nominations": resolved,
        "unmatched_nominations": by_status.get(UNMATCHED, 0),
        "excluded_nominations": by_status.get(EXCLUDED, 0),
        "survey_scores_calculated": survey_rows,
        "composite_scores_calculated": composite_rows,
        "ready_to_publish": resolved > 0 and 0 < composite_rows == len(rows) and by_status.get(UNMATCHED, 0) == 0,
    }


def person_score_dict(row: PersonScore) -> dict[str, Any]:
    person = row.person
    return {
        "person_id": row.person_id,
        "npi": person.npi if person else None,
        "name": person.full_name if person else None,
        "campaign_id": row.campaign_id,
        **{f: getattr(row, f) for f in SEGMENT_FIELDS},
        "nomination_count": row.nomination_count,
        "nomination_counts": json_parse(row.nomination_counts_json, {}),
        "type_scores": json_parse(row.type_scores_json, {}),
        "survey_score": row.survey_score,
        "composite_score": row.composite_score,
        "calculated_at": row.calculated_at.isoformat() if row.calculated_at else None,
    }


def list_person_scores(session: Session, campaign_id: int) -> list[dict[str, Any]]:
    """Score rows ranked by composite, then survey score, then NPI."""
    get_campaign(session, campaign_id)
    rows = list(_person_scores(session, campaign_id).values())
    rows.sort(key=lambda r: (
        -(r.composite_score if r.composite_score is not None else -1),
        -(r.survey_score if r.survey_score is not None else -1),
        r.person.npi if r.person else "",
    ))
    return [person_score_dict(r) for r in rows]
