"""Pure score derivation: survey normalization and composite blending.

Nothing here touches the database. ``services`` gathers source counts and
segment scores, calls these functions and overwrites the stored rows, so a
recalculation is always ``f(current sources, current weights)``.

Survey score
    ``count / max_count_in_scope * 100``; the most nominated person(s) get
    exactly 100, and a scope with no nominations scores everyone 0.  The
    same normalization runs independently per nomination type.

Composite score
    ``sum(weight_i / 100 * score_i)`` over the eight segments plus the
    survey score.  A missing score contributes 0 to its term and does not
    shrink the denominator.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, fields
from typing import Any, Mapping

from kolrank.errors import ValidationError
from kolrank.models import SEGMENTS

WEIGHT_TOTAL = 100.0
WEIGHT_TOLERANCE = 0.01
# Absorbs float representation error so that e.g. 99.99 is inside the tolerance
_FLOAT_SLACK = 1e-9

WEIGHT_FIELDS = tuple(f"weight_{s}" for s in SEGMENTS) + ("weight_survey",)


# ---------------------------------------------------------------------------
# Weights
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WeightVector:
    """Nine weights in [0, 100] summing to 100 within WEIGHT_TOLERANCE."""
    weight_publications: float
    weight_clinical_trials: float
    weight_trade_pubs: float
    weight_org_leadership: float
    weight_org_awareness: float
    weight_conference: float
    weight_social_media: float
    weight_media_podcasts: float
    weight_survey: float

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
                raise ValidationError(f"{f.name} must be a number", field=f.name)
            if value < 0 or value > WEIGHT_TOTAL:
                raise ValidationError(f"{f.name} must be between 0 and 100, got {value}", field=f.name)
            object.__setattr__(self, f.name, float(value))
        total = self.total
        if not math.isclose(total, WEIGHT_TOTAL, rel_tol=0.0, abs_tol=WEIGHT_TOLERANCE + _FLOAT_SLACK):
            raise ValidationError(f"Weights must sum to 100, got {total:g}", field="weights")

    @property
    def total(self) -> float:
        return sum(getattr(self, name) for name in WEIGHT_FIELDS)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> WeightVector:
        missing = [name for name in WEIGHT_FIELDS if data.get(name) is None]
        if missing:
            raise ValidationError(f"Missing weight: {missing[0]}", field=missing[0])
        return cls(**{name: data[name] for name in WEIGHT_FIELDS})

    @classmethod
    def from_model(cls, config) -> WeightVector:
        return cls(**{name: getattr(config, name) for name in WEIGHT_FIELDS})

    def as_dict(self) -> dict[str, float]:
        return asdict(self)

    def segment_weight(self, segment: str) -> float:
        return getattr(self, f"weight_{segment}")


DEFAULT_WEIGHTS = WeightVector(
    weight_publications=10,
    weight_clinical_trials=15,
    weight_trade_pubs=10,
    weight_org_leadership=10,
    weight_org_awareness=10,
    weight_conference=10,
    weight_social_media=5,
    weight_media_podcasts=5,
    weight_survey=25,
)


# ---------------------------------------------------------------------------
# Survey scores
# ---------------------------------------------------------------------------


def normalize_counts(counts: Mapping[Any, int]) -> dict[Any, float]:
    """Scale counts so the maximum maps to 100. All zeros when nothing counted."""
    top = max(counts.values(), default=0)
    if top <= 0:
        return {key: 0.0 for key in counts}
    return {key: count / top * 100 for key, count in counts.items()}


@dataclass(frozen=True)
class SurveyResult:
    total: int
    by_type: dict[str, int]
    survey_score: float
    type_scores: dict[str, float]


def compute_survey_scores(counts_by_person: Mapping[Any, Mapping[str, int]]) -> dict[Any, SurveyResult]:
    """Derive survey and per-type scores for every person in the population.

    *counts_by_person* maps person -> {nomination_type: count}; persons with
    an empty mapping are part of the population and score 0.
    """
    totals = {person: sum(by_type.values()) for person, by_type in counts_by_person.items()}
    survey = normalize_counts(totals)

    types = sorted({t for by_type in counts_by_person.values() for t in by_type})
    per_type = {
        t: normalize_counts({person: by_type.get(t, 0) for person, by_type in counts_by_person.items()})
        for t in types
    }

    results: dict[Any, SurveyResult] = {}
    for person, by_type in counts_by_person.items():
        results[person] = SurveyResult(
            total=totals[person],
            by_type={t: c for t, c in sorted(by_type.items()) if c},
            survey_score=survey[person],
            type_scores={t: per_type[t][person] for t in types if by_type.get(t, 0)},
        )
    return results


# ---------------------------------------------------------------------------
# Composite
# ---------------------------------------------------------------------------


def validate_segment_score(segment: str, value: Any) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise ValidationError(f"score_{segment} must be a number or null", field=f"score_{segment}")
    if value < 0 or value > 100:
        raise ValidationError(f"score_{segment} must be between 0 and 100, got {value}", field=f"score_{segment}")
    return float(value)


def blend(
    segments: Mapping[str, float | None],
    survey_score: float | None,
    weights: WeightVector,
) -> float:
    """Weighted composite in [0, 100]; null scores contribute 0."""
    total = sum(
        weights.segment_weight(segment) / 100 * (segments.get(segment) or 0.0)
        for segment in SEGMENTS
    )
    total += weights.weight_survey / 100 * (survey_score or 0.0)
    # Weights may sum to 100.01 within tolerance
    return max(0.0, min(100.0, total))
