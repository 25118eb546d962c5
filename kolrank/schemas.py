"""Pydantic request/response schemas for the KOL Rank API."""
from __future__ import annotations

import re

from pydantic import BaseModel, Field, field_validator

_NPI_RE = re.compile(r"^\d{10}$")


class _SegmentScoresMixin(BaseModel):
    score_publications: float | None = None
    score_clinical_trials: float | None = None
    score_trade_pubs: float | None = None
    score_org_leadership: float | None = None
    score_org_awareness: float | None = None
    score_conference: float | None = None
    score_social_media: float | None = None
    score_media_podcasts: float | None = None


class AliasOut(BaseModel):
    id: int
    alias_name: str


class PersonOut(BaseModel):
    id: int
    npi: str
    first_name: str
    last_name: str
    email: str | None = None
    specialty: str | None = None
    city: str | None = None
    state: str | None = None
    is_active: bool = True
    aliases: list[AliasOut] = []


class PersonCreate(BaseModel):
    npi: str
    first_name: str
    last_name: str
    email: str | None = None
    specialty: str | None = None
    city: str | None = None
    state: str | None = None

    @field_validator("npi")
    @classmethod
    def npi_must_be_ten_digits(cls, v: str) -> str:
        v = v.strip()
        if not _NPI_RE.match(v):
            raise ValueError("NPI must be exactly 10 digits")
        return v


class AliasCreate(BaseModel):
    alias_name: str = Field(min_length=1)


class SuggestionOut(BaseModel):
    person: PersonOut
    score: float
    match_type: str
    is_name_match: bool
    band: str


class MatchedPersonOut(BaseModel):
    id: int
    npi: str
    first_name: str
    last_name: str


class NominationOut(BaseModel):
    id: int
    response_id: int
    campaign_id: int | None = None
    nomination_type: str
    raw_name_entered: str
    nominator_person_id: int | None = None
    match_status: str
    matched_person: MatchedPersonOut | None = None
    match_type: str | None = None
    match_confidence: float | None = None
    matched_by: str | None = None
    matched_at: str | None = None
    exclude_reason: str | None = None


class MatchRequest(BaseModel):
    person_id: int
    add_alias: bool = True
    matched_by: str | None = None


class CreatePersonRequest(PersonCreate):
    matched_by: str | None = None


class ExcludeRequest(BaseModel):
    reason: str | None = None
    matched_by: str | None = None


class RawNameUpdate(BaseModel):
    raw_name_entered: str = Field(min_length=1)


class WeightConfigIn(BaseModel):
    weight_publications: float = Field(ge=0, le=100)
    weight_clinical_trials: float = Field(ge=0, le=100)
    weight_trade_pubs: float = Field(ge=0, le=100)
    weight_org_leadership: float = Field(ge=0, le=100)
    weight_org_awareness: float = Field(ge=0, le=100)
    weight_conference: float = Field(ge=0, le=100)
    weight_social_media: float = Field(ge=0, le=100)
    weight_media_podcasts: float = Field(ge=0, le=100)
    weight_survey: float = Field(ge=0, le=100)


class SegmentScoreRow(_SegmentScoresMixin):
    npi: str


class SegmentScoreUpload(BaseModel):
    rows: list[SegmentScoreRow]


class BatchResult(BaseModel):
    processed: int
    updated: int


class PersonScoreOut(_SegmentScoresMixin):
    person_id: int
    npi: str | None = None
    name: str | None = None
    campaign_id: int
    nomination_count: int = 0
    nomination_counts: dict[str, int] = {}
    type_scores: dict[str, float] = {}
    survey_score: float | None = None
    composite_score: float | None = None
    calculated_at: str | None = None


class CalculationStatusOut(BaseModel):
    campaign_id: int
    status: str
    total_nominations: int
    resolved_nominations: int
    unmatched_nominations: int
    excluded_nominations: int
    survey_scores_calculated: int
    composite_scores_calculated: int
    ready_to_publish: bool
