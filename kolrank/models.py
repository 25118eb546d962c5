from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# Nomination lifecycle states
UNMATCHED = "UNMATCHED"
MATCHED = "MATCHED"
NEW_HCP = "NEW_HCP"
EXCLUDED = "EXCLUDED"
MATCH_STATUSES = (UNMATCHED, MATCHED, NEW_HCP, EXCLUDED)
RESOLVED_STATUSES = (MATCHED, NEW_HCP)

NOMINATION_TYPES = (
    "NATIONAL_KOL",
    "RISING_STAR",
    "REGIONAL_EXPERT",
    "DIGITAL_INFLUENCER",
    "CLINICAL_EXPERT",
)

CAMPAIGN_STATUSES = ("DRAFT", "ACTIVE", "CLOSED", "PUBLISHED")

# Externally supplied segments, in weight-vector order (survey comes last)
SEGMENTS = (
    "publications",
    "clinical_trials",
    "trade_pubs",
    "org_leadership",
    "org_awareness",
    "conference",
    "social_media",
    "media_podcasts",
)


class Person(Base):
    __tablename__ = "persons"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    npi: Mapped[str] = mapped_column(String(10), nullable=False, unique=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    specialty: Mapped[str | None] = mapped_column(String(200), nullable=True)
    city: Mapped[str | None] = mapped_column(String(200), nullable=True)
    state: Mapped[str | None] = mapped_column(String(2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    phonetic_key: Mapped[str] = mapped_column(String(200), default="")
    name_key: Mapped[str] = mapped_column(String(300), default="", index=True)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    aliases: Mapped[list[PersonAlias]] = relationship(
        "PersonAlias", back_populates="person", cascade="all, delete-orphan",
        order_by="PersonAlias.id",
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class PersonAlias(Base):
    __tablename__ = "person_aliases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(Integer, ForeignKey("persons.id"), nullable=False)
    alias_name: Mapped[str] = mapped_column(String(300), nullable=False)
    phonetic_key: Mapped[str] = mapped_column(String(200), default="")
    name_key: Mapped[str] = mapped_column(String(300), default="", index=True)
    created_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    person: Mapped[Person] = relationship("Person", back_populates="aliases")


class Campaign(Base):
    __tablename__ = "campaigns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    disease_area: Mapped[str] = mapped_column(String(200), default="")
    status: Mapped[str] = mapped_column(String(20), default="DRAFT")  # DRAFT | ACTIVE | CLOSED | PUBLISHED

    responses: Mapped[list[SurveyResponse]] = relationship("SurveyResponse", back_populates="campaign")


class SurveyResponse(Base):
    __tablename__ = "survey_responses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(Integer, ForeignKey("campaigns.id"), nullable=False)
    respondent_person_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("persons.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="COMPLETED")  # COMPLETED | EXCLUDED
    completed_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    campaign: Mapped[Campaign] = relationship("Campaign", back_populates="responses")
    nominations: Mapped[list[Nomination]] = relationship("Nomination", back_populates="response")


class Nomination(Base):
    __tablename__ = "nominations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    response_id: Mapped[int] = mapped_column(Integer, ForeignKey("survey_responses.id"), nullable=False)
    nomination_type: Mapped[str] = mapped_column(String(50), nullable=False)
    raw_name_entered: Mapped[str] = mapped_column(String(300), nullable=False)
    nominator_person_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("persons.id"), nullable=True)
    match_status: Mapped[str] = mapped_column(String(20), default=UNMATCHED)
    matched_person_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("persons.id"), nullable=True)
    match_type: Mapped[str | None] = mapped_column(String(20), nullable=True)  # exact | alias | similar | manual | new
    match_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    matched_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    matched_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    exclude_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    response: Mapped[SurveyResponse] = relationship("SurveyResponse", back_populates="nominations")
    matched_person: Mapped[Person | None] = relationship("Person", foreign_keys=[matched_person_id])
    nominator: Mapped[Person | None] = relationship("Person", foreign_keys=[nominator_person_id])


class ScoreWeightConfig(Base):
    __tablename__ = "score_weight_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    campaign_id: Mapped[int] = mapped_column(Integer, ForeignKey("campaigns.id"), nullable=False, unique=True)
    weight_publications: Mapped[float] = mapped_column(Float, nullable=False)
    weight_clinical_trials: Mapped[float] = mapped_column(Float, nullable=False)
    weight_trade_pubs: Mapped[float] = mapped_column(Float, nullable=False)
    weight_org_leadership: Mapped[float] = mapped_column(Float, nullable=False)
    weight_org_awareness: Mapped[float] = mapped_column(Float, nullable=False)
    weight_conference: Mapped[float] = mapped_column(Float, nullable=False)
    weight_social_media: Mapped[float] = mapped_column(Float, nullable=False)
    weight_media_podcasts: Mapped[float] = mapped_column(Float, nullable=False)
    weight_survey: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class SegmentScore(Base):
    __tablename__ = "segment_scores"
    __table_args__ = (UniqueConstraint("person_id", "disease_area"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(Integer, ForeignKey("persons.id"), nullable=False)
    disease_area: Mapped[str] = mapped_column(String(200), nullable=False)
    score_publications: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_clinical_trials: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_trade_pubs: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_org_leadership: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_org_awareness: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_conference: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_social_media: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_media_podcasts: Mapped[float | None] = mapped_column(Float, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())


class PersonScore(Base):
    __tablename__ = "person_scores"
    __table_args__ = (UniqueConstraint("person_id", "campaign_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(Integer, ForeignKey("persons.id"), nullable=False)
    campaign_id: Mapped[int] = mapped_column(Integer, ForeignKey("campaigns.id"), nullable=False)
    score_publications: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_clinical_trials: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_trade_pubs: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_org_leadership: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_org_awareness: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_conference: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_social_media: Mapped[float | None] = mapped_column(Float, nullable=True)
    score_media_podcasts: Mapped[float | None] = mapped_column(Float, nullable=True)
    nomination_count: Mapped[int] = mapped_column(Integer, default=0)
    nomination_counts_json: Mapped[str] = mapped_column(Text, default="{}")
    type_scores_json: Mapped[str] = mapped_column(Text, default="{}")
    survey_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    composite_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    calculated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    person: Mapped[Person] = relationship("Person")
