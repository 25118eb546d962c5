from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from kolrank import registry, resolution, services
from kolrank.db import get_session, init_db
from kolrank.errors import KolRankError
from kolrank.matching import suggest_for_name, suggest_matches, suggestion_dict
from kolrank.schemas import (
    AliasCreate,
    BatchResult,
    CalculationStatusOut,
    CreatePersonRequest,
    ExcludeRequest,
    MatchRequest,
    NominationOut,
    PersonCreate,
    PersonOut,
    PersonScoreOut,
    RawNameUpdate,
    SegmentScoreUpload,
    SuggestionOut,
    WeightConfigIn,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="KOL Rank",
    version="0.1.0",
    description=(
        "Peer-nomination resolution and composite scoring for key opinion leader surveys. "
        "Resolve free-text nominations to registry persons, then derive survey and "
        "composite scores per campaign. All endpoints return JSON. No authentication required."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Nominations", "description": "Suggest, match, create, or exclude nominated names."},
        {"name": "Persons", "description": "Canonical person registry and aliases."},
        {"name": "Scores", "description": "Survey and composite score recalculation per campaign."},
        {"name": "Weights", "description": "Per-campaign composite weight configuration."},
        {"name": "Segments", "description": "Externally supplied segment scores per disease area."},
    ],
)


@app.exception_handler(KolRankError)
async def kolrank_error_handler(request: Request, exc: KolRankError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Routes: Persons (search before parameterized to avoid route shadowing)
# ---------------------------------------------------------------------------


@app.get("/api/persons/search", response_model=list[SuggestionOut],
         tags=["Persons"], summary="Search the registry by free-text name")
async def search_persons(q: str = Query(..., min_length=1), session: Session = Depends(db_session)):
    return [suggestion_dict(s) for s in suggest_for_name(session, q)]


@app.post("/api/persons", response_model=PersonOut, status_code=201,
          tags=["Persons"], summary="Register a new person")
async def create_person(body: PersonCreate, session: Session = Depends(db_session)):
    person = registry.create_person(session, body.model_dump())
    session.commit()
    return registry.person_summary(person)


@app.get("/api/persons/{person_id}", response_model=PersonOut,
         tags=["Persons"], summary="Get a person with aliases")
async def get_person(person_id: int, session: Session = Depends(db_session)):
    return registry.person_summary(registry.get_person(session, person_id))


@app.post("/api/persons/{person_id}/aliases", response_model=PersonOut,
          tags=["Persons"], summary="Add an alias to a person (case-insensitive dedup)")
async def add_alias(person_id: int, body: AliasCreate, session: Session = Depends(db_session)):
    registry.add_alias(session, person_id, body.alias_name)
    session.commit()
    return registry.person_summary(registry.get_person(session, person_id))


# ---------------------------------------------------------------------------
# Routes: Nominations
# ---------------------------------------------------------------------------


@app.get("/api/nominations/{nomination_id}/suggestions", response_model=list[SuggestionOut],
         tags=["Nominations"], summary="Ranked registry candidates for a nomination")
async def get_suggestions(nomination_id: int, session: Session = Depends(db_session)):
    return [suggestion_dict(s) for s in suggest_matches(session, nomination_id)]


@app.post("/api/nominations/{nomination_id}/match", response_model=NominationOut,
          tags=["Nominations"], summary="Match a nomination to an existing person")
async def match_nomination(nomination_id: int, body: MatchRequest, session: Session = Depends(db_session)):
    nomination = resolution.match_nomination(
        session, nomination_id, body.person_id, add_alias=body.add_alias, matched_by=body.matched_by,
    )
    session.commit()
    return resolution.nomination_dict(nomination)


@app.post("/api/nominations/{nomination_id}/create-person", response_model=NominationOut, status_code=201,
          tags=["Nominations"], summary="Register a new person and assign the nomination")
async def create_person_and_match(nomination_id: int, body: CreatePersonRequest,
                                  session: Session = Depends(db_session)):
    attributes = body.model_dump(exclude={"matched_by"})
    nomination = resolution.create_person_and_match(session, nomination_id, attributes, matched_by=body.matched_by)
    session.commit()
    return resolution.nomination_dict(nomination)


@app.post("/api/nominations/{nomination_id}/exclude", response_model=NominationOut,
          tags=["Nominations"], summary="Exclude a nomination from scoring")
async def exclude_nomination(nomination_id: int, body: ExcludeRequest | None = None,
                             session: Session = Depends(db_session)):
    body = body or ExcludeRequest()
    nomination = resolution.exclude_nomination(session, nomination_id, body.reason, matched_by=body.matched_by)
    session.commit()
    return resolution.nomination_dict(nomination)


@app.put("/api/nominations/{nomination_id}/raw-name", response_model=NominationOut,
         tags=["Nominations"], summary="Correct the entered name of an unmatched nomination")
async def update_raw_name(nomination_id: int, body: RawNameUpdate, session: Session = Depends(db_session)):
    nomination = resolution.update_raw_name(session, nomination_id, body.raw_name_entered)
    session.commit()
    return resolution.nomination_dict(nomination)


# ---------------------------------------------------------------------------
# Routes: Campaign nominations (stats and bulk before list for readability)
# ---------------------------------------------------------------------------


class NominationListResponse(BaseModel):
    items: list[NominationOut]
    pagination: dict[str, int]


@app.get("/api/campaigns/{campaign_id}/nominations/stats",
         tags=["Nominations"], summary="Nomination counts per match status")
async def nomination_stats(campaign_id: int, session: Session = Depends(db_session)):
    return resolution.nomination_stats(session, campaign_id)


@app.post("/api/campaigns/{campaign_id}/nominations/bulk-match",
          tags=["Nominations"], summary="Auto-match every unmatched nomination above the threshold")
async def bulk_match(campaign_id: int, session: Session = Depends(db_session)):
    return resolution.bulk_auto_match(session, campaign_id)


@app.get("/api/campaigns/{campaign_id}/nominations", response_model=NominationListResponse,
         tags=["Nominations"], summary="List nominations with optional status filter and pagination")
async def list_nominations(
    campaign_id: int,
    status: str | None = Query(None, description="UNMATCHED, MATCHED, NEW_HCP or EXCLUDED"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    session: Session = Depends(db_session),
):
    return resolution.list_nominations(session, campaign_id, status=status, page=page, per_page=per_page)


# ---------------------------------------------------------------------------
# Routes: Scores
# ---------------------------------------------------------------------------


@app.post("/api/campaigns/{campaign_id}/scores/calculate-survey", response_model=BatchResult,
          tags=["Scores"], summary="Recalculate survey scores from resolved nominations")
async def calculate_survey(campaign_id: int, session: Session = Depends(db_session)):
    return services.calculate_survey_scores(session, campaign_id)


@app.post("/api/campaigns/{campaign_id}/scores/calculate-composite", response_model=BatchResult,
          tags=["Scores"], summary="Recalculate composite scores under the current weights")
async def calculate_composite(campaign_id: int, session: Session = Depends(db_session)):
    return services.recalculate_composites(session, campaign_id)


@app.get("/api/campaigns/{campaign_id}/scores/status", response_model=CalculationStatusOut,
         tags=["Scores"], summary="Resolution and calculation progress for a campaign")
async def score_status(campaign_id: int, session: Session = Depends(db_session)):
    return services.calculation_status(session, campaign_id)


@app.get("/api/campaigns/{campaign_id}/scores", response_model=list[PersonScoreOut],
         tags=["Scores"], summary="Person scores ranked by composite")
async def list_scores(campaign_id: int, session: Session = Depends(db_session)):
    return services.list_person_scores(session, campaign_id)


# ---------------------------------------------------------------------------
# Routes: Weights
# ---------------------------------------------------------------------------


@app.get("/api/campaigns/{campaign_id}/score-config",
         tags=["Weights"], summary="Current composite weights (defaults created on first access)")
async def get_score_config(campaign_id: int, session: Session = Depends(db_session)):
    config = services.get_score_weight_config(session, campaign_id)
    session.commit()
    return config


@app.put("/api/campaigns/{campaign_id}/score-config",
         tags=["Weights"], summary="Replace weights (must sum to 100) and re-blend composites")
async def update_score_config(campaign_id: int, body: WeightConfigIn, session: Session = Depends(db_session)):
    return services.update_score_weight_config(session, campaign_id, body.model_dump())


@app.post("/api/campaigns/{campaign_id}/score-config/reset",
          tags=["Weights"], summary="Restore default weights and re-blend composites")
async def reset_score_config(campaign_id: int, session: Session = Depends(db_session)):
    return services.reset_score_weight_config(session, campaign_id)


# ---------------------------------------------------------------------------
# Routes: Segment scores
# ---------------------------------------------------------------------------


@app.put("/api/segment-scores/{disease_area}", response_model=BatchResult,
         tags=["Segments"], summary="Upsert externally supplied segment scores keyed by NPI")
async def upsert_segment_scores(disease_area: str, body: SegmentScoreUpload, session: Session = Depends(db_session)):
    result = services.upsert_segment_scores(session, disease_area, [row.model_dump() for row in body.rows])
    session.commit()
    return result


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    host = os.environ.get("KOLRANK_HOST", "127.0.0.1")
    port = int(os.environ.get("KOLRANK_PORT", "8002"))
    uvicorn.run("kolrank.app:app", host=host, port=port)


if __name__ == "__main__":
    main()
