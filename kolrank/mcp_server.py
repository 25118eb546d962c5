from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Callable

from mcp.server.fastmcp import FastMCP
from sqlalchemy.orm import Session

from kolrank import registry, resolution, services
from kolrank.db import init_db, session_scope
from kolrank.errors import KolRankError
from kolrank.matching import (
    HIGH_CONFIDENCE, MEDIUM_CONFIDENCE, SUGGESTION_FLOOR, suggest_for_name, suggest_matches, suggestion_dict,
)
from kolrank.scoring import DEFAULT_WEIGHTS

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def kolrank_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "KOL Rank",
    instructions=(
        "KOL Rank resolves free-text peer nominations from KOL surveys to canonical persons "
        "and derives survey and composite scores per campaign. Start with "
        "nomination_stats(campaign_id), then list_nominations(campaign_id, status='UNMATCHED') "
        "and get_suggestions(nomination_id) to resolve names."
    ),
    lifespan=kolrank_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _call(fn: Callable[[Session], Any], commit: bool = False) -> Any:
    """Run *fn* in a fresh session, mapping domain errors to an error dict."""
    with session_scope() as session:
        try:
            result = fn(session)
            if commit:
                session.commit()
            return result
        except KolRankError as exc:
            session.rollback()
            log.info("Tool call rejected: %s", exc.message)
            return exc.to_dict()


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("kolrank://overview")
def kolrank_overview() -> str:
    """Overview of KOL Rank: data model, resolution workflow and scoring rules."""
    return json.dumps({
        "system": "KOL Rank: peer-nomination resolution and composite scoring",
        "data_model": {
            "person": "Canonical healthcare professional identified by a 10-digit NPI, with aliases.",
            "nomination": "Free-text name entered by a survey respondent. UNMATCHED until resolved.",
            "person_score": "Per-campaign survey score, copied segment scores and weighted composite.",
        },
        "workflow": [
            "1. nomination_stats(campaign_id): resolution progress.",
            "2. bulk_auto_match(campaign_id): accept unambiguous suggestions scoring >= 90.",
            "3. list_nominations(campaign_id, status='UNMATCHED'): what is left.",
            "4. get_suggestions(nomination_id): ranked candidates for one name.",
            "5. match_nomination / create_person_and_match / exclude_nomination.",
            "6. calculate_survey_scores(campaign_id), then recalculate_composites(campaign_id).",
        ],
        "confidence_bands": {
            "high": f">= {HIGH_CONFIDENCE:g}",
            "medium": f">= {MEDIUM_CONFIDENCE:g}",
            "low": f">= {SUGGESTION_FLOOR:g}",
        },
        "default_weights": DEFAULT_WEIGHTS.as_dict(),
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Persons
# ---------------------------------------------------------------------------


@mcp.tool()
def search_persons(name: str) -> list[dict] | dict:
    """Search the person registry by free-text name. Returns ranked candidates."""
    return _call(lambda s: [suggestion_dict(x) for x in suggest_for_name(s, name)])


@mcp.tool()
def get_person(person_id: int) -> dict:
    """Get a person with all known aliases."""
    return _call(lambda s: registry.person_summary(registry.get_person(s, person_id)))


@mcp.tool()
def create_person(
    npi: str, first_name: str, last_name: str,
    specialty: str | None = None, city: str | None = None, state: str | None = None,
    email: str | None = None,
) -> dict:
    """Register a new person. NPI must be 10 digits and not already registered."""
    attributes = {
        "npi": npi, "first_name": first_name, "last_name": last_name,
        "specialty": specialty, "city": city, "state": state, "email": email,
    }
    return _call(lambda s: registry.person_summary(registry.create_person(s, attributes, created_by="mcp")),
                 commit=True)


@mcp.tool()
def add_alias(person_id: int, alias_name: str) -> dict:
    """Attach an alternative name to a person. Case-insensitive duplicates are ignored."""
    def run(session):
        alias, created = registry.add_alias(session, person_id, alias_name, created_by="mcp")
        return {"person_id": person_id, "alias_id": alias.id, "alias_name": alias.alias_name, "created": created}
    return _call(run, commit=True)


# ---------------------------------------------------------------------------
# Tools: Nominations
# ---------------------------------------------------------------------------


@mcp.tool()
def list_nominations(campaign_id: int, status: str | None = None, page: int = 1, per_page: int = 50) -> dict:
    """List a campaign's nominations.

    Args:
        campaign_id: Campaign to list.
        status: Optional filter: UNMATCHED, MATCHED, NEW_HCP or EXCLUDED.
        page: 1-based page number.
        per_page: Page size.
    """
    return _call(lambda s: resolution.list_nominations(s, campaign_id, status=status, page=page, per_page=per_page))


@mcp.tool()
def nomination_stats(campaign_id: int) -> dict:
    """Count a campaign's nominations per match status."""
    return _call(lambda s: resolution.nomination_stats(s, campaign_id))


@mcp.tool()
def get_suggestions(nomination_id: int) -> list[dict] | dict:
    """Ranked registry candidates for a nomination, best first, with confidence bands."""
    return _call(lambda s: [suggestion_dict(x) for x in suggest_matches(s, nomination_id)])


@mcp.tool()
def match_nomination(nomination_id: int, person_id: int, add_alias: bool = True) -> dict:
    """Resolve an UNMATCHED nomination to an existing person.

    With add_alias (default) the entered name is remembered as an alias so
    the same spelling matches exactly next time.
    """
    return _call(lambda s: resolution.nomination_dict(
        resolution.match_nomination(s, nomination_id, person_id, add_alias=add_alias, matched_by="mcp")
    ), commit=True)


@mcp.tool()
def create_person_and_match(
    nomination_id: int, npi: str, first_name: str, last_name: str,
    specialty: str | None = None, city: str | None = None, state: str | None = None,
) -> dict:
    """Register a new person from an UNMATCHED nomination and assign it (status NEW_HCP)."""
    attributes = {
        "npi": npi, "first_name": first_name, "last_name": last_name,
        "specialty": specialty, "city": city, "state": state,
    }
    return _call(lambda s: resolution.nomination_dict(
        resolution.create_person_and_match(s, nomination_id, attributes, matched_by="mcp")
    ), commit=True)


@mcp.tool()
def exclude_nomination(nomination_id: int, reason: str | None = None) -> dict:
    """Exclude an UNMATCHED nomination from scoring. This cannot be undone."""
    return _call(lambda s: resolution.nomination_dict(
        resolution.exclude_nomination(s, nomination_id, reason, matched_by="mcp")
    ), commit=True)


@mcp.tool()
def bulk_auto_match(campaign_id: int) -> dict:
    """Auto-match every UNMATCHED nomination whose best suggestion is unambiguous and >= 90."""
    return _call(lambda s: resolution.bulk_auto_match(s, campaign_id, matched_by="mcp-auto"))


# ---------------------------------------------------------------------------
# Tools: Scores
# ---------------------------------------------------------------------------


@mcp.tool()
def calculate_survey_scores(campaign_id: int) -> dict:
    """Recalculate survey scores for a campaign from its resolved nominations."""
    return _call(lambda s: services.calculate_survey_scores(s, campaign_id))


@mcp.tool()
def recalculate_composites(campaign_id: int) -> dict:
    """Re-blend composite scores for a campaign under its current weights."""
    return _call(lambda s: services.recalculate_composites(s, campaign_id))


@mcp.tool()
def get_scores(campaign_id: int, limit: int = 50) -> list[dict] | dict:
    """Person scores for a campaign ranked by composite score."""
    return _call(lambda s: services.list_person_scores(s, campaign_id)[:limit])


@mcp.tool()
def calculation_status(campaign_id: int) -> dict:
    """Resolution and calculation progress, including whether the campaign is ready to publish."""
    return _call(lambda s: services.calculation_status(s, campaign_id))


@mcp.tool()
def get_score_weights(campaign_id: int) -> dict:
    """Current composite weights for a campaign (defaults are created on first access)."""
    return _call(lambda s: services.get_score_weight_config(s, campaign_id), commit=True)


@mcp.tool()
def update_score_weights(
    campaign_id: int,
    weight_publications: float, weight_clinical_trials: float, weight_trade_pubs: float,
    weight_org_leadership: float, weight_org_awareness: float, weight_conference: float,
    weight_social_media: float, weight_media_podcasts: float, weight_survey: float,
) -> dict:
    """Replace a campaign's weights. All nine must be 0-100 and sum to 100 (+/- 0.01)."""
    weights = {
        "weight_publications": weight_publications,
        "weight_clinical_trials": weight_clinical_trials,
        "weight_trade_pubs": weight_trade_pubs,
        "weight_org_leadership": weight_org_leadership,
        "weight_org_awareness": weight_org_awareness,
        "weight_conference": weight_conference,
        "weight_social_media": weight_social_media,
        "weight_media_podcasts": weight_media_podcasts,
        "weight_survey": weight_survey,
    }
    return _call(lambda s: services.update_score_weight_config(s, campaign_id, weights))


@mcp.tool()
def reset_score_weights(campaign_id: int) -> dict:
    """Restore a campaign's default weights and re-blend composites."""
    return _call(lambda s: services.reset_score_weight_config(s, campaign_id))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the KOL Rank MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
