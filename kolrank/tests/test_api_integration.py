"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database to verify HTTP-level
behavior: status codes, error payloads and commit boundaries.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from kolrank.models import Base, Campaign, Nomination, Person, SurveyResponse
from kolrank.scoring import DEFAULT_WEIGHTS


@pytest.fixture()
def test_db():
    """Create a temporary SQLite in-memory database for testing.

    Uses StaticPool so all connections share the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using in-memory database."""
    monkeypatch.setenv("KOLRANK_DB_PATH", str(tmp_path / "lifespan.db"))
    engine, TestSession = test_db
    from kolrank.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded_client(client):
    """Client with a campaign, a registered person and one unmatched nomination."""
    c, TestSession = client
    session = TestSession()
    campaign = Campaign(name="Oncology KOL 2026", disease_area="oncology", status="ACTIVE")
    session.add(campaign)
    session.flush()
    response = SurveyResponse(campaign_id=campaign.id)
    session.add(response)
    session.flush()
    nomination = Nomination(response_id=response.id, nomination_type="NATIONAL_KOL", raw_name_entered="Jon Smth")
    session.add(nomination)
    session.commit()
    ids = {"campaign": campaign.id, "response": response.id, "nomination": nomination.id}
    session.close()

    resp = c.post("/api/persons", json={"npi": "1234567890", "first_name": "Jonathan", "last_name": "Smith"})
    assert resp.status_code == 201
    ids["person"] = resp.json()["id"]
    return c, TestSession, ids


class TestPersonEndpoints:
    def test_create_and_get(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.get(f"/api/persons/{ids['person']}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["npi"] == "1234567890"
        assert data["aliases"] == []

    def test_duplicate_npi(self, seeded_client):
        c, _, _ = seeded_client
        resp = c.post("/api/persons", json={"npi": "1234567890", "first_name": "Other", "last_name": "Person"})
        assert resp.status_code == 409
        body = resp.json()
        assert body["error"] == "DuplicateIdentifierError"
        assert body["field"] == "npi"

    def test_bad_npi_rejected_by_schema(self, client):
        c, _ = client
        resp = c.post("/api/persons", json={"npi": "12345", "first_name": "A", "last_name": "B"})
        assert resp.status_code == 422

    def test_get_404(self, client):
        c, _ = client
        resp = c.get("/api/persons/9999")
        assert resp.status_code == 404
        assert resp.json()["error"] == "NotFoundError"

    def test_add_alias_and_search(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.post(f"/api/persons/{ids['person']}/aliases", json={"alias_name": "Jon Smith"})
        assert resp.status_code == 200
        assert [a["alias_name"] for a in resp.json()["aliases"]] == ["Jon Smith"]
        resp = c.get("/api/persons/search", params={"q": "jon smith"})
        assert resp.status_code == 200
        top = resp.json()[0]
        assert top["person"]["id"] == ids["person"]
        assert top["score"] == 100
        assert top["match_type"] == "alias"


class TestNominationEndpoints:
    def test_suggestions(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.get(f"/api/nominations/{ids['nomination']}/suggestions")
        assert resp.status_code == 200
        data = resp.json()
        assert data[0]["person"]["npi"] == "1234567890"
        assert data[0]["band"] in ("high", "medium", "low")

    def test_suggestions_404(self, client):
        c, _ = client
        assert c.get("/api/nominations/9999/suggestions").status_code == 404

    def test_match_then_conflict(self, seeded_client):
        c, TestSession, ids = seeded_client
        url = f"/api/nominations/{ids['nomination']}/match"
        resp = c.post(url, json={"person_id": ids["person"], "add_alias": True})
        assert resp.status_code == 200
        data = resp.json()
        assert data["match_status"] == "MATCHED"
        assert data["matched_person"]["id"] == ids["person"]

        session = TestSession()
        person = session.get(Person, ids["person"])
        assert [a.alias_name for a in person.aliases] == ["Jon Smth"]
        session.close()

        resp = c.post(url, json={"person_id": ids["person"]})
        assert resp.status_code == 409
        assert resp.json()["error"] == "ConflictError"

    def test_exclude_is_terminal(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.post(f"/api/nominations/{ids['nomination']}/exclude", json={"reason": "not an HCP"})
        assert resp.status_code == 200
        assert resp.json()["match_status"] == "EXCLUDED"
        resp = c.post(f"/api/nominations/{ids['nomination']}/match", json={"person_id": ids["person"]})
        assert resp.status_code == 409

    def test_exclude_without_body(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.post(f"/api/nominations/{ids['nomination']}/exclude")
        assert resp.status_code == 200
        assert resp.json()["exclude_reason"] is None

    def test_create_person_duplicate_leaves_unmatched(self, seeded_client):
        c, TestSession, ids = seeded_client
        resp = c.post(
            f"/api/nominations/{ids['nomination']}/create-person",
            json={"npi": "1234567890", "first_name": "Jon", "last_name": "Smth"},
        )
        assert resp.status_code == 409
        session = TestSession()
        assert session.get(Nomination, ids["nomination"]).match_status == "UNMATCHED"
        assert len(session.execute(select(Person)).scalars().all()) == 1
        session.close()

    def test_create_person(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.post(
            f"/api/nominations/{ids['nomination']}/create-person",
            json={"npi": "5550001111", "first_name": "Jon", "last_name": "Smth", "state": "tx"},
        )
        assert resp.status_code == 201
        data = resp.json()
        assert data["match_status"] == "NEW_HCP"
        assert data["matched_person"]["npi"] == "5550001111"

    def test_update_raw_name(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.put(f"/api/nominations/{ids['nomination']}/raw-name", json={"raw_name_entered": "Jon Smith"})
        assert resp.status_code == 200
        assert resp.json()["raw_name_entered"] == "Jon Smith"

    def test_list_and_stats(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.get(f"/api/campaigns/{ids['campaign']}/nominations", params={"status": "UNMATCHED"})
        assert resp.status_code == 200
        assert resp.json()["pagination"]["total"] == 1
        resp = c.get(f"/api/campaigns/{ids['campaign']}/nominations/stats")
        assert resp.json() == {"UNMATCHED": 1, "MATCHED": 0, "NEW_HCP": 0, "EXCLUDED": 0}

    def test_bulk_match(self, seeded_client):
        c, _, ids = seeded_client
        c.post(f"/api/persons/{ids['person']}/aliases", json={"alias_name": "Jon Smith"})
        resp = c.post(f"/api/campaigns/{ids['campaign']}/nominations/bulk-match")
        assert resp.status_code == 200
        assert resp.json()["matched"] == 1
        resp = c.post(f"/api/campaigns/{ids['campaign']}/nominations/bulk-match")
        assert resp.json()["matched"] == 0


class TestScoreEndpoints:
    def _match(self, c, ids):
        resp = c.post(f"/api/nominations/{ids['nomination']}/match", json={"person_id": ids["person"]})
        assert resp.status_code == 200

    def test_survey_then_composite(self, seeded_client):
        c, _, ids = seeded_client
        self._match(c, ids)
        resp = c.put("/api/segment-scores/oncology", json={"rows": [
            {"npi": "1234567890", "score_publications": 80, "score_clinical_trials": 60},
        ]})
        assert resp.json() == {"processed": 1, "updated": 1}

        resp = c.post(f"/api/campaigns/{ids['campaign']}/scores/calculate-survey")
        assert resp.status_code == 200
        assert resp.json()["processed"] == 1
        resp = c.post(f"/api/campaigns/{ids['campaign']}/scores/calculate-composite")
        assert resp.status_code == 200

        scores = c.get(f"/api/campaigns/{ids['campaign']}/scores").json()
        assert scores[0]["survey_score"] == 100
        assert scores[0]["composite_score"] == pytest.approx(42.0)

        status = c.get(f"/api/campaigns/{ids['campaign']}/scores/status").json()
        assert status["ready_to_publish"] is True

    def test_draft_campaign_rejected(self, seeded_client):
        c, TestSession, ids = seeded_client
        session = TestSession()
        session.get(Campaign, ids["campaign"]).status = "DRAFT"
        session.commit()
        session.close()
        resp = c.post(f"/api/campaigns/{ids['campaign']}/scores/calculate-survey")
        assert resp.status_code == 400
        assert resp.json()["field"] == "status"

    def test_segment_score_out_of_range(self, seeded_client):
        c, _, _ = seeded_client
        resp = c.put("/api/segment-scores/oncology", json={"rows": [{"npi": "1234567890", "score_conference": 150}]})
        assert resp.status_code == 400
        assert resp.json()["field"] == "score_conference"


class TestWeightEndpoints:
    def test_get_defaults(self, seeded_client):
        c, _, ids = seeded_client
        resp = c.get(f"/api/campaigns/{ids['campaign']}/score-config")
        assert resp.status_code == 200
        assert resp.json()["weight_survey"] == 25

    def test_bad_sum(self, seeded_client):
        c, _, ids = seeded_client
        body = {**DEFAULT_WEIGHTS.as_dict(), "weight_survey": 25.5}
        resp = c.put(f"/api/campaigns/{ids['campaign']}/score-config", json=body)
        assert resp.status_code == 400
        assert resp.json()["error"] == "ValidationError"

    def test_out_of_range_rejected_by_schema(self, seeded_client):
        c, _, ids = seeded_client
        body = {**DEFAULT_WEIGHTS.as_dict(), "weight_survey": -1}
        resp = c.put(f"/api/campaigns/{ids['campaign']}/score-config", json=body)
        assert resp.status_code == 422

    def test_update_and_reset(self, seeded_client):
        c, _, ids = seeded_client
        body = {**DEFAULT_WEIGHTS.as_dict(), "weight_survey": 24.99}
        resp = c.put(f"/api/campaigns/{ids['campaign']}/score-config", json=body)
        assert resp.status_code == 200
        assert resp.json()["weight_survey"] == pytest.approx(24.99)
        assert resp.json()["recalculation"] is not None
        resp = c.post(f"/api/campaigns/{ids['campaign']}/score-config/reset")
        assert resp.json()["weight_survey"] == 25


class TestSessionScope:
    def test_rolls_back_on_error(self, tmp_path):
        from kolrank.db import init_db, session_scope

        init_db(tmp_path / "scope.db")
        with pytest.raises(RuntimeError):
            with session_scope() as session:
                session.add(Campaign(name="Oncology KOL 2026", disease_area="oncology", status="ACTIVE"))
                session.flush()
                raise RuntimeError("tool failed")
        with session_scope() as session:
            assert session.execute(select(Campaign)).scalars().all() == []
