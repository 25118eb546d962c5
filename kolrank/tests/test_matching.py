"""Tests for the candidate suggestion pipeline."""
from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from kolrank.errors import NotFoundError
from kolrank.matching import (
    MAX_SIMILAR_SCORE,
    MAX_SUGGESTIONS,
    Candidate,
    ContextBoostStage,
    MatchContext,
    NameQuery,
    confidence_band,
    name_similarity,
    phonetic_agreement,
    rank_candidates,
    suggest_for_name,
    suggest_matches,
)
from kolrank.models import Base, Campaign, Nomination, Person, SurveyResponse
from kolrank.registry import add_alias, create_person

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def session():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    sess = sessionmaker(bind=eng, autoflush=False, expire_on_commit=False)()
    try:
        yield sess
    finally:
        sess.close()


def _person(session: Session, npi: str, first: str, last: str, **extra) -> Person:
    person = create_person(session, {"npi": npi, "first_name": first, "last_name": last, **extra})
    session.commit()
    return person


def _transient(npi: str, first: str, last: str, **extra) -> Person:
    return Person(npi=npi, first_name=first, last_name=last, **extra)


# ---------------------------------------------------------------------------
# Scoring primitives
# ---------------------------------------------------------------------------


class TestPrimitives:
    def test_bands(self):
        assert confidence_band(100) == "high"
        assert confidence_band(90) == "high"
        assert confidence_band(89.9) == "medium"
        assert confidence_band(70) == "medium"
        assert confidence_band(69.9) == "low"

    def test_phonetic_agreement_symmetric(self):
        left, right = ("jon", "smth"), ("jonathan", "smith", "md")
        assert phonetic_agreement(left, right) == phonetic_agreement(right, left)

    def test_phonetic_agreement_initials(self):
        assert phonetic_agreement(("j", "smith"), ("john", "smith")) == 1.0

    def test_phonetic_agreement_empty(self):
        assert phonetic_agreement((), ("john",)) == 0.0

    def test_similarity_bounds(self):
        query = NameQuery.parse("Jon Smth")
        score = name_similarity(query, ["jon", "smith"])
        assert 90 <= score <= 100
        assert name_similarity(query, []) == 0.0


# ---------------------------------------------------------------------------
# Ranking over in-memory persons
# ---------------------------------------------------------------------------


class TestRankCandidates:
    def test_exact_canonical(self):
        person = _transient("1000000001", "John", "Smith")
        [top] = rank_candidates("Dr. Smith, John", [person])
        assert top.score == 100
        assert top.match_type == "exact"
        assert top.is_name_match is True
        assert top.band == "high"

    def test_similar_never_reaches_100(self):
        person = _transient("1000000001", "John", "Smith")
        [top] = rank_candidates("Jon Smith", [person])
        assert top.match_type == "similar"
        assert top.score <= MAX_SIMILAR_SCORE

    def test_below_floor_dropped(self):
        person = _transient("1000000001", "John", "Smith")
        assert rank_candidates("Xavier Quarterman", [person]) == []

    def test_empty_name(self):
        assert rank_candidates("  ", [_transient("1000000001", "John", "Smith")]) == []

    def test_order_score_then_completeness_then_npi(self):
        bare = _transient("3000000000", "John", "Smith")
        full = _transient("9000000000", "John", "Smith", specialty="Oncology", state="NY")
        low_npi = _transient("1000000000", "John", "Smith")
        ranked = rank_candidates("John Smith", [bare, full, low_npi])
        assert [s.person.npi for s in ranked] == ["9000000000", "1000000000", "3000000000"]
        assert all(s.score == 100 for s in ranked)

    def test_limit(self):
        persons = [_transient(f"10000000{i:02d}", "John", "Smith") for i in range(MAX_SUGGESTIONS + 5)]
        assert len(rank_candidates("John Smith", persons)) == MAX_SUGGESTIONS

    def test_scores_sorted_descending(self):
        persons = [
            _transient("1000000001", "John", "Smith"),
            _transient("1000000002", "Joan", "Smithers"),
            _transient("1000000003", "Jon", "Smyth"),
        ]
        scores = [s.score for s in rank_candidates("John Smith", persons)]
        assert scores == sorted(scores, reverse=True)
        assert all(40 <= s <= 100 for s in scores)


class TestContextBoost:
    def test_boost_capped_at_99(self):
        person = _transient("1000000001", "John", "Smith", specialty="Oncology", state="NY")
        cand = Candidate(person=person, score=97.0)
        ContextBoostStage().apply(NameQuery.parse("Jon Smith"), [cand], MatchContext("oncology", "ny"))
        assert cand.score == 99.0

    def test_exact_untouched(self):
        person = _transient("1000000001", "John", "Smith", specialty="Oncology")
        cand = Candidate(person=person, score=100.0, match_type="exact", exact=True)
        ContextBoostStage().apply(NameQuery.parse("John Smith"), [cand], MatchContext("Oncology", None))
        assert cand.score == 100.0

    def test_specialty_and_state(self):
        person = _transient("1000000001", "John", "Smith", specialty="Oncology", state="NY")
        cand = Candidate(person=person, score=60.0)
        ContextBoostStage().apply(NameQuery.parse("J Smith"), [cand], MatchContext("Oncology", "NY"))
        assert cand.score == 65.0

    def test_no_context(self):
        cand = Candidate(person=_transient("1000000001", "John", "Smith"), score=60.0)
        ContextBoostStage().apply(NameQuery.parse("J Smith"), [cand], None)
        assert cand.score == 60.0


# ---------------------------------------------------------------------------
# Registry-backed suggestions
# ---------------------------------------------------------------------------


class TestSuggestions:
    def test_alias_exact(self, session):
        person = _person(session, "1234567890", "Jonathan", "Smith")
        add_alias(session, person.id, "Jon Smith")
        session.commit()
        [top] = suggest_for_name(session, "jon smith")
        assert top.person.id == person.id
        assert top.score == 100
        assert top.match_type == "alias"
        assert top.is_name_match is False

    def test_misspelling_via_alias_is_high_confidence(self, session):
        person = _person(session, "1234567890", "Jonathan", "Smith")
        add_alias(session, person.id, "Jon Smith")
        session.commit()
        top = suggest_for_name(session, "Jon Smth")[0]
        assert top.person.id == person.id
        assert 90 <= top.score <= 99
        assert top.match_type == "similar"

    def test_suggest_matches_uses_nominator_context(self, session):
        nominator = _person(session, "5555555555", "Nora", "Nominator", specialty="Cardiology", state="CA")
        near = _person(session, "1000000001", "Maria", "Gonzales", specialty="Cardiology", state="CA")
        far = _person(session, "1000000002", "Mario", "Gonzalez")
        campaign = Campaign(name="Cardio 2026", disease_area="cardiology", status="ACTIVE")
        session.add(campaign)
        session.flush()
        response = SurveyResponse(campaign_id=campaign.id, respondent_person_id=nominator.id)
        session.add(response)
        session.flush()
        nomination = Nomination(
            response_id=response.id, nomination_type="NATIONAL_KOL",
            raw_name_entered="Marie Gonzalez", nominator_person_id=nominator.id,
        )
        session.add(nomination)
        session.commit()

        ranked = suggest_matches(session, nomination.id)
        boosted = {s.person.id: s.score for s in ranked}
        plain = {s.person.id: s.score for s in suggest_for_name(session, "Marie Gonzalez")}
        assert boosted[near.id] == min(99.0, plain[near.id] + 5)
        assert boosted[far.id] == plain[far.id]

    def test_unknown_nomination(self, session):
        with pytest.raises(NotFoundError):
            suggest_matches(session, 404)

    def test_exact_match_in_crowded_surname(self, session):
        for i in range(250):
            create_person(session, {"npi": f"{1000000000 + i}", "first_name": f"Alan{i}", "last_name": "Smith"})
        target = create_person(session, {"npi": "9999999999", "first_name": "Zed", "last_name": "Smith"})
        add_alias(session, target.id, "Zeb Smith")
        session.commit()

        top = suggest_for_name(session, "Zed Smith")[0]
        assert (top.person.npi, top.score, top.match_type) == ("9999999999", 100, "exact")
        top = suggest_for_name(session, "Zeb Smith")[0]
        assert (top.person.npi, top.score, top.match_type) == ("9999999999", 100, "alias")

    def test_read_only(self, session):
        _person(session, "1234567890", "John", "Smith")
        suggest_for_name(session, "John Smith")
        assert not session.new and not session.dirty
