"""Candidate suggestion engine: rank registry persons for a free-text name.

Architecture
------------
A raw entered name is normalized once into a :class:`NameQuery` and then
run through a fixed pipeline of named stages.  Every stage reads and writes
the same list of :class:`Candidate` working records:

- **ExactMatchStage** -- order-insensitive equality with the canonical name
  (``exact``) or with any alias (``alias``).  Sets the score to exactly 100.
- **SimilarityStage** -- for everything that is not exact, the best blend
  over all name variants of token-set overlap (35%), Jaro-Winkler string
  similarity (40%) and symmetric Soundex agreement (25%).  Bounded to
  [0, 99] so only exact matches can reach 100.
- **ContextBoostStage** -- adds up to ``MAX_BOOST`` points when the
  candidate shares the nominator's specialty and/or state.  Never touches
  exact matches and never lifts a score above 99.

After the stages, candidates under ``SUGGESTION_FLOOR`` are dropped and the
rest are ordered by score, then profile completeness, then NPI, and capped
at ``MAX_SUGGESTIONS``.

The engine is read-only: it loads persons, never writes, and holds no locks.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from rapidfuzz import fuzz
from rapidfuzz.distance import JaroWinkler
from sqlalchemy.orm import Session

from kolrank.errors import NotFoundError
from kolrank.models import Nomination, Person
from kolrank.phonetic import soundex
from kolrank.registry import find_by_fingerprint, person_summary
from kolrank.utils import name_tokens

log = logging.getLogger(__name__)

EXACT_SCORE = 100.0
MAX_SIMILAR_SCORE = 99.0
SUGGESTION_FLOOR = 40.0
MAX_SUGGESTIONS = 10

HIGH_CONFIDENCE = 90.0
MEDIUM_CONFIDENCE = 70.0

TOKEN_WEIGHT = 0.35
STRING_WEIGHT = 0.40
PHONETIC_WEIGHT = 0.25

SPECIALTY_BOOST = 3.0
REGION_BOOST = 2.0
MAX_BOOST = SPECIALTY_BOOST + REGION_BOOST


def confidence_band(score: float) -> str:
    if score >= HIGH_CONFIDENCE:
        return "high"
    if score >= MEDIUM_CONFIDENCE:
        return "medium"
    return "low"


# ---------------------------------------------------------------------------
# Working types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NameQuery:
    raw: str
    tokens: tuple[str, ...]

    @classmethod
    def parse(cls, raw: str) -> NameQuery:
        return cls(raw=raw, tokens=tuple(name_tokens(raw)))

    @property
    def text(self) -> str:
        return " ".join(self.tokens)

    @property
    def key(self) -> str:
        return " ".join(sorted(self.tokens))


@dataclass(frozen=True)
class MatchContext:
    """Nominator attributes used for contextual boosts."""
    specialty: str | None = None
    state: str | None = None


@dataclass
class Candidate:
    person: Person
    score: float = 0.0
    match_type: str = "similar"
    is_name_match: bool = False
    exact: bool = False


@dataclass(frozen=True)
class Suggestion:
    person: Person
    score: float
    match_type: str
    is_name_match: bool

    @property
    def band(self) -> str:
        return confidence_band(self.score)


def _canonical_tokens(person: Person) -> list[str]:
    return name_tokens(f"{person.first_name} {person.last_name}")


def _completeness(person: Person) -> int:
    return int(bool(person.specialty)) + int(bool(person.city or person.state))


# ---------------------------------------------------------------------------
# Stages
# ---------------------------------------------------------------------------


class ExactMatchStage:
    name = "exact"

    def apply(self, query: NameQuery, candidates: list[Candidate], context: MatchContext | None) -> None:
        key = query.key
        for cand in candidates:
            if key == " ".join(sorted(_canonical_tokens(cand.person))):
                cand.score, cand.match_type, cand.is_name_match, cand.exact = EXACT_SCORE, "exact", True, True
            elif any(key == " ".join(sorted(name_tokens(a.alias_name))) for a in cand.person.aliases):
                cand.score, cand.match_type, cand.is_name_match, cand.exact = EXACT_SCORE, "alias", False, True


def phonetic_agreement(left: tuple[str, ...] | list[str], right: tuple[str, ...] | list[str]) -> float:
    """Symmetric share of tokens with a Soundex (or initial) counterpart, 0-1."""
    if not left or not right:
        return 0.0

    def covered(token: str, others) -> bool:
        if len(token) == 1:
            return any(o.startswith(token) for o in others)
        code = soundex(token)
        return any(len(o) > 1 and soundex(o) == code for o in others) or any(
            len(o) == 1 and token.startswith(o) for o in others
        )

    forward = sum(covered(t, right) for t in left) / len(left)
    backward = sum(covered(t, left) for t in right) / len(right)
    return (forward + backward) / 2


def name_similarity(query: NameQuery, variant: list[str]) -> float:
    """Blend of token, string and phonetic similarity on a 0-100 scale."""
    if not query.tokens or not variant:
        return 0.0
    text = " ".join(variant)
    key = " ".join(sorted(variant))
    token = fuzz.token_set_ratio(query.text, text)
    string = max(
        JaroWinkler.normalized_similarity(query.text, text),
        JaroWinkler.normalized_similarity(query.key, key),
    ) * 100
    phonetic = phonetic_agreement(query.tokens, variant) * 100
    return TOKEN_WEIGHT * token + STRING_WEIGHT * string + PHONETIC_WEIGHT * phonetic


class SimilarityStage:
    name = "similarity"

    def apply(self, query: NameQuery, candidates: list[Candidate], context: MatchContext | None) -> None:
        for cand in candidates:
            if cand.exact:
                continue
            canonical = _canonical_tokens(cand.person)
            best = max(
                name_similarity(query, canonical),
                name_similarity(query, canonical[-1:] + canonical[:-1]),
            )
            is_name_match = True
            for alias in cand.person.aliases:
                score = name_similarity(query, name_tokens(alias.alias_name))
                if score > best:
                    best, is_name_match = score, False
            cand.score = min(MAX_SIMILAR_SCORE, round(best, 1))
            cand.match_type = "similar"
            cand.is_name_match = is_name_match


class ContextBoostStage:
    name = "context_boost"

    def apply(self, query: NameQuery, candidates: list[Candidate], context: MatchContext | None) -> None:
        if context is None:
            return
        specialty = (context.specialty or "").strip().casefold()
        state = (context.state or "").strip().casefold()
        if not specialty and not state:
            return
        for cand in candidates:
            if cand.exact:
                continue
            boost = 0.0
            if specialty and (cand.person.specialty or "").strip().casefold() == specialty:
                boost += SPECIALTY_BOOST
            if state and (cand.person.state or "").strip().casefold() == state:
                boost += REGION_BOOST
            if boost:
                cand.score = min(MAX_SIMILAR_SCORE, cand.score + min(boost, MAX_BOOST))


DEFAULT_STAGES = (ExactMatchStage(), SimilarityStage(), ContextBoostStage())


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------


def rank_candidates(
    raw_name: str,
    persons: list[Person],
    context: MatchContext | None = None,
    stages=DEFAULT_STAGES,
    floor: float = SUGGESTION_FLOOR,
    limit: int = MAX_SUGGESTIONS,
) -> list[Suggestion]:
    """Score *persons* against *raw_name* and return the ranked shortlist."""
    query = NameQuery.parse(raw_name)
    if not query.tokens:
        return []

    candidates = [Candidate(person=p) for p in persons]
    for stage in stages:
        stage.apply(query, candidates, context)

    kept = [c for c in candidates if c.score >= floor]
    kept.sort(key=lambda c: (-c.score, -_completeness(c.person), c.person.npi))
    log.debug("Ranked %d of %d candidates for %r", len(kept), len(candidates), raw_name)
    return [
        Suggestion(person=c.person, score=c.score, match_type=c.match_type, is_name_match=c.is_name_match)
        for c in kept[:limit]
    ]


def suggest_for_name(session: Session, raw_name: str, context: MatchContext | None = None) -> list[Suggestion]:
    return rank_candidates(raw_name, find_by_fingerprint(session, raw_name), context)


def nomination_context(nomination: Nomination) -> MatchContext | None:
    nominator = nomination.nominator
    if nominator is None:
        return None
    return MatchContext(specialty=nominator.specialty, state=nominator.state)


def suggest_matches(session: Session, nomination_id: int) -> list[Suggestion]:
    """Ranked registry candidates for a nomination's raw entered name."""
    nomination = session.get(Nomination, nomination_id)
    if nomination is None:
        raise NotFoundError(f"Nomination {nomination_id} not found", entity_id=nomination_id)
    return suggest_for_name(session, nomination.raw_name_entered, nomination_context(nomination))


def suggestion_dict(suggestion: Suggestion) -> dict[str, Any]:
    return {
        "person": person_summary(suggestion.person),
        "score": suggestion.score,
        "match_type": suggestion.match_type,
        "is_name_match": suggestion.is_name_match,
        "band": suggestion.band,
    }
