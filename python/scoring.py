"""
Matcher / Scorer

Per-field similarity measures and the weighted composite score.

Field measures:
- name: best alias of max(Jaro-Winkler, best-pairs token Jaro-Winkler,
  token sort ratio)
- address: token set overlap
- dob: partial-date comparison with year distance decay
- nationality, document: exact canonical comparison

All scores are in [0, 1]. Scoring never raises and never mutates its inputs;
anything unscoreable scores 0.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Sequence, Tuple

from rapidfuzz import fuzz
from rapidfuzz.distance import JaroWinkler

from name_normalizer import (
    FIELD_ADDRESS,
    FIELD_DOB,
    FIELD_DOCUMENT,
    FIELD_NAME,
    FIELD_NATIONALITY,
    normalize_text,
    parse_partial_date,
)
from watchlist_models import FieldValue, NormalizedProfile, WatchlistEntity

logger = logging.getLogger(__name__)

DOB_YEAR_PENALTY = 0.2
DOB_SAME_YEAR_SCORE = 0.8
DOB_TRANSPOSED_SCORE = 0.9


def _clamp(score: float) -> float:
    return max(0.0, min(1.0, score))


def jaro_winkler(a: str, b: str) -> float:
    """Jaro-Winkler similarity of two canonical strings"""
    if not a or not b:
        return 0.0
    return _clamp(JaroWinkler.normalized_similarity(a, b))


def best_pairs_score(query: str, candidate: str) -> float:
    """Token-level Jaro-Winkler over the best one-to-one token pairing

    Each query token is paired with at most one candidate token, greedily by
    similarity. The query-side coverage (weighted by token length) is
    discounted by how much of the candidate went unmatched, so a short
    query does not fully match a much longer name.
    """
    query_tokens = query.split()
    candidate_tokens = candidate.split()
    if not query_tokens or not candidate_tokens:
        return 0.0

    pairs = sorted(
        ((jaro_winkler(q, c), qi, ci)
         for qi, q in enumerate(query_tokens)
         for ci, c in enumerate(candidate_tokens)),
        key=lambda p: (-p[0], p[1], p[2])
    )

    used_query, used_candidate = set(), set()
    matched = 0.0
    matched_candidate_len = 0
    for score, qi, ci in pairs:
        if score <= 0 or qi in used_query or ci in used_candidate:
            continue
        used_query.add(qi)
        used_candidate.add(ci)
        matched += len(query_tokens[qi]) * score
        matched_candidate_len += len(candidate_tokens[ci])

    query_coverage = matched / sum(len(t) for t in query_tokens)
    candidate_coverage = matched_candidate_len / sum(len(t) for t in candidate_tokens)
    return _clamp(query_coverage * (0.5 + 0.5 * candidate_coverage))


def name_similarity(query: str, candidate: str) -> float:
    """Similarity of two canonical names"""
    if not query or not candidate:
        return 0.0
    if query == candidate:
        return 1.0
    return _clamp(max(
        jaro_winkler(query, candidate),
        best_pairs_score(query, candidate),
        fuzz.token_sort_ratio(query, candidate) / 100.0,
    ))


def best_name_match(query: str, names: Sequence[FieldValue]) -> Tuple[float, Optional[FieldValue]]:
    """Best-scoring name among the primary name and aliases"""
    best_score, best_name = 0.0, None
    for name in names:
        score = name_similarity(query, name.canonical)
        if score > best_score:
            best_score, best_name = score, name
            if score >= 1.0:
                break
    return best_score, best_name


def address_similarity(query: str, candidate: str) -> float:
    if not query or not candidate:
        return 0.0
    return _clamp(fuzz.token_set_ratio(query, candidate) / 100.0)


def dob_similarity(query: str, candidate: str) -> float:
    """Compare two canonical partial dates

    Components missing on either side are not compared. Same year with a
    month/day mismatch scores 0.8 (0.9 when day and month look swapped);
    each year of difference costs 0.2.
    """
    left, right = parse_partial_date(query), parse_partial_date(candidate)
    if left is None or right is None:
        return 0.0
    (y1, m1, d1), (y2, m2, d2) = left, right

    if y1 != y2:
        return _clamp(1.0 - abs(y1 - y2) * DOB_YEAR_PENALTY)
    if m1 is None or m2 is None:
        return 1.0
    if m1 == m2 and (d1 is None or d2 is None or d1 == d2):
        return 1.0
    if d1 is not None and d2 is not None and m1 == d2 and d1 == m2:
        return DOB_TRANSPOSED_SCORE
    return DOB_SAME_YEAR_SCORE


def exact_similarity(query: str, candidate: str) -> float:
    if not query or not candidate:
        return 0.0
    return 1.0 if query == candidate else 0.0


def document_types_compatible(query_type: str, doc_type: str) -> bool:
    """Whether a canonical query document type can describe a listed document

    Blank and "unknown" types are compatible with anything; otherwise one
    canonical type must contain the other ("passport" and "passport no").
    """
    listed = normalize_text(doc_type)
    if not query_type or not listed or listed == 'unknown':
        return True
    return query_type in listed or listed in query_type


_MEASURES = {
    FIELD_NAME: name_similarity,
    FIELD_ADDRESS: address_similarity,
    FIELD_DOB: dob_similarity,
    FIELD_NATIONALITY: exact_similarity,
    FIELD_DOCUMENT: exact_similarity,
}


def score_field(field_name: str, query_value: str, entity_values: Sequence[str]) -> float:
    """Best similarity between a query value and any of an entity's values

    Returns 0 for unknown fields or empty input.
    """
    measure = _MEASURES.get(field_name)
    if measure is None or not query_value or not isinstance(query_value, str):
        return 0.0
    best = 0.0
    for value in entity_values:
        if isinstance(value, str):
            best = max(best, measure(query_value, value))
    return best


def composite(field_scores: Mapping[str, float], weights: Mapping[str, float]) -> float:
    """Weighted mean of the field scores that are present

    Weights are renormalized over the fields in ``field_scores`` so that
    missing data on either side does not drag the score down.
    """
    total = 0.0
    total_weight = 0.0
    for field_name, score in field_scores.items():
        weight = weights.get(field_name, 0.0)
        if weight <= 0:
            continue
        total += weight * _clamp(score)
        total_weight += weight
    if total_weight <= 0:
        return 0.0
    return _clamp(total / total_weight)


@dataclass(frozen=True)
class EntityScore:
    """Field scores and composite score of one candidate"""
    field_scores: Dict[str, float] = field(default_factory=dict)
    composite_score: float = 0.0
    matched_name: Optional[FieldValue] = None


def score_entity(profile: NormalizedProfile, entity: WatchlistEntity,
                 weights: Mapping[str, float]) -> EntityScore:
    """Score a candidate against a normalized profile

    Only fields set on both the profile and the entity take part. A document
    number only counts against identifications of a compatible type.
    """
    field_scores: Dict[str, float] = {}

    name_score, matched_name = best_name_match(profile.name, entity.names)
    field_scores[FIELD_NAME] = name_score

    if profile.document_number and entity.identifications:
        field_scores[FIELD_DOCUMENT] = score_field(
            FIELD_DOCUMENT, profile.document_number,
            [doc.canonical_number for doc in entity.identifications
             if document_types_compatible(profile.document_type, doc.doc_type)]
        )
    if profile.date_of_birth and entity.dates_of_birth:
        field_scores[FIELD_DOB] = score_field(
            FIELD_DOB, profile.date_of_birth, [d.canonical for d in entity.dates_of_birth]
        )
    if profile.nationality and entity.nationalities:
        field_scores[FIELD_NATIONALITY] = score_field(
            FIELD_NATIONALITY, profile.nationality, [n.canonical for n in entity.nationalities]
        )
    if profile.address and entity.addresses:
        field_scores[FIELD_ADDRESS] = score_field(
            FIELD_ADDRESS, profile.address, [a.canonical for a in entity.addresses]
        )

    return EntityScore(
        field_scores=field_scores,
        composite_score=composite(field_scores, weights),
        matched_name=matched_name
    )
