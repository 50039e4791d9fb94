"""
Unit tests for field similarity and composite scoring
"""

import pytest
from pathlib import Path

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from record_builder import build_entity
from scoring import (
    address_similarity,
    best_name_match,
    best_pairs_score,
    composite,
    dob_similarity,
    document_types_compatible,
    exact_similarity,
    name_similarity,
    score_entity,
    score_field,
)
from watchlist_models import EntityType, FieldValue, NormalizedProfile

WEIGHTS = {'name': 0.40, 'document': 0.30, 'dob': 0.15, 'nationality': 0.10, 'address': 0.05}

NAMES = ["nicolas maduro moros", "felix b maduro", "john smith", "ocean star", "a", "владимир путин"]


class TestNameSimilarity:

    @pytest.mark.parametrize("name", NAMES)
    def test_self_similarity_is_one(self, name):
        assert name_similarity(name, name) == 1.0

    @pytest.mark.parametrize("left", NAMES)
    @pytest.mark.parametrize("right", NAMES)
    def test_bounds(self, left, right):
        assert 0.0 <= name_similarity(left, right) <= 1.0

    def test_empty_scores_zero(self):
        assert name_similarity("", "john smith") == 0.0
        assert name_similarity("john smith", "") == 0.0

    def test_word_order_insensitive(self):
        assert name_similarity("smith john", "john smith") == 1.0

    def test_partial_name_scores_high(self):
        assert name_similarity("nicolas maduro", "nicolas maduro moros") >= 0.9

    def test_different_first_name_scores_lower(self):
        individual = name_similarity("nicolas maduro", "nicolas maduro moros")
        organization = name_similarity("nicolas maduro", "felix b maduro")
        assert organization < individual
        assert organization < 0.85

    def test_best_pairs_penalizes_unmatched_candidate_tokens(self):
        full = best_pairs_score("john smith", "john smith")
        longer = best_pairs_score("john smith", "john william henry smith")
        assert full == 1.0
        assert longer < full

    def test_best_name_match_returns_alias(self):
        names = (FieldValue("MADURO MOROS, Nicolas", "nicolas maduro moros"),
                 FieldValue("MADURO, Nicolas", "nicolas maduro"))
        score, matched = best_name_match("nicolas maduro", names)
        assert score == 1.0
        assert matched.raw == "MADURO, Nicolas"

    def test_best_name_match_no_names(self):
        assert best_name_match("john", ()) == (0.0, None)


class TestFieldSimilarity:

    def test_dob_exact_and_partial(self):
        assert dob_similarity("1962-11-23", "1962-11-23") == 1.0
        assert dob_similarity("1962", "1962-11-23") == 1.0
        assert dob_similarity("1962-11", "1962-11-23") == 1.0

    def test_dob_year_distance(self):
        assert dob_similarity("1963-11-23", "1962-11-23") == pytest.approx(0.8)
        assert dob_similarity("1960", "1962") == pytest.approx(0.6)
        assert dob_similarity("1900", "1962") == 0.0

    def test_dob_same_year_mismatch(self):
        assert dob_similarity("1962-05-12", "1962-12-05") == pytest.approx(0.9)
        assert dob_similarity("1962-01-01", "1962-11-23") == pytest.approx(0.8)

    def test_dob_unparseable(self):
        assert dob_similarity("", "1962") == 0.0
        assert dob_similarity("garbage", "1962") == 0.0

    def test_exact_similarity(self):
        assert exact_similarity("AB123", "AB123") == 1.0
        assert exact_similarity("AB123", "AB124") == 0.0
        assert exact_similarity("", "") == 0.0

    def test_address_similarity(self):
        assert address_similarity("caracas venezuela", "caracas venezuela") == 1.0
        assert address_similarity("caracas", "caracas venezuela") == 1.0
        assert address_similarity("havana cuba", "panama city panama") < 0.6

    def test_score_field_picks_best_value(self):
        assert score_field('document', 'AB123', ['XX1', 'AB123']) == 1.0
        assert score_field('dob', '1962', ['1950', '1961']) == pytest.approx(0.8)

    def test_score_field_unknown_or_bad_input(self):
        assert score_field('shoe_size', '42', ['42']) == 0.0
        assert score_field('document', None, ['AB123']) == 0.0
        assert score_field('document', 'AB123', [None, 12]) == 0.0


class TestComposite:

    def test_weighted_mean_of_present_fields(self):
        assert composite({'name': 1.0}, WEIGHTS) == 1.0
        assert composite({'name': 1.0, 'document': 0.0}, WEIGHTS) == pytest.approx(0.4 / 0.7)

    def test_empty_and_unweighted(self):
        assert composite({}, WEIGHTS) == 0.0
        assert composite({'shoe_size': 1.0}, WEIGHTS) == 0.0

    def test_bounds(self):
        assert composite({'name': 1.5, 'dob': -1.0}, WEIGHTS) <= 1.0
        assert composite({'name': -0.5}, WEIGHTS) == 0.0

    @pytest.mark.parametrize("field_name", ['name', 'document', 'dob', 'nationality', 'address'])
    def test_monotonic_in_each_field(self, field_name):
        base = {'name': 0.7, 'document': 0.5, 'dob': 0.5, 'nationality': 0.5, 'address': 0.5}
        improved = dict(base)
        improved[field_name] = 0.9
        assert composite(improved, WEIGHTS) >= composite(base, WEIGHTS)


class TestScoreEntity:

    @pytest.fixture
    def maduro(self, sample_records):
        return build_entity(sample_records[0], 'ofac')

    def test_name_only(self, maduro):
        profile = NormalizedProfile(name="nicolas maduro", raw_name="Nicolas Maduro")
        scored = score_entity(profile, maduro, WEIGHTS)
        assert set(scored.field_scores) == {'name'}
        assert scored.composite_score == 1.0
        assert scored.matched_name.raw == "MADURO, Nicolas"

    def test_all_fields(self, maduro):
        profile = NormalizedProfile(
            name="nicolas maduro moros", raw_name="Nicolas Maduro Moros",
            entity_type=EntityType.INDIVIDUAL,
            address="caracas", date_of_birth="1962-11-23",
            nationality="venezuela", document_number="5892464"
        )
        scored = score_entity(profile, maduro, WEIGHTS)
        assert set(scored.field_scores) == {'name', 'document', 'dob', 'nationality', 'address'}
        assert scored.composite_score == pytest.approx(1.0)

    def test_conflicting_fields_lower_the_score(self, maduro):
        matching = NormalizedProfile(name="nicolas maduro", raw_name="x", nationality="venezuela")
        conflicting = NormalizedProfile(name="nicolas maduro", raw_name="x", nationality="cuba")
        assert (score_entity(conflicting, maduro, WEIGHTS).composite_score
                < score_entity(matching, maduro, WEIGHTS).composite_score)

    def test_fields_missing_on_entity_are_skipped(self, sample_records):
        felix = build_entity(sample_records[1], 'ofac')
        profile = NormalizedProfile(name="felix b maduro", raw_name="x", date_of_birth="1962")
        scored = score_entity(profile, felix, WEIGHTS)
        assert 'dob' not in scored.field_scores
        assert scored.composite_score == 1.0

    def test_document_type_narrows_document_match(self, maduro):
        same_type = NormalizedProfile(name="nicolas maduro", raw_name="x",
                                      document_number="5892464", document_type="cedula")
        other_type = NormalizedProfile(name="nicolas maduro", raw_name="x",
                                       document_number="5892464", document_type="passport")
        untyped = NormalizedProfile(name="nicolas maduro", raw_name="x", document_number="5892464")

        assert score_entity(same_type, maduro, WEIGHTS).field_scores['document'] == 1.0
        assert score_entity(untyped, maduro, WEIGHTS).field_scores['document'] == 1.0
        assert score_entity(other_type, maduro, WEIGHTS).field_scores['document'] == 0.0


class TestDocumentTypes:

    @pytest.mark.parametrize("query_type,doc_type,expected", [
        ("passport", "Passport", True),
        ("passport", "Passport No.", True),
        ("national id", "National ID", True),
        ("cedula no", "Cedula", True),
        ("", "Passport", True),
        ("passport", "Unknown", True),
        ("passport", "", True),
        ("passport", "Cedula No.", False),
        ("imo", "Passport", False),
    ])
    def test_compatibility(self, query_type, doc_type, expected):
        assert document_types_compatible(query_type, doc_type) is expected
