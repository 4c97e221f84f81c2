"""
Tests for the shared name similarity function.
"""
from pantry_scanner.services.similarity import is_similar, name_similarity, normalize_for_matching, token_overlap


class TestNameSimilarity:
    """Tests for name_similarity score semantics."""

    def test_identical_after_normalization(self):
        assert name_similarity("Organic Milk!", "organic   milk") == 1.0

    def test_empty_scores_zero(self):
        assert name_similarity("", "Milk") == 0.0
        assert name_similarity("Milk", "") == 0.0

    def test_character_slip_scores_high(self):
        """OCR-style dropped letters still match."""
        assert name_similarity("BANANS", "BANANAS") >= 0.75

    def test_reordered_words_score_one(self):
        assert name_similarity("MILK ORGANIC", "ORGANIC MILK") == 1.0

    def test_unrelated_names_score_low(self):
        assert name_similarity("Whole Milk", "Paper Towels") < 0.5

    def test_score_in_unit_interval(self):
        score = name_similarity("Greek Yogurt", "Greek Yogurt Vanilla")
        assert 0.0 <= score <= 1.0

    def test_is_similar_threshold(self):
        assert is_similar("Bananas", "BANANAS")
        assert not is_similar("Bananas", "Apples")


class TestHelpers:
    """Tests for normalization and token overlap."""

    def test_normalize_for_matching(self):
        assert normalize_for_matching("  ORG. Milk-2% ") == "org milk 2"

    def test_token_overlap_jaccard(self):
        assert token_overlap("red apple", "green apple") == 1 / 3

    def test_token_overlap_empty(self):
        assert token_overlap("", "apple") == 0.0
