"""Tests for council/similarity.py."""

import pytest

from council.similarity import agreement_score, average_pairwise, similarity_matrix, tokenize


def test_tokenize_lowercases():
    assert tokenize("The Answer, is 42!") == ["the", "answer", "is", "42"]


def test_identical_texts_score_one():
    assert agreement_score(["The answer is 42"] * 3) == pytest.approx(1.0)


def test_single_text_scores_one():
    assert agreement_score(["anything"]) == 1.0
    assert agreement_score([]) == 1.0


def test_disjoint_texts_score_zero():
    assert agreement_score(["apples oranges", "trains planes"]) == 0.0


def test_matrix_is_symmetric_with_unit_diagonal():
    matrix = similarity_matrix(["use yaml files", "use json files", "prefer toml"])
    for i in range(3):
        assert matrix[i][i] == 1.0
        for j in range(3):
            assert matrix[i][j] == pytest.approx(matrix[j][i])
            assert 0.0 <= matrix[i][j] <= 1.0


def test_untokenizable_texts_compare_exactly():
    matrix = similarity_matrix(["!!!", "!!!", "???"])
    assert matrix[0][1] == 1.0
    assert matrix[0][2] == 0.0


def test_partial_overlap_between_bounds():
    score = agreement_score(["use yaml for config", "use json for config"])
    assert 0.0 < score < 1.0


def test_average_pairwise_upper_triangle():
    assert average_pairwise([[1.0, 0.5, 0.0], [0.5, 1.0, 1.0], [0.0, 1.0, 1.0]]) == pytest.approx(0.5)
