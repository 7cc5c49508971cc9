"""Tests for council/code_oracle.py."""

import pytest

from council.code_oracle import MAX_BLOCK_BYTES, CodeOracle

PY_ADD = "```python\ndef add(a, b):\n    if a is None:\n        return b\n    return a + b\n```"
PY_ADD_RENAMED = "```python\ndef add(x, y):\n    if x is None:\n        return y\n    return x + y\n```"
PY_OTHER = "```python\nclass Stack:\n    pass\n\ndef push(item):\n    items.append(item)\n```"


@pytest.fixture
def oracle() -> CodeOracle:
    return CodeOracle()


def test_detects_fenced_code(oracle):
    assert oracle.detect_code(PY_ADD)


def test_prose_is_not_code(oracle):
    assert not oracle.detect_code("Use YAML for configuration files.")
    assert not oracle.detect_code("")


def test_unfenced_code_detected_by_keywords(oracle):
    assert oracle.detect_code("def f(x):\n    return x if x else None")


def test_same_signature_scores_high(oracle):
    assert oracle.calculate_similarity(PY_ADD, PY_ADD_RENAMED) >= 0.9


def test_different_code_scores_lower(oracle):
    same = oracle.calculate_similarity(PY_ADD, PY_ADD_RENAMED)
    different = oracle.calculate_similarity(PY_ADD, PY_OTHER)
    assert different < same


def test_similarity_zero_without_code(oracle):
    assert oracle.calculate_similarity(PY_ADD, "no code here") == 0.0


def test_validate_balanced_code(oracle):
    assert oracle.validate_code(PY_ADD) == pytest.approx(1.0)


def test_validate_unbalanced_code_penalized(oracle):
    broken = "```js\nfunction f(a {\n  return a;\n```"
    assert oracle.validate_code(broken) < 1.0
    assert oracle.validate_code(broken) >= 0.1


def test_validate_rewards_error_handling(oracle):
    code = "```python\ndef f():\n    try:\n        return 1\n    except ValueError:\n        raise\n```"
    assert oracle.validate_code(code) > 1.0


def test_validate_no_code_is_zero(oracle):
    assert oracle.validate_code("plain words") == 0.0


def test_blocks_truncated_to_limit(oracle):
    huge = "```\n" + "x = 1\n" * (MAX_BLOCK_BYTES // 4) + "```"
    blocks = oracle.extract_code(huge)
    assert len(blocks) == 1
    assert len(blocks[0]) == MAX_BLOCK_BYTES


def test_prose_with_keywords_and_punctuation_is_not_code(oracle):
    assert not oracle.detect_code("Use Postgres if you need joins; for analytics (OLAP): pick ClickHouse.")
    assert not oracle.detect_code("Pick (a) if cheap; for scale: option b) works.")


def test_fenced_code_check(oracle):
    assert oracle.has_fenced_code(PY_ADD)
    assert not oracle.has_fenced_code("def f(x):\n    return x if x else None")


def test_blocks_without_signatures_score_neutral_signature_part(oracle):
    # 0.7 * 0.5 neutral signatures + 0.2 flow + 0.1 identifiers
    assert oracle.calculate_similarity("```\nx = 1\n```", "```\ny = 2\n```") == pytest.approx(0.65)
