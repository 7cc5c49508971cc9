"""Tests for council/convergence.py."""

import math

import pytest

from council.convergence import ConvergenceDetector


@pytest.fixture
def detector() -> ConvergenceDetector:
    return ConvergenceDetector()


def test_insufficient_history(detector):
    trend = detector.analyze_trend([0.5])
    assert trend.direction == "stagnant"
    assert trend.recommendation == "Insufficient data to analyze trend"


def test_converging_history(detector):
    trend = detector.analyze_trend([0.4, 0.55, 0.7])
    assert trend.direction == "converging"
    assert trend.velocity == pytest.approx(0.15)
    assert trend.predicted_rounds == 1
    assert trend.deadlock_risk == "low"


def test_diverging_history(detector):
    assert detector.analyze_trend([0.8, 0.6, 0.4]).direction == "diverging"


def test_flat_window_is_deadlock(detector):
    assert detector.is_deadlocked([0.60, 0.605, 0.60])


def test_strictly_decreasing_window_is_deadlock(detector):
    assert detector.is_deadlocked([0.7, 0.6, 0.5])


def test_rising_step_rules_out_deadlock(detector):
    assert not detector.is_deadlocked([0.5, 0.6, 0.59])


def test_short_history_not_deadlocked(detector):
    assert not detector.is_deadlocked([0.5, 0.5])


def test_nan_entries_ignored(detector):
    assert detector.calculate_velocity([0.5, math.nan, 0.7]) == pytest.approx(0.2)


def test_deadlock_below_point_seven_is_high_risk(detector):
    trend = detector.analyze_trend([0.5, 0.5, 0.5])
    assert trend.deadlock_risk == "high"
    assert "human escalation" in trend.recommendation


def test_predict_rounds():
    assert ConvergenceDetector.predict_rounds_to_consensus(0.9, 0.1, 0.8) == 0
    assert ConvergenceDetector.predict_rounds_to_consensus(0.5, 0.0, 0.8) == math.inf
    assert ConvergenceDetector.predict_rounds_to_consensus(0.5, 0.1, 0.75) == 3
