"""Convergence trend analysis and deadlock detection over similarity history."""

import math
from dataclasses import dataclass
from typing import Literal

Direction = Literal["converging", "diverging", "stagnant"]
Risk = Literal["low", "medium", "high"]

DEFAULT_WINDOW_SIZE = 3
# Per-round similarity change below this counts as no movement
DEADLOCK_DELTA = 0.01
_TREND_TARGET = 0.8


@dataclass
class ConvergenceTrend:
    direction: Direction
    velocity: float
    predicted_rounds: float
    deadlock_risk: Risk
    recommendation: str


def _valid(history: list[float]) -> list[float]:
    return [v for v in history if not math.isnan(v) and math.isfinite(v)]


class ConvergenceDetector:
    """Classify a similarity progression as converging, diverging or stuck."""

    def __init__(self, window_size: int = DEFAULT_WINDOW_SIZE, target: float = _TREND_TARGET) -> None:
        self.window_size = window_size
        self.target = target

    def analyze_trend(self, history: list[float]) -> ConvergenceTrend:
        if len(_valid(history)) < 2:
            return ConvergenceTrend(
                direction="stagnant",
                velocity=0.0,
                predicted_rounds=0,
                deadlock_risk="low",
                recommendation="Insufficient data to analyze trend",
            )

        velocity = self.calculate_velocity(history)
        direction = self._direction(history, velocity)
        risk = self._deadlock_risk(history)
        predicted = self.predict_rounds_to_consensus(_valid(history)[-1], velocity, self.target)
        return ConvergenceTrend(
            direction=direction,
            velocity=velocity,
            predicted_rounds=predicted,
            deadlock_risk=risk,
            recommendation=self._recommend(direction, risk, velocity),
        )

    def is_deadlocked(self, history: list[float], window_size: int | None = None) -> bool:
        """True when the recent window is flat or strictly decreasing.

        Any step that rises by more than ``DEADLOCK_DELTA`` rules out deadlock.
        """
        window = window_size or self.window_size
        valid = _valid(history)
        if len(valid) < window:
            return False

        recent = valid[-window:]
        flat = True
        decreasing = True
        for prev, cur in zip(recent, recent[1:]):
            change = cur - prev
            if change > DEADLOCK_DELTA:
                return False
            if abs(change) > DEADLOCK_DELTA:
                flat = False
            if change >= 0:
                decreasing = False
        return flat or decreasing

    def calculate_velocity(self, history: list[float]) -> float:
        """Average change per round."""
        valid = _valid(history)
        if len(valid) < 2:
            return 0.0
        return (valid[-1] - valid[0]) / (len(valid) - 1)

    @staticmethod
    def predict_rounds_to_consensus(current: float, velocity: float, threshold: float) -> float:
        if current >= threshold:
            return 0
        if velocity <= 0:
            return math.inf
        return max(0, math.ceil((threshold - current) / velocity))

    def _direction(self, history: list[float], velocity: float) -> Direction:
        valid = _valid(history)
        total_change = valid[-1] - valid[0]
        if total_change > DEADLOCK_DELTA:
            return "converging"
        if total_change < -DEADLOCK_DELTA:
            return "diverging"
        if abs(velocity) < DEADLOCK_DELTA:
            return "stagnant"
        return "converging" if velocity > 0 else "diverging"

    def _deadlock_risk(self, history: list[float]) -> Risk:
        valid = _valid(history)
        if len(valid) < self.window_size:
            return "low"
        deadlocked = self.is_deadlocked(valid)
        velocity = self.calculate_velocity(valid)
        if deadlocked and valid[-1] < 0.7:
            return "high"
        if deadlocked or velocity < DEADLOCK_DELTA:
            return "medium"
        return "low"

    @staticmethod
    def _recommend(direction: Direction, risk: Risk, velocity: float) -> str:
        if risk == "high":
            return (
                "High deadlock risk detected. Consider modifying prompts to emphasize "
                "common ground or invoking human escalation."
            )
        if risk == "medium":
            return "Moderate deadlock risk. Consider adjusting negotiation prompts to focus on areas of agreement."
        if direction == "diverging":
            return "Responses are diverging. Consider more structured prompts or fewer negotiation rounds."
        if direction == "stagnant":
            return "Progress has stalled. Consider providing more specific guidance or examples in prompts."
        if velocity > 0.05:
            return "Good convergence progress. Continue current approach."
        return "Steady progress toward consensus."
