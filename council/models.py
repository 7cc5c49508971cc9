"""Dataclasses for council requests, exchanges and decisions. No logic beyond small helpers."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal

Confidence = Literal["high", "medium", "low"]


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    backoff_multiplier: float = 2.0
    retryable_errors: tuple[str, ...] = ("RATE_LIMIT", "TIMEOUT", "SERVICE_UNAVAILABLE")


@dataclass(frozen=True)
class CouncilMember:
    id: str
    provider: str          # key into the provider pool: "openai", "claude", ...
    model: str             # model string, used for moderator ranking
    timeout_sec: float
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    weight: float | None = None


@dataclass
class UserRequest:
    id: str
    query: str
    context: str | None = None


@dataclass
class ProviderResponse:
    success: bool
    content: str
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    latency_sec: float = 0.0
    error: str | None = None


@dataclass(frozen=True)
class ExchangeResponse:
    member_id: str
    content: str
    round_number: int
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    latency_sec: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)
    references_to: tuple[str, ...] = ()


@dataclass
class DeliberationRound:
    number: int
    exchanges: list[ExchangeResponse] = field(default_factory=list)


@dataclass
class DeliberationThread:
    rounds: list[DeliberationRound] = field(default_factory=list)
    total_duration_sec: float = 0.0

    def add_round(self, exchanges: list[ExchangeResponse]) -> DeliberationRound:
        """Append a new round numbered after the last one and return it."""
        number = self.rounds[-1].number + 1 if self.rounds else 0
        rnd = DeliberationRound(number=number, exchanges=list(exchanges))
        self.rounds.append(rnd)
        return rnd

    def latest_round(self) -> DeliberationRound | None:
        return self.rounds[-1] if self.rounds else None

    def all_exchanges(self) -> list[ExchangeResponse]:
        return [e for rnd in self.rounds for e in rnd.exchanges]


@dataclass
class SimilarityResult:
    matrix: list[list[float]]
    average: float
    minimum: float
    maximum: float
    below_threshold_pairs: list[tuple[str, str, float]] = field(default_factory=list)


@dataclass
class NegotiationMetadata:
    total_rounds: int
    similarity_progression: list[float]
    consensus_achieved: bool
    fallback_used: bool
    quality_score: float
    fallback_reason: str | None = None
    deadlock_detected: bool = False
    human_escalation_triggered: bool = False
    early_terminated: bool = False
    tokens_avoided: int = 0
    estimated_cost_saved: float = 0.0


@dataclass
class ConsensusDecision:
    content: str
    confidence: Confidence
    agreement_level: float
    strategy: str
    contributing_members: list[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)
    negotiation: NegotiationMetadata | None = None
    partial: bool = False


def clamp_unit(value: float) -> float:
    """Clamp a score into [0, 1]; NaN becomes 0."""
    if value != value:
        return 0.0
    return max(0.0, min(1.0, value))
