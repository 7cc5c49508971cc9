"""Shared pytest fixtures."""

from unittest.mock import AsyncMock

import pytest

from config.config_loader import (
    CouncilConfig,
    IterativeConsensusConfig,
    PresetConfig,
    PromptsConfig,
    SynthesisConfig,
)
from council.health import ProviderHealthTracker
from council.models import CouncilMember, ExchangeResponse, ProviderResponse, TokenUsage, UserRequest
from council.pool import ProviderPool
from council.providers.base import AIProvider


def ok_response(content: str, latency: float = 0.1) -> ProviderResponse:
    return ProviderResponse(
        success=True,
        content=content,
        token_usage=TokenUsage(prompt_tokens=5, completion_tokens=5, total_tokens=10),
        latency_sec=latency,
    )


def make_member(member_id: str, provider: str | None = None, model: str = "mock-model",
                timeout_sec: float = 5.0) -> CouncilMember:
    return CouncilMember(id=member_id, provider=provider or member_id, model=model, timeout_sec=timeout_sec)


def make_exchange(member_id: str, content: str, round_number: int = 0) -> ExchangeResponse:
    return ExchangeResponse(member_id=member_id, content=content, round_number=round_number)


class MockProvider(AIProvider):
    """Test double AIProvider."""

    def __init__(self, provider_name: str = "mock", response_content: str = "Mock response") -> None:
        self._name = provider_name
        self._response_content = response_content
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because generate is defined in the class body below.
        self.generate = AsyncMock(return_value=ok_response(response_content))  # type: ignore[assignment]

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def generate(self, prompt: str, model: str | None = None,  # type: ignore[override]
                       context: str | None = None) -> ProviderResponse:
        """Default implementation; replaced by AsyncMock in __init__."""
        return ok_response(self._response_content)


@pytest.fixture
def sample_request() -> UserRequest:
    return UserRequest(id="req-1", query="Should we use YAML or JSON for config?")


@pytest.fixture
def health_tracker() -> ProviderHealthTracker:
    return ProviderHealthTracker(failure_threshold=3)


@pytest.fixture
def three_members() -> list[CouncilMember]:
    return [make_member("m1"), make_member("m2"), make_member("m3")]


@pytest.fixture
def three_providers() -> dict[str, MockProvider]:
    return {
        "m1": MockProvider("m1", "Use YAML for human-edited config files."),
        "m2": MockProvider("m2", "Use YAML for human-edited config files."),
        "m3": MockProvider("m3", "Use JSON because every language parses it."),
    }


@pytest.fixture
def pool(three_providers, health_tracker) -> ProviderPool:
    return ProviderPool(three_providers, health_tracker)


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        critique=(
            "{persona}Round {round}. Question: {question}\n\nOthers said:\n"
            "{previous_responses_anonymized}\n\nYou said:\n{own_response}\n\nCritique:"
        ),
        meta_synthesis="Question: {query}\n\n{exchanges}\n\nIntegrate:",
    )


def make_preset(
    members: list[CouncilMember],
    strategy: str = "consensus-extraction",
    rounds: int = 0,
    global_timeout_sec: float = 10.0,
    minimum_size: int = 1,
    require_minimum: bool = False,
    iterative: IterativeConsensusConfig | None = None,
) -> PresetConfig:
    return PresetConfig(
        name="test-preset",
        council=CouncilConfig(
            members=members,
            minimum_size=minimum_size,
            require_minimum_for_consensus=require_minimum,
        ),
        deliberation_rounds=rounds,
        global_timeout_sec=global_timeout_sec,
        synthesis=SynthesisConfig(strategy=strategy),
        iterative=iterative,
    )


@pytest.fixture
def sample_preset(three_members) -> PresetConfig:
    return make_preset(three_members)
