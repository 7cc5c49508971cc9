"""Unit tests for council/pool.py: no real API calls."""

from unittest.mock import AsyncMock

from council.health import ProviderHealthTracker
from council.models import ProviderResponse
from council.pool import ProviderPool
from council.providers.base import ProviderError

from tests.conftest import MockProvider, make_member


async def test_send_request_passes_member_model_and_context():
    provider = MockProvider("openai", "Use YAML.")
    pool = ProviderPool({"openai": provider}, ProviderHealthTracker())
    member = make_member("m1", provider="openai", model="gpt-4o")

    response = await pool.send_request(member, "question?", context="system")

    assert response.success
    assert response.content == "Use YAML."
    provider.generate.assert_awaited_once_with("question?", model="gpt-4o", context="system")


async def test_provider_error_becomes_failed_response():
    provider = MockProvider("openai")
    provider.generate = AsyncMock(side_effect=ProviderError("openai", "rate limited"))
    pool = ProviderPool({"openai": provider}, ProviderHealthTracker())

    response = await pool.send_request(make_member("m1", provider="openai"), "q")

    assert response.success is False
    assert "rate limited" in response.error


async def test_unexpected_exception_becomes_failed_response():
    provider = MockProvider("openai")
    provider.generate = AsyncMock(side_effect=KeyError("choices"))
    pool = ProviderPool({"openai": provider}, ProviderHealthTracker())

    response = await pool.send_request(make_member("m1", provider="openai"), "q")

    assert response.success is False
    assert response.error.startswith("Unexpected error")


async def test_unknown_provider():
    pool = ProviderPool({}, ProviderHealthTracker())
    response = await pool.send_request(make_member("m1", provider="missing"), "q")
    assert response.success is False
    assert "missing" in response.error


async def test_disabled_provider_not_called():
    provider = MockProvider("openai")
    tracker = ProviderHealthTracker()
    tracker.mark_disabled("openai", "too many failures")
    pool = ProviderPool({"openai": provider}, tracker)

    response = await pool.send_request(make_member("m1", provider="openai"), "q")

    assert response.success is False
    assert "disabled" in response.error
    provider.generate.assert_not_awaited()


async def test_structured_content_is_normalized():
    provider = MockProvider("openai")
    provider.generate = AsyncMock(
        return_value=ProviderResponse(success=True, content=[{"text": "part a"}, {"text": "part b"}])
    )
    pool = ProviderPool({"openai": provider}, ProviderHealthTracker())

    response = await pool.send_request(make_member("m1", provider="openai"), "q")

    assert response.content == "part a\npart b"


async def test_empty_content_is_a_failure():
    provider = MockProvider("openai", "   ")
    pool = ProviderPool({"openai": provider}, ProviderHealthTracker())

    response = await pool.send_request(make_member("m1", provider="openai"), "q")

    assert response.success is False
    assert "Empty response" in response.error


def test_pool_and_tracker_share_health_state():
    tracker = ProviderHealthTracker()
    pool = ProviderPool({}, tracker)
    pool.mark_provider_disabled("openai", "manual")
    assert tracker.is_disabled("openai")
    assert pool.get_provider_health("openai") == "disabled"
