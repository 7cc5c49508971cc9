"""Provider pool: routes member calls to provider adapters and exposes shared health."""

import logging
import time

from council.content import normalize_content
from council.health import HealthStatus, ProviderHealthTracker
from council.models import CouncilMember, ProviderResponse
from council.providers.base import AIProvider, ProviderError

logger = logging.getLogger(__name__)


class ProviderPool:
    """Send prompts to council members through their provider adapters.

    ``send_request`` never raises: every failure comes back as a
    ``ProviderResponse`` with ``success=False`` and an error message.
    """

    def __init__(
        self,
        providers: dict[str, AIProvider],
        health: ProviderHealthTracker,
    ) -> None:
        self._providers = dict(providers)
        self._health = health

    @property
    def health(self) -> ProviderHealthTracker:
        return self._health

    async def send_request(
        self,
        member: CouncilMember,
        prompt: str,
        context: str | None = None,
    ) -> ProviderResponse:
        provider = self._providers.get(member.provider)
        if provider is None:
            return ProviderResponse(
                success=False,
                content="",
                error=f"No provider '{member.provider}' configured for member {member.id}",
            )
        if self._health.is_disabled(member.provider):
            reason = self._health.get_disabled_reason(member.provider) or "disabled"
            return ProviderResponse(
                success=False,
                content="",
                error=f"Provider {member.provider} is disabled: {reason}",
            )

        start = time.monotonic()
        try:
            response = await provider.generate(prompt, model=member.model, context=context)
        except ProviderError as exc:
            logger.warning("Member %s failed: %s", member.id, exc)
            return ProviderResponse(
                success=False, content="", latency_sec=time.monotonic() - start, error=str(exc)
            )
        except Exception as exc:
            logger.warning("Member %s unexpected failure: %s", member.id, exc)
            return ProviderResponse(
                success=False,
                content="",
                latency_sec=time.monotonic() - start,
                error=f"Unexpected error: {exc}",
            )

        response.content = normalize_content(response.content)
        if response.success and not response.content.strip():
            return ProviderResponse(
                success=False,
                content="",
                token_usage=response.token_usage,
                latency_sec=response.latency_sec,
                error=f"Empty response from {member.id}",
            )
        return response

    def get_provider_health(self, provider_id: str) -> HealthStatus:
        return self._health.get_health_status(provider_id)

    def mark_provider_disabled(self, provider_id: str, reason: str) -> None:
        self._health.mark_disabled(provider_id, reason)
