"""Provider health checks: ping each API before a request and record the outcome."""

import asyncio
import logging

from council.health import ProviderHealthTracker
from council.providers.base import AIProvider

logger = logging.getLogger(__name__)

_PING_PROMPT = "Reply with the word OK only."
_TIMEOUT_SEC = 15.0


async def _check_one(name: str, provider: AIProvider) -> tuple[str, bool, str]:
    """Ping a single provider. Returns (name, ok, error_message)."""
    try:
        response = await asyncio.wait_for(provider.generate(_PING_PROMPT), timeout=_TIMEOUT_SEC)
    except Exception as exc:
        return name, False, str(exc) or type(exc).__name__
    if not response.success:
        return name, False, response.error or "unsuccessful response"
    return name, True, ""


async def run_health_checks(
    providers: dict[str, AIProvider],
    tracker: ProviderHealthTracker | None = None,
) -> dict[str, tuple[bool, str]]:
    """Ping all providers in parallel.

    When a tracker is given, a passing provider is recorded as a success and a
    failing one is disabled with the error as its reason, so the distributor
    skips it.

    Returns:
        Dict mapping provider name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, p) for n, p in providers.items()))
    outcome = {name: (ok, err) for name, ok, err in results}

    if tracker is not None:
        for name, (ok, err) in outcome.items():
            if ok:
                tracker.record_success(name)
            else:
                tracker.mark_disabled(name, f"health check failed: {err.splitlines()[0][:120] if err else 'unknown'}")
    return outcome
