"""Shared provider health tracking: consecutive failures and disabled state.

A single tracker instance is injected into both the provider pool and the
distributor so that failure counts never diverge between components.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

logger = logging.getLogger(__name__)

HealthStatus = Literal["healthy", "degraded", "disabled"]

DEFAULT_FAILURE_THRESHOLD = 5


@dataclass
class _ProviderHealth:
    status: HealthStatus = "healthy"
    consecutive_failures: int = 0
    success_count: int = 0
    total_requests: int = 0
    last_failure: datetime | None = None
    disabled_reason: str | None = None


class ProviderHealthTracker:
    """Per-provider failure counting with a disable threshold."""

    def __init__(self, failure_threshold: int = DEFAULT_FAILURE_THRESHOLD) -> None:
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self._threshold = failure_threshold
        self._state: dict[str, _ProviderHealth] = {}
        self._lock = threading.Lock()

    @property
    def failure_threshold(self) -> int:
        return self._threshold

    def _get(self, provider_id: str) -> _ProviderHealth:
        state = self._state.get(provider_id)
        if state is None:
            state = _ProviderHealth()
            self._state[provider_id] = state
        return state

    def record_success(self, provider_id: str) -> None:
        with self._lock:
            state = self._get(provider_id)
            state.total_requests += 1
            state.success_count += 1
            state.consecutive_failures = 0
            state.status = "healthy"
            state.disabled_reason = None

    def record_failure(self, provider_id: str) -> bool:
        """Count a failure. Returns True when the provider should now be disabled."""
        with self._lock:
            state = self._get(provider_id)
            state.total_requests += 1
            state.consecutive_failures += 1
            state.last_failure = datetime.now()
            if state.consecutive_failures >= self._threshold:
                state.status = "disabled"
                state.disabled_reason = f"{self._threshold} consecutive failures"
                return True
            state.status = "degraded"
            return False

    def reset_failure_count(self, provider_id: str) -> None:
        with self._lock:
            state = self._state.get(provider_id)
            if state is None:
                return
            state.consecutive_failures = 0
            state.status = "healthy"
            state.disabled_reason = None

    def mark_disabled(self, provider_id: str, reason: str) -> None:
        with self._lock:
            state = self._get(provider_id)
            state.status = "disabled"
            state.disabled_reason = reason
            state.consecutive_failures = max(state.consecutive_failures, self._threshold)
        logger.warning("Provider %s disabled: %s", provider_id, reason)

    def enable_provider(self, provider_id: str) -> None:
        with self._lock:
            state = self._get(provider_id)
            state.status = "healthy"
            state.disabled_reason = None
            state.consecutive_failures = 0

    def is_disabled(self, provider_id: str) -> bool:
        return self.get_health_status(provider_id) == "disabled"

    def get_failure_count(self, provider_id: str) -> int:
        state = self._state.get(provider_id)
        return state.consecutive_failures if state else 0

    def get_disabled_reason(self, provider_id: str) -> str | None:
        state = self._state.get(provider_id)
        return state.disabled_reason if state else None

    def get_health_status(self, provider_id: str) -> HealthStatus:
        state = self._state.get(provider_id)
        return state.status if state else "healthy"
