"""In-flight request deduplication: one execution per (request, member, prompt)."""

import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RequestDeduplicator:
    """Collapse concurrent identical calls to a single execution.

    Callers sharing a key await the same future. The key is dropped as soon as
    the executor settles, success or failure, so a later call with the same key
    runs again.
    """

    def __init__(self) -> None:
        self._in_flight: dict[str, asyncio.Future[Any]] = {}

    @staticmethod
    def make_key(request_id: str, member_id: str, prompt: str) -> str:
        prompt_hash = hashlib.sha256(prompt.encode("utf-8")).hexdigest()[:16]
        return f"{request_id}:{member_id}:{prompt_hash}"

    async def execute_with_deduplication(
        self,
        request_id: str,
        member_id: str,
        prompt: str,
        executor: Callable[[], Awaitable[T]],
    ) -> T:
        key = self.make_key(request_id, member_id, prompt)

        existing = self._in_flight.get(key)
        if existing is not None:
            logger.debug("Reusing in-flight request for %s in request %s", member_id, request_id)
            return await asyncio.shield(existing)

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._in_flight[key] = future
        try:
            result = await executor()
        except BaseException as exc:
            self._in_flight.pop(key, None)
            if isinstance(exc, asyncio.CancelledError):
                future.cancel()
            else:
                future.set_exception(exc)
                # Mark retrieved so an unshared failure does not warn at GC time
                future.exception()
            raise
        self._in_flight.pop(key, None)
        future.set_result(result)
        return result

    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def clear(self) -> None:
        self._in_flight.clear()
