"""Request distribution: fan out to the council under per-member and global deadlines."""

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable

from config.config_loader import ConfigError, PresetConfig, PromptsConfig
from council.deliberation import conduct_deliberation
from council.health import ProviderHealthTracker
from council.models import (
    ConsensusDecision,
    CouncilMember,
    DeliberationRound,
    DeliberationThread,
    ExchangeResponse,
    ProviderResponse,
    UserRequest,
)
from council.negotiator import IterativeConsensusNegotiator
from council.pool import ProviderPool
from council.synthesis import (
    IterativeConsensus,
    SynthesisEngine,
    fallback_strategy,
    strategy_from_preset,
)

logger = logging.getLogger(__name__)


class DistributionError(RuntimeError):
    """Raised when no council member produced a usable response."""

    def __init__(self, failures: dict[str, str], message: str | None = None) -> None:
        self.failures = dict(failures)
        if message is None:
            detail = "; ".join(f"{member}: {reason}" for member, reason in self.failures.items())
            message = f"All council members failed: {detail}" if detail else "No council members available"
        super().__init__(message)


class RequestContext:
    """Successes collected for one request. Closed once harvested; later adds are dropped."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self._successes: list[ExchangeResponse] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def add(self, exchange: ExchangeResponse) -> bool:
        if self._closed:
            logger.debug(
                "Discarding late response from %s for request %s", exchange.member_id, self.request_id
            )
            return False
        self._successes.append(exchange)
        return True

    def harvest(self) -> list[ExchangeResponse]:
        self._closed = True
        harvested = self._successes
        self._successes = []
        return harvested


class OrchestrationDistributor:
    """Turn one user request into a ConsensusDecision for a configured preset."""

    def __init__(
        self,
        pool: ProviderPool,
        config: PresetConfig,
        synthesis_engine: SynthesisEngine,
        health_tracker: ProviderHealthTracker,
        negotiator: IterativeConsensusNegotiator | None = None,
        prompts: PromptsConfig | None = None,
    ) -> None:
        self._pool = pool
        self._config = config
        self._synthesis = synthesis_engine
        self._health = health_tracker
        self._negotiator = negotiator
        self._prompts = prompts or PromptsConfig()
        # Strong references to calls that outlived their deadline
        self._background: set[asyncio.Task] = set()

    @property
    def config(self) -> PresetConfig:
        return self._config

    def active_members(self) -> list[CouncilMember]:
        members = []
        for member in self._config.council.members:
            if self._pool.get_provider_health(member.provider) == "disabled":
                logger.warning("Skipping member %s: provider %s is disabled", member.id, member.provider)
                continue
            members.append(member)
        return members

    async def process_request(
        self,
        request: UserRequest,
        on_round_complete: Callable[[DeliberationRound], None] | None = None,
    ) -> ConsensusDecision:
        """Run the full pipeline for one request.

        Args:
            request: The user request.
            on_round_complete: Optional callback invoked after round 0 and each deliberation round.

        Returns:
            The final ConsensusDecision. ``partial`` is True when the global
            deadline fired and only early responses were synthesized.

        Raises:
            ConfigError: If the preset's minimum quorum cannot be met.
            DistributionError: If no member produced a response.
        """
        preset = self._config
        members = self.active_members()
        council = preset.council
        if council.require_minimum_for_consensus and len(members) < council.minimum_size:
            raise ConfigError(
                f"Preset '{preset.name}' requires at least {council.minimum_size} active members, "
                f"{len(members)} available"
            )
        if not members:
            raise DistributionError(
                {m.id: f"provider {m.provider} disabled" for m in council.members}
            )

        start = time.monotonic()
        context = RequestContext(request.id)
        logger.info(
            "Request %s: distributing to %d members (global timeout %ss)",
            request.id, len(members), preset.global_timeout_sec,
        )

        distribution = asyncio.create_task(self.distribute_to_council(request, members, context))
        try:
            done, _ = await asyncio.wait({distribution}, timeout=preset.global_timeout_sec)
        except asyncio.CancelledError:
            distribution.cancel()
            raise

        if distribution in done:
            initial = distribution.result()
            context.harvest()
            return await self._decide(request, initial, members, start, on_round_complete)

        # Global deadline: keep the fan-out running but stop listening to it
        self._track(distribution)
        partial = context.harvest()
        logger.warning(
            "Request %s: global timeout after %ss with %d/%d responses",
            request.id, preset.global_timeout_sec, len(partial), len(members),
        )
        if not partial:
            raise DistributionError(
                {m.id: f"no response before global timeout of {preset.global_timeout_sec}s" for m in members}
            )

        thread = DeliberationThread()
        rnd = thread.add_round(partial)
        if on_round_complete:
            on_round_complete(rnd)

        strategy = strategy_from_preset(preset)
        if isinstance(strategy, IterativeConsensus):
            strategy = fallback_strategy(strategy.config.fallback_strategy, members)
        decision = await self._synthesis.synthesize(
            thread, strategy, members=members, query=request.query, request_id=request.id
        )
        return dataclasses.replace(decision, confidence="low", partial=True)

    async def _decide(
        self,
        request: UserRequest,
        initial: list[ExchangeResponse],
        members: list[CouncilMember],
        start: float,
        on_round_complete: Callable[[DeliberationRound], None] | None,
    ) -> ConsensusDecision:
        preset = self._config
        responding = {e.member_id for e in initial}
        participants = [m for m in members if m.id in responding]

        if preset.deliberation_rounds > 0:
            if on_round_complete:
                on_round_complete(DeliberationRound(number=0, exchanges=list(initial)))
            thread = await conduct_deliberation(
                request, initial, participants, preset.deliberation_rounds,
                self._pool, self._prompts, on_round_complete=on_round_complete,
                track=self._track,
            )
        else:
            thread = DeliberationThread()
            rnd = thread.add_round(initial)
            if on_round_complete:
                on_round_complete(rnd)

        strategy = strategy_from_preset(preset)
        if isinstance(strategy, IterativeConsensus):
            if self._negotiator is None:
                raise ConfigError(f"Preset '{preset.name}' uses iterative-consensus but no negotiator is configured")
            decision = await self._negotiator.negotiate(request, thread, participants, strategy.config)
        else:
            decision = await self._synthesis.synthesize(
                thread, strategy, members=participants, query=request.query, request_id=request.id
            )

        thread.total_duration_sec = time.monotonic() - start
        logger.info(
            "Request %s decided in %.1fs: %s confidence, agreement %.2f",
            request.id, thread.total_duration_sec, decision.confidence, decision.agreement_level,
        )
        return decision

    async def distribute_to_council(
        self,
        request: UserRequest,
        members: list[CouncilMember],
        context: RequestContext | None = None,
    ) -> list[ExchangeResponse]:
        """Call every member concurrently, each under its own timeout.

        Raises:
            DistributionError: If every member failed; ``failures`` maps member id to reason.
        """
        context = context or RequestContext(request.id)
        results = await asyncio.gather(*(self._call_member(request, m, context) for m in members))

        successes: list[ExchangeResponse] = []
        failures: dict[str, str] = {}
        for member, (exchange, error) in zip(members, results):
            if exchange is not None:
                successes.append(exchange)
            else:
                failures[member.id] = error or "unknown error"

        if not successes:
            raise DistributionError(failures)
        if failures:
            logger.warning("Request %s: %d member(s) failed: %s", request.id, len(failures), failures)
        return successes

    async def _call_member(
        self,
        request: UserRequest,
        member: CouncilMember,
        context: RequestContext,
    ) -> tuple[ExchangeResponse | None, str | None]:
        call = asyncio.create_task(self._pool.send_request(member, request.query, context=request.context))
        try:
            done, _ = await asyncio.wait({call}, timeout=member.timeout_sec)
        except asyncio.CancelledError:
            self._track(call)
            raise

        if call in done:
            try:
                response = call.result()
            except Exception as exc:
                response = ProviderResponse(success=False, content="", error=f"Unexpected error: {exc}")
        else:
            # The call keeps running; its result is ignored
            self._track(call)
            response = ProviderResponse(
                success=False,
                content="",
                error=f"Request to {member.id} timed out after {member.timeout_sec:g}s",
            )

        if not response.success:
            self._record_failure(member, response.error or "unknown error")
            return None, response.error

        self._health.reset_failure_count(member.provider)
        exchange = ExchangeResponse(
            member_id=member.id,
            content=response.content,
            round_number=0,
            token_usage=response.token_usage,
            latency_sec=response.latency_sec,
        )
        context.add(exchange)
        return exchange, None

    def _record_failure(self, member: CouncilMember, reason: str) -> None:
        logger.warning("Member %s failed: %s", member.id, reason)
        if self._health.record_failure(member.provider):
            count = self._health.get_failure_count(member.provider)
            self._pool.mark_provider_disabled(member.provider, f"{count} consecutive failures, last: {reason}")

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("Background call finished with error: %s", exc)

    def pending_background(self) -> int:
        return len(self._background)

    async def aclose(self) -> None:
        """Wait for calls that outlived their deadlines."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
