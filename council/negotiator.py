"""Iterative consensus: re-poll the council with peer positions until every pair agrees."""

import asyncio
import dataclasses
import logging
import math
import random
import time
from collections.abc import Awaitable, Sequence
from typing import TypeVar

from config.config_loader import IterativeConsensusConfig, NegotiationExample
from council.content import agreed_member, extract_core_answer
from council.convergence import ConvergenceDetector
from council.dedup import RequestDeduplicator
from council.embeddings import EmbeddingService
from council.examples import ExampleRepository
from council.models import (
    Confidence,
    ConsensusDecision,
    CouncilMember,
    DeliberationThread,
    ExchangeResponse,
    NegotiationMetadata,
    SimilarityResult,
    UserRequest,
    clamp_unit,
)
from council.pool import ProviderPool
from council.prompt_builder import Agreement, NegotiationPromptBuilder
from council.similarity import agreement_score
from council.synthesis import IterativeConsensus, SynthesisEngine, fallback_strategy

logger = logging.getLogger(__name__)

T = TypeVar("T")

AVG_TOKENS_PER_MEMBER_ROUND = 500
DEFAULT_PRICE_PER_TOKEN = 0.00002
TIME_BUDGET_FACTOR = 1.5
DEADLOCK_CHECK_FROM_ROUND = 3
_AGREES_PREFIX = "[AGREES:"


class NegotiationError(Exception):
    """Raised when there is nothing to negotiate."""


def seeded_order(items: Sequence[T], seed: int | None = None) -> list[T]:
    """Fisher-Yates shuffle; a seed makes the order reproducible."""
    shuffled = list(items)
    if seed is None:
        random.shuffle(shuffled)
        return shuffled

    value = seed

    def rng() -> float:
        nonlocal value
        value = (value * 9301 + 49297) % 233280
        return value / 233280

    for i in range(len(shuffled) - 1, 0, -1):
        j = math.floor(rng() * (i + 1))
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def response_quality_score(content: str) -> float:
    """Prefer answers between 100 and 2000 characters."""
    length = len(content)
    if length < 100:
        return length / 100
    if length > 2000:
        return 2000 / length
    return 1.0


def select_final_response(responses: Sequence[ExchangeResponse]) -> str:
    if not responses:
        return ""
    best = responses[0]
    best_score = response_quality_score(best.content)
    for response in responses[1:]:
        score = response_quality_score(response.content)
        if score > best_score:
            best, best_score = response, score
    return best.content


def quality_score(final_similarity: float, rounds: int) -> float:
    efficiency = 0.3 / rounds if rounds > 0 else 0.3
    return min(1.0, 0.7 * final_similarity + efficiency)


def negotiated_confidence(similarity: float, threshold: float) -> Confidence:
    if similarity >= max(threshold + 0.1, 0.95):
        return "high"
    if similarity >= max(threshold, 0.75):
        return "medium"
    return "low"


def adjusted_threshold(base: float, original_count: int, active_count: int) -> float:
    """Scale the threshold down in proportion to members that dropped out."""
    if original_count <= 0 or active_count >= original_count:
        return base
    return base * (active_count / original_count)


def is_consensus(similarity: SimilarityResult, threshold: float) -> bool:
    """Every off-diagonal pair must meet the threshold; the average is not enough."""
    n = len(similarity.matrix)
    return all(similarity.matrix[i][j] >= threshold for i in range(n) for j in range(i + 1, n))


@dataclasses.dataclass
class _Progress:
    similarity_progression: list[float]
    rounds: int = 0
    deadlock_detected: bool = False
    human_escalation_triggered: bool = False


class IterativeConsensusNegotiator:
    """Multi-round negotiation with convergence tracking and static-strategy fallback."""

    def __init__(
        self,
        pool: ProviderPool,
        embeddings: EmbeddingService,
        synthesis_engine: SynthesisEngine,
        convergence: ConvergenceDetector | None = None,
        prompt_builder: NegotiationPromptBuilder | None = None,
        examples: ExampleRepository | None = None,
        deduplicator: RequestDeduplicator | None = None,
        token_prices: dict[str, dict[str, float]] | None = None,
    ) -> None:
        self._pool = pool
        self._embeddings = embeddings
        self._synthesis = synthesis_engine
        self._convergence = convergence or ConvergenceDetector()
        self._prompts = prompt_builder or NegotiationPromptBuilder()
        self._examples = examples
        self._dedup = deduplicator or RequestDeduplicator()
        self._token_prices = token_prices or {}
        # Calls that outlived the per-round timeout keep running here
        self._background: set[asyncio.Task] = set()

    async def negotiate(
        self,
        request: UserRequest,
        thread: DeliberationThread,
        members: Sequence[CouncilMember],
        config: IterativeConsensusConfig,
    ) -> ConsensusDecision:
        """Negotiate from the thread's latest round to a decision.

        Args:
            request: The user request.
            thread: Deliberation so far; its latest round is the starting position.
            members: Council members that may be re-polled.
            config: Negotiation parameters.

        Returns:
            ConsensusDecision carrying NegotiationMetadata.

        Raises:
            NegotiationError: If the thread has no exchanges to start from.
        """
        latest = thread.latest_round()
        if latest is None or not latest.exchanges:
            raise NegotiationError("Cannot negotiate: no initial responses available")

        current = list(latest.exchanges)
        original_count = len(current)
        by_id = {m.id: m for m in members}

        if self._all_identical(current):
            logger.info("Request %s: all %d responses identical, consensus without negotiation", request.id, len(current))
            return self._consensus_decision(
                current, config.agreement_threshold, _Progress([1.0]), quality=1.0
            )

        try:
            similarity = await self.calculate_similarity(current, config)
        except Exception as exc:
            logger.warning("Request %s: initial similarity failed: %s", request.id, exc)
            return await self._fallback(
                request, thread, current, by_id, config, _Progress([0.0]),
                f"Similarity calculation failed: {exc}",
            )

        progress = _Progress([similarity.average])
        threshold = adjusted_threshold(config.agreement_threshold, original_count, len(current))
        if is_consensus(similarity, threshold):
            return self._consensus_decision(current, threshold, progress)
        if self._should_terminate_early(similarity, config):
            return self._early_decision(current, config, progress)

        start = time.monotonic()
        budget = config.per_round_timeout_sec * config.max_rounds * TIME_BUDGET_FACTOR
        round_cap = config.max_rounds
        fallback_reason = None
        logger.info(
            "Request %s: negotiating up to %d rounds, threshold %.2f, initial similarity %.3f",
            request.id, round_cap, config.agreement_threshold, similarity.average,
        )

        round_num = 0
        while round_num < round_cap:
            round_num += 1
            progress.rounds = round_num

            elapsed = time.monotonic() - start
            remaining = budget - elapsed
            average_round = elapsed / round_num
            if remaining < average_round * 2 and round_cap > round_num:
                fit = max(1, math.floor(remaining / average_round))
                round_cap = min(round_cap, round_num + fit)
                logger.warning("Time budget running out, reducing round cap to %d", round_cap)

            if round_num >= DEADLOCK_CHECK_FROM_ROUND:
                progress.deadlock_detected = self._convergence.is_deadlocked(progress.similarity_progression)
                if progress.deadlock_detected and config.human_escalation_enabled:
                    progress.human_escalation_triggered = True
                    logger.warning("Request %s: deadlock at round %d, escalation flagged", request.id, round_num)

            active = [by_id[r.member_id] for r in current if r.member_id in by_id]
            if len(active) < 2:
                fallback_reason = "Insufficient active members"
                break

            try:
                responses = await self._run_round(request, current, active, similarity, round_num, config)
                if not responses:
                    raise NegotiationError(f"no member responded in round {round_num}")
                current = responses
                similarity = await self.calculate_similarity(current, config)
            except Exception as exc:
                logger.warning("Request %s: negotiation round %d failed: %s", request.id, round_num, exc)
                continue

            progress.similarity_progression.append(similarity.average)
            threshold = adjusted_threshold(config.agreement_threshold, original_count, len(current))
            logger.info(
                "Round %d complete: similarity %.3f, threshold %.3f, %d pair(s) below threshold",
                round_num, similarity.average, threshold, len(similarity.below_threshold_pairs),
            )

            if len(current) >= 2 and is_consensus(similarity, threshold):
                return self._consensus_decision(current, threshold, progress)
            if len(current) >= 2 and self._should_terminate_early(similarity, config):
                return self._early_decision(current, config, progress)
            if len(current) < 2:
                fallback_reason = "Insufficient active members"
                break

        if fallback_reason is None:
            fallback_reason = f"Maximum rounds ({config.max_rounds}) reached without consensus"
        return await self._fallback(request, thread, current, by_id, config, progress, fallback_reason)

    async def calculate_similarity(
        self,
        responses: Sequence[ExchangeResponse],
        config: IterativeConsensusConfig,
    ) -> SimilarityResult:
        """Embed each response's core answer and build the pairwise matrix. Never cached."""
        if len(responses) < 2:
            return SimilarityResult(matrix=[[1.0]] * len(responses), average=1.0, minimum=1.0, maximum=1.0)

        texts = self._comparison_texts(responses)
        vectors = await self._embeddings.batch_embed(texts, config.embedding_model)

        n = len(responses)
        matrix = [[1.0] * n for _ in range(n)]
        values = []
        below = []
        for i in range(n):
            for j in range(i + 1, n):
                sim = clamp_unit(self._embeddings.cosine_similarity(vectors[i], vectors[j]))
                matrix[i][j] = matrix[j][i] = sim
                values.append(sim)
                if sim < config.agreement_threshold:
                    below.append((responses[i].member_id, responses[j].member_id, sim))

        return SimilarityResult(
            matrix=matrix,
            average=clamp_unit(sum(values) / len(values)),
            minimum=min(values),
            maximum=max(values),
            below_threshold_pairs=below,
        )

    @staticmethod
    def _comparison_texts(responses: Sequence[ExchangeResponse]) -> list[str]:
        cores = {r.member_id: extract_core_answer(r.content) for r in responses}
        texts = []
        for response in responses:
            core = cores[response.member_id]
            if core.startswith(_AGREES_PREFIX):
                target = agreed_member(response.content)
                if target in cores and not cores[target].startswith(_AGREES_PREFIX):
                    core = cores[target]
            texts.append(core)
        return texts

    async def _run_round(
        self,
        request: UserRequest,
        current: list[ExchangeResponse],
        active: list[CouncilMember],
        similarity: SimilarityResult,
        round_num: int,
        config: IterativeConsensusConfig,
    ) -> list[ExchangeResponse]:
        disagreements = self._prompts.identify_disagreements(current, similarity.matrix)
        agreements = self._prompts.extract_agreements(current, similarity.matrix, config.agreement_threshold)
        examples = (
            self._examples.get_relevant_examples(request.query, config.example_count)
            if self._examples is not None else []
        )
        round_id = f"{request.id}:negotiation:{round_num}"

        if config.negotiation_mode == "sequential":
            return await self._sequential_round(
                request, current, active, disagreements, agreements, examples, round_id, round_num, config
            )
        prompt = self._prompts.build_prompt(request.query, current, disagreements, agreements, examples)
        return await self._parallel_round(request, active, prompt, round_id, round_num, config)

    async def _parallel_round(
        self,
        request: UserRequest,
        active: list[CouncilMember],
        prompt: str,
        round_id: str,
        round_num: int,
        config: IterativeConsensusConfig,
    ) -> list[ExchangeResponse]:
        peer_ids = [m.id for m in active]

        async def indexed(index: int, member: CouncilMember) -> tuple[int, ExchangeResponse | None]:
            return index, await self._ask(request, member, prompt, round_id, round_num, peer_ids, config)

        results: list[ExchangeResponse | None] = [None] * len(active)
        arrived: list[ExchangeResponse] = []
        for next_done in asyncio.as_completed([indexed(i, m) for i, m in enumerate(active)]):
            index, response = await next_done
            results[index] = response
            if response is None:
                continue
            arrived.append(response)
            if config.early_termination_enabled and len(arrived) >= 2 and len(arrived) < len(active):
                partial = agreement_score(self._comparison_texts(arrived))
                if partial >= config.early_termination_threshold:
                    # Acted on only after the whole round is in
                    logger.info(
                        "Early termination opportunity at %.3f with %d/%d responses",
                        partial, len(arrived), len(active),
                    )
        return [r for r in results if r is not None]

    async def _sequential_round(
        self,
        request: UserRequest,
        current: list[ExchangeResponse],
        active: list[CouncilMember],
        disagreements: list[str],
        agreements: list[Agreement],
        examples: list[NegotiationExample],
        round_id: str,
        round_num: int,
        config: IterativeConsensusConfig,
    ) -> list[ExchangeResponse]:
        peer_ids = [m.id for m in active]
        seen = list(current)
        responses: list[ExchangeResponse] = []
        for member in seeded_order(active, config.randomization_seed):
            prompt = self._prompts.build_prompt(request.query, seen, disagreements, agreements, examples)
            response = await self._ask(request, member, prompt, round_id, round_num, peer_ids, config)
            if response is not None:
                responses.append(response)
                seen.append(response)
        return responses

    async def _ask(
        self,
        request: UserRequest,
        member: CouncilMember,
        prompt: str,
        round_id: str,
        round_num: int,
        peer_ids: list[str],
        config: IterativeConsensusConfig,
    ) -> ExchangeResponse | None:
        def executor() -> Awaitable:
            return self._race(
                self._pool.send_request(member, prompt, context=request.context),
                config.per_round_timeout_sec,
            )

        try:
            response = await self._dedup.execute_with_deduplication(round_id, member.id, prompt, executor)
        except TimeoutError:
            logger.warning(
                "Member %s timed out after %ss in negotiation round %d",
                member.id, config.per_round_timeout_sec, round_num,
            )
            return None

        if not response.success:
            logger.warning("Member %s failed in negotiation round %d: %s", member.id, round_num, response.error)
            return None
        return ExchangeResponse(
            member_id=member.id,
            content=response.content,
            round_number=round_num,
            token_usage=response.token_usage,
            latency_sec=response.latency_sec,
            references_to=tuple(p for p in peer_ids if p != member.id),
        )

    async def _race(self, coro: Awaitable[T], timeout: float) -> T:
        """Await with a deadline without cancelling the underlying call."""
        task = asyncio.ensure_future(coro)
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done:
            return task.result()
        self._background.add(task)
        task.add_done_callback(self._discard_background)
        raise TimeoutError(f"no response within {timeout}s")

    def _discard_background(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Late negotiation call failed: %s", task.exception())

    def pending_background(self) -> int:
        return len(self._background)

    @staticmethod
    def _all_identical(responses: Sequence[ExchangeResponse]) -> bool:
        first = responses[0].content.strip()
        return all(r.content.strip() == first for r in responses)

    @staticmethod
    def _should_terminate_early(similarity: SimilarityResult, config: IterativeConsensusConfig) -> bool:
        return config.early_termination_enabled and similarity.average >= config.early_termination_threshold

    def price_per_token(self) -> float:
        default = self._token_prices.get("default")
        if default:
            return (default.get("input", 0.0) + default.get("output", 0.0)) / 2
        return DEFAULT_PRICE_PER_TOKEN

    def _consensus_decision(
        self,
        responses: list[ExchangeResponse],
        threshold: float,
        progress: _Progress,
        quality: float | None = None,
        early: tuple[int, float] | None = None,
    ) -> ConsensusDecision:
        final_similarity = clamp_unit(progress.similarity_progression[-1])
        metadata = NegotiationMetadata(
            total_rounds=progress.rounds,
            similarity_progression=list(progress.similarity_progression),
            consensus_achieved=True,
            fallback_used=False,
            quality_score=quality if quality is not None else quality_score(final_similarity, progress.rounds),
            deadlock_detected=progress.deadlock_detected,
            human_escalation_triggered=progress.human_escalation_triggered,
            early_terminated=early is not None,
            tokens_avoided=early[0] if early else 0,
            estimated_cost_saved=early[1] if early else 0.0,
        )
        logger.info(
            "Consensus after %d round(s) at similarity %.3f%s",
            progress.rounds, final_similarity, " (early termination)" if early else "",
        )
        return ConsensusDecision(
            content=select_final_response(responses),
            confidence=negotiated_confidence(final_similarity, threshold),
            agreement_level=final_similarity,
            strategy=IterativeConsensus.name,
            contributing_members=[r.member_id for r in responses],
            negotiation=metadata,
        )

    def _early_decision(
        self,
        responses: list[ExchangeResponse],
        config: IterativeConsensusConfig,
        progress: _Progress,
    ) -> ConsensusDecision:
        remaining_rounds = max(0, config.max_rounds - progress.rounds)
        tokens = remaining_rounds * len(responses) * AVG_TOKENS_PER_MEMBER_ROUND
        cost = tokens * self.price_per_token()
        return self._consensus_decision(
            responses, config.agreement_threshold, progress, early=(tokens, cost)
        )

    async def _fallback(
        self,
        request: UserRequest,
        thread: DeliberationThread,
        current: list[ExchangeResponse],
        by_id: dict[str, CouncilMember],
        config: IterativeConsensusConfig,
        progress: _Progress,
        reason: str,
    ) -> ConsensusDecision:
        logger.warning("Request %s: fallback to %s: %s", request.id, config.fallback_strategy, reason)

        extended = DeliberationThread(rounds=list(thread.rounds), total_duration_sec=thread.total_duration_sec)
        latest = thread.latest_round()
        if latest is None or current != latest.exchanges:
            extended.add_round(current)

        active = [by_id[r.member_id] for r in current if r.member_id in by_id] or list(by_id.values())
        strategy = fallback_strategy(config.fallback_strategy, active)
        decision = await self._synthesis.synthesize(
            extended, strategy, members=active, query=request.query, request_id=request.id
        )

        final_similarity = clamp_unit(progress.similarity_progression[-1])
        metadata = NegotiationMetadata(
            total_rounds=progress.rounds,
            similarity_progression=list(progress.similarity_progression),
            consensus_achieved=False,
            fallback_used=True,
            quality_score=quality_score(final_similarity, progress.rounds),
            fallback_reason=reason,
            deadlock_detected=progress.deadlock_detected,
            human_escalation_triggered=progress.human_escalation_triggered,
        )
        return dataclasses.replace(decision, negotiation=metadata)
