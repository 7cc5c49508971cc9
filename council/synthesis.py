"""Static synthesis: collapse a set of exchanges into one ConsensusDecision."""

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import ClassVar, Union

from config.config_loader import (
    DEFAULT_META_SYNTHESIS_PROMPT,
    IterativeConsensusConfig,
    PresetConfig,
)
from council.code_oracle import CodeOracle
from council.content import extract_words
from council.models import (
    Confidence,
    ConsensusDecision,
    CouncilMember,
    DeliberationThread,
    ExchangeResponse,
)
from council.moderator import ModeratorSelectionError, ModeratorSelector, ModeratorStrategy
from council.pool import ProviderPool
from council.similarity import agreement_score, similarity_matrix

logger = logging.getLogger(__name__)

# Pairwise similarity above which two exchanges belong to the same cluster
CLUSTER_THRESHOLD = 0.6
_THEME_COUNT = 10
_SUMMARY_PREVIEW_CHARS = 500


class SynthesisError(Exception):
    """Raised when there is nothing to synthesize or the strategy is not handled here."""


@dataclass(frozen=True)
class ConsensusExtraction:
    name: ClassVar[str] = "consensus-extraction"


@dataclass(frozen=True)
class WeightedFusion:
    name: ClassVar[str] = "weighted-fusion"
    weights: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class MetaSynthesis:
    name: ClassVar[str] = "meta-synthesis"
    moderator: ModeratorStrategy = field(default_factory=ModeratorStrategy)


@dataclass(frozen=True)
class IterativeConsensus:
    name: ClassVar[str] = "iterative-consensus"
    config: IterativeConsensusConfig = field(default_factory=IterativeConsensusConfig)


SynthesisStrategy = Union[ConsensusExtraction, WeightedFusion, MetaSynthesis, IterativeConsensus]
StaticStrategy = Union[ConsensusExtraction, WeightedFusion, MetaSynthesis]


def strategy_from_preset(preset: PresetConfig) -> SynthesisStrategy:
    """Build the strategy object a preset asks for."""
    synthesis = preset.synthesis
    if synthesis.strategy == "weighted-fusion":
        # Member-level weights are defaults; the synthesis weights map wins
        weights = {m.id: m.weight for m in preset.council.members if m.weight is not None}
        weights.update(synthesis.weights)
        return WeightedFusion(weights=weights)
    if synthesis.strategy == "meta-synthesis":
        return MetaSynthesis(moderator=synthesis.moderator)
    if synthesis.strategy == "iterative-consensus":
        return IterativeConsensus(config=preset.iterative or IterativeConsensusConfig())
    return ConsensusExtraction()


def fallback_strategy(name: str, members: Sequence[CouncilMember]) -> StaticStrategy:
    """Map a fallback strategy name onto a static strategy.

    Weighted fusion uses each member's own weight, 1.0 when unset; meta-synthesis uses the
    strongest moderator. Anything else falls back to consensus extraction.
    """
    if name == "weighted-fusion":
        return WeightedFusion(weights={m.id: 1.0 if m.weight is None else m.weight for m in members})
    if name == "meta-synthesis":
        return MetaSynthesis(moderator=ModeratorStrategy(policy="strongest"))
    return ConsensusExtraction()


def _confidence(agreement: float) -> Confidence:
    if agreement > 0.8:
        return "high"
    if agreement > 0.5:
        return "medium"
    return "low"


def _contributors(exchanges: list[ExchangeResponse]) -> list[str]:
    return list(dict.fromkeys(e.member_id for e in exchanges))


class SynthesisEngine:
    """Consensus extraction, weighted fusion and meta-synthesis over exchanges.

    Stateless per call; the pool is only needed for meta-synthesis.
    """

    def __init__(
        self,
        pool: ProviderPool | None = None,
        selector: ModeratorSelector | None = None,
        oracle: CodeOracle | None = None,
        meta_prompt: str = DEFAULT_META_SYNTHESIS_PROMPT,
    ) -> None:
        self._pool = pool
        self._selector = selector or ModeratorSelector()
        self._oracle = oracle or CodeOracle()
        self._meta_prompt = meta_prompt

    @property
    def selector(self) -> ModeratorSelector:
        return self._selector

    async def synthesize(
        self,
        thread_or_exchanges: DeliberationThread | Sequence[ExchangeResponse],
        strategy: SynthesisStrategy,
        *,
        members: Sequence[CouncilMember] = (),
        query: str = "",
        request_id: str | None = None,
    ) -> ConsensusDecision:
        """Synthesize a decision from every exchange of every round.

        Args:
            thread_or_exchanges: A deliberation thread or a flat exchange list.
            strategy: One of the static strategies.
            members: Council members, used to pick a moderator for meta-synthesis.
            query: The user query, included in the moderator prompt.
            request_id: For log correlation only.

        Returns:
            ConsensusDecision with the strategy's confidence and agreement level.

        Raises:
            SynthesisError: If there are no exchanges or the strategy is iterative.
        """
        if isinstance(thread_or_exchanges, DeliberationThread):
            exchanges = thread_or_exchanges.all_exchanges()
        else:
            exchanges = list(thread_or_exchanges)
        if not exchanges:
            raise SynthesisError("No exchanges to synthesize")

        logger.info(
            "Synthesizing %d exchanges with %s (request %s)",
            len(exchanges), strategy.name, request_id or "-",
        )

        if isinstance(strategy, ConsensusExtraction):
            return self._consensus_extraction(exchanges)
        if isinstance(strategy, WeightedFusion):
            return self._weighted_fusion(exchanges, strategy.weights)
        if isinstance(strategy, MetaSynthesis):
            return await self._meta_synthesis(exchanges, strategy.moderator, members, query)
        raise SynthesisError(f"Strategy {strategy.name} is not handled by the synthesis engine")

    def agreement(self, exchanges: Sequence[ExchangeResponse]) -> float:
        """Average pairwise TF-IDF similarity; 1.0 for a single exchange."""
        return agreement_score([e.content for e in exchanges])

    def _pair_matrix(self, contents: list[str]) -> list[list[float]]:
        matrix = similarity_matrix(contents)
        has_code = [self._oracle.detect_code(c) for c in contents]
        for i in range(len(contents)):
            for j in range(i + 1, len(contents)):
                if has_code[i] and has_code[j]:
                    sim = self._oracle.calculate_similarity(contents[i], contents[j])
                    matrix[i][j] = matrix[j][i] = sim
        return matrix

    def _cluster(self, exchanges: list[ExchangeResponse]) -> list[list[int]]:
        """Greedy single-link clustering against each cluster's first exchange."""
        matrix = self._pair_matrix([e.content for e in exchanges])
        clusters: list[list[int]] = []
        for i in range(len(exchanges)):
            for cluster in clusters:
                if matrix[cluster[0]][i] > CLUSTER_THRESHOLD:
                    cluster.append(i)
                    break
            else:
                clusters.append([i])
        return clusters

    def _consensus_extraction(self, exchanges: list[ExchangeResponse]) -> ConsensusDecision:
        agreement = self.agreement(exchanges)
        clusters = self._cluster(exchanges)
        majority = max(clusters, key=len)

        content = exchanges[majority[0]].content
        minorities = [c for c in clusters if c is not majority]
        if minorities:
            alternatives = "\n\n".join(
                f"- {exchanges[c[0]].member_id}: {exchanges[c[0]].content}" for c in minorities
            )
            content = f"{content}\n\nAlternative perspectives:\n\n{alternatives}"

        logger.debug("Consensus extraction: %d clusters, majority size %d", len(clusters), len(majority))
        return ConsensusDecision(
            content=content,
            confidence=_confidence(agreement),
            agreement_level=agreement,
            strategy=ConsensusExtraction.name,
            contributing_members=_contributors(exchanges),
        )

    def _weighted_fusion(
        self,
        exchanges: list[ExchangeResponse],
        weights: dict[str, float],
    ) -> ConsensusDecision:
        agreement = self.agreement(exchanges)

        grouped: dict[str, list[str]] = {}
        for exchange in exchanges:
            grouped.setdefault(exchange.member_id, []).append(exchange.content)

        configured = {member: weights.get(member, 1.0) for member in grouped}
        effective = dict(configured)
        for member, contents in grouped.items():
            text = "\n\n".join(contents)
            if self._oracle.has_fenced_code(text):
                effective[member] *= self._oracle.validate_code(text)

        # Configured weight decides the order; code quality only breaks ties
        ordered = sorted(grouped, key=lambda m: (configured[m], effective[m]), reverse=True)
        content = "\n\n".join(
            f"[Weight: {configured[member]:.2f}] {member}:\n" + "\n\n".join(grouped[member])
            for member in ordered
        )

        spread = max(configured.values()) - min(configured.values())
        if spread < 0.5 and agreement > 0.7:
            confidence: Confidence = "high"
        elif agreement > 0.5:
            confidence = "medium"
        else:
            confidence = "low"

        return ConsensusDecision(
            content=content,
            confidence=confidence,
            agreement_level=agreement,
            strategy=WeightedFusion.name,
            contributing_members=ordered,
        )

    async def _meta_synthesis(
        self,
        exchanges: list[ExchangeResponse],
        moderator_strategy: ModeratorStrategy,
        members: Sequence[CouncilMember],
        query: str,
    ) -> ConsensusDecision:
        agreement = self.agreement(exchanges)
        contributors = _contributors(exchanges)
        content = await self._moderate(exchanges, moderator_strategy, members, contributors, query)
        if content is None:
            content = self._structured_summary(exchanges)

        return ConsensusDecision(
            content=content,
            confidence=_confidence(agreement),
            agreement_level=agreement,
            strategy=MetaSynthesis.name,
            contributing_members=contributors,
        )

    async def _moderate(
        self,
        exchanges: list[ExchangeResponse],
        moderator_strategy: ModeratorStrategy,
        members: Sequence[CouncilMember],
        contributors: list[str],
        query: str,
    ) -> str | None:
        """Ask the moderator to integrate the exchanges. None means use the fallback summary."""
        if self._pool is None:
            logger.warning("Meta-synthesis without a provider pool, using structured summary")
            return None

        candidates = [m for m in members if m.id in contributors] or list(members)
        try:
            moderator = self._selector.select(candidates, moderator_strategy)
        except ModeratorSelectionError as exc:
            logger.warning("Moderator selection failed: %s", exc)
            return None

        enumerated = "\n\n".join(
            f"### Response {i} ({e.member_id}, round {e.round_number})\n{e.content}"
            for i, e in enumerate(exchanges, start=1)
        )
        prompt = self._meta_prompt.format(query=query, exchanges=enumerated)

        logger.info("Running meta-synthesis via moderator %s", moderator.id)
        try:
            response = await self._pool.send_request(moderator, prompt)
        except Exception as exc:
            logger.warning("Moderator %s call raised: %s", moderator.id, exc)
            return None

        if not response.success or not response.content.strip():
            logger.warning("Moderator %s failed: %s", moderator.id, response.error or "empty content")
            return None
        return response.content

    def _structured_summary(self, exchanges: list[ExchangeResponse]) -> str:
        parts = ["## Council summary", ""]
        for exchange in exchanges:
            preview = exchange.content.strip()
            if len(preview) > _SUMMARY_PREVIEW_CHARS:
                preview = preview[:_SUMMARY_PREVIEW_CHARS].rstrip() + "..."
            parts.append(f"**{exchange.member_id}** (round {exchange.round_number}): {preview}")
            parts.append("")

        themes = common_themes([e.content for e in exchanges])
        parts.append(f"Common themes: {', '.join(themes) if themes else 'none identified'}")
        return "\n".join(parts)


def common_themes(contents: list[str], count: int = _THEME_COUNT) -> list[str]:
    """Most frequent words (longer than two characters) that occur in more than one text."""
    frequency: Counter[str] = Counter()
    document_frequency: Counter[str] = Counter()
    for content in contents:
        words = extract_words(content)
        frequency.update(words)
        document_frequency.update(set(words))
    shared = [(word, n) for word, n in frequency.most_common() if document_frequency[word] > 1]
    return [word for word, _ in shared[:count]]
