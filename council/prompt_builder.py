"""Prompts for negotiation rounds: current positions, disagreements and a structured answer format."""

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from config.config_loader import NegotiationExample
from council.content import extract_core_answer
from council.models import ExchangeResponse

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 2000
MAX_EXAMPLES = 2
DISAGREEMENT_THRESHOLD = 0.7

_INJECTION_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"ignore\s+(previous|all)\s+(instructions|prompts?)",
        r"forget\s+(everything|all)",
        r"system\s*:\s*",
        r"show\s+(me\s+)?(your|the)\s+(prompt|instructions|system)",
    )
]
_CONTEXT_BREAK_RE = re.compile(r"\[INST\]|\[/INST\]|<<SYS>>|<</SYS>>")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_PRESENTATION_WORDS = ("format", "structure", "present")


@dataclass
class Agreement:
    member_ids: list[str]
    position: str
    cohesion: float


def sanitize_query(query: str) -> str:
    """Strip code, control characters and prompt-injection phrases from a user query."""
    sanitized = query[:MAX_QUERY_LENGTH]
    sanitized = re.sub(r"```[\s\S]*?```", "[code block removed]", sanitized)
    sanitized = re.sub(r"`[^`]+`", "[code removed]", sanitized)
    # Whitespace controls become spaces so words stay separated
    sanitized = re.sub(r"[\t\r\n]", " ", sanitized)
    sanitized = _CONTROL_CHARS_RE.sub("", sanitized)
    for pattern in _INJECTION_PATTERNS:
        sanitized = pattern.sub("", sanitized)
    sanitized = _CONTEXT_BREAK_RE.sub("", sanitized)
    sanitized = re.sub(r"<[^>]*>", "", sanitized)
    sanitized = re.sub(r"\s+", " ", sanitized)
    return sanitized.strip() or sanitized


def _differences(content_a: str, content_b: str) -> str | None:
    words_a = list(dict.fromkeys(content_a.lower().split()))
    words_b = list(dict.fromkeys(content_b.lower().split()))
    set_a, set_b = set(words_a), set(words_b)
    unique_a = [w for w in words_a if w not in set_b and len(w) > 3]
    unique_b = [w for w in words_b if w not in set_a and len(w) > 3]
    if not unique_a and not unique_b:
        return None

    parts = []
    if unique_a:
        parts.append(f"Response 1 emphasizes: {', '.join(unique_a[:3])}")
    if unique_b:
        parts.append(f"Response 2 emphasizes: {', '.join(unique_b[:3])}")
    return "; ".join(parts)


class NegotiationPromptBuilder:
    """Build the per-round negotiation prompt sent to every active member."""

    def build_prompt(
        self,
        query: str,
        responses: Sequence[ExchangeResponse],
        disagreements: Sequence[str],
        agreements: Sequence[Agreement],
        examples: Sequence[NegotiationExample],
    ) -> str:
        parts = [
            "=== CONSENSUS ROUND ===",
            "",
            "You are helping reach consensus on the SUBSTANCE of an answer. "
            "Focus ONLY on factual accuracy and completeness.",
            "",
            "CRITICAL INSTRUCTIONS:",
            "- DO NOT discuss HOW to present or format the answer",
            "- DO NOT comment on the negotiation process itself",
            "- Focus ONLY on what the correct, factual answer should be",
            "- If you agree with another response's SUBSTANCE, adopt it exactly",
            "",
            "USER QUESTION:",
            sanitize_query(query),
            "",
            "CURRENT POSITIONS (core answers only):",
        ]
        for response in responses:
            parts.append(f"[{response.member_id}]: {extract_core_answer(response.content)}")
            parts.append("")

        if agreements:
            parts.append("POINTS OF AGREEMENT:")
            for agreement in agreements:
                parts.append(
                    f"- {', '.join(agreement.member_ids)} (cohesion {agreement.cohesion:.2f}): "
                    f"{agreement.position}"
                )
            parts.append("")

        factual = [
            d for d in disagreements
            if not any(word in d.lower() for word in _PRESENTATION_WORDS)
        ]
        if factual:
            parts.append("FACTUAL DISAGREEMENTS TO RESOLVE:")
            parts.extend(f"{i}. {d}" for i, d in enumerate(factual, start=1))
            parts.append("")

        if examples:
            parts.append("EXAMPLES OF PAST RESOLUTIONS:")
            for example in list(examples)[:MAX_EXAMPLES]:
                parts.append(f"- ({example.category}) {example.discussion} -> {example.consensus}")
            parts.append("")

        parts += [
            "YOUR RESPONSE:",
            "Provide your answer in this EXACT format:",
            "",
            "CORE_ANSWER: [One clear, direct answer to the user's question - 1-3 sentences max]",
            "",
            "EXPLANATION: [Brief supporting explanation if needed - keep concise]",
            "",
            "AGREE_WITH: [If your core answer matches another member's, write their ID here, "
            'otherwise write "NONE"]',
            "",
            "Remember: Consensus is about agreeing on FACTS, not on presentation style.",
        ]
        return "\n".join(parts)

    def identify_disagreements(
        self,
        responses: Sequence[ExchangeResponse],
        matrix: list[list[float]],
    ) -> list[str]:
        """Describe every pair whose similarity is below 0.7."""
        disagreements = []
        for i in range(len(responses)):
            for j in range(i + 1, len(responses)):
                if matrix[i][j] >= DISAGREEMENT_THRESHOLD:
                    continue
                diff = _differences(responses[i].content, responses[j].content)
                if diff:
                    disagreements.append(
                        f"Members {responses[i].member_id} and {responses[j].member_id} disagree: {diff}"
                    )
        return disagreements

    def extract_agreements(
        self,
        responses: Sequence[ExchangeResponse],
        matrix: list[list[float]],
        threshold: float,
    ) -> list[Agreement]:
        """Group members whose pairwise similarity clears the threshold, including transitive members."""
        agreements = []
        covered: set[tuple[int, int]] = set()
        n = len(responses)
        for i in range(n):
            for j in range(i + 1, n):
                if matrix[i][j] < threshold or (i, j) in covered:
                    continue
                group = [i, j] + [
                    k for k in range(n)
                    if k not in (i, j) and matrix[i][k] >= threshold and matrix[j][k] >= threshold
                ]
                group.sort()
                pairs = [(a, b) for idx, a in enumerate(group) for b in group[idx + 1:]]
                cohesion = sum(matrix[a][b] for a, b in pairs) / len(pairs)
                agreements.append(
                    Agreement(
                        member_ids=[responses[k].member_id for k in group],
                        position=responses[i].content[:200],
                        cohesion=cohesion,
                    )
                )
                covered.update(pairs)
        return agreements
