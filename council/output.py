"""Rich console output and markdown file save for council decisions."""

import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from council.models import ConsensusDecision, DeliberationRound, ExchangeResponse, UserRequest

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_CONFIDENCE_STYLE = {"high": "green", "medium": "yellow", "low": "red"}


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _response_preview(exchange: ExchangeResponse, words: int = 50) -> str:
    """Return first N words of a response."""
    all_words = exchange.content.split()
    preview = " ".join(all_words[:words])
    if len(all_words) > words:
        preview += "..."
    return preview


def _round_label(number: int) -> str:
    return "Initial Responses" if number == 0 else "Deliberation"


def print_round_summary(rnd: DeliberationRound) -> None:
    """Print a brief summary of round responses to the console."""
    console.print(Rule(f"[bold cyan]Round {rnd.number}: {_round_label(rnd.number)}[/bold cyan]"))
    for exchange in rnd.exchanges:
        console.print(
            Panel(
                _response_preview(exchange),
                title=f"[bold]{exchange.member_id}[/bold]",
                subtitle=f"{exchange.latency_sec:.1f}s",
                border_style="dim",
            )
        )


def _metadata_line(decision: ConsensusDecision) -> str:
    parts = [
        f"Strategy: {decision.strategy}",
        f"Agreement: {decision.agreement_level:.2f}",
        f"Members: {', '.join(decision.contributing_members)}",
    ]
    negotiation = decision.negotiation
    if negotiation is not None:
        parts.append(f"Negotiation rounds: {negotiation.total_rounds}")
        if negotiation.fallback_used:
            parts.append(f"Fallback: {negotiation.fallback_reason}")
        if negotiation.early_terminated:
            parts.append(f"Saved ~{negotiation.tokens_avoided} tokens (${negotiation.estimated_cost_saved:.4f})")
        if negotiation.human_escalation_triggered:
            parts.append("Deadlock: human review suggested")
    if decision.partial:
        parts.append("Partial: global timeout")
    return " | ".join(parts)


def print_decision(decision: ConsensusDecision) -> None:
    """Print the final decision to the console using Rich markdown."""
    style = _CONFIDENCE_STYLE.get(decision.confidence, "white")
    console.print(Rule(f"[bold green]Council Decision[/bold green] [{style}]({decision.confidence} confidence)[/{style}]"))
    console.print(Text(_metadata_line(decision), style="dim"))
    console.print(Markdown(decision.content))


def save_to_file(
    request: UserRequest,
    decision: ConsensusDecision,
    rounds: list[DeliberationRound],
    output_dir: Path,
    preset_name: str,
) -> Path:
    """Save the transcript and decision as a markdown file.

    Args:
        request: The user request.
        decision: The final decision.
        rounds: Rounds observed during processing (may be empty).
        output_dir: Directory to save the file in.
        preset_name: Preset used, recorded in the header.

    Returns:
        Path to the saved file.
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = output_dir / f"{timestamp}_{_slug(request.query) or request.id}.md"

    lines: list[str] = [
        f"# AI Council Decision: {request.query[:80]}",
        "",
        f"**Date:** {decision.timestamp.strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Request:** {request.id}",
        f"**Preset:** {preset_name}",
        f"**Strategy:** {decision.strategy}",
        f"**Confidence:** {decision.confidence}",
        f"**Agreement:** {decision.agreement_level:.2f}",
        f"**Members:** {', '.join(decision.contributing_members)}",
    ]
    if decision.partial:
        lines.append("**Partial:** yes (global timeout reached)")

    negotiation = decision.negotiation
    if negotiation is not None:
        progression = ", ".join(f"{s:.3f}" for s in negotiation.similarity_progression)
        lines += [
            f"**Negotiation rounds:** {negotiation.total_rounds}",
            f"**Similarity progression:** {progression}",
            f"**Consensus achieved:** {'yes' if negotiation.consensus_achieved else 'no'}",
            f"**Quality score:** {negotiation.quality_score:.2f}",
        ]
        if negotiation.fallback_used:
            lines.append(f"**Fallback:** {negotiation.fallback_reason}")
        if negotiation.deadlock_detected:
            lines.append(
                "**Deadlock:** detected"
                + (" (human escalation triggered)" if negotiation.human_escalation_triggered else "")
            )
        if negotiation.early_terminated:
            lines.append(
                f"**Early termination:** ~{negotiation.tokens_avoided} tokens avoided, "
                f"${negotiation.estimated_cost_saved:.4f} saved"
            )

    lines += ["", "---", ""]

    for rnd in rounds:
        lines.append(f"## Round {rnd.number}: {_round_label(rnd.number)}")
        lines.append("")
        for exchange in rnd.exchanges:
            lines.append(f"### {exchange.member_id}")
            lines.append("")
            lines.append(exchange.content)
            lines.append("")
            tokens = exchange.token_usage.total_tokens
            lines.append(
                f"*Latency: {exchange.latency_sec:.2f}s"
                + (f" | Tokens: {tokens}" if tokens else "")
                + "*"
            )
            lines.append("")

    lines += ["## Decision", "", decision.content, ""]

    filepath.write_text("\n".join(lines), encoding="utf-8")
    logger.info("Decision saved to: %s", filepath)
    return filepath
