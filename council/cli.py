"""Click CLI: loads config, builds the council, runs one request, prints and saves the decision."""

import asyncio
import dataclasses
import logging
import sys
import uuid
from pathlib import Path

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import (
    STRATEGIES,
    AppConfig,
    ConfigError,
    IterativeConsensusConfig,
    PresetConfig,
    load_config,
)
from council.code_oracle import CodeOracle
from council.distributor import DistributionError, OrchestrationDistributor
from council.embeddings import build_embedding_service
from council.examples import ExampleRepository
from council.health import ProviderHealthTracker
from council.healthcheck import run_health_checks
from council.models import ConsensusDecision, DeliberationRound, UserRequest
from council.moderator import ModeratorSelector
from council.negotiator import IterativeConsensusNegotiator
from council.output import print_decision, print_round_summary, save_to_file
from council.pool import ProviderPool
from council.providers.anthropic import AnthropicProvider
from council.providers.base import AIProvider
from council.providers.gemini import GeminiProvider
from council.providers.openai_provider import OpenAIProvider
from council.providers.xai import XAIProvider
from council.synthesis import SynthesisEngine

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

# Keyed by the `sdk` field of a provider entry in settings.yaml
PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "openai": OpenAIProvider,
    "google-genai": GeminiProvider,
    "xai": XAIProvider,
}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _build_all_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Build all available providers. Returns dict keyed by provider name."""
    providers: dict[str, AIProvider] = {}
    for name in sorted(config.available_providers):
        provider_cfg = config.providers[name]
        provider_cls = PROVIDER_CLASSES.get(provider_cfg.sdk)
        if provider_cls is None:
            logging.warning("Provider '%s' uses unknown sdk '%s', skipping", name, provider_cfg.sdk)
            continue
        try:
            providers[name] = provider_cls(provider_cfg)
        except Exception as exc:
            logging.warning("Failed to instantiate provider '%s': %s", name, exc)
    return providers


def _override_strategy(preset: PresetConfig, strategy: str) -> PresetConfig:
    """Return a copy of the preset that synthesizes with another strategy."""
    iterative = preset.iterative
    if strategy == "iterative-consensus" and iterative is None:
        iterative = IterativeConsensusConfig()
    synthesis = dataclasses.replace(preset.synthesis, strategy=strategy)
    return dataclasses.replace(preset, synthesis=synthesis, iterative=iterative)


def _disable_unavailable(
    preset: PresetConfig,
    providers: dict[str, AIProvider],
    tracker: ProviderHealthTracker,
) -> None:
    for member in preset.council.members:
        if member.provider not in providers and not tracker.is_disabled(member.provider):
            tracker.mark_disabled(member.provider, "provider not available (missing API key or sdk)")


def _check_providers(providers: dict[str, AIProvider], tracker: ProviderHealthTracker) -> None:
    """Run health checks, print results and record them in the tracker."""
    console.print("\n[bold]Checking providers...[/bold]")
    results: dict[str, tuple[bool, str]] = asyncio.run(run_health_checks(providers, tracker))

    failed = 0
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed += 1

    if failed == len(results):
        console.print("\n[bold red]Error:[/bold red] No providers passed the health check.")
        sys.exit(1)
    console.print()


async def _run_request(
    request: UserRequest,
    config: AppConfig,
    preset: PresetConfig,
    providers: dict[str, AIProvider],
    tracker: ProviderHealthTracker,
) -> tuple[ConsensusDecision, list[DeliberationRound]]:
    pool = ProviderPool(providers, tracker)
    engine = SynthesisEngine(
        pool,
        ModeratorSelector(config.model_rankings),
        CodeOracle(),
        meta_prompt=config.prompts.meta_synthesis,
    )
    negotiator = None
    if preset.synthesis.strategy == "iterative-consensus":
        negotiator = IterativeConsensusNegotiator(
            pool,
            build_embedding_service(config.defaults.embedding_backend),
            engine,
            examples=ExampleRepository(config.examples),
            token_prices=config.token_prices,
        )
    distributor = OrchestrationDistributor(
        pool, preset, engine, tracker, negotiator, prompts=config.prompts
    )

    rounds: list[DeliberationRound] = []
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:

        def on_round_complete(rnd: DeliberationRound) -> None:
            rounds.append(rnd)
            progress.print(f"[green]OK[/green] Round {rnd.number} complete ({len(rnd.exchanges)} responses)")

        progress.add_task("Consulting the council...", total=None)
        decision = await distributor.process_request(request, on_round_complete=on_round_complete)

    if distributor.pending_background():
        logger.debug("%d late call(s) still running, their results are discarded", distributor.pending_background())
    return decision, rounds


@click.command()
@click.argument("question", required=False)
@click.option("--preset", "preset_name", default=None, help="Council preset (default: from config)")
@click.option("--strategy", type=click.Choice(STRATEGIES), default=None,
              help="Override the preset's synthesis strategy")
@click.option("--file", "question_file", type=click.Path(exists=True), help="Read question from a text file")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
@click.option("--no-save", is_flag=True, default=False, help="Do not write the markdown transcript")
def main(
    question: str | None,
    preset_name: str | None,
    strategy: str | None,
    question_file: str | None,
    output_path: str | None,
    verbose: bool,
    skip_health_check: bool,
    no_save: bool,
) -> None:
    """AI Council -- ask several models and get one defensible answer.

    \b
    Examples:
      council "Should we use REST or GraphQL?"
      council "Monorepo vs polyrepo?" --preset research-council
      council "SQL or NoSQL?" --strategy iterative-consensus
      council --file question.md --no-save
    """
    # Model responses may contain characters the Windows console codepage cannot encode
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
        preset = config.preset(preset_name or config.defaults.preset)
    except (FileNotFoundError, ConfigError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)

    if strategy:
        preset = _override_strategy(preset, strategy)

    if question_file:
        question_text = Path(question_file).read_text(encoding="utf-8").strip()
    elif question:
        question_text = question
    else:
        console.print("[bold red]Error:[/bold red] Provide a QUESTION argument or --file.")
        sys.exit(1)

    effective_output = Path(output_path) if output_path else config.defaults.output_dir

    providers = _build_all_providers(config)
    if not providers:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    tracker = ProviderHealthTracker(config.defaults.failure_threshold)
    _disable_unavailable(preset, providers, tracker)
    if not skip_health_check:
        _check_providers(providers, tracker)

    request = UserRequest(id=uuid.uuid4().hex[:12], query=question_text)
    member_ids = ", ".join(m.id for m in preset.council.members)
    console.print(f"\n[bold cyan]AI Council[/bold cyan]: preset {preset.name}, strategy {preset.synthesis.strategy}")
    console.print(f"Members: {member_ids}")
    console.print(f"Question: [italic]{question_text[:80]}{'...' if len(question_text) > 80 else ''}[/italic]\n")

    try:
        decision, rounds = asyncio.run(_run_request(request, config, preset, providers, tracker))
    except (ConfigError, DistributionError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)

    for rnd in rounds:
        print_round_summary(rnd)
    print_decision(decision)

    if not no_save:
        saved_path = save_to_file(request, decision, rounds, effective_output, preset.name)
        console.print(f"\n[dim]Saved to: {saved_path}[/dim]")


if __name__ == "__main__":
    main()
