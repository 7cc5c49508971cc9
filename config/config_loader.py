"""Load settings.yaml into typed dataclasses. Validates presets and API keys at startup."""

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from council.models import CouncilMember, RetryPolicy
from council.moderator import DEFAULT_MODEL_RANKINGS, ModeratorStrategy

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

STRATEGIES = ("consensus-extraction", "weighted-fusion", "meta-synthesis", "iterative-consensus")
FALLBACK_STRATEGIES = ("consensus-extraction", "weighted-fusion", "meta-synthesis")
NEGOTIATION_MODES = ("parallel", "sequential")
MODERATOR_POLICIES = ("designated", "strongest", "rotating")
EMBEDDING_BACKENDS = ("lexical", "openai")

DEFAULT_CRITIQUE_PROMPT = (
    "Round {round} of deliberation.\n\n"
    "Question: {question}\n\n"
    "Other council members answered anonymously:\n\n"
    "{previous_responses_anonymized}\n\n"
    "Your previous answer:\n{own_response}\n\n"
    "Critique the proposals, keep what is correct, and give your revised answer."
)
DEFAULT_META_SYNTHESIS_PROMPT = (
    "You are the moderator of an AI council. Question: {query}\n\n"
    "The council members answered as follows:\n\n{exchanges}\n\n"
    "Integrate these perspectives into one coherent answer. Do not list the "
    "responses one by one; resolve disagreements and state the final position."
)


class ConfigError(ValueError):
    """Raised for invalid or incomplete configuration, before any work starts."""


@dataclass
class ProviderConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    max_tokens: int
    request_timeout_sec: float = 120.0
    base_url: str | None = None


@dataclass
class CouncilConfig:
    members: list[CouncilMember]
    minimum_size: int = 1
    require_minimum_for_consensus: bool = False


@dataclass
class SynthesisConfig:
    strategy: str = "consensus-extraction"
    weights: dict[str, float] = field(default_factory=dict)
    moderator: ModeratorStrategy = field(default_factory=ModeratorStrategy)


@dataclass
class IterativeConsensusConfig:
    max_rounds: int = 5
    agreement_threshold: float = 0.8
    fallback_strategy: str = "meta-synthesis"
    embedding_model: str = "text-embedding-3-large"
    early_termination_enabled: bool = True
    early_termination_threshold: float = 0.95
    negotiation_mode: str = "parallel"
    per_round_timeout_sec: float = 60.0
    human_escalation_enabled: bool = False
    example_count: int = 2
    randomization_seed: int | None = None


@dataclass
class PresetConfig:
    name: str
    council: CouncilConfig
    deliberation_rounds: int
    global_timeout_sec: float
    synthesis: SynthesisConfig
    iterative: IterativeConsensusConfig | None = None


@dataclass
class PromptsConfig:
    critique: str = DEFAULT_CRITIQUE_PROMPT
    meta_synthesis: str = DEFAULT_META_SYNTHESIS_PROMPT
    personas: dict[str, str] = field(default_factory=dict)


@dataclass
class NegotiationExample:
    category: str
    query: str
    discussion: str
    consensus: str


@dataclass
class DefaultsConfig:
    preset: str
    output_dir: Path
    failure_threshold: int = 5
    embedding_backend: str = "lexical"


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    providers: dict[str, ProviderConfig]
    presets: dict[str, PresetConfig]
    prompts: PromptsConfig = field(default_factory=PromptsConfig)
    model_rankings: dict[str, int] = field(default_factory=lambda: dict(DEFAULT_MODEL_RANKINGS))
    token_prices: dict[str, dict[str, float]] = field(default_factory=dict)
    examples: list[NegotiationExample] = field(default_factory=list)
    available_providers: set[str] = field(default_factory=set)

    def preset(self, name: str) -> PresetConfig:
        try:
            return self.presets[name]
        except KeyError:
            raise ConfigError(
                f"Unknown preset '{name}'. Available: {', '.join(sorted(self.presets))}"
            ) from None


def _positive_number(value: Any, what: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{what} must be a number, got {value!r}") from None
    if math.isnan(number) or math.isinf(number) or number <= 0:
        raise ConfigError(f"{what} must be a positive finite number, got {value!r}")
    return number


def _unit_threshold(value: Any, what: str) -> float:
    number = _positive_number(value, what)
    if number > 1:
        raise ConfigError(f"{what} must be in (0, 1], got {value!r}")
    return number


def _section(raw: dict, key: str, where: str) -> Any:
    if not isinstance(raw, dict) or key not in raw or raw[key] is None:
        raise ConfigError(f"Missing '{key}' section in {where}")
    return raw[key]


def _parse_retry_policy(raw: dict | None) -> RetryPolicy:
    if not raw:
        return RetryPolicy()
    policy = RetryPolicy(
        max_attempts=int(raw.get("max_attempts", 3)),
        initial_delay_ms=int(raw.get("initial_delay_ms", 1000)),
        max_delay_ms=int(raw.get("max_delay_ms", 10000)),
        backoff_multiplier=float(raw.get("backoff_multiplier", 2.0)),
        retryable_errors=tuple(raw.get("retryable_errors", RetryPolicy().retryable_errors)),
    )
    if policy.max_attempts < 1 or policy.initial_delay_ms < 0 or policy.max_delay_ms < policy.initial_delay_ms:
        raise ConfigError(f"Invalid retry policy: {raw!r}")
    return policy


def _parse_member(raw: dict, preset_name: str) -> CouncilMember:
    where = f"member of preset '{preset_name}'"
    member_id = str(_section(raw, "id", where))
    weight = raw.get("weight")
    return CouncilMember(
        id=member_id,
        provider=str(_section(raw, "provider", where)),
        model=str(_section(raw, "model", where)),
        timeout_sec=_positive_number(raw.get("timeout_sec"), f"timeout_sec of member '{member_id}'"),
        retry_policy=_parse_retry_policy(raw.get("retry_policy")),
        weight=float(weight) if weight is not None else None,
    )


def _parse_moderator(raw: dict | None, preset_name: str) -> ModeratorStrategy:
    if not raw:
        return ModeratorStrategy()
    policy = raw.get("policy", "strongest")
    if policy not in MODERATOR_POLICIES:
        raise ConfigError(f"Unknown moderator policy '{policy}' in preset '{preset_name}'")
    member_id = raw.get("member_id")
    if policy == "designated" and not member_id:
        raise ConfigError(f"Designated moderator in preset '{preset_name}' needs member_id")
    return ModeratorStrategy(policy=policy, member_id=member_id)


def _parse_iterative(raw: dict | None, preset_name: str) -> IterativeConsensusConfig:
    raw = raw or {}
    where = f"iterative_consensus of preset '{preset_name}'"
    defaults = IterativeConsensusConfig()

    max_rounds = int(raw.get("max_rounds", defaults.max_rounds))
    if max_rounds < 1:
        raise ConfigError(f"max_rounds in {where} must be at least 1")

    fallback = raw.get("fallback_strategy", defaults.fallback_strategy)
    if fallback not in FALLBACK_STRATEGIES:
        raise ConfigError(f"Unknown fallback_strategy '{fallback}' in {where}")

    mode = raw.get("negotiation_mode", defaults.negotiation_mode)
    if mode not in NEGOTIATION_MODES:
        raise ConfigError(f"Unknown negotiation_mode '{mode}' in {where}")

    seed = raw.get("randomization_seed")
    return IterativeConsensusConfig(
        max_rounds=max_rounds,
        agreement_threshold=_unit_threshold(
            raw.get("agreement_threshold", defaults.agreement_threshold), f"agreement_threshold in {where}"
        ),
        fallback_strategy=fallback,
        embedding_model=str(raw.get("embedding_model", defaults.embedding_model)),
        early_termination_enabled=bool(raw.get("early_termination_enabled", defaults.early_termination_enabled)),
        early_termination_threshold=_unit_threshold(
            raw.get("early_termination_threshold", defaults.early_termination_threshold),
            f"early_termination_threshold in {where}",
        ),
        negotiation_mode=mode,
        per_round_timeout_sec=_positive_number(
            raw.get("per_round_timeout_sec", defaults.per_round_timeout_sec), f"per_round_timeout_sec in {where}"
        ),
        human_escalation_enabled=bool(raw.get("human_escalation_enabled", defaults.human_escalation_enabled)),
        example_count=int(raw.get("example_count", defaults.example_count)),
        randomization_seed=int(seed) if seed is not None else None,
    )


def _parse_preset(name: str, raw: dict) -> PresetConfig:
    where = f"preset '{name}'"
    council_raw = _section(raw, "council", where)
    members = [_parse_member(m, name) for m in _section(council_raw, "members", f"council of {where}")]
    if not members:
        raise ConfigError(f"Preset '{name}' has no council members")
    ids = [m.id for m in members]
    if len(set(ids)) != len(ids):
        raise ConfigError(f"Duplicate member ids in preset '{name}': {ids}")

    council = CouncilConfig(
        members=members,
        minimum_size=int(council_raw.get("minimum_size", 1)),
        require_minimum_for_consensus=bool(council_raw.get("require_minimum_for_consensus", False)),
    )
    if council.minimum_size < 1 or council.minimum_size > len(members):
        raise ConfigError(f"minimum_size of {where} must be between 1 and {len(members)}")

    performance_raw = _section(raw, "performance", where)
    global_timeout = _positive_number(
        performance_raw.get("global_timeout_sec"), f"global_timeout_sec of {where}"
    )

    synthesis_raw = _section(raw, "synthesis", where)
    strategy = synthesis_raw.get("strategy")
    if strategy not in STRATEGIES:
        raise ConfigError(f"Unknown synthesis strategy '{strategy}' in {where}")
    weights = {str(k): float(v) for k, v in (synthesis_raw.get("weights") or {}).items()}
    synthesis = SynthesisConfig(
        strategy=strategy,
        weights=weights,
        moderator=_parse_moderator(synthesis_raw.get("moderator"), name),
    )

    iterative = None
    if strategy == "iterative-consensus":
        iterative = _parse_iterative(raw.get("iterative_consensus"), name)

    rounds = int(raw.get("deliberation_rounds", 0))
    if rounds < 0:
        raise ConfigError(f"deliberation_rounds of {where} must not be negative")

    return PresetConfig(
        name=name,
        council=council,
        deliberation_rounds=rounds,
        global_timeout_sec=global_timeout,
        synthesis=synthesis,
        iterative=iterative,
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ConfigError for any
    invalid preset, timeout or threshold. Logs missing API keys but does not
    raise; callers check available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    if not isinstance(raw, dict):
        raise ConfigError(f"Settings file is empty or malformed: {settings_path}")

    defaults_raw = _section(raw, "defaults", "settings")
    defaults = DefaultsConfig(
        preset=str(_section(defaults_raw, "preset", "defaults")),
        output_dir=Path(defaults_raw.get("output_dir", "./output")),
        failure_threshold=int(defaults_raw.get("failure_threshold", 5)),
        embedding_backend=str(defaults_raw.get("embedding_backend", "lexical")),
    )
    if defaults.embedding_backend not in EMBEDDING_BACKENDS:
        raise ConfigError(f"Unknown embedding_backend '{defaults.embedding_backend}'")
    if defaults.failure_threshold < 1:
        raise ConfigError("failure_threshold must be at least 1")

    providers: dict[str, ProviderConfig] = {}
    available_providers: set[str] = set()

    for provider_name, provider_raw in _section(raw, "providers", "settings").items():
        provider_cfg = ProviderConfig(
            name=provider_name,
            sdk=provider_raw["sdk"],
            model=provider_raw["model"],
            api_key_env=provider_raw["api_key_env"],
            max_tokens=int(provider_raw.get("max_tokens", 4096)),
            request_timeout_sec=_positive_number(
                provider_raw.get("request_timeout_sec", 120), f"request_timeout_sec of provider '{provider_name}'"
            ),
            base_url=provider_raw.get("base_url"),
        )
        providers[provider_name] = provider_cfg

        api_key = os.environ.get(provider_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s, set %s in .env",
                provider_name,
                provider_raw["api_key_env"],
            )

    presets = {
        name: _parse_preset(name, preset_raw)
        for name, preset_raw in _section(raw, "presets", "settings").items()
    }
    if defaults.preset not in presets:
        raise ConfigError(f"Default preset '{defaults.preset}' is not defined")

    prompts_raw = raw.get("prompts") or {}
    prompts = PromptsConfig(
        critique=prompts_raw.get("critique", DEFAULT_CRITIQUE_PROMPT),
        meta_synthesis=prompts_raw.get("meta_synthesis", DEFAULT_META_SYNTHESIS_PROMPT),
        personas={k: str(v) for k, v in (raw.get("personas") or {}).items()},
    )

    rankings = dict(DEFAULT_MODEL_RANKINGS)
    rankings.update({str(k): int(v) for k, v in (raw.get("model_rankings") or {}).items()})

    token_prices = {
        str(model): {"input": float(p.get("input", 0)), "output": float(p.get("output", 0))}
        for model, p in (raw.get("token_prices") or {}).items()
    }

    examples = [
        NegotiationExample(
            category=str(e.get("category", "general")),
            query=str(e["query"]),
            discussion=str(e.get("discussion", "")),
            consensus=str(e["consensus"]),
        )
        for e in (raw.get("negotiation_examples") or [])
    ]

    return AppConfig(
        defaults=defaults,
        providers=providers,
        presets=presets,
        prompts=prompts,
        model_rankings=rankings,
        token_prices=token_prices,
        examples=examples,
        available_providers=available_providers,
    )
