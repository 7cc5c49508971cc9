"""Tests for the click entry point and helpers in council/cli.py."""

from pathlib import Path
from unittest.mock import AsyncMock

import pytest
from click.testing import CliRunner

import council.cli as cli
from config.config_loader import AppConfig, DefaultsConfig, ProviderConfig
from council.health import ProviderHealthTracker
from council.models import ProviderResponse
from tests.conftest import MockProvider, make_member, make_preset


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    members = [make_member("m1"), make_member("m2")]
    return AppConfig(
        defaults=DefaultsConfig(preset="test-preset", output_dir=tmp_path / "output"),
        providers={},
        presets={"test-preset": make_preset(members)},
    )


@pytest.fixture
def providers() -> dict[str, MockProvider]:
    return {"m1": MockProvider("m1", "Use YAML for config."), "m2": MockProvider("m2", "Use YAML for config.")}


@pytest.fixture
def patched(monkeypatch, app_config, providers):
    monkeypatch.setattr(cli, "load_dotenv", lambda: None)
    monkeypatch.setattr(cli, "load_config", lambda: app_config)
    monkeypatch.setattr(cli, "_build_all_providers", lambda config: providers)
    return app_config


def test_missing_question_exits(patched):
    result = CliRunner().invoke(cli.main, ["--skip-health-check"])
    assert result.exit_code == 1
    assert "Provide a QUESTION argument or --file." in result.output


def test_unknown_preset_is_config_error(patched):
    result = CliRunner().invoke(cli.main, ["Q?", "--preset", "nope", "--skip-health-check"])
    assert result.exit_code == 1
    assert "Config error:" in result.output


def test_full_run_prints_decision_and_saves(patched, providers, tmp_path):
    out_dir = tmp_path / "decisions"
    result = CliRunner().invoke(
        cli.main, ["YAML or JSON?", "--skip-health-check", "--output", str(out_dir)]
    )

    assert result.exit_code == 0, result.output
    assert "Council Decision" in result.output
    assert "Use YAML for config." in result.output
    saved = list(out_dir.glob("*.md"))
    assert len(saved) == 1
    assert "**Preset:** test-preset" in saved[0].read_text(encoding="utf-8")
    providers["m1"].generate.assert_awaited_once()


def test_question_from_file_and_no_save(patched, providers, tmp_path):
    question = tmp_path / "question.md"
    question.write_text("Tabs or spaces?\n", encoding="utf-8")

    result = CliRunner().invoke(cli.main, ["--file", str(question), "--skip-health-check", "--no-save"])

    assert result.exit_code == 0, result.output
    assert providers["m1"].generate.call_args.args[0] == "Tabs or spaces?"
    assert not (patched.defaults.output_dir).exists()


def test_all_members_failing_exits(patched, providers):
    for provider in providers.values():
        provider.generate = AsyncMock(return_value=ProviderResponse(success=False, content="", error="HTTP 500"))

    result = CliRunner().invoke(cli.main, ["Q?", "--skip-health-check", "--no-save"])

    assert result.exit_code == 1
    assert "All council members failed" in result.output


def test_strategy_override(patched, tmp_path):
    result = CliRunner().invoke(
        cli.main, ["Q?", "--skip-health-check", "--no-save", "--strategy", "weighted-fusion"]
    )
    assert result.exit_code == 0, result.output
    assert "weighted-fusion" in result.output


def test_override_strategy_adds_iterative_defaults(app_config):
    preset = cli._override_strategy(app_config.preset("test-preset"), "iterative-consensus")
    assert preset.synthesis.strategy == "iterative-consensus"
    assert preset.iterative is not None
    assert app_config.preset("test-preset").synthesis.strategy == "consensus-extraction"


def test_disable_unavailable_members(app_config):
    tracker = ProviderHealthTracker()
    cli._disable_unavailable(app_config.preset("test-preset"), {"m1": MockProvider("m1")}, tracker)
    assert tracker.is_disabled("m2")
    assert not tracker.is_disabled("m1")


def test_build_all_providers_skips_unknown_sdk(app_config, monkeypatch):
    app_config.providers = {
        "openai": ProviderConfig("openai", "openai", "gpt-4o", "OPENAI_API_KEY", 1024),
        "odd": ProviderConfig("odd", "mystery", "m", "ODD_KEY", 1024),
    }
    app_config.available_providers = {"openai", "odd"}
    monkeypatch.setitem(cli.PROVIDER_CLASSES, "openai", lambda cfg: MockProvider(cfg.name))

    built = cli._build_all_providers(app_config)

    assert list(built) == ["openai"]


def test_check_providers_exits_when_all_fail():
    provider = MockProvider("m1")
    provider.generate = AsyncMock(return_value=ProviderResponse(success=False, content="", error="401"))
    with pytest.raises(SystemExit):
        cli._check_providers({"m1": provider}, ProviderHealthTracker())


def test_check_providers_records_failures():
    bad = MockProvider("bad")
    bad.generate = AsyncMock(return_value=ProviderResponse(success=False, content="", error="401"))
    tracker = ProviderHealthTracker()

    cli._check_providers({"good": MockProvider("good", "OK"), "bad": bad}, tracker)

    assert tracker.is_disabled("bad")
    assert not tracker.is_disabled("good")
