"""Tests for council/deliberation.py."""

import asyncio
from unittest.mock import AsyncMock

from council.deliberation import _anonymize_responses, conduct_deliberation, pending_stragglers
from council.health import ProviderHealthTracker
from council.models import ExchangeResponse, ProviderResponse
from council.pool import ProviderPool
from tests.conftest import MockProvider, make_exchange, make_member, ok_response


def test_anonymize_responses_uses_proposal_labels():
    responses = [make_exchange("gemini", "Use YAML."), make_exchange("claude", "Use JSON.")]
    block, mapping = _anonymize_responses(responses)
    assert "--- Proposal A ---" in block
    assert "--- Proposal B ---" in block
    assert set(mapping.keys()) == {"A", "B"}


def test_anonymize_responses_hides_member_ids():
    responses = [make_exchange("gemini", "Prefer YAML."), make_exchange("claude", "Prefer JSON.")]
    block, mapping = _anonymize_responses(responses)
    assert "gemini" not in block
    assert "claude" not in block
    assert "Prefer YAML." in block and "Prefer JSON." in block
    assert set(mapping.values()) == {"gemini", "claude"}


async def test_single_round_critiques_peers(sample_request, sample_prompts_config):
    providers = {
        "m1": MockProvider("m1", "Revised by m1"),
        "m2": MockProvider("m2", "Revised by m2"),
    }
    pool = ProviderPool(providers, ProviderHealthTracker())
    members = [make_member("m1"), make_member("m2")]
    initial = [make_exchange("m1", "Initial from m1"), make_exchange("m2", "Initial from m2")]

    thread = await conduct_deliberation(sample_request, initial, members, 1, pool, sample_prompts_config, track=[].append)

    assert [r.number for r in thread.rounds] == [0, 1]
    revised = {e.member_id: e for e in thread.rounds[1].exchanges}
    assert revised["m1"].content == "Revised by m1"
    assert revised["m1"].round_number == 1
    assert revised["m1"].references_to == ("m2",)

    prompt = providers["m1"].generate.call_args.args[0]
    assert "Initial from m2" in prompt
    assert "You said:\nInitial from m1" in prompt
    assert "--- Proposal A ---" in prompt


async def test_failed_member_keeps_previous_answer(sample_request, sample_prompts_config):
    providers = {"m1": MockProvider("m1", "Revised by m1"), "m2": MockProvider("m2")}
    providers["m2"].generate = AsyncMock(return_value=ProviderResponse(success=False, content="", error="500"))
    pool = ProviderPool(providers, ProviderHealthTracker())
    initial = [make_exchange("m1", "Initial from m1"), make_exchange("m2", "Initial from m2")]

    thread = await conduct_deliberation(
        sample_request, initial, [make_member("m1"), make_member("m2")], 1, pool, sample_prompts_config
    )

    revised = {e.member_id: e.content for e in thread.rounds[1].exchanges}
    assert revised == {"m1": "Revised by m1", "m2": "Initial from m2"}


async def test_timed_out_member_keeps_previous_answer(sample_request, sample_prompts_config):
    async def slow(*args, **kwargs):
        await asyncio.sleep(1)
        return ok_response("too late")

    providers = {"m1": MockProvider("m1", "Revised by m1"), "m2": MockProvider("m2")}
    providers["m2"].generate = AsyncMock(side_effect=slow)
    pool = ProviderPool(providers, ProviderHealthTracker())
    members = [make_member("m1"), make_member("m2", timeout_sec=0.05)]
    initial = [make_exchange("m1", "Initial from m1"), make_exchange("m2", "Initial from m2")]

    late = []
    thread = await conduct_deliberation(
        sample_request, initial, members, 1, pool, sample_prompts_config, track=late.append
    )

    revised = {e.member_id: e.content for e in thread.rounds[1].exchanges}
    assert revised["m2"] == "Initial from m2"
    for task in late:
        task.cancel()


async def test_callback_per_round_and_lone_member_carried(sample_request, sample_prompts_config):
    provider = MockProvider("m1", "never asked")
    pool = ProviderPool({"m1": provider}, ProviderHealthTracker())
    seen = []

    thread = await conduct_deliberation(
        sample_request, [make_exchange("m1", "alone")], [make_member("m1")], 2, pool,
        sample_prompts_config, on_round_complete=lambda rnd: seen.append(rnd.number),
    )

    assert seen == [1, 2]
    assert thread.latest_round().exchanges[0].content == "alone"
    provider.generate.assert_not_awaited()


async def test_members_without_initial_answer_do_not_join(sample_request, sample_prompts_config):
    providers = {"m1": MockProvider("m1", "r1"), "m2": MockProvider("m2", "r2"), "m3": MockProvider("m3", "r3")}
    pool = ProviderPool(providers, ProviderHealthTracker())
    members = [make_member("m1"), make_member("m2"), make_member("m3")]
    initial = [make_exchange("m1", "a"), make_exchange("m2", "b")]

    thread = await conduct_deliberation(sample_request, initial, members, 1, pool, sample_prompts_config)

    assert {e.member_id for e in thread.rounds[1].exchanges} == {"m1", "m2"}
    providers["m3"].generate.assert_not_awaited()


async def test_timed_out_critique_call_keeps_running(sample_request, sample_prompts_config):
    state = {"cancelled": False, "finished": False}

    async def slow(*args, **kwargs):
        try:
            await asyncio.sleep(0.2)
        except asyncio.CancelledError:
            state["cancelled"] = True
            raise
        state["finished"] = True
        return ok_response("too late")

    providers = {"m1": MockProvider("m1", "Revised by m1"), "m2": MockProvider("m2")}
    providers["m2"].generate = AsyncMock(side_effect=slow)
    pool = ProviderPool(providers, ProviderHealthTracker())
    members = [make_member("m1"), make_member("m2", timeout_sec=0.05)]
    initial = [make_exchange("m1", "Initial from m1"), make_exchange("m2", "Initial from m2")]
    tracked = []

    thread = await conduct_deliberation(
        sample_request, initial, members, 1, pool, sample_prompts_config, track=tracked.append
    )

    assert {e.member_id: e.content for e in thread.rounds[1].exchanges}["m2"] == "Initial from m2"
    assert len(tracked) == 1
    await asyncio.gather(*tracked)
    assert state == {"cancelled": False, "finished": True}


async def test_stragglers_held_without_explicit_tracker(sample_request, sample_prompts_config):
    async def slow(*args, **kwargs):
        await asyncio.sleep(0.1)
        return ok_response("too late")

    providers = {"m1": MockProvider("m1", "r1"), "m2": MockProvider("m2")}
    providers["m2"].generate = AsyncMock(side_effect=slow)
    pool = ProviderPool(providers, ProviderHealthTracker())
    members = [make_member("m1"), make_member("m2", timeout_sec=0.02)]
    initial = [make_exchange("m1", "a"), make_exchange("m2", "b")]
    before = pending_stragglers()

    await conduct_deliberation(sample_request, initial, members, 1, pool, sample_prompts_config)

    assert pending_stragglers() == before + 1
    await asyncio.sleep(0.2)
    assert pending_stragglers() == before
