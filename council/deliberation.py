"""Static deliberation: anonymized peer-critique rounds after the initial fan-out."""

import asyncio
import logging
import random
import time
from collections.abc import Callable

from config.config_loader import PromptsConfig
from council.models import (
    CouncilMember,
    DeliberationRound,
    DeliberationThread,
    ExchangeResponse,
    ProviderResponse,
    UserRequest,
)
from council.pool import ProviderPool

logger = logging.getLogger(__name__)

# Critique calls that outlived their member timeout
_stragglers: set[asyncio.Task] = set()


def _keep_running(task: asyncio.Task) -> None:
    _stragglers.add(task)
    task.add_done_callback(_stragglers.discard)


def pending_stragglers() -> int:
    return len(_stragglers)


def _anonymize_responses(
    responses: list[ExchangeResponse],
) -> tuple[str, dict[str, str]]:
    """Shuffle responses and label them anonymously.

    Returns:
        (anonymized_block, label→member_id mapping)
    """
    shuffled = list(responses)
    random.shuffle(shuffled)
    labels = [chr(ord("A") + i) for i in range(len(shuffled))]
    parts = [f"--- Proposal {label} ---\n{r.content}"
             for label, r in zip(labels, shuffled)]
    mapping = {label: r.member_id for label, r in zip(labels, shuffled)}
    return "\n\n".join(parts), mapping


def _carry_forward(own: ExchangeResponse, round_number: int, peers: tuple[str, ...]) -> ExchangeResponse:
    return ExchangeResponse(
        member_id=own.member_id,
        content=own.content,
        round_number=round_number,
        references_to=peers,
    )


async def _deliberate_one(
    pool: ProviderPool,
    member: CouncilMember,
    own: ExchangeResponse,
    previous: list[ExchangeResponse],
    request: UserRequest,
    round_number: int,
    prompts: PromptsConfig,
    track: Callable[[asyncio.Task], None],
) -> ExchangeResponse:
    """Ask one member to critique its peers. Never raises; keeps the old answer on failure."""
    peers = [e for e in previous if e.member_id != own.member_id]
    peer_ids = tuple(e.member_id for e in peers)
    if not peers:
        return _carry_forward(own, round_number, peer_ids)

    anon_block, label_map = _anonymize_responses(peers)
    logger.debug("Round %d anonymization map for %s: %s", round_number, member.id, label_map)
    prompt = prompts.critique.format(
        persona=prompts.personas.get(member.id, ""),
        round=round_number,
        question=request.query,
        previous_responses_anonymized=anon_block,
        own_response=own.content,
    )

    call = asyncio.create_task(pool.send_request(member, prompt, context=request.context))
    try:
        done, _ = await asyncio.wait({call}, timeout=member.timeout_sec)
    except asyncio.CancelledError:
        track(call)
        raise

    if call not in done:
        # Left running; the late answer is ignored
        track(call)
        logger.warning(
            "Member %s timed out after %ss in deliberation round %d, keeping previous answer",
            member.id, member.timeout_sec, round_number,
        )
        return _carry_forward(own, round_number, peer_ids)

    try:
        response = call.result()
    except Exception as exc:
        response = ProviderResponse(success=False, content="", error=f"Unexpected error: {exc}")

    if not response.success:
        logger.warning(
            "Member %s failed in deliberation round %d, keeping previous answer: %s",
            member.id, round_number, response.error,
        )
        return _carry_forward(own, round_number, peer_ids)

    return ExchangeResponse(
        member_id=member.id,
        content=response.content,
        round_number=round_number,
        token_usage=response.token_usage,
        latency_sec=response.latency_sec,
        references_to=peer_ids,
    )


async def conduct_deliberation(
    request: UserRequest,
    initial: list[ExchangeResponse],
    members: list[CouncilMember],
    rounds: int,
    pool: ProviderPool,
    prompts: PromptsConfig,
    on_round_complete: Callable[[DeliberationRound], None] | None = None,
    track: Callable[[asyncio.Task], None] | None = None,
) -> DeliberationThread:
    """Run critique rounds on top of the initial responses.

    Args:
        request: The user request being deliberated.
        initial: Round-0 exchanges from the distributor.
        members: Active council members; only members with an initial answer take part.
        rounds: Number of critique rounds after round 0.
        pool: Provider pool used to reach members.
        prompts: Prompt templates from config (carries the critique template and personas).
        on_round_complete: Optional callback invoked after each critique round.
        track: Receives calls that missed their member timeout. They are never
            cancelled; by default they are held in a module-level set.

    Returns:
        DeliberationThread with round 0 plus one round per critique round.
    """
    start = time.monotonic()
    thread = DeliberationThread()
    thread.add_round(initial)
    by_id = {m.id: m for m in members}
    track = track or _keep_running

    for round_num in range(1, rounds + 1):
        previous = thread.latest_round().exchanges
        participants = [e for e in previous if e.member_id in by_id]
        logger.info("Starting deliberation round %d with %d members", round_num, len(participants))

        results = await asyncio.gather(*(
            _deliberate_one(pool, by_id[own.member_id], own, previous, request, round_num, prompts, track)
            for own in participants
        ))
        current = thread.add_round(list(results))

        logger.info("Deliberation round %d complete: %d exchanges", round_num, len(current.exchanges))
        if on_round_complete:
            on_round_complete(current)

    thread.total_duration_sec = time.monotonic() - start
    return thread
