"""Moderator selection for meta-synthesis: designated, strongest, or rotating."""

import logging
import threading
from dataclasses import dataclass
from typing import Literal

from council.models import CouncilMember

logger = logging.getLogger(__name__)

ModeratorPolicy = Literal["designated", "strongest", "rotating"]

# Higher score = stronger model. Overridable via settings.yaml `model_rankings`.
DEFAULT_MODEL_RANKINGS: dict[str, int] = {
    "gpt-4": 95,
    "gpt-4-turbo": 98,
    "gpt-4o": 100,
    "gpt-3.5-turbo": 70,
    "claude-3-opus": 98,
    "claude-3-sonnet": 90,
    "claude-3-haiku": 75,
    "claude-2": 85,
    "gemini-pro": 92,
    "gemini-ultra": 97,
    "default": 50,
}


class ModeratorSelectionError(ValueError):
    """Raised when no moderator can be chosen."""


@dataclass(frozen=True)
class ModeratorStrategy:
    policy: ModeratorPolicy = "strongest"
    member_id: str | None = None    # required for "designated"


class ModeratorSelector:
    """Pick one council member to act as final arbiter."""

    def __init__(self, rankings: dict[str, int] | None = None) -> None:
        self._rankings = dict(rankings) if rankings else dict(DEFAULT_MODEL_RANKINGS)
        self._default_score = self._rankings.get("default", 50)
        self._rotation_index = 0
        # Read-and-increment of the rotation index must be one step across threads
        self._rotation_lock = threading.Lock()

    def select(self, members: list[CouncilMember], strategy: ModeratorStrategy) -> CouncilMember:
        if not members:
            raise ModeratorSelectionError("No members available for moderator selection")

        if strategy.policy == "designated":
            for member in members:
                if member.id == strategy.member_id:
                    return member
            raise ModeratorSelectionError(f"Designated moderator {strategy.member_id} not found")

        if strategy.policy == "rotating":
            return members[self._next_rotation_index() % len(members)]

        if strategy.policy == "strongest":
            return self._strongest(members)

        raise ModeratorSelectionError(f"Unknown moderator policy: {strategy.policy}")

    def _next_rotation_index(self) -> int:
        with self._rotation_lock:
            index = self._rotation_index
            self._rotation_index += 1
        return index

    def _strongest(self, members: list[CouncilMember]) -> CouncilMember:
        strongest = members[0]
        best = self.model_score(strongest.model)
        for member in members[1:]:
            score = self.model_score(member.model)
            if score > best:
                strongest, best = member, score
        logger.debug("Strongest moderator: %s (score %s)", strongest.id, best)
        return strongest

    def model_score(self, model: str) -> int:
        """Exact match, else the longest ranking key contained in the name, else default."""
        if model in self._rankings and model != "default":
            return self._rankings[model]
        matches = [name for name in self._rankings if name != "default" and name in model]
        if matches:
            return self._rankings[max(matches, key=len)]
        return self._default_score
