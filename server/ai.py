"""AI players for 7-ate-9.

CPU seats get their moves from a pluggable strategy provider (an external
HTTP service in production). Whatever the provider answers is validated
against the rules; anything unusable falls back to the local strategy below,
which is also what CPU seats use when no provider is configured.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Literal, Optional, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from config import config
from game import (
    Action,
    ActionKind,
    ActionResult,
    MatchState,
    can_play,
    playable_cards,
)

logger = logging.getLogger(__name__)

# Dedicated logger for AI decisions, verbose when AI_DEBUG=1
ai_logger = logging.getLogger("sevenate9.ai")
if config.ai.debug:
    ai_logger.setLevel(logging.DEBUG)
    if not ai_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            "%(asctime)s [AI] %(message)s", datefmt="%H:%M:%S"
        ))
        ai_logger.addHandler(handler)


def ai_log(message: str):
    """Log AI decision info when AI_DEBUG is enabled."""
    if config.ai.debug:
        ai_logger.debug(message)


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    EXPERT = "expert"

    @classmethod
    def parse(cls, value: Optional[str], default: "Difficulty" = None) -> "Difficulty":
        """Parse a client-supplied difficulty, falling back to the configured default."""
        try:
            return cls(value)
        except ValueError:
            return default or cls(config.ai.default_difficulty)


# =============================================================================
# CPU Turn Timing (seconds)
# =============================================================================

# Base "thinking" pause per difficulty, plus up to THINKING_JITTER extra
THINKING_TIME = {
    Difficulty.EASY: 0.5,
    Difficulty.MEDIUM: 0.8,
    Difficulty.HARD: 1.2,
    Difficulty.EXPERT: 1.5,
}
THINKING_JITTER = 0.4

# Number cards this far from the required number are preferred after exact
# matches (baseline heuristic, kept as-is)
PROXIMITY_GAPS = (7, 9)


def get_thinking_time(difficulty: Difficulty) -> float:
    return THINKING_TIME[difficulty] + random.uniform(0, THINKING_JITTER)


class MalformedExternalDecision(Exception):
    """The strategy provider's answer could not be parsed or is not a legal move."""
    pass


# =============================================================================
# Strategy Provider Wire Format
# =============================================================================

class StrategyRequest(BaseModel):
    """What a strategy provider is told about the position (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    hand: list[dict]
    required_number: int
    can_draw: bool
    difficulty: Difficulty
    discard_top: Optional[dict] = None
    pending_addy: bool = False
    pending_addy_base: Optional[int] = None

    @classmethod
    def from_state(
        cls,
        state: MatchState,
        player: int,
        difficulty: Difficulty,
    ) -> "StrategyRequest":
        top = state.discard_top
        return cls(
            hand=[c.to_dict() for c in state.hand(player)],
            required_number=state.required_number,
            can_draw=bool(state.draw_pile),
            difficulty=difficulty,
            discard_top=top.to_dict() if top else None,
            pending_addy=state.pending_addy is not None,
            pending_addy_base=state.pending_addy,
        )


class StrategyDecision(BaseModel):
    """A provider's answer: play a card by id, or draw."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    action: Literal["play", "draw"]
    card_id: Optional[str] = None
    reasoning: Optional[str] = None


class StrategyProvider(Protocol):
    async def decide(self, request: StrategyRequest) -> StrategyDecision:
        ...


class HttpStrategyProvider:
    """
    Strategy provider reached over HTTP.

    POSTs a StrategyRequest as JSON and expects a StrategyDecision back.
    Transport failures, non-2xx responses and bodies that don't validate
    are all reported as MalformedExternalDecision.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 8.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Args:
            url: Endpoint of the decision service.
            timeout: Request timeout in seconds.
            client: Optional preconfigured client (tests pass a MockTransport).
        """
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(cls) -> Optional["HttpStrategyProvider"]:
        """Provider from settings, or None when AI_PROVIDER_URL is unset."""
        if not config.ai.provider_url:
            return None
        return cls(config.ai.provider_url, timeout=config.ai.timeout_seconds)

    async def decide(self, request: StrategyRequest) -> StrategyDecision:
        try:
            response = await self._client.post(
                self.url,
                json=request.model_dump(mode="json", by_alias=True),
            )
            response.raise_for_status()
            return StrategyDecision.model_validate(response.json())
        except (httpx.HTTPError, ValidationError, ValueError) as e:
            raise MalformedExternalDecision(f"strategy provider failed: {e}") from e

    async def aclose(self) -> None:
        await self._client.aclose()


# =============================================================================
# Local Strategy
# =============================================================================

def choose_fallback_action(
    state: MatchState,
    player: int,
    difficulty: Difficulty = Difficulty.MEDIUM,
) -> Action:
    """
    Pick a move without the strategy provider.

    Easy players play the first legal card. Everyone else prefers, in order:
    an exact number match, a number within the +-7/+-9 proximity heuristic,
    a wild card, any other legal card. With nothing legal they draw.
    """
    playable = playable_cards(state, player)
    if not playable:
        return Action.draw()

    if difficulty == Difficulty.EASY:
        return Action.play(playable[0].id)

    required = state.required_number
    exact = [c for c in playable if c.is_number and c.number == required]
    proximity = [
        c for c in playable
        if c.is_number and abs(c.number - required) in PROXIMITY_GAPS
    ]
    wilds = [c for c in playable if c.is_wild]

    for tier in (exact, proximity, wilds, playable):
        if tier:
            return Action.play(tier[0].id)
    return Action.draw()


def validate_decision(decision: StrategyDecision, state: MatchState, player: int) -> Action:
    """
    Turn a provider decision into a legal Action.

    Raises:
        MalformedExternalDecision: Unknown card id, illegal play, or a draw
            from an empty pile.
    """
    if decision.action == ActionKind.DRAW.value:
        if not state.draw_pile:
            raise MalformedExternalDecision("draw requested but the draw pile is empty")
        return Action.draw()

    if not decision.card_id:
        raise MalformedExternalDecision("play decision without a cardId")

    card = state.find_card(player, decision.card_id)
    if card is None:
        raise MalformedExternalDecision(f"card {decision.card_id} is not in seat {player}'s hand")
    if not can_play(state, player, card):
        raise MalformedExternalDecision(f"card {decision.card_id} cannot be played now")
    return Action.play(card.id)


async def decide_action(
    state: MatchState,
    player: int,
    difficulty: Difficulty,
    provider: Optional[StrategyProvider] = None,
) -> Action:
    """Ask the provider for a move; fall back to the local strategy on any problem."""
    if provider is None:
        return choose_fallback_action(state, player, difficulty)

    request = StrategyRequest.from_state(state, player, difficulty)
    try:
        decision = await provider.decide(request)
        action = validate_decision(decision, state, player)
        ai_log(f"seat {player}: provider chose {action.kind.value} {action.card_id or ''} "
               f"({decision.reasoning or 'no reasoning'})")
        return action
    except MalformedExternalDecision as e:
        logger.warning(f"Rejected strategy decision for seat {player}, using fallback: {e}")
        return choose_fallback_action(state, player, difficulty)


def _revalidate(action: Action, state: MatchState, player: int, difficulty: Difficulty) -> Action:
    """Re-check a decision made on an older snapshot against the current one."""
    if action.kind == ActionKind.DRAW:
        return action
    card = state.find_card(player, action.card_id)
    if card is not None and can_play(state, player, card):
        return action
    ai_log(f"seat {player}: {action.card_id} no longer playable, re-deciding")
    return choose_fallback_action(state, player, difficulty)


# =============================================================================
# CPU Profiles
# =============================================================================

@dataclass
class CPUProfile:
    """Pre-defined CPU player profile."""
    name: str
    style: str  # Brief description shown to players
    difficulty: Difficulty

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "style": self.style,
            "difficulty": self.difficulty.value,
        }


CPU_PROFILES = [
    CPUProfile(name="Pip", style="Plays whatever fits", difficulty=Difficulty.EASY),
    CPUProfile(name="Nova", style="Counts to nine", difficulty=Difficulty.MEDIUM),
    CPUProfile(name="Rook", style="Hoards wild cards", difficulty=Difficulty.MEDIUM),
    CPUProfile(name="Juniper", style="Sequence hunter", difficulty=Difficulty.HARD),
    CPUProfile(name="Ash", style="Cold calculator", difficulty=Difficulty.HARD),
    CPUProfile(name="Vesper", style="Plays for the win", difficulty=Difficulty.EXPERT),
]

# Track profiles per room (room_code -> set of used profile names)
_room_used_profiles: dict[str, set[str]] = {}
# Track cpu_id -> (room_code, profile) mapping
_cpu_profiles: dict[str, tuple[str, CPUProfile]] = {}


def assign_profile(
    cpu_id: str,
    room_code: str,
    profile_name: Optional[str] = None,
) -> Optional[CPUProfile]:
    """
    Assign a profile to a CPU player, unique within the room.

    Args:
        cpu_id: CPU player id.
        room_code: Room the CPU joins.
        profile_name: Specific profile, or None for a random free one.

    Returns:
        The profile, or None if it is taken (or none are left).
    """
    used_in_room = _room_used_profiles.setdefault(room_code, set())
    available = [p for p in CPU_PROFILES if p.name not in used_in_room]
    if profile_name:
        available = [p for p in available if p.name == profile_name]
    if not available:
        if not used_in_room:
            del _room_used_profiles[room_code]
        return None

    profile = random.choice(available)
    used_in_room.add(profile.name)
    _cpu_profiles[cpu_id] = (room_code, profile)
    return profile


def release_profile(cpu_id: str) -> None:
    """Release a CPU player's profile back to its room's pool."""
    entry = _cpu_profiles.pop(cpu_id, None)
    if not entry:
        return
    room_code, profile = entry
    used = _room_used_profiles.get(room_code)
    if used is not None:
        used.discard(profile.name)
        if not used:
            del _room_used_profiles[room_code]


def cleanup_room_profiles(room_code: str):
    """Clean up all profile tracking for a room when it's deleted."""
    _room_used_profiles.pop(room_code, None)
    to_remove = [cpu_id for cpu_id, (rc, _) in _cpu_profiles.items() if rc == room_code]
    for cpu_id in to_remove:
        del _cpu_profiles[cpu_id]


def reset_all_profiles():
    """Reset all profile tracking (for cleanup)."""
    _room_used_profiles.clear()
    _cpu_profiles.clear()


def get_profile(cpu_id: str) -> Optional[CPUProfile]:
    entry = _cpu_profiles.get(cpu_id)
    return entry[1] if entry else None


def get_available_profiles(room_code: str) -> list[dict]:
    used_in_room = _room_used_profiles.get(room_code, set())
    return [p.to_dict() for p in CPU_PROFILES if p.name not in used_in_room]


def get_all_profiles() -> list[dict]:
    return [p.to_dict() for p in CPU_PROFILES]


# =============================================================================
# CPU Turn
# =============================================================================

async def process_cpu_turn(
    get_state: Callable[[], MatchState],
    player: int,
    difficulty: Difficulty,
    submit: Callable[[Action, int], Awaitable[ActionResult]],
    provider: Optional[StrategyProvider] = None,
    thinking_time: Optional[float] = None,
) -> Optional[ActionResult]:
    """
    Think, decide and submit one move for a CPU seat.

    The thinking pause and the provider call may take a while; the match may
    move on meanwhile. The decision is dropped if the match finished or the
    turn passed to someone else, and re-validated against the latest
    snapshot otherwise. The whole coroutine can be cancelled at any await.

    Args:
        get_state: Returns the latest snapshot.
        player: CPU seat.
        difficulty: CPU difficulty tier.
        submit: Applies an action given the version it was validated against.
        provider: Strategy provider, or None for the local strategy.
        thinking_time: Override for the thinking pause (None = by difficulty).

    Returns:
        The submitted ActionResult, or None if the decision was discarded.
    """
    state = get_state()
    if state.is_finished or state.active_player != player:
        return None

    delay = get_thinking_time(difficulty) if thinking_time is None else thinking_time
    ai_log(f"seat {player} thinking for {delay:.2f}s (required {state.required_number})")
    if delay > 0:
        await asyncio.sleep(delay)

    action = await decide_action(state, player, difficulty, provider)

    current = get_state()
    if current.is_finished or current.active_player != player:
        ai_log(f"seat {player}: turn moved on while thinking, decision discarded")
        return None
    if current.version != state.version:
        action = _revalidate(action, current, player, difficulty)

    return await submit(action, current.version)
