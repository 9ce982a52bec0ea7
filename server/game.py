"""
Game logic for 7-ate-9.

This module implements the core rules of the 7-ate-9 card game: the card and
deck model, the dealt match snapshot, the legality checks and the effect of
every card, and the turn order.

7-ate-9 Rules Summary:
    - Each player is dealt 7 cards; the next card starts the discard pile
    - Play a number card equal to the required number, or any wild card
    - The required number climbs 1 -> 2 -> ... -> 9 -> 1 as cards are played
    - Can't (or won't) play? Draw a card and your turn ends
    - First player to empty their hand wins

The engine is a set of pure functions over an immutable MatchState:

    state = new_match(player_count=4, seed=1234)
    result = apply_play(state, 0, "number-3-2")
    if result.accepted:
        state = result.state

Rejected actions never raise; they return the unchanged state together with
an InvalidReason code.
"""

import random
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Optional, Union

from constants import (
    CANNIBAL_DISCARDS,
    DEFAULT_REQUIRED_NUMBER,
    HAND_SIZE,
    MAX_NUMBER,
    MAX_PLAYERS,
    MIN_NUMBER,
    MIN_PLAYERS,
    NOMINAL_VALUES,
    NUMBER_COPIES,
    SLICE_OF_PI_MAX,
    TICKLES_DRAWS,
    TICKLES_TARGETS,
    WILD_CARD_COUNTS,
)


class CardKind(str, Enum):
    """Whether a card carries a number or a wild effect."""

    NUMBER = "number"
    WILD = "wild"


class WildKind(str, Enum):
    """
    The nine wild cards.

    ATE:          Substitutes for the required number
    ADDY:         Play it, then play any number card to add to the sequence
    DIVIDE:       Give half your hand to the next player
    BRITISH_THREE: Everyone draws 1
    SLICE_OF_PI:  Discard all your 1s, 2s, 3s and 4s
    NU_UH:        Skip the next player
    CANNIBAL:     Eat 2 more cards from your hand, everyone else draws 1
    NEGATIVITY:   "Play 3 lower" (no automatic effect)
    TICKLES:      The next two players draw 2 each
    """

    ATE = "ate"
    ADDY = "addy"
    DIVIDE = "divide"
    BRITISH_THREE = "british3"
    SLICE_OF_PI = "slicepi"
    NU_UH = "nuuh"
    CANNIBAL = "cannibal"
    NEGATIVITY = "negativity"
    TICKLES = "tickles"


@dataclass(frozen=True)
class Card:
    """
    A single card. Cards are never mutated after creation.

    Attributes:
        id: Unique, stable identifier (e.g. "number-7-3", "wild-addy-1").
        kind: Number or wild.
        number: Face value 1-9 (number cards only).
        wild_kind: Which wild effect (wild cards only).
    """

    id: str
    kind: CardKind
    number: Optional[int] = None
    wild_kind: Optional[WildKind] = None

    def __post_init__(self) -> None:
        if self.kind == CardKind.NUMBER:
            if self.wild_kind is not None:
                raise ValueError(f"Number card {self.id} cannot have a wild kind")
            if self.number is None or not MIN_NUMBER <= self.number <= MAX_NUMBER:
                raise ValueError(f"Number card {self.id} needs a value in 1-9, got {self.number}")
        else:
            if self.number is not None:
                raise ValueError(f"Wild card {self.id} cannot have a number")
            if self.wild_kind is None:
                raise ValueError(f"Wild card {self.id} needs a wild kind")

    @classmethod
    def number_card(cls, card_id: str, value: int) -> "Card":
        return cls(id=card_id, kind=CardKind.NUMBER, number=value)

    @classmethod
    def wild_card(cls, card_id: str, wild_kind: WildKind) -> "Card":
        return cls(id=card_id, kind=CardKind.WILD, wild_kind=wild_kind)

    @property
    def is_number(self) -> bool:
        return self.kind == CardKind.NUMBER

    @property
    def is_wild(self) -> bool:
        return self.kind == CardKind.WILD

    def label(self) -> str:
        """Short display label ("7", "addy")."""
        if self.is_number:
            return str(self.number)
        return self.wild_kind.value

    def to_dict(self) -> dict:
        """Convert card to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "number": self.number,
            "wild_kind": self.wild_kind.value if self.wild_kind else None,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Card":
        wild_kind = d.get("wild_kind")
        return cls(
            id=d["id"],
            kind=CardKind(d["kind"]),
            number=d.get("number"),
            wild_kind=WildKind(wild_kind) if wild_kind else None,
        )


class MatchPhase(str, Enum):
    """
    Phases of a match.

    Flow: PLAYING -> FINISHED (terminal, once a hand is empty)
    """

    PLAYING = "playing"
    FINISHED = "finished"


class Advance(IntEnum):
    """How many seats the turn moves after a play."""

    NONE = 0  # Addy: the same player plays again
    ONE = 1
    TWO = 2   # Nu-Uh: skip the next player


class InvalidReason(str, Enum):
    """Reason codes for rejected actions."""

    MATCH_FINISHED = "match_finished"
    NOT_YOUR_TURN = "not_your_turn"
    CARD_NOT_IN_HAND = "card_not_in_hand"
    NUMBER_CARD_REQUIRED = "number_card_required"
    WRONG_NUMBER = "wrong_number"
    DRAW_PILE_EMPTY = "draw_pile_empty"


class ActionKind(str, Enum):
    PLAY = "play"
    DRAW = "draw"


@dataclass(frozen=True)
class Action:
    """A player intent: play a card from hand, or draw from the pile."""

    kind: ActionKind
    card_id: Optional[str] = None

    @classmethod
    def play(cls, card_id: str) -> "Action":
        return cls(kind=ActionKind.PLAY, card_id=card_id)

    @classmethod
    def draw(cls) -> "Action":
        return cls(kind=ActionKind.DRAW)

    def to_dict(self) -> dict:
        return {"kind": self.kind.value, "card_id": self.card_id}

    @classmethod
    def from_dict(cls, d: dict) -> "Action":
        return cls(kind=ActionKind(d["kind"]), card_id=d.get("card_id"))


@dataclass(frozen=True)
class MatchState:
    """
    The authoritative snapshot of a match.

    Snapshots are immutable; every accepted action produces a new one with
    `version` incremented by one. The room layer uses `version` to reject
    actions computed against a stale snapshot.

    Attributes:
        draw_pile: Face-down pile; the top card is the last element.
        discard_pile: Played cards; the top card is the last element.
        hands: One hand per player slot (0..player_count-1).
        required_number: The number a number card must match (1-9).
        active_player: Slot of the player whose turn it is.
        player_count: Number of seats (3-5).
        phase: PLAYING or FINISHED.
        pending_addy: Pre-Addy required number while the active player owes
            a follow-up number card, else None.
        winner: Slot of the player who emptied their hand.
        version: Number of actions applied since the deal.
    """

    draw_pile: tuple[Card, ...]
    discard_pile: tuple[Card, ...]
    hands: tuple[tuple[Card, ...], ...]
    required_number: int
    active_player: int
    player_count: int
    phase: MatchPhase = MatchPhase.PLAYING
    pending_addy: Optional[int] = None
    winner: Optional[int] = None
    version: int = 0

    @property
    def discard_top(self) -> Optional[Card]:
        return self.discard_pile[-1] if self.discard_pile else None

    @property
    def is_finished(self) -> bool:
        return self.phase == MatchPhase.FINISHED

    def hand(self, player: int) -> tuple[Card, ...]:
        return self.hands[player]

    def find_card(self, player: int, card_id: str) -> Optional[Card]:
        """Find a card in a player's hand by id."""
        if not 0 <= player < self.player_count:
            return None
        for card in self.hands[player]:
            if card.id == card_id:
                return card
        return None

    def total_cards(self) -> int:
        """Cards across draw pile, discard pile and all hands (always 99)."""
        return (
            len(self.draw_pile)
            + len(self.discard_pile)
            + sum(len(h) for h in self.hands)
        )

    def to_dict(self) -> dict:
        """Full snapshot for storage and pub/sub (reveals every card)."""
        return {
            "draw_pile": [c.to_dict() for c in self.draw_pile],
            "discard_pile": [c.to_dict() for c in self.discard_pile],
            "hands": [[c.to_dict() for c in hand] for hand in self.hands],
            "required_number": self.required_number,
            "active_player": self.active_player,
            "player_count": self.player_count,
            "phase": self.phase.value,
            "pending_addy": self.pending_addy,
            "winner": self.winner,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "MatchState":
        return cls(
            draw_pile=tuple(Card.from_dict(c) for c in d["draw_pile"]),
            discard_pile=tuple(Card.from_dict(c) for c in d["discard_pile"]),
            hands=tuple(tuple(Card.from_dict(c) for c in hand) for hand in d["hands"]),
            required_number=d["required_number"],
            active_player=d["active_player"],
            player_count=d["player_count"],
            phase=MatchPhase(d["phase"]),
            pending_addy=d.get("pending_addy"),
            winner=d.get("winner"),
            version=d.get("version", 0),
        )

    def to_client_dict(self, for_player: Optional[int] = None) -> dict:
        """
        Snapshot as seen by one player.

        Other players' hands are reduced to their sizes and the draw pile to
        its count. With for_player=None (spectators) no hand is revealed.

        Args:
            for_player: Slot of the viewing player, or None.

        Returns:
            Dict safe to send to that player's client.
        """
        hand = None
        if for_player is not None and 0 <= for_player < self.player_count:
            hand = [c.to_dict() for c in self.hands[for_player]]

        top = self.discard_top
        return {
            "my_slot": for_player,
            "hand": hand,
            "hand_sizes": [len(h) for h in self.hands],
            "draw_pile_count": len(self.draw_pile),
            "discard_top": top.to_dict() if top else None,
            "discard_pile_count": len(self.discard_pile),
            "required_number": self.required_number,
            "active_player": self.active_player,
            "player_count": self.player_count,
            "phase": self.phase.value,
            "pending_addy": self.pending_addy,
            "winner": self.winner,
            "version": self.version,
        }


@dataclass(frozen=True)
class ActionResult:
    """
    Outcome of applying an action.

    Attributes:
        state: The new snapshot (or the unchanged one if rejected).
        reason: Why the action was rejected, None if accepted.
        card: The card that was played or drawn.
    """

    state: MatchState
    reason: Optional[InvalidReason] = None
    card: Optional[Card] = None

    @property
    def accepted(self) -> bool:
        return self.reason is None


# -------------------------------------------------------------------------
# Sequence Arithmetic
# -------------------------------------------------------------------------

def next_in_sequence(number: int) -> int:
    """The number after `number` (9 wraps to 1)."""
    return (number % MAX_NUMBER) + 1


def add_to_sequence(base: int, number: int) -> int:
    """Addy follow-up: base + number, wrapped into 1-9."""
    return ((base + number - 1) % MAX_NUMBER) + 1


# -------------------------------------------------------------------------
# Turn Scheduling
# -------------------------------------------------------------------------

def next_player(current: int, player_count: int, steps: int = 1) -> int:
    """
    Seat that is `steps` places after `current` in turn order.

    Args:
        current: Current seat.
        player_count: Number of seats.
        steps: How far to advance (0 keeps the turn).

    Returns:
        The seat index, wrapped modulo player_count.
    """
    return (current + steps) % player_count


# -------------------------------------------------------------------------
# Deck Factory
# -------------------------------------------------------------------------

@dataclass
class DealResult:
    """Cards split out of a shuffled deck at the start of a match."""

    hands: list[list[Card]]
    remaining: list[Card]
    first_discard: Card
    required_number: int


def validate_player_count(player_count: int) -> None:
    """Raise ValueError unless 3 <= player_count <= 5."""
    if not MIN_PLAYERS <= player_count <= MAX_PLAYERS:
        raise ValueError(
            f"player_count must be between {MIN_PLAYERS} and {MAX_PLAYERS}, got {player_count}"
        )


def build_deck() -> list[Card]:
    """
    Build the full, unshuffled 99-card deck.

    Numbers come first (1-9, six copies each), then the wild cards in the
    order of WILD_CARD_COUNTS. Ids are stable: "number-<value>-<copy>" and
    "wild-<kind>-<copy>", copies counted from 1.
    """
    deck: list[Card] = []
    for value in range(MIN_NUMBER, MAX_NUMBER + 1):
        for copy in range(1, NUMBER_COPIES + 1):
            deck.append(Card.number_card(f"number-{value}-{copy}", value))

    for kind_name, count in WILD_CARD_COUNTS.items():
        wild_kind = WildKind(kind_name)
        for copy in range(1, count + 1):
            deck.append(Card.wild_card(f"wild-{kind_name}-{copy}", wild_kind))

    return deck


def shuffle_deck(deck: list[Card], rng: Optional[random.Random] = None) -> list[Card]:
    """
    Return a shuffled copy of the deck (Fisher-Yates).

    The input list is not mutated.

    Args:
        deck: Cards to shuffle.
        rng: Random source; pass a seeded random.Random for reproducible
            shuffles. Defaults to a fresh unseeded generator.

    Returns:
        New list with the same cards in random order.
    """
    rng = rng or random.Random()
    shuffled = list(deck)
    for i in range(len(shuffled) - 1, 0, -1):
        j = rng.randint(0, i)
        shuffled[i], shuffled[j] = shuffled[j], shuffled[i]
    return shuffled


def deal(deck: list[Card], player_count: int) -> DealResult:
    """
    Deal a shuffled deck.

    Each player receives 7 contiguous cards from the front of the deck
    (player 0 first). The top card of what remains (its last element)
    becomes the first discard and seeds the required number; a wild seed
    card defaults the requirement to 1.

    Args:
        deck: Shuffled deck.
        player_count: Number of seats (3-5).

    Returns:
        DealResult with hands, remaining draw pile, first discard and the
        initial required number.
    """
    validate_player_count(player_count)
    dealt = player_count * HAND_SIZE
    assert dealt + 1 <= len(deck), f"Cannot deal {player_count} hands from {len(deck)} cards"

    cards = list(deck)
    hands = [cards[i * HAND_SIZE:(i + 1) * HAND_SIZE] for i in range(player_count)]
    remaining = cards[dealt:]
    first_discard = remaining.pop()
    required = first_discard.number if first_discard.is_number else DEFAULT_REQUIRED_NUMBER

    return DealResult(
        hands=hands,
        remaining=remaining,
        first_discard=first_discard,
        required_number=required,
    )


def new_match(player_count: int, seed: Optional[int] = None) -> MatchState:
    """
    Build, shuffle and deal a fresh match. Player 0 moves first.

    Args:
        player_count: Number of seats (3-5).
        seed: Shuffle seed; the same seed always produces the same match.

    Returns:
        The initial MatchState (version 0).
    """
    validate_player_count(player_count)
    dealt = deal(shuffle_deck(build_deck(), random.Random(seed)), player_count)
    return MatchState(
        draw_pile=tuple(dealt.remaining),
        discard_pile=(dealt.first_discard,),
        hands=tuple(tuple(h) for h in dealt.hands),
        required_number=dealt.required_number,
        active_player=0,
        player_count=player_count,
    )


# -------------------------------------------------------------------------
# Rule Engine
# -------------------------------------------------------------------------

@dataclass
class _Table:
    """Mutable working copy of the card zones while one action resolves."""

    draw_pile: list[Card]
    discard_pile: list[Card]
    hands: list[list[Card]] = field(default_factory=list)

    @classmethod
    def from_state(cls, state: MatchState) -> "_Table":
        return cls(
            draw_pile=list(state.draw_pile),
            discard_pile=list(state.discard_pile),
            hands=[list(h) for h in state.hands],
        )

    def draw_into(self, player: int, count: int) -> int:
        """Move up to `count` cards from the top of the pile; returns how many moved."""
        drawn = 0
        while drawn < count and self.draw_pile:
            self.hands[player].append(self.draw_pile.pop())
            drawn += 1
        return drawn

    def freeze(self, state: MatchState, **changes) -> MatchState:
        return replace(
            state,
            draw_pile=tuple(self.draw_pile),
            discard_pile=tuple(self.discard_pile),
            hands=tuple(tuple(h) for h in self.hands),
            version=state.version + 1,
            **changes,
        )


def _check_turn(state: MatchState, player: int) -> Optional[InvalidReason]:
    if state.phase != MatchPhase.PLAYING:
        return InvalidReason.MATCH_FINISHED
    if player != state.active_player:
        return InvalidReason.NOT_YOUR_TURN
    return None


def check_play(state: MatchState, player: int, card: Card) -> Optional[InvalidReason]:
    """
    Why `card` may not be played by `player` right now, or None if it may.

    Hand membership is not checked here; apply_play does that.
    """
    reason = _check_turn(state, player)
    if reason:
        return reason

    # Any number completes an Addy; its value is added, not matched
    if state.pending_addy is not None:
        return None if card.is_number else InvalidReason.NUMBER_CARD_REQUIRED

    if card.is_wild or card.number == state.required_number:
        return None
    return InvalidReason.WRONG_NUMBER


def can_play(state: MatchState, player: int, card: Card) -> bool:
    """Check whether `player` may play `card` in `state`."""
    return check_play(state, player, card) is None


def playable_cards(state: MatchState, player: int) -> list[Card]:
    """Cards in the player's hand that are legal to play right now."""
    if not 0 <= player < state.player_count:
        return []
    return [card for card in state.hands[player] if can_play(state, player, card)]


def is_stalled(state: MatchState) -> bool:
    """
    True when the match cannot progress: the active player holds no legal
    card and the draw pile is exhausted (there is no reshuffle).
    """
    if state.phase != MatchPhase.PLAYING or state.draw_pile:
        return False
    return not playable_cards(state, state.active_player)


def _bury_under_top(table: _Table, cards: list[Card]) -> None:
    # The played wild stays on top of the discard pile
    table.discard_pile[-1:-1] = cards


def _resolve_wild(
    table: _Table,
    state: MatchState,
    player: int,
    wild_kind: WildKind,
) -> tuple[int, Advance]:
    """
    Apply a wild card's side effects to the table.

    Returns:
        (new required number, turn advance)
    """
    count = state.player_count
    current = state.required_number
    hand = table.hands[player]

    if wild_kind == WildKind.ATE:
        return next_in_sequence(current), Advance.ONE

    if wild_kind == WildKind.ADDY:
        return current, Advance.NONE

    if wild_kind == WildKind.DIVIDE:
        give = len(hand) // 2
        if give:
            moved = hand[:give]
            del hand[:give]
            table.hands[next_player(player, count)].extend(moved)
        return next_in_sequence(current), Advance.ONE

    if wild_kind == WildKind.BRITISH_THREE:
        for offset in range(count):
            table.draw_into(next_player(player, count, offset), 1)

    elif wild_kind == WildKind.SLICE_OF_PI:
        eaten = [c for c in hand if c.is_number and c.number <= SLICE_OF_PI_MAX]
        hand[:] = [c for c in hand if not (c.is_number and c.number <= SLICE_OF_PI_MAX)]
        _bury_under_top(table, eaten)

    elif wild_kind == WildKind.NU_UH:
        return NOMINAL_VALUES[wild_kind.value], Advance.TWO

    elif wild_kind == WildKind.CANNIBAL:
        _bury_under_top(table, [hand.pop() for _ in range(min(CANNIBAL_DISCARDS, len(hand)))])
        for offset in range(1, count):
            table.draw_into(next_player(player, count, offset), 1)

    elif wild_kind == WildKind.TICKLES:
        for offset in range(1, TICKLES_TARGETS + 1):
            table.draw_into(next_player(player, count, offset), TICKLES_DRAWS)

    # NEGATIVITY has no automatic effect
    return NOMINAL_VALUES[wild_kind.value], Advance.ONE


def apply_play(state: MatchState, player: int, card: Union[Card, str]) -> ActionResult:
    """
    Play a card from a player's hand.

    Order of resolution:
        1. Card moves from hand to the top of the discard pile
        2. Card effect resolves (wild table, or next number)
        3. An Addy follow-up adds the number to the pre-Addy requirement
        4. Empty hand -> match finished, no turn advance
        5. Otherwise the turn advances (Addy keeps it with the same player)

    Args:
        state: Current snapshot.
        player: Seat playing the card.
        card: The card, or its id.

    Returns:
        ActionResult with the new state, or the unchanged state and a reason.
    """
    card_id = card if isinstance(card, str) else card.id

    reason = _check_turn(state, player)
    if reason:
        return ActionResult(state=state, reason=reason)

    played = state.find_card(player, card_id)
    if played is None:
        return ActionResult(state=state, reason=InvalidReason.CARD_NOT_IN_HAND)

    reason = check_play(state, player, played)
    if reason:
        return ActionResult(state=state, reason=reason)

    table = _Table.from_state(state)
    hand = table.hands[player]
    hand.pop(next(i for i, c in enumerate(hand) if c.id == card_id))
    table.discard_pile.append(played)

    pending_addy = None
    if state.pending_addy is not None:
        required = add_to_sequence(state.pending_addy, played.number)
        advance = Advance.ONE
    elif played.is_number:
        required = next_in_sequence(played.number)
        advance = Advance.ONE
    else:
        required, advance = _resolve_wild(table, state, player, played.wild_kind)
        if advance == Advance.NONE:
            pending_addy = state.required_number

    if not table.hands[player]:
        new_state = table.freeze(
            state,
            required_number=required,
            pending_addy=None,
            phase=MatchPhase.FINISHED,
            winner=player,
        )
        return ActionResult(state=new_state, card=played)

    new_state = table.freeze(
        state,
        required_number=required,
        pending_addy=pending_addy,
        active_player=next_player(player, state.player_count, advance),
    )
    return ActionResult(state=new_state, card=played)


def draw_card(state: MatchState, player: int) -> ActionResult:
    """
    Draw the top card of the pile and end the turn.

    Drawing during a pending Addy abandons it: the requirement reverts to
    its pre-Addy value. An empty draw pile makes this a no-op
    (DRAW_PILE_EMPTY), not an error.

    Args:
        state: Current snapshot.
        player: Seat drawing.

    Returns:
        ActionResult with the new state and the drawn card.
    """
    reason = _check_turn(state, player)
    if reason:
        return ActionResult(state=state, reason=reason)
    if not state.draw_pile:
        return ActionResult(state=state, reason=InvalidReason.DRAW_PILE_EMPTY)

    table = _Table.from_state(state)
    drawn = table.draw_pile.pop()
    table.hands[player].append(drawn)

    required = state.required_number
    if state.pending_addy is not None:
        required = state.pending_addy

    new_state = table.freeze(
        state,
        required_number=required,
        pending_addy=None,
        active_player=next_player(player, state.player_count),
    )
    return ActionResult(state=new_state, card=drawn)


def apply_action(state: MatchState, player: int, action: Action) -> ActionResult:
    """Dispatch a play or draw action."""
    if action.kind == ActionKind.DRAW:
        return draw_card(state, player)
    if not action.card_id:
        return ActionResult(state=state, reason=InvalidReason.CARD_NOT_IN_HAND)
    return apply_play(state, player, action.card_id)
