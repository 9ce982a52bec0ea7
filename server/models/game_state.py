"""
Match state rebuilder for event replay.

Replays `match_started` (seed, player count) and every recorded action
through the rule engine. Since the engine is pure and the shuffle is seeded,
the result is identical to the live MatchState, version included.

Usage:
    replay = rebuild_state(room.events)
    assert replay.state == room.state
"""

from dataclasses import dataclass, field
from typing import Optional

from game import Action, MatchState, apply_action, new_match
from models.events import EventType, GameEvent


@dataclass
class RebuiltMatch:
    """
    Room and match state rebuilt from events.

    Attributes:
        match_id: Room session id.
        room_code: 4-letter room code.
        host_id: Player who opened the room.
        players: player_id -> display name for everyone currently in the room.
        seats: Player ids by seat for the current match.
        state: Current MatchState, None before the first match_started.
        seed: Shuffle seed of the current match.
        finish_reason: Why the last match ended ("won", "ended", "stalled").
        sequence_num: Last applied event sequence.
    """

    match_id: str
    room_code: str = ""
    host_id: Optional[str] = None
    players: dict[str, str] = field(default_factory=dict)
    seats: list[str] = field(default_factory=list)
    state: Optional[MatchState] = None
    seed: Optional[int] = None
    finish_reason: Optional[str] = None
    sequence_num: int = 0

    def apply(self, event: GameEvent) -> "RebuiltMatch":
        """
        Apply one event.

        Raises:
            ValueError: If the event is out of sequence, of an unknown type,
                or describes an action the engine rejects.
        """
        expected_seq = self.sequence_num + 1
        if event.sequence_num != expected_seq:
            raise ValueError(f"Expected sequence {expected_seq}, got {event.sequence_num}")

        handler = getattr(self, f"_apply_{event.event_type.value}", None)
        if handler is None:
            raise ValueError(f"Unknown event type: {event.event_type}")

        handler(event)
        self.sequence_num = event.sequence_num
        return self

    # -------------------------------------------------------------------------
    # Lifecycle Event Handlers
    # -------------------------------------------------------------------------

    def _apply_room_created(self, event: GameEvent) -> None:
        self.room_code = event.data["room_code"]
        self.host_id = event.data["host_id"]

    def _apply_player_joined(self, event: GameEvent) -> None:
        self.players[event.player_id] = event.data["player_name"]
        slot = event.data.get("slot")
        if slot is not None and slot < len(self.seats):
            self.seats[slot] = event.player_id

    def _apply_player_left(self, event: GameEvent) -> None:
        self.players.pop(event.player_id, None)

    def _apply_match_started(self, event: GameEvent) -> None:
        self.seed = event.data["seed"]
        self.seats = list(event.data["seats"])
        self.state = new_match(event.data["player_count"], seed=self.seed)
        self.finish_reason = None

    def _apply_match_finished(self, event: GameEvent) -> None:
        self.finish_reason = event.data.get("reason", "won")
        # A won match keeps its final state on the table; an ended one is cleared
        if self.finish_reason != "won":
            self.state = None
            self.seats = []

    # -------------------------------------------------------------------------
    # Gameplay Event Handlers
    # -------------------------------------------------------------------------

    def _apply_card_played(self, event: GameEvent) -> None:
        self._replay(event, Action.play(event.data["card_id"]))

    def _apply_card_drawn(self, event: GameEvent) -> None:
        self._replay(event, Action.draw())

    def _replay(self, event: GameEvent, action: Action) -> None:
        if self.state is None:
            raise ValueError(f"{event.event_type.value} before match_started")
        result = apply_action(self.state, event.data["slot"], action)
        if not result.accepted:
            raise ValueError(
                f"Event {event.sequence_num} rejected on replay: {result.reason.value}"
            )
        if result.state.version != event.data["version"]:
            raise ValueError(
                f"Event {event.sequence_num} replayed to version {result.state.version}, "
                f"recorded {event.data['version']}"
            )
        self.state = result.state


def rebuild_state(events: list[GameEvent]) -> RebuiltMatch:
    """
    Rebuild room and match state from a list of events.

    Args:
        events: Events in sequence order, starting at 1.

    Returns:
        The reconstructed RebuiltMatch.

    Raises:
        ValueError: If the list is empty or fails to replay.
    """
    if not events:
        raise ValueError("Cannot rebuild state from empty event list")

    rebuilt = RebuiltMatch(match_id=events[0].match_id)
    for event in events:
        rebuilt.apply(event)
    return rebuilt
