"""
Event definitions for 7-ate-9 match history.

Every room change and every accepted action is recorded as an immutable
event. Together with the shuffle seed in `match_started`, the event stream
is enough to rebuild the exact MatchState of a match (see game_state.py).
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
import json


class EventType(str, Enum):
    """All possible event types in a 7-ate-9 room."""

    # Lifecycle events
    ROOM_CREATED = "room_created"
    PLAYER_JOINED = "player_joined"
    PLAYER_LEFT = "player_left"
    MATCH_STARTED = "match_started"
    MATCH_FINISHED = "match_finished"

    # Gameplay events
    CARD_PLAYED = "card_played"
    CARD_DRAWN = "card_drawn"


@dataclass
class GameEvent:
    """
    An immutable record of something that happened in a room.

    Attributes:
        event_type: The type of event (from EventType enum).
        match_id: Id of the match (or room session) the event belongs to.
        sequence_num: Monotonically increasing sequence number, from 1.
        timestamp: When the event occurred (UTC).
        player_id: ID of player who triggered the event (if applicable).
        data: Event-specific payload data.
    """

    event_type: EventType
    match_id: str
    sequence_num: int
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    player_id: Optional[str] = None
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Serialize event to dictionary for JSON storage."""
        return {
            "event_type": self.event_type.value,
            "match_id": self.match_id,
            "sequence_num": self.sequence_num,
            "timestamp": self.timestamp.isoformat(),
            "player_id": self.player_id,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, d: dict) -> "GameEvent":
        """Deserialize event from dictionary."""
        timestamp = d["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)

        return cls(
            event_type=EventType(d["event_type"]),
            match_id=d["match_id"],
            sequence_num=d["sequence_num"],
            timestamp=timestamp,
            player_id=d.get("player_id"),
            data=d.get("data", {}),
        )

    @classmethod
    def from_json(cls, json_str: str) -> "GameEvent":
        return cls.from_dict(json.loads(json_str))


# =============================================================================
# Event Factory Functions
# =============================================================================


def room_created(match_id: str, sequence_num: int, room_code: str, host_id: str) -> GameEvent:
    """Emitted when a room is opened by its host."""
    return GameEvent(
        event_type=EventType.ROOM_CREATED,
        match_id=match_id,
        sequence_num=sequence_num,
        player_id=host_id,
        data={"room_code": room_code, "host_id": host_id},
    )


def player_joined(
    match_id: str,
    sequence_num: int,
    player_id: str,
    player_name: str,
    is_cpu: bool = False,
    difficulty: Optional[str] = None,
    slot: Optional[int] = None,
) -> GameEvent:
    """
    Emitted when a human or CPU player takes a place in the room.

    Args:
        match_id: Room session id.
        sequence_num: Event sequence number.
        player_id: Joining player's id.
        player_name: Display name.
        is_cpu: Whether the player is AI-controlled.
        difficulty: CPU difficulty (CPU players only).
        slot: Seat taken over mid-match (CPU stand-ins only).
    """
    data = {"player_name": player_name, "is_cpu": is_cpu}
    if difficulty:
        data["difficulty"] = difficulty
    if slot is not None:
        data["slot"] = slot
    return GameEvent(
        event_type=EventType.PLAYER_JOINED,
        match_id=match_id,
        sequence_num=sequence_num,
        player_id=player_id,
        data=data,
    )


def player_left(
    match_id: str,
    sequence_num: int,
    player_id: str,
    reason: str = "left",
) -> GameEvent:
    return GameEvent(
        event_type=EventType.PLAYER_LEFT,
        match_id=match_id,
        sequence_num=sequence_num,
        player_id=player_id,
        data={"reason": reason},
    )


def match_started(
    match_id: str,
    sequence_num: int,
    seed: int,
    player_count: int,
    seats: list[str],
) -> GameEvent:
    """
    Emitted when the host deals a match.

    The seed and player count fully determine the initial deal.

    Args:
        match_id: Room session id.
        sequence_num: Event sequence number.
        seed: Shuffle seed passed to new_match().
        player_count: Number of seats.
        seats: Player ids by seat.
    """
    return GameEvent(
        event_type=EventType.MATCH_STARTED,
        match_id=match_id,
        sequence_num=sequence_num,
        data={"seed": seed, "player_count": player_count, "seats": seats},
    )


def card_played(
    match_id: str,
    sequence_num: int,
    player_id: str,
    slot: int,
    card_id: str,
    version: int,
) -> GameEvent:
    """
    Emitted for every accepted play.

    Args:
        slot: Seat that played.
        card_id: Id of the card played.
        version: MatchState version after the play.
    """
    return GameEvent(
        event_type=EventType.CARD_PLAYED,
        match_id=match_id,
        sequence_num=sequence_num,
        player_id=player_id,
        data={"slot": slot, "card_id": card_id, "version": version},
    )


def card_drawn(
    match_id: str,
    sequence_num: int,
    player_id: str,
    slot: int,
    version: int,
) -> GameEvent:
    # The drawn card is not recorded; replay re-derives it from the seed
    return GameEvent(
        event_type=EventType.CARD_DRAWN,
        match_id=match_id,
        sequence_num=sequence_num,
        player_id=player_id,
        data={"slot": slot, "version": version},
    )


def match_finished(
    match_id: str,
    sequence_num: int,
    winner_slot: Optional[int],
    winner_id: Optional[str],
    reason: str = "won",
) -> GameEvent:
    """
    Emitted when a match ends.

    Args:
        winner_slot: Seat that emptied its hand (None if the match was ended).
        winner_id: Player id of the winner.
        reason: "won", "ended" (host ended it) or "stalled".
    """
    return GameEvent(
        event_type=EventType.MATCH_FINISHED,
        match_id=match_id,
        sequence_num=sequence_num,
        player_id=winner_id,
        data={"winner_slot": winner_slot, "reason": reason},
    )
