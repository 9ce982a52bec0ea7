"""
Room management for multiplayer 7-ate-9 matches.

This module handles room creation, seating, and the single write path into a
room's MatchState.

A Room contains:
    - A unique 4-letter code for joining
    - 3-5 RoomPlayers (human or CPU), seated in join order
    - The current MatchState and the seed it was dealt from
    - The event log of everything that happened in the room

All match mutations go through Room.submit(), which holds the room lock and
checks the caller's expected version, so an action computed against a stale
snapshot is never applied.
"""

import asyncio
import random
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from fastapi import WebSocket

from ai import Difficulty, assign_profile, cleanup_room_profiles, get_profile, release_profile
from config import config
from constants import MAX_PLAYERS, MIN_PLAYERS
from game import Action, ActionKind, ActionResult, MatchState, apply_action, is_stalled, new_match
from logging_config import get_logger
from models import events as history
from models.events import GameEvent

logger = get_logger(__name__)

StateListener = Callable[["Room", MatchState], Awaitable[None]]
PlayerListListener = Callable[["Room"], Awaitable[None]]


class ConcurrentWriteConflict(Exception):
    """An action was computed against a MatchState version that is no longer current."""

    def __init__(self, expected_version: int, actual_version: int):
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Expected version {expected_version}, current version is {actual_version}"
        )


class RoomError(Exception):
    """A room operation was refused. `reason` is a short machine-readable code."""

    def __init__(self, reason: str, message: str):
        self.reason = reason
        super().__init__(message)


@dataclass
class RoomPlayer:
    """
    A player in a room (lobby-level representation).

    Attributes:
        id: Unique player identifier (connection_id for humans).
        name: Display name.
        websocket: WebSocket connection (None for CPU players).
        is_host: Whether this player starts and ends matches.
        is_cpu: Whether this is an AI-controlled player.
        difficulty: CPU difficulty (CPU players only).
    """

    id: str
    name: str
    websocket: Optional[WebSocket] = None
    is_host: bool = False
    is_cpu: bool = False
    difficulty: Optional[Difficulty] = None


@dataclass
class Room:
    """
    A room that hosts one 7-ate-9 match at a time.

    Attributes:
        code: 4-letter room code for joining (e.g., "ABCD").
        players: Player id -> RoomPlayer, in join order.
        seats: Player ids by seat for the current match (fixed at deal).
        state: Current MatchState, None before the first deal.
        seed: Shuffle seed of the current match.
        match_id: Id for this room's event stream.
        events: Everything that happened in the room, in order.
        game_lock: Serializes match mutations.
        notify_lock: Held from an accepted mutation until its listeners
            finish, so listeners see states in version order.
        cpu_task: The pending CPU turn, if any.
    """

    code: str
    players: dict[str, RoomPlayer] = field(default_factory=dict)
    seats: list[str] = field(default_factory=list)
    state: Optional[MatchState] = None
    seed: Optional[int] = None
    match_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    events: list[GameEvent] = field(default_factory=list)
    game_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    notify_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cpu_task: Optional[asyncio.Task] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    max_players: int = MAX_PLAYERS
    _state_listeners: list[StateListener] = field(default_factory=list)
    _player_listeners: list[PlayerListListener] = field(default_factory=list)

    # -------------------------------------------------------------------------
    # Event Log
    # -------------------------------------------------------------------------

    def _next_sequence(self) -> int:
        return len(self.events) + 1

    def _record(self, factory, *args, **kwargs) -> GameEvent:
        event = factory(self.match_id, self._next_sequence(), *args, **kwargs)
        self.events.append(event)
        return event

    # -------------------------------------------------------------------------
    # Player Management
    # -------------------------------------------------------------------------

    @property
    def match_in_progress(self) -> bool:
        return self.state is not None and not self.state.is_finished

    def is_full(self) -> bool:
        return len(self.players) >= self.max_players

    def _check_can_join(self) -> None:
        if self.match_in_progress:
            raise RoomError("match_in_progress", "Game already in progress")
        if self.is_full():
            raise RoomError("room_full", "Room is full")

    def add_player(
        self,
        player_id: str,
        name: str,
        websocket: Optional[WebSocket] = None,
    ) -> RoomPlayer:
        """
        Add a human player to the room.

        The first player to join becomes the host.

        Raises:
            RoomError: If the room is full or its match has started.
        """
        self._check_can_join()

        is_host = len(self.players) == 0
        room_player = RoomPlayer(
            id=player_id,
            name=name,
            websocket=websocket,
            is_host=is_host,
        )
        self.players[player_id] = room_player

        if is_host and not self.events:
            self._record(history.room_created, self.code, player_id)
        self._record(history.player_joined, player_id, name)
        return room_player

    def add_cpu_player(
        self,
        cpu_id: str,
        profile_name: Optional[str] = None,
        difficulty: Optional[Difficulty] = None,
    ) -> Optional[RoomPlayer]:
        """
        Add a CPU player to the room.

        Args:
            cpu_id: Unique identifier for the CPU player.
            profile_name: Specific CPU profile, or None for a random one.
            difficulty: Overrides the profile's difficulty.

        Returns:
            The created RoomPlayer, or None if no profile is available.

        Raises:
            RoomError: If the room is full or its match has started.
        """
        self._check_can_join()

        profile = assign_profile(cpu_id, self.code, profile_name)
        if not profile:
            return None

        room_player = RoomPlayer(
            id=cpu_id,
            name=profile.name,
            is_cpu=True,
            difficulty=difficulty or profile.difficulty,
        )
        self.players[cpu_id] = room_player
        self._record(
            history.player_joined, cpu_id, profile.name,
            is_cpu=True, difficulty=room_player.difficulty.value,
        )
        return room_player

    def remove_player(self, player_id: str) -> Optional[RoomPlayer]:
        """
        Remove a player from the room.

        Reassigns the host if the host leaves and releases CPU profiles.
        A human leaving a running match hands their seat to a CPU stand-in,
        so seat count and turn order stay intact.

        Returns:
            The removed RoomPlayer, or None if not found.
        """
        if player_id not in self.players:
            return None

        room_player = self.players.pop(player_id)
        self._record(history.player_left, player_id)

        if room_player.is_cpu:
            release_profile(player_id)

        if room_player.is_host and self.players:
            next_host = next(
                (p for p in self.players.values() if not p.is_cpu),
                next(iter(self.players.values())),
            )
            next_host.is_host = True

        if self.match_in_progress and player_id in self.seats:
            self._seat_stand_in(self.seats.index(player_id))

        return room_player

    def _seat_stand_in(self, slot: int) -> Optional[RoomPlayer]:
        """Put a CPU in an abandoned seat of the running match."""
        cpu_id = f"cpu_{uuid.uuid4().hex[:8]}"
        profile = assign_profile(cpu_id, self.code)
        name = profile.name if profile else f"CPU {slot + 1}"
        difficulty = profile.difficulty if profile else Difficulty.parse(None)

        stand_in = RoomPlayer(id=cpu_id, name=name, is_cpu=True, difficulty=difficulty)
        self.players[cpu_id] = stand_in
        self.seats[slot] = cpu_id
        self._record(
            history.player_joined, cpu_id, name,
            is_cpu=True, difficulty=difficulty.value, slot=slot,
        )
        logger.info(f"Room {self.code}: seat {slot} taken over by CPU {name}")
        return stand_in

    def get_player(self, player_id: str) -> Optional[RoomPlayer]:
        return self.players.get(player_id)

    def is_empty(self) -> bool:
        return len(self.players) == 0

    def slot_of(self, player_id: str) -> Optional[int]:
        """Seat of a player in the current match, or None if not seated."""
        try:
            return self.seats.index(player_id)
        except ValueError:
            return None

    def player_at(self, slot: int) -> Optional[RoomPlayer]:
        if 0 <= slot < len(self.seats):
            return self.players.get(self.seats[slot])
        return None

    def active_room_player(self) -> Optional[RoomPlayer]:
        """The RoomPlayer whose turn it is, if a match is running."""
        if not self.match_in_progress:
            return None
        return self.player_at(self.state.active_player)

    def player_list(self) -> list[dict]:
        """
        Get list of players for client display.

        Returns:
            List of dicts with id, name, is_host, is_cpu, slot, and
            style/difficulty for CPUs.
        """
        result = []
        for p in self.players.values():
            player_data = {
                "id": p.id,
                "name": p.name,
                "is_host": p.is_host,
                "is_cpu": p.is_cpu,
                "slot": self.slot_of(p.id),
            }
            if p.is_cpu:
                player_data["difficulty"] = p.difficulty.value if p.difficulty else None
                profile = get_profile(p.id)
                if profile:
                    player_data["style"] = profile.style
            result.append(player_data)
        return result

    def get_cpu_players(self) -> list[RoomPlayer]:
        return [p for p in self.players.values() if p.is_cpu]

    def human_player_count(self) -> int:
        return sum(1 for p in self.players.values() if not p.is_cpu)

    # -------------------------------------------------------------------------
    # Match Lifecycle
    # -------------------------------------------------------------------------

    def start_match(self, seed: Optional[int] = None) -> MatchState:
        """
        Seat everyone in join order and deal a new match.

        Args:
            seed: Shuffle seed; a random one is drawn if omitted. The seed is
                recorded so the match can be replayed.

        Raises:
            RoomError: If a match is running or the seat count is not 3-5.
        """
        if self.match_in_progress:
            raise RoomError("match_in_progress", "Game already in progress")
        if not MIN_PLAYERS <= len(self.players) <= MAX_PLAYERS:
            raise RoomError(
                "bad_player_count",
                f"Need {MIN_PLAYERS}-{MAX_PLAYERS} players, have {len(self.players)}",
            )

        self.seed = seed if seed is not None else random.randrange(2**31)
        self.seats = list(self.players.keys())
        self.state = new_match(len(self.seats), seed=self.seed)
        self._record(history.match_started, self.seed, len(self.seats), list(self.seats))
        logger.info(
            f"Room {self.code}: match started with {len(self.seats)} players (seed {self.seed})"
        )
        return self.state

    async def submit(
        self,
        player_id: str,
        action: Action,
        expected_version: Optional[int] = None,
    ) -> ActionResult:
        """
        Apply a player's action to the match.

        This is the only write path into `state`. The room lock serializes
        writers; `expected_version` (when given) must equal the current
        version or the action is refused without touching the state.
        State listeners run outside the room lock but one version at a
        time: the notify lock is taken before the room lock is released.

        Args:
            player_id: Acting player.
            action: Play or draw.
            expected_version: Version the action was computed against.

        Returns:
            The engine's ActionResult. Rejected actions leave state unchanged.

        Raises:
            RoomError: No match is running or the player holds no seat.
            ConcurrentWriteConflict: expected_version is stale.
        """
        async with self.game_lock:
            if self.state is None:
                raise RoomError("no_match", "No match has been started")
            slot = self.slot_of(player_id)
            if slot is None:
                raise RoomError("not_seated", "You are not seated in this match")
            if expected_version is not None and expected_version != self.state.version:
                raise ConcurrentWriteConflict(expected_version, self.state.version)

            result = apply_action(self.state, slot, action)
            if not result.accepted:
                return result

            self.state = result.state
            if action.kind == ActionKind.PLAY:
                self._record(history.card_played, player_id, slot, action.card_id, self.state.version)
            else:
                self._record(history.card_drawn, player_id, slot, self.state.version)

            if self.state.is_finished:
                self._record(history.match_finished, slot, player_id)
                logger.with_context(room_code=self.code, player_slot=slot).info(f"Seat {slot} ({player_id}) won")
            state = self.state
            await self.notify_lock.acquire()

        try:
            await self._notify_state(state)
        finally:
            self.notify_lock.release()
        return result

    def is_stalled(self) -> bool:
        return self.match_in_progress and is_stalled(self.state)

    def end_match(self, reason: str = "ended") -> None:
        """Stop the running match (host request, or a stalled match)."""
        self.cancel_cpu_turn()
        if self.match_in_progress:
            self._record(history.match_finished, None, None, reason=reason)
            logger.info(f"Room {self.code}: match ended ({reason})")
        self.state = None
        self.seats = []

    def cancel_cpu_turn(self) -> None:
        if self.cpu_task and not self.cpu_task.done():
            self.cpu_task.cancel()
        self.cpu_task = None

    # -------------------------------------------------------------------------
    # Listeners
    # -------------------------------------------------------------------------

    def on_state_change(self, callback: StateListener) -> None:
        self._state_listeners.append(callback)

    def on_player_list_change(self, callback: PlayerListListener) -> None:
        self._player_listeners.append(callback)

    async def _notify_state(self, state: MatchState) -> None:
        for callback in list(self._state_listeners):
            await callback(self, state)

    async def notify_player_list(self) -> None:
        for callback in list(self._player_listeners):
            await callback(self)

    # -------------------------------------------------------------------------
    # Messaging
    # -------------------------------------------------------------------------

    async def broadcast(self, message: dict, exclude: Optional[str] = None) -> None:
        """
        Send a message to all human players in the room.

        Args:
            message: JSON-serializable message dict.
            exclude: Optional player ID to skip.
        """
        for player_id, player in list(self.players.items()):
            if player_id != exclude and player.websocket and not player.is_cpu:
                await self._safe_send(player, message)

    async def send_to(self, player_id: str, message: dict) -> None:
        player = self.players.get(player_id)
        if player and player.websocket and not player.is_cpu:
            await self._safe_send(player, message)

    async def _safe_send(self, player: RoomPlayer, message: dict) -> None:
        try:
            await player.websocket.send_json(message)
        except Exception as e:
            # The receive loop notices the closed socket and removes the player
            logger.debug(f"Room {self.code}: send to {player.id} failed: {e}")

    async def broadcast_state(self, state: Optional[MatchState] = None) -> None:
        """Send every human their own view of the match (spectator view if unseated)."""
        state = state or self.state
        if state is None:
            return
        for player in list(self.players.values()):
            if player.is_cpu or not player.websocket:
                continue
            view = state.to_client_dict(self.slot_of(player.id))
            await self._safe_send(player, {"type": "game_state", "game_state": view})


class RoomManager:
    """
    Manages all active rooms.

    Provides room creation with unique codes, joining, lookup, cleanup, and
    per-room listener registration. A single RoomManager is used by the server.
    """

    def __init__(self) -> None:
        self.rooms: dict[str, Room] = {}

    def _generate_code(self, max_attempts: int = 100) -> str:
        """Generate a unique room code of uppercase letters."""
        for _ in range(max_attempts):
            code = "".join(random.choices(string.ascii_uppercase, k=config.ROOM_CODE_LENGTH))
            if code not in self.rooms:
                return code
        raise RuntimeError("Could not generate unique room code")

    def create_room(
        self,
        display_name: Optional[str] = None,
        player_id: Optional[str] = None,
        websocket: Optional[WebSocket] = None,
    ) -> Room:
        """
        Create a new room with a unique code.

        Args:
            display_name: Host's name; the host is seated when given.
            player_id: Host's player id (generated if omitted).
            websocket: Host's connection.

        Returns:
            The newly created Room.
        """
        code = self._generate_code()
        room = Room(code=code, max_players=min(config.MAX_PLAYERS_PER_ROOM, MAX_PLAYERS))
        self.rooms[code] = room
        if display_name is not None:
            room.add_player(player_id or str(uuid.uuid4()), display_name, websocket)
        logger.info(f"Room {code} created")
        return room

    def join_room(
        self,
        code: str,
        display_name: str,
        player_id: Optional[str] = None,
        websocket: Optional[WebSocket] = None,
    ) -> tuple[Room, RoomPlayer]:
        """
        Seat a human player in an existing room.

        Raises:
            RoomError: Unknown code, full room, or a match already running.
        """
        room = self.get_room(code)
        if room is None:
            raise RoomError("room_not_found", "Room not found")
        room_player = room.add_player(player_id or str(uuid.uuid4()), display_name, websocket)
        return room, room_player

    def get_room(self, code: str) -> Optional[Room]:
        """Get a room by its code (case-insensitive)."""
        return self.rooms.get(code.upper())

    def remove_room(self, code: str) -> None:
        room = self.rooms.pop(code, None)
        if room:
            room.cancel_cpu_turn()
            cleanup_room_profiles(code)

    def find_player_room(self, player_id: str) -> Optional[Room]:
        for room in self.rooms.values():
            if player_id in room.players:
                return room
        return None

    async def broadcast_state(self, code: str, state: Optional[MatchState] = None) -> None:
        room = self.get_room(code)
        if room:
            await room.broadcast_state(state)

    def on_state_change(self, code: str, callback: StateListener) -> None:
        room = self.get_room(code)
        if room is None:
            raise RoomError("room_not_found", "Room not found")
        room.on_state_change(callback)

    def on_player_list_change(self, code: str, callback: PlayerListListener) -> None:
        room = self.get_room(code)
        if room is None:
            raise RoomError("room_not_found", "Room not found")
        room.on_player_list_change(callback)

    def stats(self) -> dict:
        """Counts for the metrics endpoint."""
        return {
            "rooms": len(self.rooms),
            "players": sum(len(r.players) for r in self.rooms.values()),
            "matches_in_progress": sum(1 for r in self.rooms.values() if r.match_in_progress),
        }
