"""WebSocket message handlers for the 7-ate-9 server.

Each handler corresponds to a single message type from the client.
Handlers are dispatched via the HANDLERS dict in main.py.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import WebSocket

from ai import Difficulty, get_available_profiles
from game import Action, InvalidReason
from room import ConcurrentWriteConflict, Room, RoomError

logger = logging.getLogger(__name__)


@dataclass
class ConnectionContext:
    """State tracked per WebSocket connection."""

    websocket: WebSocket
    connection_id: str
    player_id: str
    current_room: Optional[Room] = None


async def send_error(ctx: ConnectionContext, message: str, **extra) -> None:
    await ctx.websocket.send_json({"type": "error", "message": message, **extra})


def _player_name(data: dict) -> str:
    name = str(data.get("player_name") or "Player").strip()
    return name[:24] or "Player"


def _is_host(ctx: ConnectionContext) -> bool:
    room_player = ctx.current_room.get_player(ctx.player_id)
    return bool(room_player and room_player.is_host)


# ---------------------------------------------------------------------------
# Lobby / Room handlers
# ---------------------------------------------------------------------------

async def handle_create_room(data: dict, ctx: ConnectionContext, *, room_manager, register_room, **kw) -> None:
    if ctx.current_room:
        await send_error(ctx, "Already in a room", reason="already_in_room")
        return

    try:
        room = room_manager.create_room(_player_name(data), ctx.player_id, ctx.websocket)
    except RuntimeError as e:
        logger.error(f"Room creation failed: {e}")
        await send_error(ctx, "Could not create a room, please retry", retryable=True)
        return

    ctx.current_room = room
    await register_room(room)

    await ctx.websocket.send_json({
        "type": "room_created",
        "room_code": room.code,
        "player_id": ctx.player_id,
    })
    await room.broadcast({
        "type": "player_joined",
        "players": room.player_list(),
    })
    await room.notify_player_list()


async def handle_join_room(data: dict, ctx: ConnectionContext, *, room_manager, **kw) -> None:
    if ctx.current_room:
        await send_error(ctx, "Already in a room", reason="already_in_room")
        return

    room_code = str(data.get("room_code", "")).upper()
    try:
        room, _ = room_manager.join_room(room_code, _player_name(data), ctx.player_id, ctx.websocket)
    except RoomError as e:
        await send_error(ctx, str(e), reason=e.reason)
        return

    ctx.current_room = room
    await ctx.websocket.send_json({
        "type": "room_joined",
        "room_code": room.code,
        "player_id": ctx.player_id,
    })
    await room.broadcast({
        "type": "player_joined",
        "players": room.player_list(),
    })
    await room.notify_player_list()


async def handle_get_cpu_profiles(data: dict, ctx: ConnectionContext, **kw) -> None:
    if not ctx.current_room:
        return
    await ctx.websocket.send_json({
        "type": "cpu_profiles",
        "profiles": get_available_profiles(ctx.current_room.code),
    })


async def handle_add_cpu(data: dict, ctx: ConnectionContext, **kw) -> None:
    if not ctx.current_room:
        return
    if not _is_host(ctx):
        await send_error(ctx, "Only the host can add CPU players", reason="not_host")
        return

    difficulty = None
    if data.get("difficulty"):
        difficulty = Difficulty.parse(data["difficulty"])

    cpu_id = f"cpu_{uuid.uuid4().hex[:8]}"
    try:
        cpu_player = ctx.current_room.add_cpu_player(cpu_id, data.get("profile_name"), difficulty)
    except RoomError as e:
        await send_error(ctx, str(e), reason=e.reason)
        return
    if not cpu_player:
        await send_error(ctx, "CPU profile not available", reason="profile_unavailable")
        return

    await ctx.current_room.broadcast({
        "type": "player_joined",
        "players": ctx.current_room.player_list(),
    })
    await ctx.current_room.notify_player_list()


async def handle_remove_cpu(data: dict, ctx: ConnectionContext, **kw) -> None:
    if not ctx.current_room or not _is_host(ctx):
        return
    if ctx.current_room.match_in_progress:
        await send_error(ctx, "Game already in progress", reason="match_in_progress")
        return

    cpu_players = ctx.current_room.get_cpu_players()
    if not cpu_players:
        return
    target = data.get("player_id") or cpu_players[-1].id
    removed = ctx.current_room.remove_player(target) if ctx.current_room.get_player(target) else None
    if removed is None or not removed.is_cpu:
        return

    await ctx.current_room.broadcast({
        "type": "player_left",
        "player_id": removed.id,
        "player_name": removed.name,
        "players": ctx.current_room.player_list(),
    })
    await ctx.current_room.notify_player_list()


# ---------------------------------------------------------------------------
# Match lifecycle handlers
# ---------------------------------------------------------------------------

async def handle_start_game(data: dict, ctx: ConnectionContext, *, broadcast_game_state, publish_state, check_and_run_cpu_turn, **kw) -> None:
    if not ctx.current_room:
        return
    if not _is_host(ctx):
        await send_error(ctx, "Only the host can start the game", reason="not_host")
        return

    room = ctx.current_room
    async with room.game_lock:
        try:
            state = room.start_match()
        except RoomError as e:
            await send_error(ctx, str(e), reason=e.reason)
            return

    await room.broadcast({
        "type": "game_started",
        "players": room.player_list(),
        "version": state.version,
    })
    await broadcast_game_state(room, state)
    await publish_state(room, state)
    await check_and_run_cpu_turn(room)


async def _submit_action(ctx: ConnectionContext, action: Action, data: dict, check_and_run_cpu_turn) -> None:
    room = ctx.current_room
    version = data.get("version")
    if version is not None and not isinstance(version, int):
        await send_error(ctx, "Invalid version", reason="bad_request")
        return

    try:
        result = await room.submit(ctx.player_id, action, expected_version=version)
    except ConcurrentWriteConflict as e:
        logger.info(f"Room {room.code}: stale action from {ctx.player_id}: {e}")
        await send_error(
            ctx, "Game state changed, please retry",
            conflict=True, version=e.actual_version,
        )
        return
    except RoomError as e:
        await send_error(ctx, str(e), reason=e.reason)
        return

    if not result.accepted:
        # Drawing from an empty pile is a no-op, not an error
        if result.reason != InvalidReason.DRAW_PILE_EMPTY:
            await send_error(ctx, "Invalid move", reason=result.reason.value)
        return

    await check_and_run_cpu_turn(room)


async def handle_play_card(data: dict, ctx: ConnectionContext, *, check_and_run_cpu_turn, **kw) -> None:
    if not ctx.current_room:
        return
    card_id = data.get("card_id")
    if not card_id:
        await send_error(ctx, "card_id is required", reason="bad_request")
        return
    await _submit_action(ctx, Action.play(str(card_id)), data, check_and_run_cpu_turn)


async def handle_draw_card(data: dict, ctx: ConnectionContext, *, check_and_run_cpu_turn, **kw) -> None:
    if not ctx.current_room:
        return
    await _submit_action(ctx, Action.draw(), data, check_and_run_cpu_turn)


# ---------------------------------------------------------------------------
# Leave / End handlers
# ---------------------------------------------------------------------------

async def handle_leave_room(data: dict, ctx: ConnectionContext, *, handle_player_leave, **kw) -> None:
    if ctx.current_room:
        await handle_player_leave(ctx.current_room, ctx.player_id)
        ctx.current_room = None


async def handle_end_game(data: dict, ctx: ConnectionContext, **kw) -> None:
    if not ctx.current_room:
        return
    if not _is_host(ctx):
        await send_error(ctx, "Only the host can end the game", reason="not_host")
        return

    room = ctx.current_room
    if not room.match_in_progress:
        return
    async with room.game_lock:
        room.end_match("ended")

    # Room stays open; the host can deal again
    await room.broadcast({
        "type": "game_over",
        "winner": None,
        "reason": "ended",
        "players": room.player_list(),
    })


# ---------------------------------------------------------------------------
# Handler dispatch table
# ---------------------------------------------------------------------------

HANDLERS = {
    "create_room": handle_create_room,
    "join_room": handle_join_room,
    "get_cpu_profiles": handle_get_cpu_profiles,
    "add_cpu": handle_add_cpu,
    "remove_cpu": handle_remove_cpu,
    "start_game": handle_start_game,
    "play_card": handle_play_card,
    "draw_card": handle_draw_card,
    "leave_room": handle_leave_room,
    "end_game": handle_end_game,
}
