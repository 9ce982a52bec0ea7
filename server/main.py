"""FastAPI WebSocket server for 7-ate-9."""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from ai import HttpStrategyProvider, StrategyProvider, get_all_profiles, process_cpu_turn, reset_all_profiles
from config import config
from game import MatchState, is_stalled
from handlers import HANDLERS, ConnectionContext
from logging_config import match_id_var, request_id_var, room_code_var, setup_logging
from room import ConcurrentWriteConflict, Room, RoomError, RoomManager
from stores.pubsub import GamePubSub, close_pubsub, get_pubsub
from stores.state_cache import StateCache, close_state_cache, get_state_cache

setup_logging(
    level=config.LOG_LEVEL,
    environment=config.ENVIRONMENT,
)
logger = logging.getLogger(__name__)

SERVER_ID = f"server-{uuid.uuid4().hex[:8]}"

room_manager = RoomManager()

# Services (initialized in lifespan)
_state_cache: Optional[StateCache] = None
_pubsub: Optional[GamePubSub] = None
_strategy_provider: Optional[StrategyProvider] = None


async def _init_redis():
    """Connect the state cache and pub/sub; the server runs without them on failure."""
    global _state_cache, _pubsub
    try:
        _state_cache = await get_state_cache(config.REDIS_URL)
        _pubsub = await get_pubsub(_state_cache.redis, SERVER_ID)
        await _pubsub.start()
    except Exception as e:
        logger.warning(f"Redis connection failed: {e} - state cache and pub/sub disabled")
        _state_cache = None
        _pubsub = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for async service initialization."""
    global _strategy_provider

    if config.REDIS_URL:
        await _init_redis()
    else:
        logger.info("REDIS_URL not configured - state cache and pub/sub disabled")

    _strategy_provider = HttpStrategyProvider.from_config()
    if _strategy_provider is None:
        logger.info("AI_PROVIDER_URL not configured - CPU players use the local strategy")

    from routers.health import set_health_dependencies
    set_health_dependencies(
        redis_client=_state_cache.redis if _state_cache else None,
        room_manager=room_manager,
    )

    logger.info(f"7-ate-9 server started (environment={config.ENVIRONMENT})")

    yield

    logger.info("Shutdown initiated...")
    for room in list(room_manager.rooms.values()):
        room.cancel_cpu_turn()
    await _close_all_websockets()
    if isinstance(_strategy_provider, HttpStrategyProvider):
        await _strategy_provider.aclose()
    await close_pubsub()
    await close_state_cache()
    reset_all_profiles()
    logger.info("Shutdown complete")


async def _close_all_websockets():
    """Close all active WebSocket connections gracefully."""
    for room in list(room_manager.rooms.values()):
        for player in room.players.values():
            if player.websocket and not player.is_cpu:
                try:
                    await player.websocket.close(code=1001, reason="Server shutting down")
                except RuntimeError as e:
                    logger.debug(f"Websocket for {player.id} already closed: {e}")
    logger.info("All WebSocket connections closed")


app = FastAPI(
    title="7-ate-9",
    debug=config.DEBUG,
    version="1.0.0",
    lifespan=lifespan,
)

from routers.health import router as health_router  # noqa: E402
app.include_router(health_router)


@app.get("/api/cpu-profiles")
async def list_cpu_profiles():
    return {"profiles": get_all_profiles()}


# =============================================================================
# Room Listeners
# =============================================================================

async def broadcast_game_state(room: Room, state: Optional[MatchState] = None):
    """Send every human their view, then turn/game-over notifications."""
    state = state or room.state
    if state is None:
        return

    await room.broadcast_state(state)

    if state.is_finished:
        winner = room.player_at(state.winner) if state.winner is not None else None
        await room.broadcast({
            "type": "game_over",
            "winner": state.winner,
            "winner_name": winner.name if winner else None,
            "reason": "won",
            "players": room.player_list(),
        })
        return

    active = room.player_at(state.active_player)
    if active and not active.is_cpu:
        await room.send_to(active.id, {
            "type": "your_turn",
            "version": state.version,
            "pending_addy": state.pending_addy is not None,
        })


async def publish_state(room: Room, state: MatchState):
    """Write an accepted state to the Redis cache and publish it."""
    if _state_cache is not None:
        try:
            await _state_cache.save_match_state(room.code, state)
            await _state_cache.set_room_status(
                room.code, "finished" if state.is_finished else "playing"
            )
        except ConcurrentWriteConflict as e:
            logger.warning(f"Room {room.code}: cached state is ahead of this server: {e}")
    if _pubsub is not None:
        await _pubsub.publish_state(room.code, state)


async def on_room_state(room: Room, state: MatchState):
    """State listener: every accepted action lands here."""
    await broadcast_game_state(room, state)
    await publish_state(room, state)

    if is_stalled(state):
        logger.info(f"Room {room.code}: draw pile exhausted with no legal play, match stalled")
        await room.broadcast({
            "type": "game_over",
            "winner": None,
            "reason": "stalled",
            "players": room.player_list(),
        })
        room.end_match("stalled")


async def on_player_list(room: Room):
    if _state_cache is not None:
        await _state_cache.set_room_players(room.code, list(room.players.keys()))
    if _pubsub is not None:
        await _pubsub.publish_players(room.code, room.player_list())


async def register_room(room: Room):
    """Wire a new room's listeners and register it with the cache."""
    room.on_state_change(on_room_state)
    room.on_player_list_change(on_player_list)
    if _state_cache is not None:
        host = next(iter(room.players), "")
        await _state_cache.create_room(room.code, room.match_id, host)


# =============================================================================
# CPU Turns
# =============================================================================

async def check_and_run_cpu_turn(room: Room):
    """Start the room's CPU turn task if a CPU seat is up and none is running."""
    if room.cpu_task and not room.cpu_task.done():
        return
    active = room.active_room_player()
    if not active or not active.is_cpu:
        return
    room.cpu_task = asyncio.create_task(_run_cpu_turns(room))


async def _run_cpu_turns(room: Room):
    """Play consecutive CPU seats until a human is up or the match ends."""
    room_code_var.set(room.code)
    match_id_var.set(room.match_id)
    while True:
        active = room.active_room_player()
        if not active or not active.is_cpu:
            return

        await asyncio.sleep(config.match_defaults.cpu_turn_delay)

        async def submit(action, expected_version, player_id=active.id):
            return await room.submit(player_id, action, expected_version)

        try:
            result = await process_cpu_turn(
                lambda: room.state,
                room.state.active_player,
                active.difficulty,
                submit,
                provider=_strategy_provider,
            )
        except ConcurrentWriteConflict as e:
            logger.info(f"Room {room.code}: CPU {active.name} raced a newer state ({e}), retrying")
            continue
        except RoomError as e:
            logger.info(f"Room {room.code}: CPU turn stopped: {e}")
            return

        if result is not None and not result.accepted:
            logger.warning(
                f"Room {room.code}: CPU {active.name} move rejected ({result.reason.value})"
            )
            return


# =============================================================================
# Connections
# =============================================================================

async def handle_player_leave(room: Room, player_id: str):
    """Handle a player leaving a room."""
    room_code = room.code
    room_player = room.remove_player(player_id)

    # If no human players left, clean up the room entirely
    if room.human_player_count() == 0:
        room_manager.remove_room(room_code)
        if _state_cache is not None:
            await _state_cache.delete_room(room_code)
        if _pubsub is not None:
            await _pubsub.publish_room_closed(room_code)
        logger.info(f"Room {room_code} closed")
        return

    if room_player:
        await room.broadcast({
            "type": "player_left",
            "player_id": player_id,
            "player_name": room_player.name,
            "players": room.player_list(),
        })
        await room.notify_player_list()
        # A CPU stand-in may have taken the active seat
        await check_and_run_cpu_turn(room)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()

    connection_id = str(uuid.uuid4())
    request_id_var.set(connection_id)
    logger.debug(f"WebSocket connected as {connection_id}")

    ctx = ConnectionContext(
        websocket=websocket,
        connection_id=connection_id,
        player_id=connection_id,
    )

    # Shared dependencies passed to every handler
    handler_deps = dict(
        room_manager=room_manager,
        register_room=register_room,
        broadcast_game_state=broadcast_game_state,
        publish_state=publish_state,
        check_and_run_cpu_turn=check_and_run_cpu_turn,
        handle_player_leave=handle_player_leave,
    )

    try:
        while True:
            data = await websocket.receive_json()
            handler = HANDLERS.get(data.get("type"))
            if handler:
                await handler(data, ctx, **handler_deps)
                room_code_var.set(ctx.current_room.code if ctx.current_room else None)
                match_id_var.set(ctx.current_room.match_id if ctx.current_room else None)
            else:
                await websocket.send_json({"type": "error", "message": "Unknown message type"})
    except WebSocketDisconnect:
        if ctx.current_room:
            await handle_player_leave(ctx.current_room, ctx.player_id)


def run():
    """Run the server using uvicorn."""
    import uvicorn

    logger.info(f"Starting 7-ate-9 server on {config.HOST}:{config.PORT}")
    logger.info(f"Debug mode: {config.DEBUG}")

    uvicorn.run(
        "main:app",
        host=config.HOST,
        port=config.PORT,
        reload=config.DEBUG,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
