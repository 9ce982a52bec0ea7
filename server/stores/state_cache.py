"""
Redis-backed live match state cache.

The cache keeps the latest MatchState of every room where other server
processes (and a restarted server) can read it. Writes are versioned: a
snapshot is only stored if the cached version is the one the writer started
from, checked atomically with WATCH/MULTI. A stale writer gets
ConcurrentWriteConflict, exactly as with Room.submit().

This is a CACHE, not the source of truth; the room's event log is, and
rebuild_state() can always regenerate a snapshot from it.

Key patterns:
- sevenate9:room:{room_code}          -> Hash (room metadata)
- sevenate9:match:{room_code}         -> JSON (full MatchState snapshot)
- sevenate9:room:{room_code}:players  -> Set (player IDs)
- sevenate9:rooms:active              -> Set (active room codes)
"""

import json
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from game import MatchState
from room import ConcurrentWriteConflict

logger = logging.getLogger(__name__)


def _decode(value):
    return value.decode() if isinstance(value, bytes) else value


class StateCache:
    """Redis-backed live match state cache."""

    # Key patterns
    ROOM_KEY = "sevenate9:room:{room_code}"
    MATCH_KEY = "sevenate9:match:{room_code}"
    ROOM_PLAYERS_KEY = "sevenate9:room:{room_code}:players"
    ACTIVE_ROOMS_KEY = "sevenate9:rooms:active"

    ROOM_TTL = timedelta(hours=24)
    MATCH_TTL = timedelta(hours=24)

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    @classmethod
    async def create(cls, redis_url: str) -> "StateCache":
        """
        Create a StateCache with a new Redis connection.

        Args:
            redis_url: Redis connection URL.

        Returns:
            Configured StateCache instance.
        """
        client = redis.from_url(redis_url, decode_responses=False)
        await client.ping()
        logger.info("StateCache connected to Redis")
        return cls(client)

    async def close(self) -> None:
        await self.redis.close()

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    # -------------------------------------------------------------------------
    # Room Operations
    # -------------------------------------------------------------------------

    async def create_room(self, room_code: str, match_id: str, host_id: str) -> None:
        """
        Register a new room.

        Args:
            room_code: 4-letter room code.
            match_id: Id of the room's event stream.
            host_id: Player ID of the host.
        """
        pipe = self.redis.pipeline()

        room_key = self.ROOM_KEY.format(room_code=room_code)
        pipe.hset(
            room_key,
            mapping={
                "match_id": match_id,
                "host_id": host_id,
                "status": "waiting",
                "created_at": datetime.now(timezone.utc).isoformat(),
            },
        )
        pipe.expire(room_key, int(self.ROOM_TTL.total_seconds()))
        pipe.sadd(self.ACTIVE_ROOMS_KEY, room_code)

        await pipe.execute()
        logger.debug(f"Created room {room_code} (match {match_id})")

    async def get_room(self, room_code: str) -> Optional[dict]:
        """Room metadata, or None if not found."""
        data = await self.redis.hgetall(self.ROOM_KEY.format(room_code=room_code))
        if not data:
            return None
        return {_decode(k): _decode(v) for k, v in data.items()}

    async def room_exists(self, room_code: str) -> bool:
        return await self.redis.exists(self.ROOM_KEY.format(room_code=room_code)) > 0

    async def delete_room(self, room_code: str) -> None:
        """Delete a room, its players set and its cached match."""
        pipe = self.redis.pipeline()
        pipe.delete(self.ROOM_KEY.format(room_code=room_code))
        pipe.delete(self.ROOM_PLAYERS_KEY.format(room_code=room_code))
        pipe.delete(self.MATCH_KEY.format(room_code=room_code))
        pipe.srem(self.ACTIVE_ROOMS_KEY, room_code)
        await pipe.execute()
        logger.debug(f"Deleted room {room_code}")

    async def get_active_rooms(self) -> set[str]:
        rooms = await self.redis.smembers(self.ACTIVE_ROOMS_KEY)
        return {_decode(r) for r in rooms}

    async def set_room_status(self, room_code: str, status: str) -> None:
        """
        Update room status.

        Args:
            room_code: Room to update.
            status: New status (waiting, playing, finished).
        """
        await self.redis.hset(self.ROOM_KEY.format(room_code=room_code), "status", status)

    # -------------------------------------------------------------------------
    # Player Operations
    # -------------------------------------------------------------------------

    async def add_player_to_room(self, room_code: str, player_id: str) -> None:
        pipe = self.redis.pipeline()
        pipe.sadd(self.ROOM_PLAYERS_KEY.format(room_code=room_code), player_id)
        # Refresh room TTL on activity
        pipe.expire(
            self.ROOM_KEY.format(room_code=room_code),
            int(self.ROOM_TTL.total_seconds()),
        )
        await pipe.execute()

    async def remove_player_from_room(self, room_code: str, player_id: str) -> None:
        await self.redis.srem(self.ROOM_PLAYERS_KEY.format(room_code=room_code), player_id)

    async def set_room_players(self, room_code: str, player_ids: list[str]) -> None:
        """Replace a room's player set."""
        key = self.ROOM_PLAYERS_KEY.format(room_code=room_code)
        pipe = self.redis.pipeline()
        pipe.delete(key)
        if player_ids:
            pipe.sadd(key, *player_ids)
        await pipe.execute()

    async def get_room_players(self, room_code: str) -> set[str]:
        players = await self.redis.smembers(self.ROOM_PLAYERS_KEY.format(room_code=room_code))
        return {_decode(p) for p in players}

    # -------------------------------------------------------------------------
    # Match State Operations
    # -------------------------------------------------------------------------

    async def save_match_state(
        self,
        room_code: str,
        state: MatchState,
        expected_version: Optional[int] = None,
    ) -> None:
        """
        Store a snapshot if the cache still holds the version it was built on.

        Args:
            room_code: Room the match belongs to.
            state: New snapshot.
            expected_version: Version the writer started from. Defaults to
                state.version - 1, i.e. the snapshot directly before this one.
                A fresh deal (version 0) replaces whatever is cached.

        Raises:
            ConcurrentWriteConflict: The cached version differs from
                expected_version, or another writer got in first.
        """
        key = self.MATCH_KEY.format(room_code=room_code)
        if expected_version is None and state.version > 0:
            expected_version = state.version - 1

        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                raw = await pipe.get(key)
                if raw is not None and expected_version is not None:
                    cached_version = json.loads(_decode(raw))["version"]
                    if cached_version != expected_version:
                        await pipe.unwatch()
                        raise ConcurrentWriteConflict(expected_version, cached_version)

                pipe.multi()
                pipe.set(
                    key,
                    json.dumps(state.to_dict()),
                    ex=int(self.MATCH_TTL.total_seconds()),
                )
                await pipe.execute()
            except WatchError:
                current = await self.get_match_version(room_code)
                raise ConcurrentWriteConflict(expected_version or 0, current or 0) from None

        logger.debug(f"Saved match state for {room_code} at version {state.version}")

    async def get_match_state(self, room_code: str) -> Optional[MatchState]:
        data = await self.redis.get(self.MATCH_KEY.format(room_code=room_code))
        if not data:
            return None
        return MatchState.from_dict(json.loads(_decode(data)))

    async def get_match_version(self, room_code: str) -> Optional[int]:
        state = await self.get_match_state(room_code)
        return state.version if state else None

    async def delete_match_state(self, room_code: str) -> None:
        await self.redis.delete(self.MATCH_KEY.format(room_code=room_code))

    async def touch_match(self, room_code: str) -> None:
        """Refresh match and room TTLs on activity."""
        pipe = self.redis.pipeline()
        pipe.expire(self.MATCH_KEY.format(room_code=room_code), int(self.MATCH_TTL.total_seconds()))
        pipe.expire(self.ROOM_KEY.format(room_code=room_code), int(self.ROOM_TTL.total_seconds()))
        await pipe.execute()


# Global state cache instance (initialized on first use)
_state_cache: Optional[StateCache] = None


async def get_state_cache(redis_url: str) -> StateCache:
    """
    Get or create the global state cache instance.

    Args:
        redis_url: Redis connection URL.

    Returns:
        StateCache instance.
    """
    global _state_cache
    if _state_cache is None:
        _state_cache = await StateCache.create(redis_url)
    return _state_cache


async def close_state_cache() -> None:
    """Close the global state cache connection."""
    global _state_cache
    if _state_cache is not None:
        await _state_cache.close()
        _state_cache = None
