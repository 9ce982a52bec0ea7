"""
Tests for the Redis-backed state cache and room pub/sub.

These tests cover:
- StateCache: room metadata, player sets and versioned match snapshots
- GamePubSub: publishing accepted states and dispatching incoming ones
- Room listeners writing through to the cache in version order

Tests use an in-memory Redis double, so no server is needed.
"""

import asyncio
import json
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import WatchError

from ai import choose_fallback_action
from game import MatchState, apply_action, new_match
from room import ConcurrentWriteConflict, Room
from stores.pubsub import GamePubSub, MessageType, PubSubMessage
from stores.state_cache import StateCache


# =============================================================================
# Fixtures
# =============================================================================

def _b(value):
    return value.encode() if isinstance(value, str) else value


class FakePipeline:
    """Pipeline double: commands queue until execute(); WATCH is honored."""

    def __init__(self, redis):
        self.redis = redis
        self.queue = []
        self.watched = {}

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self.queue.clear()
        self.watched.clear()

    async def watch(self, *keys):
        for key in keys:
            self.watched[key] = self.redis.writes.get(key, 0)

    async def unwatch(self):
        self.watched.clear()

    async def get(self, key):
        value = self.redis.data.get(key)
        if self.redis.on_watched_read:
            await self.redis.on_watched_read(key)
        return value

    def multi(self):
        self.queue.clear()

    def _queue(self, name, *args, **kwargs):
        self.queue.append((name, args, kwargs))
        return self

    def set(self, *args, **kwargs):
        return self._queue("set", *args, **kwargs)

    def hset(self, *args, **kwargs):
        return self._queue("hset", *args, **kwargs)

    def expire(self, *args, **kwargs):
        return self._queue("expire", *args, **kwargs)

    def sadd(self, *args, **kwargs):
        return self._queue("sadd", *args, **kwargs)

    def srem(self, *args, **kwargs):
        return self._queue("srem", *args, **kwargs)

    def delete(self, *args, **kwargs):
        return self._queue("delete", *args, **kwargs)

    async def execute(self):
        for key, seen in self.watched.items():
            if self.redis.writes.get(key, 0) != seen:
                self.queue.clear()
                raise WatchError(f"{key} changed")
        results = []
        for name, args, kwargs in self.queue:
            results.append(await getattr(self.redis, name)(*args, **kwargs))
        self.queue.clear()
        self.watched.clear()
        return results


class FakeRedis:
    """Just enough of redis.asyncio.Redis for StateCache and GamePubSub."""

    def __init__(self):
        self.data = {}
        self.sets = {}
        self.hashes = {}
        self.ttls = {}
        self.writes = {}
        self.published = []
        self.on_watched_read = None
        self.ping = AsyncMock(return_value=True)
        self.close = AsyncMock()

    def _touch(self, key):
        self.writes[key] = self.writes.get(key, 0) + 1

    async def set(self, key, value, ex=None):
        self.data[key] = _b(value)
        self._touch(key)
        if ex:
            self.ttls[key] = ex

    async def get(self, key):
        return self.data.get(key)

    async def delete(self, *keys):
        for key in keys:
            self.data.pop(key, None)
            self.sets.pop(key, None)
            self.hashes.pop(key, None)
            self._touch(key)

    async def exists(self, key):
        return 1 if key in self.data or key in self.hashes or key in self.sets else 0

    async def sadd(self, key, *values):
        self.sets.setdefault(key, set()).update(_b(v) for v in values)
        return len(values)

    async def srem(self, key, *values):
        for v in values:
            self.sets.get(key, set()).discard(_b(v))

    async def smembers(self, key):
        return set(self.sets.get(key, set()))

    async def hset(self, key, field=None, value=None, mapping=None):
        target = self.hashes.setdefault(key, {})
        if mapping:
            for k, v in mapping.items():
                target[_b(k)] = _b(v)
        if field is not None:
            target[_b(field)] = _b(value)

    async def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    async def expire(self, key, seconds):
        self.ttls[key] = seconds

    async def publish(self, channel, message):
        self.published.append((channel, message))
        return 1

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def pubsub(self):
        return MagicMock()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def state_cache(fake_redis):
    return StateCache(fake_redis)


@pytest.fixture
def dealt():
    return new_match(3, seed=42)


# =============================================================================
# StateCache: rooms and players
# =============================================================================

class TestStateCacheRooms:
    """Room metadata and membership."""

    @pytest.mark.asyncio
    async def test_create_room(self, state_cache, fake_redis):
        await state_cache.create_room("ABCD", match_id="m-1", host_id="p1")

        room = await state_cache.get_room("ABCD")
        assert room["match_id"] == "m-1"
        assert room["host_id"] == "p1"
        assert room["status"] == "waiting"
        assert await state_cache.get_active_rooms() == {"ABCD"}
        assert fake_redis.ttls["sevenate9:room:ABCD"] == 24 * 3600

    @pytest.mark.asyncio
    async def test_room_exists(self, state_cache):
        assert not await state_cache.room_exists("ABCD")
        await state_cache.create_room("ABCD", match_id="m-1", host_id="p1")
        assert await state_cache.room_exists("ABCD")

    @pytest.mark.asyncio
    async def test_set_room_status(self, state_cache):
        await state_cache.create_room("ABCD", match_id="m-1", host_id="p1")
        await state_cache.set_room_status("ABCD", "playing")
        assert (await state_cache.get_room("ABCD"))["status"] == "playing"

    @pytest.mark.asyncio
    async def test_set_room_players_replaces(self, state_cache):
        await state_cache.add_player_to_room("ABCD", "old")
        await state_cache.set_room_players("ABCD", ["p1", "p2"])
        assert await state_cache.get_room_players("ABCD") == {"p1", "p2"}

    @pytest.mark.asyncio
    async def test_remove_player(self, state_cache):
        await state_cache.set_room_players("ABCD", ["p1", "p2"])
        await state_cache.remove_player_from_room("ABCD", "p1")
        assert await state_cache.get_room_players("ABCD") == {"p2"}

    @pytest.mark.asyncio
    async def test_delete_room(self, state_cache, dealt):
        await state_cache.create_room("ABCD", match_id="m-1", host_id="p1")
        await state_cache.set_room_players("ABCD", ["p1"])
        await state_cache.save_match_state("ABCD", dealt)

        await state_cache.delete_room("ABCD")

        assert await state_cache.get_room("ABCD") is None
        assert await state_cache.get_room_players("ABCD") == set()
        assert await state_cache.get_match_state("ABCD") is None
        assert await state_cache.get_active_rooms() == set()


# =============================================================================
# StateCache: versioned match snapshots
# =============================================================================

class TestStateCacheMatch:
    """Versioned snapshot writes."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, state_cache, dealt):
        await state_cache.save_match_state("ABCD", dealt)

        loaded = await state_cache.get_match_state("ABCD")

        assert loaded == dealt
        assert await state_cache.get_match_version("ABCD") == 0

    @pytest.mark.asyncio
    async def test_get_missing(self, state_cache):
        assert await state_cache.get_match_state("ZZZZ") is None
        assert await state_cache.get_match_version("ZZZZ") is None

    @pytest.mark.asyncio
    async def test_next_version_accepted(self, state_cache, dealt):
        await state_cache.save_match_state("ABCD", dealt)
        await state_cache.save_match_state("ABCD", replace(dealt, version=1))
        assert await state_cache.get_match_version("ABCD") == 1

    @pytest.mark.asyncio
    async def test_stale_write_conflicts(self, state_cache, dealt):
        await state_cache.save_match_state("ABCD", dealt)
        await state_cache.save_match_state("ABCD", replace(dealt, version=1))

        # Another writer also built on version 0
        with pytest.raises(ConcurrentWriteConflict) as exc:
            await state_cache.save_match_state("ABCD", replace(dealt, version=1, required_number=9))

        assert exc.value.expected_version == 0
        assert exc.value.actual_version == 1
        assert (await state_cache.get_match_state("ABCD")).required_number == dealt.required_number

    @pytest.mark.asyncio
    async def test_explicit_expected_version(self, state_cache, dealt):
        await state_cache.save_match_state("ABCD", dealt)
        with pytest.raises(ConcurrentWriteConflict):
            await state_cache.save_match_state("ABCD", replace(dealt, version=4), expected_version=3)

    @pytest.mark.asyncio
    async def test_fresh_deal_replaces_old_match(self, state_cache, dealt):
        await state_cache.save_match_state("ABCD", replace(dealt, version=17))
        fresh = new_match(4, seed=7)

        await state_cache.save_match_state("ABCD", fresh)

        assert await state_cache.get_match_state("ABCD") == fresh

    @pytest.mark.asyncio
    async def test_concurrent_writer_detected_by_watch(self, state_cache, fake_redis, dealt):
        await state_cache.save_match_state("ABCD", dealt)

        async def sneak_in(key):
            fake_redis.on_watched_read = None
            await fake_redis.set(key, json.dumps(replace(dealt, version=1).to_dict()))

        fake_redis.on_watched_read = sneak_in

        with pytest.raises(ConcurrentWriteConflict) as exc:
            await state_cache.save_match_state("ABCD", replace(dealt, version=1, required_number=9))
        assert exc.value.actual_version == 1
        assert (await state_cache.get_match_state("ABCD")).required_number == dealt.required_number


# =============================================================================
# Room listeners and the cache
# =============================================================================

class TestRoomWriteThrough:
    """States reach a slow listener in version order."""

    @pytest.mark.asyncio
    async def test_slow_listener_keeps_version_order(self, state_cache):
        room = Room(code="ABCD")
        for pid in ("p0", "p1", "p2"):
            room.add_player(pid, pid.upper())
        start = room.start_match(seed=42)
        await state_cache.save_match_state(room.code, start)

        # Three consecutive moves, each computed against the previous version
        moves = []
        state = start
        for _ in range(3):
            slot = state.active_player
            action = choose_fallback_action(state, slot)
            moves.append((room.seats[slot], action, state.version))
            state = apply_action(state, slot, action).state

        seen = []
        errors = []

        async def slow_listener(room, state):
            if state.version == 1:
                await asyncio.sleep(0.05)
            seen.append(state.version)
            try:
                await state_cache.save_match_state(room.code, state)
            except ConcurrentWriteConflict as e:
                errors.append(str(e))

        room.on_state_change(slow_listener)

        first = asyncio.create_task(room.submit(*moves[0]))
        await asyncio.sleep(0)
        await room.submit(*moves[1])
        await room.submit(*moves[2])
        await first

        assert seen == [1, 2, 3]
        assert room.state.version == 3
        assert await state_cache.get_match_version(room.code) == 3
        assert errors == []

# =============================================================================
# GamePubSub
# =============================================================================

class TestGamePubSub:
    """Publishing accepted states and dispatching incoming ones."""

    @pytest.mark.asyncio
    async def test_publish_state(self, fake_redis, dealt):
        pubsub = GamePubSub(fake_redis, server_id="web-1")

        await pubsub.publish_state("ABCD", dealt)

        channel, raw = fake_redis.published[0]
        assert channel == "sevenate9:room:ABCD"
        msg = PubSubMessage.from_json(raw)
        assert msg.type == MessageType.STATE_UPDATE
        assert msg.sender_id == "web-1"
        assert msg.data["version"] == 0
        assert MatchState.from_dict(msg.data["state"]) == dealt

    @pytest.mark.asyncio
    async def test_dispatches_other_servers_messages(self, fake_redis):
        pubsub = GamePubSub(fake_redis, server_id="web-1")
        pubsub.pubsub.subscribe = AsyncMock()
        handler = AsyncMock()
        await pubsub.subscribe("ABCD", handler)

        msg = PubSubMessage(MessageType.ROOM_CLOSED, "ABCD", {}, sender_id="web-2")
        await pubsub._handle_message({
            "type": "message",
            "channel": b"sevenate9:room:ABCD",
            "data": msg.to_json().encode(),
        })

        handler.assert_awaited_once()
        assert handler.call_args.args[0].type == MessageType.ROOM_CLOSED

    @pytest.mark.asyncio
    async def test_ignores_own_echo(self, fake_redis):
        pubsub = GamePubSub(fake_redis, server_id="web-1")
        pubsub.pubsub.subscribe = AsyncMock()
        handler = AsyncMock()
        await pubsub.subscribe("ABCD", handler)

        msg = PubSubMessage(MessageType.PLAYERS_CHANGED, "ABCD", {}, sender_id="web-1")
        await pubsub._handle_message({
            "type": "message",
            "channel": "sevenate9:room:ABCD",
            "data": msg.to_json(),
        })

        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_message_ignored(self, fake_redis):
        pubsub = GamePubSub(fake_redis, server_id="web-1")
        pubsub.pubsub.subscribe = AsyncMock()
        handler = AsyncMock()
        await pubsub.subscribe("ABCD", handler)

        await pubsub._handle_message({
            "type": "message",
            "channel": "sevenate9:room:ABCD",
            "data": "{not json",
        })

        handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_players_and_close(self, fake_redis):
        pubsub = GamePubSub(fake_redis, server_id="web-1")

        await pubsub.publish_players("ABCD", [{"id": "p1", "name": "Ann"}])
        await pubsub.publish_room_closed("ABCD")

        kinds = [PubSubMessage.from_json(raw).type for _, raw in fake_redis.published]
        assert kinds == [MessageType.PLAYERS_CHANGED, MessageType.ROOM_CLOSED]
        players = PubSubMessage.from_json(fake_redis.published[0][1]).data["players"]
        assert players[0]["name"] == "Ann"
