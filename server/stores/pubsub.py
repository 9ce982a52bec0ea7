"""
Redis pub/sub for cross-process room updates.

Every accepted MatchState is published on its room's channel so that other
server processes (or observers) can refresh their clients without polling
the state cache. Each server tags what it publishes with its server id and
ignores its own echoes.

Usage:
    pubsub = GamePubSub(redis_client, server_id="web-1")
    await pubsub.start()

    async def on_update(msg: PubSubMessage):
        state = MatchState.from_dict(msg.data["state"])

    await pubsub.subscribe("ABCD", on_update)
    await pubsub.publish_state("ABCD", state)

    await pubsub.stop()
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

import redis.asyncio as redis

from game import MatchState

logger = logging.getLogger(__name__)


class MessageType(str, Enum):
    """Types of messages published on a room channel."""

    # A new MatchState was accepted
    STATE_UPDATE = "state_update"
    # Someone joined or left; data carries the full player list
    PLAYERS_CHANGED = "players_changed"
    # Room closed (everyone left, or the server shut it)
    ROOM_CLOSED = "room_closed"


@dataclass
class PubSubMessage:
    """
    Message sent via Redis pub/sub.

    Attributes:
        type: Message type.
        room_code: Room this message is for.
        data: Payload (type-specific).
        sender_id: Server id of the publisher (to skip echoes).
    """

    type: MessageType
    room_code: str
    data: dict
    sender_id: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({
            "type": self.type.value,
            "room_code": self.room_code,
            "data": self.data,
            "sender_id": self.sender_id,
        })

    @classmethod
    def from_json(cls, raw: str) -> "PubSubMessage":
        d = json.loads(raw)
        return cls(
            type=MessageType(d["type"]),
            room_code=d["room_code"],
            data=d.get("data", {}),
            sender_id=d.get("sender_id"),
        )


MessageHandler = Callable[[PubSubMessage], Awaitable[None]]


class GamePubSub:
    """
    Redis pub/sub for room channels.

    Manages subscriptions and dispatches incoming messages to the handlers
    registered for each room.
    """

    CHANNEL_PREFIX = "sevenate9:room:"

    def __init__(self, redis_client: redis.Redis, server_id: str = "default"):
        """
        Args:
            redis_client: Async Redis client.
            server_id: Unique ID for this server instance.
        """
        self.redis = redis_client
        self.server_id = server_id
        self.pubsub = redis_client.pubsub()
        self._handlers: dict[str, list[MessageHandler]] = {}
        self._running = False
        self._task: Optional[asyncio.Task] = None

    def _channel(self, room_code: str) -> str:
        return f"{self.CHANNEL_PREFIX}{room_code}"

    async def subscribe(self, room_code: str, handler: MessageHandler) -> None:
        channel = self._channel(room_code)
        if channel not in self._handlers:
            self._handlers[channel] = []
            await self.pubsub.subscribe(channel)
            logger.debug(f"Subscribed to channel {channel}")
        self._handlers[channel].append(handler)

    async def unsubscribe(self, room_code: str) -> None:
        channel = self._channel(room_code)
        if channel in self._handlers:
            del self._handlers[channel]
            await self.pubsub.unsubscribe(channel)
            logger.debug(f"Unsubscribed from channel {channel}")

    async def publish(self, message: PubSubMessage) -> int:
        """
        Publish a message to a room's channel.

        Returns:
            Number of subscribers that received it.
        """
        message.sender_id = self.server_id
        channel = self._channel(message.room_code)
        count = await self.redis.publish(channel, message.to_json())
        logger.debug(f"Published {message.type.value} to {channel} ({count} receivers)")
        return count

    async def publish_state(self, room_code: str, state: MatchState) -> int:
        """Publish an accepted MatchState (full snapshot) for a room."""
        return await self.publish(PubSubMessage(
            type=MessageType.STATE_UPDATE,
            room_code=room_code,
            data={"version": state.version, "state": state.to_dict()},
        ))

    async def publish_players(self, room_code: str, players: list[dict]) -> int:
        return await self.publish(PubSubMessage(
            type=MessageType.PLAYERS_CHANGED,
            room_code=room_code,
            data={"players": players},
        ))

    async def publish_room_closed(self, room_code: str) -> int:
        return await self.publish(PubSubMessage(
            type=MessageType.ROOM_CLOSED,
            room_code=room_code,
            data={},
        ))

    async def start(self) -> None:
        """Start listening for messages."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._listen())
        logger.info("GamePubSub listener started")

    async def stop(self) -> None:
        """Stop listening and clean up."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self.pubsub.close()
        self._handlers.clear()
        logger.info("GamePubSub listener stopped")

    async def _listen(self) -> None:
        while self._running:
            try:
                message = await self.pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if message and message["type"] == "message":
                    await self._handle_message(message)
            except asyncio.CancelledError:
                break
            except redis.ConnectionError as e:
                logger.error(f"PubSub connection error: {e}")
                await asyncio.sleep(1)

    async def _handle_message(self, raw_message: dict) -> None:
        """Decode an incoming Redis message and hand it to the room's handlers."""
        channel = raw_message["channel"]
        if isinstance(channel, bytes):
            channel = channel.decode()
        data = raw_message["data"]
        if isinstance(data, bytes):
            data = data.decode()

        try:
            msg = PubSubMessage.from_json(data)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Invalid pubsub message on {channel}: {e}")
            return

        if msg.sender_id == self.server_id:
            return

        for handler in self._handlers.get(channel, []):
            try:
                await handler(msg)
            except Exception as e:
                logger.error(f"Error in pubsub handler: {e}", exc_info=True)


# Global pub/sub instance
_pubsub: Optional[GamePubSub] = None


async def get_pubsub(redis_client: redis.Redis, server_id: str = "default") -> GamePubSub:
    global _pubsub
    if _pubsub is None:
        _pubsub = GamePubSub(redis_client, server_id)
    return _pubsub


async def close_pubsub() -> None:
    """Stop and close the global pub/sub instance."""
    global _pubsub
    if _pubsub is not None:
        await _pubsub.stop()
        _pubsub = None
