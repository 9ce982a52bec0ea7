"""Stores package: Redis state cache and pub/sub for 7-ate-9 rooms."""

from .state_cache import StateCache, get_state_cache, close_state_cache
from .pubsub import GamePubSub, PubSubMessage, MessageType, get_pubsub, close_pubsub

__all__ = [
    # State cache
    "StateCache",
    "get_state_cache",
    "close_state_cache",
    # Pub/sub
    "GamePubSub",
    "PubSubMessage",
    "MessageType",
    "get_pubsub",
    "close_pubsub",
]
