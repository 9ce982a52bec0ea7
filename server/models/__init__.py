"""Models package for 7-ate-9 match history."""

from .events import EventType, GameEvent
from .game_state import RebuiltMatch, rebuild_state

__all__ = [
    "EventType",
    "GameEvent",
    "RebuiltMatch",
    "rebuild_state",
]
