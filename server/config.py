"""
Centralized configuration for the 7-ate-9 server.

Configuration is loaded from (in order of precedence):
1. Environment variables
2. .env file (if exists)
3. Default values

Rule constants (deck composition, hand size, player bounds) are not
configurable; they live in constants.py.

Usage:
    from config import config
    print(config.PORT)
    print(config.ai.provider_url)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)


def get_env(key: str, default: str = "") -> str:
    """Get environment variable with default."""
    return os.environ.get(key, default)


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable."""
    val = os.environ.get(key, "").lower()
    if val in ("true", "1", "yes", "on"):
        return True
    if val in ("false", "0", "no", "off"):
        return False
    return default


def get_env_int(key: str, default: int = 0) -> int:
    """Get integer environment variable."""
    try:
        return int(os.environ.get(key, str(default)))
    except ValueError:
        return default


def get_env_float(key: str, default: float = 0.0) -> float:
    """Get float environment variable."""
    try:
        return float(os.environ.get(key, str(default)))
    except ValueError:
        return default


@dataclass
class AIConfig:
    """Settings for CPU players and the external strategy provider."""
    # Empty URL means CPU players always use the local fallback strategy
    provider_url: str = ""
    timeout_seconds: float = 8.0
    default_difficulty: str = "medium"
    debug: bool = False


@dataclass
class MatchDefaults:
    """Default match settings."""
    player_count: int = 4
    # Pause before a CPU seat starts thinking (seconds)
    cpu_turn_delay: float = 0.25


@dataclass
class ServerConfig:
    """Server configuration."""
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    # Redis (state cache + pub/sub); empty disables both
    REDIS_URL: str = ""

    # Room settings
    MAX_PLAYERS_PER_ROOM: int = 5
    ROOM_CODE_LENGTH: int = 4

    ai: AIConfig = field(default_factory=AIConfig)
    match_defaults: MatchDefaults = field(default_factory=MatchDefaults)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Load configuration from environment variables."""
        return cls(
            HOST=get_env("HOST", "0.0.0.0"),
            PORT=get_env_int("PORT", 8000),
            DEBUG=get_env_bool("DEBUG", False),
            LOG_LEVEL=get_env("LOG_LEVEL", "INFO"),
            ENVIRONMENT=get_env("ENVIRONMENT", "development"),
            REDIS_URL=get_env("REDIS_URL", ""),
            MAX_PLAYERS_PER_ROOM=get_env_int("MAX_PLAYERS_PER_ROOM", 5),
            ROOM_CODE_LENGTH=get_env_int("ROOM_CODE_LENGTH", 4),
            ai=AIConfig(
                provider_url=get_env("AI_PROVIDER_URL", ""),
                timeout_seconds=get_env_float("AI_PROVIDER_TIMEOUT", 8.0),
                default_difficulty=get_env("AI_DEFAULT_DIFFICULTY", "medium"),
                debug=get_env_bool("AI_DEBUG", False),
            ),
            match_defaults=MatchDefaults(
                player_count=get_env_int("DEFAULT_PLAYER_COUNT", 4),
                cpu_turn_delay=get_env_float("CPU_TURN_DELAY", 0.25),
            ),
        )


# Global config instance - loaded once at module import
config = ServerConfig.from_env()


def reload_config() -> ServerConfig:
    """Reload configuration from environment (useful for testing)."""
    global config
    config = ServerConfig.from_env()
    return config
