"""
Centralized configuration for the 24 game server.

Configuration is loaded from (in order of precedence):
1. Environment variables
2. .env file (if exists)
3. Default values

Usage:
    from config import config
    print(config.PORT)
    print(config.puzzle.target)
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
class PuzzleDefaults:
    """Puzzle and round timing settings."""
    target: int = 24
    epsilon: float = 0.001
    fraction_tolerance: float = 1.0e-6
    max_generation_attempts: int = 100
    clock_duration_seconds: int = 60


@dataclass
class ServerConfig:
    """Server configuration."""
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    # Replicated store: "memory" (single process) or "redis"
    STORE_BACKEND: str = "memory"
    REDIS_URL: str = "redis://localhost:6379/0"

    # Room settings
    ROOM_CODE_LENGTH: int = 6
    MIN_PLAYERS: int = 2
    MAX_PLAYERS_PER_ROOM: int = 6
    MAX_PLAYER_NAME_LENGTH: int = 30
    ROOM_TTL_HOURS: int = 24

    # Disconnect sessions (redis backend)
    SESSION_TTL_SECONDS: int = 30
    REAPER_INTERVAL_SECONDS: int = 10

    puzzle: PuzzleDefaults = field(default_factory=PuzzleDefaults)

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Load configuration from environment variables."""
        return cls(
            HOST=get_env("HOST", "0.0.0.0"),
            PORT=get_env_int("PORT", 8000),
            DEBUG=get_env_bool("DEBUG", False),
            LOG_LEVEL=get_env("LOG_LEVEL", "INFO"),
            ENVIRONMENT=get_env("ENVIRONMENT", "development"),
            STORE_BACKEND=get_env("STORE_BACKEND", "memory").lower(),
            REDIS_URL=get_env("REDIS_URL", "redis://localhost:6379/0"),
            ROOM_CODE_LENGTH=get_env_int("ROOM_CODE_LENGTH", 6),
            MIN_PLAYERS=get_env_int("MIN_PLAYERS", 2),
            MAX_PLAYERS_PER_ROOM=get_env_int("MAX_PLAYERS_PER_ROOM", 6),
            MAX_PLAYER_NAME_LENGTH=get_env_int("MAX_PLAYER_NAME_LENGTH", 30),
            ROOM_TTL_HOURS=get_env_int("ROOM_TTL_HOURS", 24),
            SESSION_TTL_SECONDS=get_env_int("SESSION_TTL_SECONDS", 30),
            REAPER_INTERVAL_SECONDS=get_env_int("REAPER_INTERVAL_SECONDS", 10),
            puzzle=PuzzleDefaults(
                target=get_env_int("PUZZLE_TARGET", 24),
                epsilon=get_env_float("PUZZLE_EPSILON", 0.001),
                fraction_tolerance=get_env_float("FRACTION_TOLERANCE", 1.0e-6),
                max_generation_attempts=get_env_int("MAX_GENERATION_ATTEMPTS", 100),
                clock_duration_seconds=get_env_int("CLOCK_DURATION_SECONDS", 60),
            ),
        )


# Global config instance - loaded once at module import
config = ServerConfig.from_env()


def reload_config() -> ServerConfig:
    """Reload configuration from environment (useful for testing)."""
    global config
    config = ServerConfig.from_env()
    return config
