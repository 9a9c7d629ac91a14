"""Settings discovery and loading for the NodeRef backend."""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from .auth.initiator import PollingPolicy

DEFAULT_HOST = "127.0.0.1"
DEFAULT_HTTP_TIMEOUT = 30.0

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".noderef" / ".env",
]


def default_data_dir() -> Path:
    return Path.home() / ".noderef"


@dataclass
class Settings:
    """Backend settings.

    Attributes:
        data_dir: Where the encrypted credential document lives
        host: Interface the backend binds to
        port: Port the backend binds to; 0 picks a free one
        master_key: Explicit credential encryption key, if set
        http_timeout: Timeout in seconds for provider and server calls
        log_level: Logging level name, if set
        polling: Login polling timing
        env_path: The .env file that was loaded, if any
    """

    data_dir: Path = field(default_factory=default_data_dir)
    host: str = DEFAULT_HOST
    port: int = 0
    master_key: str | None = None
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    log_level: str | None = None
    polling: PollingPolicy = field(default_factory=PollingPolicy)
    env_path: Path | None = None


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking project then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ValueError(f"{name} must be at least {minimum}, got {value}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}")
    return value


def load_settings(env_path: Path | None = None) -> Settings:
    """Load settings from the environment.

    A .env file is loaded first; variables already set in the environment
    take precedence over it.

    Args:
        env_path: Explicit path to .env file (optional)

    Raises:
        ValueError: If a numeric variable is malformed
    """
    env_file = find_env_file(env_path)
    if env_file:
        load_dotenv(env_file)

    defaults = PollingPolicy()
    polling = PollingPolicy(
        interval=_env_float("NODEREF_POLL_INTERVAL", defaults.interval),
        max_attempts=_env_int("NODEREF_POLL_MAX_ATTEMPTS", defaults.max_attempts, minimum=1),
        grace_period=_env_float("NODEREF_POPUP_GRACE_PERIOD", defaults.grace_period),
        liveness_interval=defaults.liveness_interval,
    )

    data_dir = os.environ.get("NODEREF_DATA_DIR")

    return Settings(
        data_dir=Path(data_dir).expanduser() if data_dir else default_data_dir(),
        host=os.environ.get("NODEREF_HOST") or DEFAULT_HOST,
        port=_env_int("NODEREF_PORT", 0),
        master_key=os.environ.get("NODEREF_MASTER_KEY") or None,
        http_timeout=_env_float("NODEREF_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
        log_level=os.environ.get("NODEREF_LOG_LEVEL") or None,
        polling=polling,
        env_path=env_file,
    )
