"""
Skill Arena - configuration
Reads .env / environment variables once and exposes them as a Settings object.
"""
import os
import logging
from dataclasses import dataclass
from typing import Callable, Any

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    # Session store
    store_backend: str = "memory"
    db_path: str = "skill_arena.db"
    store_poll_interval: float = 1.0
    transaction_attempts: int = 5

    # AI judge (Ollama)
    ollama_url: str = "http://localhost:11434"
    ollama_model: str = "mistral:7b-instruct-q4_K_M"
    ollama_vision_model: str = "llava:7b"
    ai_timeout: float = 120.0
    ai_max_attempts: int = 3
    ai_backoff_seconds: float = 1.0
    environment_retry_delay: float = 3.0
    scenario_timeout: float = 45.0

    # Arena
    race_duration: int = 600

    log_level: str = "INFO"


def _env(name: str, default: Any, convert: Callable[[str], Any] = str) -> Any:
    """Read one environment variable, keeping the default on a bad value"""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return convert(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid value {name}={raw!r}, using default {default!r}")
        return default


def load_settings() -> Settings:
    backend = _env("STORE_BACKEND", "memory").lower().strip()
    if backend not in ("memory", "sqlite"):
        logger.warning(f"Unknown STORE_BACKEND={backend!r}, falling back to in-memory store")
        backend = "memory"

    return Settings(
        store_backend=backend,
        db_path=_env("DB_PATH", "skill_arena.db"),
        store_poll_interval=_env("STORE_POLL_INTERVAL", 1.0, float),
        transaction_attempts=max(1, _env("STORE_TRANSACTION_ATTEMPTS", 5, int)),
        ollama_url=_env("OLLAMA_URL", "http://localhost:11434"),
        ollama_model=_env("OLLAMA_MODEL", "mistral:7b-instruct-q4_K_M"),
        ollama_vision_model=_env("OLLAMA_VISION_MODEL", "llava:7b"),
        ai_timeout=_env("AI_TIMEOUT_SECONDS", 120.0, float),
        ai_max_attempts=max(1, _env("AI_MAX_ATTEMPTS", 3, int)),
        ai_backoff_seconds=_env("AI_BACKOFF_SECONDS", 1.0, float),
        environment_retry_delay=_env("ENVIRONMENT_RETRY_DELAY", 3.0, float),
        scenario_timeout=_env("SCENARIO_TIMEOUT_SECONDS", 45.0, float),
        race_duration=_env("RACE_DURATION_SECONDS", 600, int),
        log_level=_env("LOG_LEVEL", "INFO").upper(),
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
