# lg_console/config.py
import os
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "http://localhost:8000/api/v1"
DEFAULT_CORS_ORIGINS = "http://localhost,http://localhost:3000,http://127.0.0.1,http://127.0.0.1:3000"
DEFAULT_SESSION_IDLE_SECONDS = 1800.0
DEFAULT_MAX_DETAIL_VIEWS = 20


@dataclass
class ConsoleSettings:
    """Holds the console's connection and runtime settings."""
    api_base_url: str = DEFAULT_API_BASE_URL
    # None leaves the transport's own default in place
    http_timeout_seconds: Optional[float] = None
    read_retry_attempts: int = 3
    # Sessions unused for this long are closed along with their authority client
    session_idle_seconds: float = DEFAULT_SESSION_IDLE_SECONDS
    max_detail_views: int = DEFAULT_MAX_DETAIL_VIEWS
    cors_origins: List[str] = field(default_factory=list)
    log_level: str = "INFO"


def _optional_float(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring non-numeric value '{raw}' for {name}.")
        return None


def load_settings() -> ConsoleSettings:
    """Reads console settings from environment variables."""
    retry_raw = os.getenv("LG_CONSOLE_READ_RETRY_ATTEMPTS", "3")
    try:
        read_retry_attempts = max(1, int(retry_raw))
    except ValueError:
        logger.warning(f"Ignoring non-numeric value '{retry_raw}' for LG_CONSOLE_READ_RETRY_ATTEMPTS.")
        read_retry_attempts = 3

    idle_seconds = _optional_float("LG_CONSOLE_SESSION_IDLE_SECONDS")
    max_views_raw = os.getenv("LG_CONSOLE_MAX_DETAIL_VIEWS", str(DEFAULT_MAX_DETAIL_VIEWS))
    try:
        max_detail_views = max(1, int(max_views_raw))
    except ValueError:
        logger.warning(f"Ignoring non-numeric value '{max_views_raw}' for LG_CONSOLE_MAX_DETAIL_VIEWS.")
        max_detail_views = DEFAULT_MAX_DETAIL_VIEWS

    origins = os.getenv("LG_CONSOLE_CORS_ORIGINS", DEFAULT_CORS_ORIGINS)

    return ConsoleSettings(
        api_base_url=os.getenv("LG_CONSOLE_API_BASE_URL", DEFAULT_API_BASE_URL).rstrip("/"),
        http_timeout_seconds=_optional_float("LG_CONSOLE_HTTP_TIMEOUT_SECONDS"),
        read_retry_attempts=read_retry_attempts,
        session_idle_seconds=idle_seconds if idle_seconds is not None else DEFAULT_SESSION_IDLE_SECONDS,
        max_detail_views=max_detail_views,
        cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        log_level=os.getenv("LG_CONSOLE_LOG_LEVEL", "INFO").upper(),
    )


@lru_cache()
def get_settings() -> ConsoleSettings:
    return load_settings()
