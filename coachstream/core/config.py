"""
coachstream configuration module

Handles configuration priority:
  1. CLI flags (highest priority)
  2. Environment variables (a project ``.env`` is loaded first)
  3. Default values (lowest priority)

Configuration sources:
  - ENDPOINT_URL: COACH_ENDPOINT_URL (env) → local functions endpoint (default)
  - API_TOKEN: COACH_API_TOKEN (env) → "" (default)
  - USER_ID: COACH_USER_ID (env) → local (default)
  - DB_PATH: COACH_CHAT_DB_PATH (env) → data/coach/chat.db (default)
  - TIMEOUT: COACH_TIMEOUT (env) → 30 (default, seconds)
  - IDLE_TIMEOUT: COACH_STREAM_IDLE_TIMEOUT (env) → unset (no read timeout)
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

DEFAULT_ENDPOINT_URL = "http://127.0.0.1:54321/functions/v1/ai-coach"
DEFAULT_DB_PATH = Path("data/coach/chat.db")
DEFAULT_TIMEOUT = 30.0
DEFAULT_USER_ID = "local"


@dataclass
class CoachConfig:
    """Resolved engine configuration."""

    endpoint_url: str = DEFAULT_ENDPOINT_URL
    api_token: str = ""
    user_id: str = DEFAULT_USER_ID
    db_path: Path = DEFAULT_DB_PATH
    timeout: float = DEFAULT_TIMEOUT
    idle_timeout: Optional[float] = None

    def to_dict(self) -> dict:
        """Convert to dictionary (safe for display, token masked)."""
        return {
            "endpoint_url": self.endpoint_url,
            "api_token": "***" if self.api_token else "",
            "user_id": self.user_id,
            "db_path": str(self.db_path),
            "timeout": self.timeout,
            "idle_timeout": self.idle_timeout,
        }


def _float_from_env(name: str) -> Optional[float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def get_endpoint_url_from_env() -> str:
    return os.getenv("COACH_ENDPOINT_URL", "").strip() or DEFAULT_ENDPOINT_URL


def get_api_token_from_env() -> str:
    return os.getenv("COACH_API_TOKEN", "").strip()


def get_user_id_from_env() -> str:
    return os.getenv("COACH_USER_ID", "").strip() or DEFAULT_USER_ID


def get_db_path_from_env() -> Path:
    custom_path = os.getenv("COACH_CHAT_DB_PATH", "").strip()
    if custom_path:
        return Path(custom_path)
    return DEFAULT_DB_PATH


def get_timeout_from_env() -> float:
    """
    Get connect/write timeout from environment variables.

    Source: COACH_TIMEOUT (seconds)
    Default: 30
    """
    return _float_from_env("COACH_TIMEOUT") or DEFAULT_TIMEOUT


def get_idle_timeout_from_env() -> Optional[float]:
    """
    Get the idle-read timeout for event streams.

    Source: COACH_STREAM_IDLE_TIMEOUT (seconds)
    Default: None, a stream may stay silent indefinitely
    """
    return _float_from_env("COACH_STREAM_IDLE_TIMEOUT")


def get_config(
    endpoint_url: Optional[str] = None,
    api_token: Optional[str] = None,
    user_id: Optional[str] = None,
    db_path: Optional[Path] = None,
    timeout: Optional[float] = None,
    idle_timeout: Optional[float] = None,
) -> CoachConfig:
    """
    Build configuration with priority: CLI flag > env > default.

    Returns:
        CoachConfig object with resolved values
    """
    return CoachConfig(
        endpoint_url=endpoint_url or get_endpoint_url_from_env(),
        api_token=api_token or get_api_token_from_env(),
        user_id=user_id or get_user_id_from_env(),
        db_path=Path(db_path) if db_path else get_db_path_from_env(),
        timeout=timeout or get_timeout_from_env(),
        idle_timeout=idle_timeout or get_idle_timeout_from_env(),
    )
