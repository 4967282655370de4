"""
Purpose: Process-wide tunables in one dataclass.
Defaults match the desktop client; `from_env()` lets a deployment override
them with MENUBAR_CHAT_* variables without touching code.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
import os
import sys

from .models import LLMSettings, MAX_MESSAGE_CHARS

ENV_PREFIX = "MENUBAR_CHAT_"
APP_DIR_NAME = "menubar-chat"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
KEY_TEST_TIMEOUT_SECONDS = 10.0


def default_data_dir() -> Path:
    """Application-private directory for history and secrets."""
    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / APP_DIR_NAME
    if sys.platform.startswith("win"):
        base = os.getenv("APPDATA")
        return (Path(base) if base else home) / APP_DIR_NAME
    base = os.getenv("XDG_DATA_HOME")
    return (Path(base) if base else home / ".local" / "share") / APP_DIR_NAME


def _env_str(name: str, default: str) -> str:
    return os.getenv(ENV_PREFIX + name) or default


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = (os.getenv(ENV_PREFIX + name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(ENV_PREFIX + name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass
class ChatConfig:
    base_url: str = DEFAULT_BASE_URL
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    request_timeout: float = 30.0
    key_test_timeout: float = KEY_TEST_TIMEOUT_SECONDS
    context_window: int = 20
    max_sessions: int = 20
    max_messages_per_session: int = 100
    persist_every_chars: int = 10
    max_message_chars: int = MAX_MESSAGE_CHARS
    retry_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    log_level: str = "INFO"
    data_dir: Path = field(default_factory=default_data_dir)

    @classmethod
    def from_env(cls) -> "ChatConfig":
        defaults = cls()
        data_dir = os.getenv(ENV_PREFIX + "DATA_DIR")
        return cls(
            base_url=_env_str("BASE_URL", defaults.base_url).rstrip("/"),
            model=_env_str("MODEL", defaults.model),
            temperature=_env_float("TEMPERATURE", defaults.temperature),
            max_tokens=_env_int("MAX_TOKENS", defaults.max_tokens),
            request_timeout=_env_float("REQUEST_TIMEOUT", defaults.request_timeout),
            context_window=_env_int("CONTEXT_WINDOW", defaults.context_window),
            max_sessions=_env_int("MAX_SESSIONS", defaults.max_sessions),
            max_messages_per_session=_env_int(
                "MAX_MESSAGES_PER_SESSION", defaults.max_messages_per_session
            ),
            retry_attempts=_env_int("RETRY_ATTEMPTS", defaults.retry_attempts),
            log_level=_env_str("LOG_LEVEL", defaults.log_level).upper(),
            data_dir=Path(data_dir).expanduser() if data_dir else defaults.data_dir,
        )

    def llm_settings(self, model: Optional[str] = None) -> LLMSettings:
        return LLMSettings(
            model=model or self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
