"""
Purpose: Where the API key lives. The completion client only sees the
CredentialGateway protocol; which store backs it is a UI/deployment choice.

What is inside:
- InMemoryCredentialGateway: session-only key (Streamlit default, tests).
- EnvCredentialGateway: read-only OPENAI_API_KEY.
- FileCredentialGateway: YAML secrets file in the app data directory,
  owner-only permissions.
- is_valid_api_key_format / save_validated_key: advisory format check done
  by the settings form before saving. The client never enforces it.
"""

from __future__ import annotations
import logging
import os
import threading
from pathlib import Path
from typing import Optional

import yaml

from ..errors import CredentialStoreError, InputValidationError
from ..interfaces import CredentialGateway

logger = logging.getLogger(__name__)

API_KEY_NAME = "OPENAI_API_KEY"
API_KEY_PREFIX = "sk-"
API_KEY_MIN_LENGTH = 20


def is_valid_api_key_format(api_key: str) -> bool:
    trimmed = (api_key or "").strip()
    return trimmed.startswith(API_KEY_PREFIX) and len(trimmed) >= API_KEY_MIN_LENGTH


def save_validated_key(gateway: CredentialGateway, api_key: str) -> str:
    """Trim, check the format, then store. Returns the stored key."""
    trimmed = (api_key or "").strip()
    if not trimmed:
        raise InputValidationError("API key cannot be empty.")
    if not is_valid_api_key_format(trimmed):
        raise InputValidationError(
            "API key format is invalid. OpenAI API keys start with 'sk-'."
        )
    gateway.set(trimmed)
    return trimmed


class InMemoryCredentialGateway:
    def __init__(self, secret: Optional[str] = None) -> None:
        self._secret = secret or None

    def get(self) -> Optional[str]:
        return self._secret

    def set(self, secret: str) -> None:
        self._secret = secret

    def delete(self) -> None:
        self._secret = None

    def has(self) -> bool:
        return self._secret is not None


class EnvCredentialGateway:
    def __init__(self, name: str = API_KEY_NAME) -> None:
        self.name = name

    def get(self) -> Optional[str]:
        return (os.getenv(self.name) or "").strip() or None

    def set(self, secret: str) -> None:
        raise CredentialStoreError(f"{self.name} is read from the environment.")

    def delete(self) -> None:
        raise CredentialStoreError(f"{self.name} is read from the environment.")

    def has(self) -> bool:
        return self.get() is not None


class FileCredentialGateway:
    """Single named secret in a YAML mapping; other keys in the file are kept."""

    def __init__(self, path: Path, name: str = API_KEY_NAME) -> None:
        self.path = Path(path)
        self.name = name
        self._lock = threading.Lock()

    def _read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise CredentialStoreError(f"Could not read secrets file: {exc}") from exc
        if not isinstance(data, dict):
            raise CredentialStoreError("Secrets file is not a mapping.")
        return data

    def _write(self, data: dict) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False)
            os.replace(tmp, self.path)
        except OSError as exc:
            raise CredentialStoreError(f"Could not write secrets file: {exc}") from exc

    def get(self) -> Optional[str]:
        with self._lock:
            value = self._read().get(self.name)
        if value is None:
            return None
        return str(value).strip() or None

    def set(self, secret: str) -> None:
        with self._lock:
            data = self._read()
            data[self.name] = secret
            self._write(data)
        logger.info("Stored %s in %s", self.name, self.path)

    def delete(self) -> None:
        with self._lock:
            data = self._read()
            if self.name not in data:
                return
            del data[self.name]
            self._write(data)
        logger.info("Removed %s from %s", self.name, self.path)

    def has(self) -> bool:
        try:
            return self.get() is not None
        except CredentialStoreError:
            return False
