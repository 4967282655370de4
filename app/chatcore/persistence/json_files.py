"""
Purpose: Durable JSON records in one directory, one file per key.

Writes are queued to a single writer thread, so two writes to the same file
can never interleave and they land in submission order. Callers hand over
data that is serialized immediately; later in-memory mutations do not leak
into an already queued write.

Reads treat a missing or corrupt file as "no data" and return the default.
"""

from __future__ import annotations
import json
import logging
import os
import re
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class JsonRecordStore:
    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._writer = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="history-writer"
        )

    def path_for(self, key: str) -> Path:
        if not _SAFE_KEY.match(key):
            raise ValueError(f"Unsafe record key: {key!r}")
        return self.root / f"{key}.json"

    def exists(self, key: str) -> bool:
        return self.path_for(key).exists()

    def read(self, key: str, default: Any) -> Any:
        path = self.path_for(key)
        if not path.exists():
            return default
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable record %s: %s", path.name, exc)
            return default

    def write(self, key: str, data: Any) -> Future:
        path = self.path_for(key)
        text = json.dumps(data, ensure_ascii=False, indent=2)
        return self._writer.submit(self._write_text, path, text)

    def delete(self, key: str) -> Future:
        path = self.path_for(key)
        return self._writer.submit(self._delete_file, path)

    def flush(self) -> None:
        """Block until every queued write/delete has run."""
        self._writer.submit(lambda: None).result()

    def close(self) -> None:
        self._writer.shutdown(wait=True)

    @staticmethod
    def _write_text(path: Path, text: str) -> None:
        tmp = path.with_name(path.name + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(text)
            os.replace(tmp, path)
        except OSError:
            logger.exception("Failed to write %s", path.name)

    @staticmethod
    def _delete_file(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.exception("Failed to delete %s", path.name)
