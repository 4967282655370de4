"""Helpers for reading `data: ...` lines of a chat-completion event stream."""

from __future__ import annotations
import json
from dataclasses import dataclass
from typing import Any, Optional

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class StreamLine:
    """One parsed line. `done` marks the sentinel; `delta` may be None."""

    done: bool = False
    delta: Optional[str] = None
    malformed: bool = False


SKIP = StreamLine()
DONE = StreamLine(done=True)
MALFORMED = StreamLine(malformed=True)


def extract_delta(payload: Any) -> Optional[str]:
    """Content fragment of the first choice, or None when the event has none."""
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    delta = first.get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) else None


def parse_line(line: str) -> StreamLine:
    """
    Classify one line of the response body.
    - Lines without the data prefix (comments, event names, blanks) -> SKIP.
    - `data: [DONE]` -> DONE.
    - Malformed JSON -> MALFORMED; the reader skips it, so one bad chunk
      never aborts an otherwise good stream.
    """
    if not line.startswith(DATA_PREFIX):
        return SKIP
    body = line[len(DATA_PREFIX):].strip()
    if body == DONE_SENTINEL:
        return DONE
    try:
        payload = json.loads(body)
    except ValueError:
        return MALFORMED
    delta = extract_delta(payload)
    if delta is None:
        return SKIP
    return StreamLine(delta=delta)
