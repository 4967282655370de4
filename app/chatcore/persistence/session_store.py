"""
Purpose: Sessions and the active session's messages, backed by JSON files.
Why: Reopen conversations after restart; bounded history on disk.

What is inside:
SessionStore with create_session, select_session, append_message,
update_last_message_content, recent_messages, clear_active_session,
delete_session, subscribe, flush/close.

Layout under data_dir:
- sessions.json            index of every session (newest activity first)
- messages_<session>.json  ordered message list of one session

Rules:
- At most `max_sessions` sessions; creating one more evicts the oldest by
  last activity, files included.
- At most `max_messages_per_session` messages; older ones are dropped.
- Streaming updates to the last message are persisted every
  `persist_every_chars` characters of change; `final=True` always writes.
- A targeted update never edits a message that another message follows.
- Missing or corrupt files load as empty history.

Testing: tmp_path data dir; call flush() before looking at files.
"""

from __future__ import annotations
import logging
import threading
from pathlib import Path
from typing import Callable, Optional

from ..errors import NoActiveSessionError
from ..models import MAX_MESSAGE_CHARS, Message, Session, StoreEvent
from .json_files import JsonRecordStore

logger = logging.getLogger(__name__)

INDEX_KEY = "sessions"
DEFAULT_TITLE = "New Chat"

StoreListener = Callable[[StoreEvent], None]


def messages_key(session_id: str) -> str:
    return f"messages_{session_id}"


class SessionStore:
    def __init__(
        self,
        data_dir: Path,
        *,
        max_sessions: int = 20,
        max_messages_per_session: int = 100,
        persist_every_chars: int = 10,
        max_message_chars: int = MAX_MESSAGE_CHARS,
    ) -> None:
        self._records = JsonRecordStore(data_dir)
        self.max_sessions = max(1, max_sessions)
        self.max_messages_per_session = max(1, max_messages_per_session)
        self.persist_every_chars = max(1, persist_every_chars)
        self.max_message_chars = max_message_chars

        self._lock = threading.RLock()
        self._listeners: list[StoreListener] = []
        self._sessions: list[Session] = []
        self._active_session_id: Optional[str] = None
        # None until the active session's file has been read
        self._messages: Optional[list[Message]] = None
        self._persisted_chars = 0

        self.load()

    @classmethod
    def from_config(cls, config) -> "SessionStore":
        return cls(
            Path(config.data_dir),
            max_sessions=config.max_sessions,
            max_messages_per_session=config.max_messages_per_session,
            persist_every_chars=config.persist_every_chars,
            max_message_chars=config.max_message_chars,
        )

    # ------------------------------------------------------------------
    # observers
    # ------------------------------------------------------------------
    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a callback for every mutation. Returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, kind: str, session_id: Optional[str] = None) -> None:
        event = StoreEvent(kind=kind, session_id=session_id)
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event)

    # ------------------------------------------------------------------
    # read access
    # ------------------------------------------------------------------
    @property
    def active_session_id(self) -> Optional[str]:
        return self._active_session_id

    @property
    def sessions(self) -> list[Session]:
        with self._lock:
            return list(self._sessions)

    @property
    def messages(self) -> list[Message]:
        """Messages of the active session, oldest first."""
        with self._lock:
            return list(self._active_messages())

    def list_sessions(self) -> list[Session]:
        return self.sessions

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            return self._find(session_id)

    def _find(self, session_id: str) -> Optional[Session]:
        return next((s for s in self._sessions if s.id == session_id), None)

    # ------------------------------------------------------------------
    # loading
    # ------------------------------------------------------------------
    def load(self) -> None:
        """Read the index and make the most recently active session current."""
        raw = self._records.read(INDEX_KEY, [])
        sessions: list[Session] = []
        if isinstance(raw, list):
            for item in raw:
                try:
                    sessions.append(Session.from_dict(item))
                except (KeyError, TypeError, ValueError) as exc:
                    logger.warning("Skipping malformed session entry: %s", exc)
        else:
            logger.warning("Session index is not a list; starting empty")

        sessions.sort(key=lambda s: s.last_message_at, reverse=True)
        with self._lock:
            self._sessions = sessions
            evicted = self._enforce_session_limit()
            self._active_session_id = sessions[0].id if sessions else None
            self._messages = None
            if evicted:
                self._save_index()
        logger.info("Loaded %d sessions", len(self._sessions))
        self._notify("loaded", self._active_session_id)

    def _load_messages(self, session_id: str) -> list[Message]:
        # queued writes for this session must land before reading its file
        self._records.flush()
        raw = self._records.read(messages_key(session_id), [])
        messages: list[Message] = []
        if not isinstance(raw, list):
            logger.warning("Message file for %s is not a list", session_id)
            return messages
        for item in raw:
            try:
                message = Message.from_dict(item)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping malformed message in %s: %s", session_id, exc)
                continue
            if message.session_id == session_id:
                messages.append(message)
        messages.sort(key=lambda m: m.created_at)
        return messages[-self.max_messages_per_session:]

    def _active_messages(self) -> list[Message]:
        if self._messages is None:
            if self._active_session_id is None:
                self._messages = []
            else:
                self._messages = self._load_messages(self._active_session_id)
            self._persisted_chars = len(self._messages[-1].content) if self._messages else 0
        return self._messages

    # ------------------------------------------------------------------
    # session lifecycle
    # ------------------------------------------------------------------
    def create_session(self, seed_text: str) -> str:
        session = Session(title=Session.generate_title(seed_text) or DEFAULT_TITLE)
        with self._lock:
            self._sessions.insert(0, session)
            self._active_session_id = session.id
            self._messages = []
            self._persisted_chars = 0
            evicted = self._enforce_session_limit()
            self._save_index()

        logger.info("Created session %s", session.id)
        self._notify("session_created", session.id)
        for old in evicted:
            self._notify("session_evicted", old.id)
        return session.id

    def _enforce_session_limit(self) -> list[Session]:
        if len(self._sessions) <= self.max_sessions:
            return []
        newest, rest = self._sessions[0], self._sessions[1:]
        rest.sort(key=lambda s: s.last_message_at, reverse=True)
        ordered = [newest] + rest
        keep, evicted = ordered[: self.max_sessions], ordered[self.max_sessions:]
        self._sessions = keep
        for old in evicted:
            self._records.delete(messages_key(old.id))
            logger.info("Evicted session %s (retention limit %d)", old.id, self.max_sessions)
        return evicted

    def select_session(self, session_id: str) -> None:
        with self._lock:
            if self._find(session_id) is None:
                raise NoActiveSessionError(session_id)
            if session_id == self._active_session_id and self._messages is not None:
                return
            self._active_session_id = session_id
            self._messages = None
            self._active_messages()
        self._notify("session_selected", session_id)

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            if self._find(session_id) is None:
                return
            self._sessions = [s for s in self._sessions if s.id != session_id]
            self._records.delete(messages_key(session_id))
            if session_id == self._active_session_id:
                self._active_session_id = None
                self._messages = []
                self._persisted_chars = 0
            self._save_index()
        self._notify("session_deleted", session_id)

    def clear_active_session(self) -> Optional[str]:
        """
        Drop the active session's messages and file, remove it from the index
        and unset the active pointer. The next send starts a fresh session.
        Returns the cleared session id.
        """
        with self._lock:
            session_id = self._active_session_id
            if session_id is None:
                return None
            self._messages = []
            self._persisted_chars = 0
            self._active_session_id = None
            self._sessions = [s for s in self._sessions if s.id != session_id]
            self._records.delete(messages_key(session_id))
            self._save_index()
        logger.info("Cleared session %s", session_id)
        self._notify("session_cleared", session_id)
        return session_id

    # ------------------------------------------------------------------
    # messages
    # ------------------------------------------------------------------
    def append_message(self, message: Message) -> None:
        with self._lock:
            session = self._find(message.session_id)
            if session is None:
                raise NoActiveSessionError(message.session_id)
            if message.session_id != self._active_session_id:
                self._active_session_id = message.session_id
                self._messages = None

            messages = self._active_messages()
            if len(message.content) > self.max_message_chars:
                message.content = message.content[: self.max_message_chars]
            messages.append(message)
            if len(messages) > self.max_messages_per_session:
                del messages[: len(messages) - self.max_messages_per_session]
            self._persisted_chars = len(message.content)

            session.last_message_at = message.created_at
            self._sessions.remove(session)
            self._sessions.insert(0, session)

            self._save_messages(session.id)
            self._save_index()
        self._notify("message_appended", message.session_id)

    def update_last_message_content(
        self,
        content: str,
        *,
        final: bool = False,
        session_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> bool:
        """
        Replace the content of the newest message. Memory is always current;
        the file is rewritten only when enough characters changed since the
        last write, or unconditionally when `final` is set.

        With `session_id` / `message_id` the update only applies while that
        message is still the last one of that session; a message followed by
        another one is never edited. A target session that is no longer
        active only receives the `final` write. Returns True if applied.
        """
        with self._lock:
            target = session_id or self._active_session_id
            if target is None:
                return False
            if target == self._active_session_id:
                messages = self._active_messages()
            elif final and self._find(target) is not None:
                messages = self._load_messages(target)
            else:
                return False
            if not messages:
                return False
            last = messages[-1]
            if message_id is not None and last.id != message_id:
                logger.debug(
                    "Message %s is no longer last in %s; update dropped", message_id, target
                )
                return False

            last.content = content[: self.max_message_chars]
            if target != self._active_session_id:
                self._records.write(messages_key(target), [m.to_dict() for m in messages])
            else:
                changed = abs(len(last.content) - self._persisted_chars)
                if final or changed >= self.persist_every_chars:
                    self._save_messages(target)
                    self._persisted_chars = len(last.content)
        self._notify("message_updated", target)
        return True

    def recent_messages(self, session_id: str, limit: int = 20) -> list[Message]:
        """Up to `limit` newest messages of one session, oldest first."""
        if limit <= 0:
            return []
        with self._lock:
            if session_id == self._active_session_id:
                source = list(self._active_messages())
            elif self._find(session_id) is None:
                return []
            else:
                source = self._load_messages(session_id)
        rows = sorted(
            (m for m in source if m.session_id == session_id),
            key=lambda m: m.created_at,
        )
        return rows[-limit:]

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------
    def _save_index(self) -> None:
        self._records.write(INDEX_KEY, [s.to_dict() for s in self._sessions])

    def _save_messages(self, session_id: str) -> None:
        rows = [m.to_dict() for m in self._active_messages() if m.session_id == session_id]
        self._records.write(messages_key(session_id), rows)

    def flush(self) -> None:
        self._records.flush()

    def close(self) -> None:
        self._records.close()
