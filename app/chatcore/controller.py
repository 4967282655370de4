"""
Purpose: The single orchestration point for a conversation turn.
It centralizes "one-turn" logic (send) and the session actions the UI
triggers (clear, cancel), so the UI never talks to the HTTP client directly.

Key responsibilities:
- Guard against a second send while a turn is in flight.
- Resolve the active session, creating it lazily from the first message.
- Append the user message and an empty assistant placeholder.
- Stream the completion with the last `context_window` messages and feed
  every fragment into the store, in arrival order.
- Reconcile the placeholder with the final text, or keep the partial text
  when the turn fails.
- Retry retryable errors with backoff, but only before any fragment of the
  current attempt has been shown.
- Publish ControllerEvents (turn_started, chunk, turn_finished,
  turn_cancelled, error) for the UI.

Testing: Pure unit tests with a fake CompletionClient and a tmp_path store.
"""

from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import ChatError, NoActiveSessionError, StreamingError, describe_error
from .interfaces import CompletionClient, SecurityGuard
from .models import ControllerEvent, LLMSettings, Message, Role
from .persistence.session_store import SessionStore
from .services.retry import RetryPolicy
from .services.security import DefaultSecurity
from .utils.cancel import CancelEvent

logger = logging.getLogger(__name__)

ControllerListener = Callable[[ControllerEvent], None]


@dataclass
class _Turn:
    session_id: str
    placeholder_id: str
    cancel: CancelEvent = field(default_factory=CancelEvent)
    text: str = ""
    chunks: int = 0
    sealed: bool = False


class ChatController:
    def __init__(
        self,
        store: SessionStore,
        llm: CompletionClient,
        *,
        settings: Optional[LLMSettings] = None,
        context_window: int = 20,
        retry: Optional[RetryPolicy] = None,
        security: Optional[SecurityGuard] = None,
    ):
        self.store = store
        self.llm: CompletionClient = llm
        self.settings = settings or LLMSettings()
        self.context_window = context_window
        self.retry = retry or RetryPolicy()
        self.security: SecurityGuard = security or DefaultSecurity(store.max_message_chars)

        self._flight = threading.Lock()
        self._state_lock = threading.RLock()
        self._turn: Optional[_Turn] = None
        self._listeners: list[ControllerListener] = []
        self.last_error: Optional[str] = None

    @classmethod
    def from_config(cls, config, store: SessionStore, llm: CompletionClient) -> "ChatController":
        return cls(
            store,
            llm,
            settings=config.llm_settings(),
            context_window=config.context_window,
            retry=RetryPolicy(
                attempts=config.retry_attempts,
                base_delay=config.retry_base_delay,
                max_delay=config.retry_max_delay,
            ),
        )

    @property
    def is_sending(self) -> bool:
        return self._flight.locked()

    @property
    def messages(self) -> list[Message]:
        return self.store.messages

    def set_model(self, model: str) -> None:
        self.settings.model = model

    def subscribe(self, listener: ControllerListener) -> Callable[[], None]:
        with self._state_lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._state_lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, message: str = "") -> None:
        event = ControllerEvent(kind=kind, message=message)
        with self._state_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event)

    # ------------------------------------------------------------------
    # turn
    # ------------------------------------------------------------------
    def send(self, text: str, *, stream: bool = True) -> Optional[str]:
        """
        Run one user turn. Returns the assistant's final text, or None when
        the input was blank, a turn was already running, or the turn was
        cancelled. Errors are published as an `error` event and re-raised;
        the partial assistant text stays in the history.
        """
        user_text = self.security.sanitize_for_prompt(text)
        if not user_text:
            return None
        if not self._flight.acquire(blocking=False):
            logger.info("Ignoring send: a turn is already in flight")
            return None
        try:
            return self._run_turn(user_text, stream)
        except ChatError as exc:
            self.last_error = describe_error(exc)
            logger.warning("Turn failed: %s", type(exc).__name__)
            self._emit("error", self.last_error)
            raise
        finally:
            self._finish_turn()
            self._flight.release()

    def _run_turn(self, user_text: str, stream: bool) -> Optional[str]:
        self.security.validate_user_input(user_text)
        self.last_error = None

        user_message = self._append_user_message(user_text)
        session_id = user_message.session_id
        context = self.store.recent_messages(session_id, self.context_window)

        placeholder = Message(role=Role.ASSISTANT, content="", session_id=session_id)
        self.store.append_message(placeholder)

        turn = _Turn(session_id=session_id, placeholder_id=placeholder.id)
        with self._state_lock:
            self._turn = turn
        logger.info(
            "Turn started: session=%s context=%d stream=%s",
            session_id,
            len(context),
            stream,
        )
        self._emit("turn_started")

        def on_chunk(fragment: str) -> None:
            with self._state_lock:
                if turn.cancel.is_set() or self._turn is not turn:
                    return
                turn.text += fragment
                turn.chunks += 1
                self.store.update_last_message_content(
                    turn.text, session_id=turn.session_id, message_id=turn.placeholder_id
                )
            self._emit("chunk", fragment)

        try:
            if stream:
                final = self.retry.run(
                    lambda: self.llm.send_streaming_completion(
                        context, self.settings, on_chunk, cancel_event=turn.cancel
                    ),
                    can_retry=lambda: turn.chunks == 0 and not turn.cancel.is_set(),
                )
            else:
                final = self.retry.run(
                    lambda: self.llm.send_completion(context, self.settings),
                    can_retry=lambda: not turn.cancel.is_set(),
                )
        except StreamingError:
            if turn.cancel.is_set():
                self._emit("turn_cancelled")
                return None
            raise

        with self._state_lock:
            if turn.cancel.is_set():
                self._emit("turn_cancelled")
                return None
            self.store.update_last_message_content(
                final,
                final=True,
                session_id=turn.session_id,
                message_id=turn.placeholder_id,
            )
            turn.sealed = True
        logger.info("Turn finished: session=%s chars=%d", session_id, len(final))
        self._emit("turn_finished", final)
        return final

    def _append_user_message(self, user_text: str) -> Message:
        session_id = self.store.active_session_id or self.store.create_session(user_text)
        message = Message(role=Role.USER, content=user_text, session_id=session_id)
        try:
            self.store.append_message(message)
        except NoActiveSessionError:
            # active session vanished (evicted or cleared); start a new one
            session_id = self.store.create_session(user_text)
            message = Message(role=Role.USER, content=user_text, session_id=session_id)
            self.store.append_message(message)
        return message

    def _finish_turn(self) -> None:
        with self._state_lock:
            turn, self._turn = self._turn, None
            if turn is None or turn.sealed:
                return
            # keep partial output: force the throttled write for the placeholder
            self.store.update_last_message_content(
                turn.text,
                final=True,
                session_id=turn.session_id,
                message_id=turn.placeholder_id,
            )

    # ------------------------------------------------------------------
    # user actions
    # ------------------------------------------------------------------
    def cancel(self) -> bool:
        """Stop the running turn; later chunks are dropped. True if one was running."""
        with self._state_lock:
            turn = self._turn
            if turn is None:
                return False
            turn.cancel.set()
        logger.info("Turn cancelled: session=%s", turn.session_id)
        return True

    def clear(self) -> None:
        """Cancel any running turn, then wipe the active session."""
        with self._state_lock:
            self.cancel()
            self.store.clear_active_session()

    def test_credential(self, candidate: str) -> bool:
        return self.llm.test_credential(candidate)
