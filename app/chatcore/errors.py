"""
Purpose: One error taxonomy for the whole core.
Completion client, session store and controller raise these; the UI only
needs `describe_error(exc)` to show a plain-language message.

Retry classification lives on the error itself (`is_retryable`) so the
controller can decide without knowing transport details.

Testing: Assert status -> class mapping in the client tests; assert the
user messages never contain secrets or response bodies.
"""

from __future__ import annotations
from typing import Optional


class ChatError(Exception):
    """Root of every error the core raises on purpose."""

    default_message = "Something went wrong."

    @property
    def user_message(self) -> str:
        return str(self) or self.default_message


class CompletionError(ChatError):
    """Failure talking to the chat-completion endpoint."""

    is_retryable: bool = False


class NoCredentialError(CompletionError):
    def __init__(self) -> None:
        super().__init__(
            "No API key found. Please add your OpenAI API key in settings."
        )


class InvalidEndpointError(CompletionError):
    def __init__(self, url: str = "") -> None:
        super().__init__("Invalid API endpoint URL.")
        self.url = url


class InvalidResponseError(CompletionError):
    def __init__(self) -> None:
        super().__init__("Invalid response from OpenAI API.")


class UnauthorizedError(CompletionError):
    def __init__(self) -> None:
        super().__init__("Invalid API key. Please check your OpenAI API key.")


class RateLimitedError(CompletionError):
    is_retryable = True

    def __init__(self, retry_after: Optional[int] = None) -> None:
        if retry_after is not None:
            text = f"Rate limit exceeded. Please try again in {retry_after} seconds."
        else:
            text = "Rate limit exceeded. Please try again later."
        super().__init__(text)
        self.retry_after = retry_after


class ServerError(CompletionError):
    is_retryable = True

    def __init__(self, status_code: int) -> None:
        super().__init__(
            f"Server error (HTTP {status_code}). Please try again later."
        )
        self.status_code = status_code


class NetworkError(CompletionError):
    is_retryable = True

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Network error: {str(cause) or type(cause).__name__}")
        self.cause = cause


class DecodingError(CompletionError):
    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"Failed to decode response: {cause}")
        self.cause = cause


class StreamingError(CompletionError):
    def __init__(self, message: str) -> None:
        super().__init__(f"Streaming error: {message}")
        self.message = message


class NoActiveSessionError(ChatError):
    def __init__(self, session_id: Optional[str] = None) -> None:
        super().__init__("No active chat session.")
        self.session_id = session_id


class InputValidationError(ChatError, ValueError):
    """Rejected user input (empty message, oversized text, bad key format)."""


class CredentialStoreError(ChatError):
    """The secret store could not read, write or delete the API key."""


def describe_error(exc: BaseException) -> str:
    """Human-readable text for the UI; never includes raw bodies or keys."""
    if isinstance(exc, ChatError):
        return exc.user_message
    return f"Unexpected error: {type(exc).__name__}"
