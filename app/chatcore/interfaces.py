"""
Abstractions for pluggable services. Inversion of control: the controller
depends on these protocols, not on concrete services. Enables fakes in tests
and a different secret store per platform.

Common protocols:
- CompletionClient.send_completion(...) -> str
- CompletionClient.send_streaming_completion(..., on_chunk) -> str
- CompletionClient.test_credential(key) -> bool
- CredentialGateway.get() / set(secret) / delete() / has()

Testing: Use simple fake implementations to test the controller without
network calls.
"""

from __future__ import annotations
from typing import Callable, Optional, Protocol, Sequence

from .models import Message, LLMSettings
from .utils.cancel import CancelEvent

ChunkCallback = Callable[[str], None]


class CompletionClient(Protocol):
    def send_completion(
        self,
        messages: Sequence[Message],
        settings: LLMSettings,
    ) -> str: ...

    def send_streaming_completion(
        self,
        messages: Sequence[Message],
        settings: LLMSettings,
        on_chunk: ChunkCallback,
        *,
        cancel_event: Optional[CancelEvent] = None,
    ) -> str: ...

    def test_credential(self, candidate: str) -> bool: ...


class CredentialGateway(Protocol):
    def get(self) -> Optional[str]: ...

    def set(self, secret: str) -> None: ...

    def delete(self) -> None: ...

    def has(self) -> bool: ...


class SecurityGuard(Protocol):
    def validate_user_input(self, text: str) -> None: ...

    def sanitize_for_prompt(self, text: str) -> str: ...
