import json
from typing import Callable, Optional

import httpx
import pytest

from chatcore.errors import StreamingError
from chatcore.persistence.session_store import SessionStore
from chatcore.services.credentials import InMemoryCredentialGateway
from chatcore.services.llm_openai import OpenAICompletionClient

TEST_KEY = "sk-test-0123456789abcdef"  # pragma: allowlist secret
BASE_URL = "https://api.mock.local/v1"


def sse_line(content: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]}) + "\n"


def completion_body(content: str) -> dict:
    return {
        "choices": [
            {"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}
        ],
        "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5},
    }


@pytest.fixture
def credentials():
    return InMemoryCredentialGateway(TEST_KEY)


@pytest.fixture
def make_client(credentials):
    clients = []

    def _make(handler: Callable[[httpx.Request], httpx.Response], creds=None):
        http = httpx.Client(transport=httpx.MockTransport(handler))
        client = OpenAICompletionClient(
            creds if creds is not None else credentials,
            base_url=BASE_URL,
            http_client=http,
        )
        clients.append(http)
        return client

    yield _make
    for http in clients:
        http.close()


@pytest.fixture
def make_store(tmp_path):
    stores = []

    def _make(**kwargs) -> SessionStore:
        store = SessionStore(tmp_path / "history", **kwargs)
        stores.append(store)
        return store

    yield _make
    for store in stores:
        store.close()


@pytest.fixture
def store(make_store):
    return make_store()


class FakeCompletionClient:
    """Scripted stand-in for the HTTP client; records the context of every call."""

    def __init__(
        self,
        chunks: Optional[list[str]] = None,
        *,
        final: Optional[str] = None,
        errors: Optional[list[Exception]] = None,
        fail_after_chunks: Optional[Exception] = None,
    ):
        self.chunks = list(chunks or [])
        self.final = final
        self.errors = list(errors or [])
        self.fail_after_chunks = fail_after_chunks
        self.calls: list[list] = []
        self.models: list[str] = []

    def _start(self, messages, settings):
        self.calls.append(list(messages))
        self.models.append(settings.model)
        if self.errors:
            raise self.errors.pop(0)

    def send_completion(self, messages, settings):
        self._start(messages, settings)
        return self.final if self.final is not None else "".join(self.chunks).strip()

    def send_streaming_completion(self, messages, settings, on_chunk, *, cancel_event=None):
        self._start(messages, settings)
        for chunk in self.chunks:
            if cancel_event is not None and cancel_event.is_set():
                raise StreamingError("Request cancelled")
            on_chunk(chunk)
        if self.fail_after_chunks is not None:
            raise self.fail_after_chunks
        return self.final if self.final is not None else "".join(self.chunks).strip()

    def test_credential(self, candidate):
        return candidate == TEST_KEY


@pytest.fixture
def fake_llm():
    """Factory for scripted completion clients."""
    return FakeCompletionClient
