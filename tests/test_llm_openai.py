import json
import threading
import time

import httpx
import pytest

from chatcore.errors import (
    DecodingError,
    InputValidationError,
    InvalidEndpointError,
    InvalidResponseError,
    NetworkError,
    NoCredentialError,
    RateLimitedError,
    ServerError,
    StreamingError,
    UnauthorizedError,
)
from chatcore.models import LLMSettings, Message, Role
from chatcore.services.credentials import InMemoryCredentialGateway
from chatcore.services.llm_openai import (
    OpenAICompletionClient,
    USER_AGENT,
    parse_retry_after,
)
from chatcore.utils.cancel import CancelEvent

from conftest import BASE_URL, TEST_KEY, completion_body, sse_line


def _messages(*texts: str) -> list[Message]:
    return [Message(role=Role.USER, content=t, session_id="s1") for t in texts]


SETTINGS = LLMSettings(model="gpt-4o-mini", temperature=0.7)


# ---------------------------
# non-streaming
# ---------------------------
def test_send_completion_returns_trimmed_first_choice(make_client):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["request"] = request
        return httpx.Response(200, json=completion_body("  Hi there!\n"))

    client = make_client(handler)
    text = client.send_completion(_messages("Hello"), SETTINGS)

    assert text == "Hi there!"
    request = seen["request"]
    assert request.method == "POST"
    assert str(request.url) == f"{BASE_URL}/chat/completions"
    assert request.headers["Authorization"] == f"Bearer {TEST_KEY}"
    assert request.headers["User-Agent"] == USER_AGENT
    body = json.loads(request.content)
    assert body == {
        "model": "gpt-4o-mini",
        "messages": [{"role": "user", "content": "Hello"}],
        "temperature": 0.7,
    }


def test_send_completion_includes_max_tokens_when_set(make_client):
    bodies = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json=completion_body("ok"))

    client = make_client(handler)
    client.send_completion(_messages("Hi"), LLMSettings(model="gpt-4o", max_tokens=64))

    assert bodies[0]["max_tokens"] == 64
    assert "stream" not in bodies[0]


@pytest.mark.parametrize(
    "status, error_cls, retryable",
    [
        (401, UnauthorizedError, False),
        (429, RateLimitedError, True),
        (500, ServerError, True),
        (503, ServerError, True),
        (404, ServerError, True),
    ],
)
def test_http_status_maps_to_error(make_client, status, error_cls, retryable):
    client = make_client(lambda request: httpx.Response(status, json={"error": "x"}))

    with pytest.raises(error_cls) as info:
        client.send_completion(_messages("Hi"), SETTINGS)

    assert info.value.is_retryable is retryable
    if error_cls is ServerError:
        assert info.value.status_code == status


def test_rate_limit_carries_retry_after(make_client):
    client = make_client(
        lambda request: httpx.Response(429, headers={"Retry-After": "30"}, json={})
    )

    with pytest.raises(RateLimitedError) as info:
        client.send_completion(_messages("Hi"), SETTINGS)

    assert info.value.retry_after == 30
    assert "30 seconds" in info.value.user_message


def test_rate_limit_without_header(make_client):
    client = make_client(lambda request: httpx.Response(429, json={}))

    with pytest.raises(RateLimitedError) as info:
        client.send_completion(_messages("Hi"), SETTINGS)

    assert info.value.retry_after is None
    assert info.value.user_message.endswith("try again later.")


@pytest.mark.parametrize(
    "value, expected",
    [("12", 12), (" 5 ", 5), (None, None), ("", None), ("soon", None)],
)
def test_parse_retry_after(value, expected):
    assert parse_retry_after(value) == expected


def test_missing_credential_fails_before_any_request(make_client):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=completion_body("x"))

    client = make_client(handler, creds=InMemoryCredentialGateway())

    with pytest.raises(NoCredentialError):
        client.send_completion(_messages("Hi"), SETTINGS)
    assert calls == []


def test_empty_message_list_is_rejected(make_client):
    client = make_client(lambda request: httpx.Response(200, json=completion_body("x")))

    with pytest.raises(InputValidationError):
        client.send_completion([], SETTINGS)


def test_body_without_choices_is_decoding_error(make_client):
    client = make_client(lambda request: httpx.Response(200, json={"id": "abc"}))

    with pytest.raises(DecodingError) as info:
        client.send_completion(_messages("Hi"), SETTINGS)
    assert info.value.is_retryable is False


def test_non_json_body_is_decoding_error(make_client):
    client = make_client(lambda request: httpx.Response(200, text="<html>oops</html>"))

    with pytest.raises(DecodingError):
        client.send_completion(_messages("Hi"), SETTINGS)


@pytest.mark.parametrize(
    "body",
    [
        {"choices": []},
        {"choices": [{"message": {"role": "assistant", "content": None}}]},
        {"choices": [{"finish_reason": "stop"}]},
    ],
)
def test_choice_without_content_is_invalid_response(make_client, body):
    client = make_client(lambda request: httpx.Response(200, json=body))

    with pytest.raises(InvalidResponseError) as info:
        client.send_completion(_messages("Hi"), SETTINGS)
    assert info.value.is_retryable is False


def test_transport_failure_is_network_error(make_client):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = make_client(handler)

    with pytest.raises(NetworkError) as info:
        client.send_completion(_messages("Hi"), SETTINGS)
    assert info.value.is_retryable is True
    assert isinstance(info.value.cause, httpx.ConnectError)


def test_timeout_is_network_error(make_client):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = make_client(handler)

    with pytest.raises(NetworkError):
        client.send_completion(_messages("Hi"), SETTINGS)


def test_bad_base_url_is_invalid_endpoint(credentials):
    client = OpenAICompletionClient(credentials, base_url="not a url")
    try:
        with pytest.raises(InvalidEndpointError):
            client.send_completion(_messages("Hi"), SETTINGS)
    finally:
        client.close()


def test_error_messages_do_not_leak_key_or_body(make_client):
    client = make_client(
        lambda request: httpx.Response(500, text=f"internal: {TEST_KEY}")
    )

    with pytest.raises(ServerError) as info:
        client.send_completion(_messages("Hi"), SETTINGS)
    assert TEST_KEY not in info.value.user_message
    assert "internal" not in info.value.user_message


# ---------------------------
# streaming
# ---------------------------
def test_streaming_delivers_chunks_in_order(make_client):
    seen = {}
    stream_text = sse_line("Hel") + sse_line("lo") + "data: [DONE]\n"

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200, headers={"Content-Type": "text/event-stream"}, text=stream_text
        )

    client = make_client(handler)
    chunks: list[str] = []

    text = client.send_streaming_completion(_messages("Hi"), SETTINGS, chunks.append)

    assert chunks == ["Hel", "lo"]
    assert text == "Hello"
    assert seen["body"]["stream"] is True


def test_streaming_handles_lines_split_across_network_chunks(make_client):
    raw = (sse_line("Hel") + sse_line("lo") + "data: [DONE]\n").encode()
    pieces = [raw[:20], raw[20:61], raw[61:]]

    client = make_client(lambda request: httpx.Response(200, content=iter(pieces)))
    chunks: list[str] = []

    assert client.send_streaming_completion(_messages("Hi"), SETTINGS, chunks.append) == "Hello"
    assert chunks == ["Hel", "lo"]


def test_streaming_skips_malformed_line(make_client):
    stream_text = (
        sse_line("Hel")
        + 'data: {"choices": [{"delta": {"content": \n'
        + sse_line("lo")
        + "data: [DONE]\n"
    )
    client = make_client(lambda request: httpx.Response(200, text=stream_text))
    chunks: list[str] = []

    text = client.send_streaming_completion(_messages("Hi"), SETTINGS, chunks.append)

    assert chunks == ["Hel", "lo"]
    assert text == "Hello"


def test_streaming_ignores_non_data_lines_and_empty_deltas(make_client):
    stream_text = (
        ": keep-alive\n"
        "event: message\n"
        "\n"
        'data: {"choices": [{"delta": {"role": "assistant"}}]}\n'
        + sse_line("Hi")
        + "data: [DONE]\n"
    )
    client = make_client(lambda request: httpx.Response(200, text=stream_text))
    chunks: list[str] = []

    assert client.send_streaming_completion(_messages("Hi"), SETTINGS, chunks.append) == "Hi"
    assert chunks == ["Hi"]


def test_streaming_stops_at_sentinel(make_client):
    stream_text = sse_line("done") + "data: [DONE]\n" + sse_line("ignored")
    client = make_client(lambda request: httpx.Response(200, text=stream_text))
    chunks: list[str] = []

    assert client.send_streaming_completion(_messages("Hi"), SETTINGS, chunks.append) == "done"
    assert chunks == ["done"]


def test_streaming_without_sentinel_returns_accumulated_text(make_client):
    stream_text = sse_line(" partial") + sse_line(" answer ")
    client = make_client(lambda request: httpx.Response(200, text=stream_text))

    text = client.send_streaming_completion(_messages("Hi"), SETTINGS, lambda c: None)

    assert text == "partial answer"


def test_streaming_http_error_maps_before_reading(make_client):
    client = make_client(lambda request: httpx.Response(401, json={"error": "bad key"}))
    chunks: list[str] = []

    with pytest.raises(UnauthorizedError):
        client.send_streaming_completion(_messages("Hi"), SETTINGS, chunks.append)
    assert chunks == []


def test_streaming_transport_failure_is_network_error(make_client):
    def handler(request):
        raise httpx.ConnectError("reset", request=request)

    client = make_client(handler)

    with pytest.raises(NetworkError):
        client.send_streaming_completion(_messages("Hi"), SETTINGS, lambda c: None)


def test_streaming_cancel_stops_reading(make_client):
    stream_text = sse_line("a") + sse_line("b") + sse_line("c") + "data: [DONE]\n"
    client = make_client(lambda request: httpx.Response(200, text=stream_text))
    cancel = CancelEvent()
    chunks: list[str] = []

    def on_chunk(chunk):
        chunks.append(chunk)
        cancel.set()

    with pytest.raises(StreamingError):
        client.send_streaming_completion(
            _messages("Hi"), SETTINGS, on_chunk, cancel_event=cancel
        )
    assert chunks == ["a"]


class StalledStream(httpx.SyncByteStream):
    """Sends one event, then blocks like a server that stopped talking."""

    def __init__(self, first: bytes, stall_seconds: float = 5.0):
        self.first = first
        self.stall_seconds = stall_seconds
        self.closed = threading.Event()

    def __iter__(self):
        yield self.first
        if not self.closed.wait(self.stall_seconds):
            yield b"data: [DONE]\n"
            return
        raise httpx.ReadError("connection closed")

    def close(self):
        self.closed.set()


def test_cancel_unblocks_a_stalled_stream(make_client):
    body = StalledStream(sse_line("Hel").encode())
    client = make_client(lambda request: httpx.Response(200, stream=body))
    cancel = CancelEvent()
    cancelled_at = []

    def on_chunk(chunk):
        def cancel_later():
            cancelled_at.append(time.monotonic())
            cancel.set()

        threading.Thread(target=cancel_later).start()

    with pytest.raises(StreamingError) as info:
        client.send_streaming_completion(
            _messages("Hi"), SETTINGS, on_chunk, cancel_event=cancel
        )

    assert info.value.message == "Request cancelled"
    assert body.closed.is_set()
    assert time.monotonic() - cancelled_at[0] < 2.0


def test_stalled_stream_ending_quietly_after_cancel_is_still_cancelled(make_client):
    class QuietStream(StalledStream):
        def __iter__(self):
            yield self.first
            self.closed.wait(self.stall_seconds)

    body = QuietStream(sse_line("Hel").encode())
    client = make_client(lambda request: httpx.Response(200, stream=body))
    cancel = CancelEvent()

    def on_chunk(chunk):
        threading.Thread(target=cancel.set).start()

    with pytest.raises(StreamingError):
        client.send_streaming_completion(
            _messages("Hi"), SETTINGS, on_chunk, cancel_event=cancel
        )
    assert body.closed.is_set()


# ---------------------------
# key test
# ---------------------------
def test_test_credential_success_uses_candidate_and_short_timeout(make_client):
    seen = {}

    def handler(request):
        seen["request"] = request
        return httpx.Response(200, json={"data": []})

    client = make_client(handler, creds=InMemoryCredentialGateway())

    assert client.test_credential("sk-candidate-key-000000") is True
    request = seen["request"]
    assert request.method == "GET"
    assert str(request.url) == f"{BASE_URL}/models"
    assert request.headers["Authorization"] == "Bearer sk-candidate-key-000000"
    assert request.extensions["timeout"]["read"] == 10.0


def test_test_credential_unauthorized_is_false(make_client):
    client = make_client(lambda request: httpx.Response(401, json={}))
    assert client.test_credential("sk-wrong-key-000000000") is False


def test_test_credential_other_status_raises(make_client):
    client = make_client(lambda request: httpx.Response(502, json={}))
    with pytest.raises(ServerError) as info:
        client.test_credential("sk-candidate-key-000000")
    assert info.value.status_code == 502


def test_test_credential_network_failure(make_client):
    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    client = make_client(handler)
    with pytest.raises(NetworkError):
        client.test_credential("sk-candidate-key-000000")
