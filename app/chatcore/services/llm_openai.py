"""
Purpose: Thin client for the OpenAI chat-completions endpoint over httpx.
One place for auth headers, request bodies, HTTP status -> error mapping and
event-stream decoding.

Operations:
- send_completion(messages, settings) -> trimmed text of the first choice.
- send_streaming_completion(messages, settings, on_chunk) -> trimmed text;
  on_chunk gets every content fragment, in arrival order, before the next
  line is read.
- test_credential(key) -> True (2xx) / False (401); 10s timeout.

The client never retries and holds no state besides the credential gateway
and the HTTP connection pool. Retry policy belongs to the controller.

Testing: httpx.MockTransport; assert status mapping, chunk order, skipped
malformed lines.
"""

from __future__ import annotations
import logging
from typing import Any, Optional, Sequence

import httpx

from ..config import DEFAULT_BASE_URL, KEY_TEST_TIMEOUT_SECONDS
from ..errors import (
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
from ..interfaces import ChunkCallback, CredentialGateway
from ..models import LLMSettings, Message
from ..utils.cancel import CancelEvent
from ..utils.sse import parse_line

logger = logging.getLogger(__name__)

USER_AGENT = "menubar-chat/1.0"


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Retry-After in whole seconds; HTTP-date or junk values give None."""
    if not value:
        return None
    value = value.strip()
    return int(value) if value.isdigit() else None


def first_choice_content(data: Any) -> str:
    """
    Content of choices[0].message.content.
    A body without a `choices` array is a decoding failure; an empty array or
    a choice without text content is an invalid response.
    """
    if not isinstance(data, dict) or not isinstance(data.get("choices"), list):
        raise DecodingError(ValueError("response has no 'choices' array"))
    choices = data["choices"]
    if not choices or not isinstance(choices[0], dict):
        raise InvalidResponseError()
    message = choices[0].get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        raise InvalidResponseError()
    return content


class OpenAICompletionClient:
    def __init__(
        self,
        credentials: CredentialGateway,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        key_test_timeout: float = KEY_TEST_TIMEOUT_SECONDS,
        http_client: Optional[httpx.Client] = None,
    ):
        self.credentials = credentials
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.key_test_timeout = key_test_timeout
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client()

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def __enter__(self) -> "OpenAICompletionClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _api_key(self) -> str:
        api_key = self.credentials.get()
        if not api_key:
            raise NoCredentialError()
        return api_key

    def _url(self, path: str) -> str:
        raw = f"{self.base_url}{path}"
        try:
            url = httpx.URL(raw)
        except (httpx.InvalidURL, TypeError, ValueError) as exc:
            raise InvalidEndpointError(raw) from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise InvalidEndpointError(raw)
        return raw

    @staticmethod
    def _headers(api_key: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    @staticmethod
    def _payload(
        messages: Sequence[Message], settings: LLMSettings, *, stream: bool
    ) -> dict[str, Any]:
        if not messages:
            raise InputValidationError("At least one message is required.")
        body: dict[str, Any] = {
            "model": settings.model,
            "messages": [m.to_api() for m in messages],
            "temperature": settings.temperature,
        }
        if settings.max_tokens is not None:
            body["max_tokens"] = settings.max_tokens
        if stream:
            body["stream"] = True
        return body

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        status = response.status_code
        if 200 <= status < 300:
            return
        logger.warning("Chat endpoint returned HTTP %s", status)
        if status == 401:
            raise UnauthorizedError()
        if status == 429:
            raise RateLimitedError(parse_retry_after(response.headers.get("Retry-After")))
        raise ServerError(status)

    def send_completion(
        self,
        messages: Sequence[Message],
        settings: LLMSettings,
    ) -> str:
        body = self._payload(messages, settings, stream=False)
        api_key = self._api_key()
        url = self._url("/chat/completions")
        logger.info(
            "POST %s model=%s messages=%d", url, settings.model, len(messages)
        )

        try:
            response = self._http.post(
                url, headers=self._headers(api_key), json=body, timeout=self.timeout
            )
        except httpx.DecodingError as exc:
            raise DecodingError(exc) from exc
        except httpx.RequestError as exc:
            raise NetworkError(exc) from exc

        self._raise_for_status(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise DecodingError(exc) from exc
        return first_choice_content(data).strip()

    def send_streaming_completion(
        self,
        messages: Sequence[Message],
        settings: LLMSettings,
        on_chunk: ChunkCallback,
        *,
        cancel_event: Optional[CancelEvent] = None,
    ) -> str:
        body = self._payload(messages, settings, stream=True)
        api_key = self._api_key()
        url = self._url("/chat/completions")
        logger.info(
            "POST %s (stream) model=%s messages=%d",
            url,
            settings.model,
            len(messages),
        )

        try:
            # no read timeout: a long answer may pause between tokens
            with self._http.stream(
                "POST", url, headers=self._headers(api_key), json=body, timeout=None
            ) as response:
                # cancel closes the response, unblocking a read stuck on the socket
                remove = (
                    cancel_event.add_callback(response.close)
                    if cancel_event is not None
                    else None
                )
                try:
                    self._raise_for_status(response)
                    return self._read_stream(response, on_chunk, cancel_event)
                finally:
                    if remove is not None:
                        remove()
        except (httpx.RequestError, httpx.StreamError) as exc:
            if cancel_event is not None and cancel_event.is_set():
                raise StreamingError("Request cancelled") from exc
            if isinstance(exc, httpx.DecodingError):
                raise DecodingError(exc) from exc
            if isinstance(exc, httpx.RequestError):
                raise NetworkError(exc) from exc
            raise StreamingError(str(exc) or type(exc).__name__) from exc

    def _read_stream(
        self,
        response: httpx.Response,
        on_chunk: ChunkCallback,
        cancel_event: Optional[CancelEvent],
    ) -> str:
        parts: list[str] = []
        saw_done = False
        skipped = 0

        for line in response.iter_lines():
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Stream cancelled after %d chunks", len(parts))
                raise StreamingError("Request cancelled")
            parsed = parse_line(line)
            if parsed.done:
                saw_done = True
                break
            if parsed.malformed:
                skipped += 1
                logger.debug("Skipping malformed stream line")
                continue
            if not parsed.delta:
                continue
            parts.append(parsed.delta)
            on_chunk(parsed.delta)

        if cancel_event is not None and cancel_event.is_set():
            # closed from cancel(): the body ended early, not at the server's end
            logger.info("Stream cancelled after %d chunks", len(parts))
            raise StreamingError("Request cancelled")

        text = "".join(parts)
        if saw_done:
            logger.info(
                "Stream finished: chunks=%d chars=%d skipped=%d",
                len(parts),
                len(text),
                skipped,
            )
        else:
            # lenient: keep what arrived instead of failing the turn
            logger.warning(
                "Stream closed without [DONE]: chunks=%d chars=%d",
                len(parts),
                len(text),
            )
        return text.strip()

    def test_credential(self, candidate: str) -> bool:
        url = self._url("/models")
        try:
            response = self._http.get(
                url, headers=self._headers(candidate), timeout=self.key_test_timeout
            )
        except httpx.RequestError as exc:
            raise NetworkError(exc) from exc

        if 200 <= response.status_code < 300:
            return True
        if response.status_code == 401:
            return False
        logger.warning("Key test returned HTTP %s", response.status_code)
        raise ServerError(response.status_code)
