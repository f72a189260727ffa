"""Narrator client — HTTP connection to a chat-completion backend.

The state machine depends on two capabilities, matching the protocols below:

    narrator.open(instruction, history) -> chat
    chat.submit(text)                   -> async iterator of text fragments
    await narrator.generate(prompt, schema=None) -> str

`open` starts a stateful exchange seeded with a system instruction and a
prior turn history. `submit` streams the reply to one user turn; once the
stream is drained, the turn and the reply become part of the exchange's
history. `generate` is a one-shot request used for structured data
(optionally constrained by a JSON schema) and short summaries.

HttpNarrator supports two wire formats, selected by provider_format:

    "ollama"  — POST /api/chat               NDJSON stream
    "openai"  — POST /v1/chat/completions    SSE stream ("data: ..." lines)

Tests use StubNarrator (defined in conftest.py) instead.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Literal, Protocol

import httpx

from dm_os.models import Turn

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocols: every narrator implementation must match these signatures
# ---------------------------------------------------------------------------

class NarratorChat(Protocol):
    def submit(self, text: str) -> AsyncIterator[str]: ...


class Narrator(Protocol):
    def open(self, instruction: str, history: list[Turn]) -> NarratorChat: ...

    async def generate(self, prompt: str, schema: dict[str, Any] | None = None) -> str: ...


# ---------------------------------------------------------------------------
# NarratorError: raised for all connection and protocol failures
# ---------------------------------------------------------------------------

RETRYABLE_STATUS = {408, 425, 429}


class NarratorError(RuntimeError):
    """Raised when the narrator backend cannot be reached or returns an error.

    `retryable` marks transient failures (connection problems, timeouts,
    rate limits, server errors). Credential and request errors are not.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


_CREDENTIAL_MARKERS = ("api key", "api_key", "401", "403", "unauthorized", "permission denied")


def is_credential_error(exc: BaseException) -> bool:
    """True when a failure message points at a missing or rejected credential."""
    message = str(exc).lower()
    return any(marker in message for marker in _CREDENTIAL_MARKERS)


def _decode_object(line: str) -> dict:
    try:
        chunk = json.loads(line)
    except json.JSONDecodeError as e:
        raise NarratorError(f"Malformed stream chunk from narrator backend: {e}") from e
    if not isinstance(chunk, dict):
        raise NarratorError("Malformed stream chunk from narrator backend: not an object")
    return chunk


# ---------------------------------------------------------------------------
# HttpNarrator: connects to a real backend
# ---------------------------------------------------------------------------

ProviderFormat = Literal["ollama", "openai"]


class HttpNarrator:
    """Async HTTP client for chat-completion backends.

    Args:
        provider_url:    Base URL of the backend, e.g. "http://localhost:11434".
        api_key:         Bearer token, or empty string if not required.
        provider_format: Wire format to use. Defaults to "ollama".
        model:           Model identifier sent with every request.
        timeout:         HTTP timeout in seconds. Defaults to 120.
        transport:       Optional httpx transport (tests pass a MockTransport).
    """

    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        provider_format: ProviderFormat = "ollama",
        model: str = "",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._format = provider_format
        self._model = model
        self._timeout = timeout
        self._transport = transport

    def open(self, instruction: str, history: list[Turn]) -> HttpNarratorChat:
        messages = [{"role": "system", "content": instruction}]
        for turn in history:
            role = "user" if turn.sender == "user" else "assistant"
            messages.append({"role": role, "content": turn.text})
        return HttpNarratorChat(self, messages)

    async def generate(self, prompt: str, schema: dict[str, Any] | None = None) -> str:
        url, body = self._build_request([{"role": "user", "content": prompt}], stream=False)
        if schema is not None:
            if self._format == "openai":
                body["response_format"] = {
                    "type": "json_schema",
                    "json_schema": {"name": "response", "schema": schema},
                }
            else:
                body["format"] = schema
        logger.debug("narrator generate url=%s prompt_len=%d schema=%s", url, len(prompt), schema is not None)

        async with self._client() as client:
            try:
                resp = await client.post(url, json=body, headers=self._headers())
                resp.raise_for_status()
            except httpx.HTTPError as e:
                raise self._wrap(e) from e

        try:
            data = resp.json()
        except ValueError as e:
            raise NarratorError(f"Narrator backend returned a non-JSON body: {e}") from e
        text = self._parse_response(data)
        logger.debug("narrator generate response len=%d", len(text))
        return text

    # -- internals --------------------------------------------------------

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _build_request(self, messages: list[dict], *, stream: bool) -> tuple[str, dict]:
        """Return (url, body) for the configured format."""
        body: dict[str, Any] = {"messages": messages, "stream": stream}
        if self._model:
            body["model"] = self._model
        if self._format == "openai":
            return f"{self._base_url}/v1/chat/completions", body
        return f"{self._base_url}/api/chat", body

    def _parse_response(self, data: Any) -> str:
        """Extract the completion text from a non-streaming response body."""
        if self._format == "openai":
            choices = data.get("choices") if isinstance(data, dict) else None
            first = choices[0] if isinstance(choices, list) and choices else None
            message = first.get("message") if isinstance(first, dict) else None
            if not isinstance(message, dict) or "content" not in message:
                raise NarratorError("Unexpected response format from OpenAI-compatible backend")
            content = message["content"] or ""
        else:
            message = data.get("message") if isinstance(data, dict) else None
            if not isinstance(message, dict) or "content" not in message:
                raise NarratorError("Unexpected response format from Ollama backend")
            content = message["content"]
        if not isinstance(content, str):
            raise NarratorError("Narrator backend returned non-text content")
        return content

    def _parse_stream_line(self, line: str) -> tuple[str, bool]:
        """Decode one stream line into (fragment, finished)."""
        if self._format == "openai":
            if not line.startswith("data:"):
                return "", False
            payload = line[len("data:"):].strip()
            if payload == "[DONE]":
                return "", True
            chunk = _decode_object(payload)
            choices = chunk.get("choices") or [{}]
            choice = choices[0] if isinstance(choices, list) and isinstance(choices[0], dict) else {}
            delta = choice.get("delta") if isinstance(choice.get("delta"), dict) else {}
            content = delta.get("content")
            return content if isinstance(content, str) else "", choice.get("finish_reason") is not None

        chunk = _decode_object(line)
        if "error" in chunk:
            raise NarratorError(f"Narrator stream error: {chunk['error']}")
        message = chunk.get("message") if isinstance(chunk.get("message"), dict) else {}
        content = message.get("content")
        return content if isinstance(content, str) else "", bool(chunk.get("done"))

    async def stream(self, messages: list[dict]) -> AsyncIterator[str]:
        url, body = self._build_request(messages, stream=True)
        logger.debug("narrator stream url=%s messages=%d", url, len(messages))
        try:
            async with self._client() as client:
                async with client.stream("POST", url, json=body, headers=self._headers()) as resp:
                    if resp.is_error:
                        await resp.aread()
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        if not line.strip():
                            continue
                        fragment, finished = self._parse_stream_line(line)
                        if fragment:
                            yield fragment
                        if finished:
                            break
        except httpx.HTTPError as e:
            raise self._wrap(e) from e

    def _wrap(self, e: httpx.HTTPError) -> NarratorError:
        if isinstance(e, httpx.ConnectError):
            return NarratorError(
                f"Cannot connect to narrator backend at {self._base_url}", retryable=True
            )
        if isinstance(e, httpx.TimeoutException):
            return NarratorError(
                f"Narrator backend timed out after {self._timeout}s", retryable=True
            )
        if isinstance(e, httpx.HTTPStatusError):
            status = e.response.status_code
            detail = ""
            if status in (401, 403):
                detail = " (check the API key)"
            return NarratorError(
                f"Narrator backend returned HTTP {status}{detail}",
                status_code=status,
                retryable=status in RETRYABLE_STATUS or status >= 500,
            )
        return NarratorError(f"Narrator request failed: {e}", retryable=True)


class HttpNarratorChat:
    """One stateful exchange. Not safe for concurrent submits."""

    def __init__(self, narrator: HttpNarrator, messages: list[dict]) -> None:
        self._narrator = narrator
        self.messages = messages

    async def submit(self, text: str) -> AsyncIterator[str]:
        request = self.messages + [{"role": "user", "content": text}]
        parts: list[str] = []
        async for fragment in self._narrator.stream(request):
            parts.append(fragment)
            yield fragment
        # Only a fully drained exchange joins the history.
        self.messages = request + [{"role": "assistant", "content": "".join(parts)}]
