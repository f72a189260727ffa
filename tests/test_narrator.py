"""Tests for dm_os.narrator — HttpNarrator over both wire formats."""

import json

import httpx
import pytest

from dm_os.models import Turn
from dm_os.narrator import HttpNarrator, NarratorError, is_credential_error


def _ndjson(*chunks: dict) -> bytes:
    return "".join(json.dumps(c) + "\n" for c in chunks).encode()


def _sse(*chunks: dict, done: bool = True) -> bytes:
    lines = [f"data: {json.dumps(c)}\n\n" for c in chunks]
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, response: httpx.Response | Exception) -> None:
        self.response = response
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    @property
    def body(self) -> dict:
        return json.loads(self.requests[-1].content)


def _narrator(handler, **kwargs) -> HttpNarrator:
    kwargs.setdefault("provider_url", "http://narrator.test/")
    return HttpNarrator(transport=httpx.MockTransport(handler), **kwargs)


async def _drain(chat, text: str) -> list[str]:
    return [fragment async for fragment in chat.submit(text)]


# ---------------------------------------------------------------------------
# Ollama format
# ---------------------------------------------------------------------------

class TestOllamaStream:
    async def test_yields_fragments_in_order(self) -> None:
        rec = Recorder(httpx.Response(200, content=_ndjson(
            {"message": {"content": "The tavern "}, "done": False},
            {"message": {"content": "is quiet."}, "done": False},
            {"message": {"content": ""}, "done": True},
        )))
        chat = _narrator(rec, model="llama3").open("You are the DM.", [])
        assert await _drain(chat, "Look around") == ["The tavern ", "is quiet."]

    async def test_request_shape(self) -> None:
        rec = Recorder(httpx.Response(200, content=_ndjson({"message": {"content": "ok"}, "done": True})))
        history = [Turn(sender="narrator", text="Welcome"), Turn(sender="user", text="Hi")]
        chat = _narrator(rec, model="llama3").open("SYSTEM", history)
        await _drain(chat, "Next")
        assert str(rec.requests[0].url) == "http://narrator.test/api/chat"
        body = rec.body
        assert body["model"] == "llama3"
        assert body["stream"] is True
        assert body["messages"] == [
            {"role": "system", "content": "SYSTEM"},
            {"role": "assistant", "content": "Welcome"},
            {"role": "user", "content": "Hi"},
            {"role": "user", "content": "Next"},
        ]

    async def test_exchange_joins_history_after_success(self) -> None:
        rec = Recorder(httpx.Response(200, content=_ndjson(
            {"message": {"content": "A"}, "done": False},
            {"message": {"content": "B"}, "done": True},
        )))
        chat = _narrator(rec).open("SYSTEM", [])
        await _drain(chat, "first")
        assert chat.messages[-2:] == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "AB"},
        ]

    async def test_failed_exchange_not_recorded(self) -> None:
        rec = Recorder(httpx.Response(500, content=b"oops"))
        chat = _narrator(rec).open("SYSTEM", [])
        with pytest.raises(NarratorError):
            await _drain(chat, "first")
        assert chat.messages == [{"role": "system", "content": "SYSTEM"}]

    async def test_stream_error_chunk(self) -> None:
        rec = Recorder(httpx.Response(200, content=_ndjson({"error": "model not found"})))
        chat = _narrator(rec).open("SYSTEM", [])
        with pytest.raises(NarratorError, match="model not found"):
            await _drain(chat, "x")

    async def test_malformed_chunk(self) -> None:
        rec = Recorder(httpx.Response(200, content=b"not json\n"))
        chat = _narrator(rec).open("SYSTEM", [])
        with pytest.raises(NarratorError, match="Malformed"):
            await _drain(chat, "x")


class TestOllamaGenerate:
    async def test_plain_text(self) -> None:
        rec = Recorder(httpx.Response(200, json={"message": {"content": "A rope."}, "done": True}))
        assert await _narrator(rec).generate("Summarise") == "A rope."
        body = rec.body
        assert body["stream"] is False
        assert body["messages"] == [{"role": "user", "content": "Summarise"}]
        assert "format" not in body

    async def test_schema_sent_as_format(self) -> None:
        schema = {"type": "array", "items": {"type": "string"}}
        rec = Recorder(httpx.Response(200, json={"message": {"content": "[]"}}))
        await _narrator(rec).generate("List", schema)
        assert rec.body["format"] == schema

    async def test_unexpected_body(self) -> None:
        rec = Recorder(httpx.Response(200, json={"results": []}))
        with pytest.raises(NarratorError, match="Unexpected response format"):
            await _narrator(rec).generate("x")

    async def test_non_json_body(self) -> None:
        rec = Recorder(httpx.Response(200, content=b"<html>bad gateway</html>"))
        with pytest.raises(NarratorError, match="non-JSON"):
            await _narrator(rec).generate("x")

    @pytest.mark.parametrize("payload", [[1, 2], "ok", {"message": "text"}, {"message": {"content": 7}}])
    async def test_wrong_body_shape(self, payload) -> None:
        rec = Recorder(httpx.Response(200, json=payload))
        with pytest.raises(NarratorError):
            await _narrator(rec).generate("x")

    async def test_non_object_stream_chunk(self) -> None:
        rec = Recorder(httpx.Response(200, content=b"[1, 2]\n"))
        chat = _narrator(rec).open("SYSTEM", [])
        with pytest.raises(NarratorError, match="Malformed"):
            await _drain(chat, "x")


# ---------------------------------------------------------------------------
# OpenAI-compatible format
# ---------------------------------------------------------------------------

class TestOpenAIStream:
    async def test_sse_deltas_until_done(self) -> None:
        rec = Recorder(httpx.Response(200, content=_sse(
            {"choices": [{"delta": {"role": "assistant"}}]},
            {"choices": [{"delta": {"content": "Rain "}}]},
            {"choices": [{"delta": {"content": "falls."}}]},
        )))
        chat = _narrator(rec, provider_format="openai").open("SYSTEM", [])
        assert await _drain(chat, "x") == ["Rain ", "falls."]
        assert str(rec.requests[0].url) == "http://narrator.test/v1/chat/completions"

    async def test_ignores_non_data_lines(self) -> None:
        content = b": keep-alive\n\n" + _sse({"choices": [{"delta": {"content": "Hi"}}]})
        rec = Recorder(httpx.Response(200, content=content))
        chat = _narrator(rec, provider_format="openai").open("SYSTEM", [])
        assert await _drain(chat, "x") == ["Hi"]

    async def test_bearer_token(self) -> None:
        rec = Recorder(httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "ok"}}]})))
        chat = _narrator(rec, provider_format="openai", api_key="sk-test").open("S", [])
        await _drain(chat, "x")
        assert rec.requests[0].headers["Authorization"] == "Bearer sk-test"

    async def test_no_auth_header_without_key(self) -> None:
        rec = Recorder(httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "ok"}}]})))
        chat = _narrator(rec, provider_format="openai").open("S", [])
        await _drain(chat, "x")
        assert "Authorization" not in rec.requests[0].headers


class TestOpenAIGenerate:
    async def test_json_schema_response_format(self) -> None:
        schema = {"type": "object"}
        rec = Recorder(httpx.Response(200, json={"choices": [{"message": {"content": "{}"}}]}))
        result = await _narrator(rec, provider_format="openai", model="gpt").generate("Sheet", schema)
        assert result == "{}"
        body = rec.body
        assert body["model"] == "gpt"
        assert body["response_format"]["type"] == "json_schema"
        assert body["response_format"]["json_schema"]["schema"] == schema

    async def test_missing_choices(self) -> None:
        rec = Recorder(httpx.Response(200, json={"choices": []}))
        with pytest.raises(NarratorError):
            await _narrator(rec, provider_format="openai").generate("x")

    @pytest.mark.parametrize("payload", [["choices"], {"choices": "none"}, {"choices": [None]}])
    async def test_wrong_body_shape(self, payload) -> None:
        rec = Recorder(httpx.Response(200, json=payload))
        with pytest.raises(NarratorError):
            await _narrator(rec, provider_format="openai").generate("x")


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------

class TestErrors:
    async def test_connect_error_is_retryable(self) -> None:
        rec = Recorder(httpx.ConnectError("refused"))
        with pytest.raises(NarratorError, match="Cannot connect") as exc:
            await _narrator(rec).generate("x")
        assert exc.value.retryable is True

    async def test_timeout_is_retryable(self) -> None:
        rec = Recorder(httpx.ReadTimeout("slow"))
        with pytest.raises(NarratorError, match="timed out") as exc:
            await _narrator(rec, timeout=5).generate("x")
        assert exc.value.retryable is True

    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_transient_status_retryable(self, status: int) -> None:
        rec = Recorder(httpx.Response(status))
        with pytest.raises(NarratorError) as exc:
            await _narrator(rec).generate("x")
        assert exc.value.status_code == status
        assert exc.value.retryable is True

    @pytest.mark.parametrize("status", [401, 403])
    async def test_credential_status_not_retryable(self, status: int) -> None:
        rec = Recorder(httpx.Response(status))
        with pytest.raises(NarratorError) as exc:
            await _narrator(rec).generate("x")
        assert exc.value.retryable is False
        assert is_credential_error(exc.value)

    async def test_bad_request_not_retryable(self) -> None:
        rec = Recorder(httpx.Response(400))
        with pytest.raises(NarratorError) as exc:
            await _narrator(rec).generate("x")
        assert exc.value.retryable is False

    async def test_stream_connect_error_wrapped(self) -> None:
        rec = Recorder(httpx.ConnectError("refused"))
        chat = _narrator(rec).open("S", [])
        with pytest.raises(NarratorError) as exc:
            await _drain(chat, "x")
        assert exc.value.retryable is True


class TestIsCredentialError:
    @pytest.mark.parametrize("message", [
        "API key not valid. Please pass a valid API key.",
        "missing api_key",
        "HTTP 401",
        "403 Forbidden",
        "Unauthorized",
        "Permission denied on resource",
    ])
    def test_matches(self, message: str) -> None:
        assert is_credential_error(RuntimeError(message))

    def test_generic_failure(self) -> None:
        assert not is_credential_error(NarratorError("Cannot connect to narrator backend"))
