import asyncio
from collections.abc import AsyncIterator
from typing import Any

import pytest

from dm_os.library import SessionLibrary
from dm_os.models import Turn
from dm_os.narrator import NarratorError
from dm_os.retry import RetryPolicy
from dm_os.store import JsonFileStore, MemoryStore

# Retries without waiting.
FAST_RETRY = RetryPolicy(attempts=3, delay=0.0, backoff=1.0)


# ---------------------------------------------------------------------------
# StubNarrator: scripted streams and one-shot responses
# ---------------------------------------------------------------------------

class StubChat:
    def __init__(self, narrator: "StubNarrator", instruction: str, history: list[Turn]) -> None:
        self._narrator = narrator
        self.instruction = instruction
        self.history = list(history)

    async def submit(self, text: str) -> AsyncIterator[str]:
        narrator = self._narrator
        narrator.submitted.append(text)
        if not narrator._streams:
            raise AssertionError(
                f"StubNarrator: unexpected submit {text!r} (no streams queued)"
            )
        script = narrator._streams.pop(0)
        if isinstance(script, BaseException):
            raise script
        for fragment in script:
            if isinstance(fragment, BaseException):
                raise fragment
            if narrator.gate is not None:
                await narrator.gate.wait()
            yield fragment
        self.history.append(Turn(sender="user", text=text))
        self.history.append(Turn(sender="narrator", text="".join(script)))


class StubNarrator:
    """Deterministic narrator stand-in for tests.

    streams:   one entry per submit(): a list of fragments (an exception in
               the list is raised at that point mid-stream), or an exception
               raised before the first fragment.
    responses: one entry per generate(): a string, or an exception to raise.
    gate:      when set, every fragment waits on this event, so a test can
               hold a stream open.
    """

    def __init__(
        self,
        streams: list[Any] | None = None,
        responses: list[Any] | None = None,
    ) -> None:
        self._streams: list[Any] = list(streams or [])
        self._responses: list[Any] = list(responses or [])
        self.opened: list[StubChat] = []
        self.submitted: list[str] = []
        self.prompts: list[tuple[str, dict | None]] = []
        self.gate: asyncio.Event | None = None

    def queue_stream(self, *fragments: Any) -> None:
        self._streams.append(list(fragments))

    def queue_response(self, response: Any) -> None:
        self._responses.append(response)

    def open(self, instruction: str, history: list[Turn]) -> StubChat:
        chat = StubChat(self, instruction, history)
        self.opened.append(chat)
        return chat

    async def generate(self, prompt: str, schema: dict | None = None) -> str:
        self.prompts.append((prompt, schema))
        if not self._responses:
            raise AssertionError(
                f"StubNarrator: unexpected generate call (no responses queued). prompt={prompt[:80]!r}"
            )
        response = self._responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response

    def assert_exhausted(self) -> None:
        """Assert every queued stream and response was consumed."""
        if self._streams or self._responses:
            raise AssertionError(
                f"StubNarrator: unused scripts remain: streams={self._streams} "
                f"responses={self._responses}"
            )


class RecordingView:
    """View sink that records every call as (name, payload)."""

    def __init__(self) -> None:
        self.events: list[tuple[str, Any]] = []

    def render_turn(self, turn):
        self.events.append(("turn", turn))

    def set_loading(self, label):
        self.events.append(("loading", label))

    def stream_update(self, text):
        self.events.append(("stream", text))

    def show_notice(self, message):
        self.events.append(("notice", message))

    def show_help(self):
        self.events.append(("help", None))

    def show_combat(self, enemies):
        self.events.append(("combat", enemies))

    def hide_combat(self):
        self.events.append(("combat_hidden", None))

    def offer_quick_start(self, characters):
        self.events.append(("quick_start", characters))

    def session_updated(self, session):
        self.events.append(("session", session))

    def named(self, name: str) -> list[Any]:
        return [payload for kind, payload in self.events if kind == name]


def narrator_error(message: str = "Cannot connect to narrator backend", retryable: bool = True,
                   status_code: int | None = None) -> NarratorError:
    return NarratorError(message, retryable=retryable, status_code=status_code)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def narrator() -> StubNarrator:
    return StubNarrator()


@pytest.fixture
def view() -> RecordingView:
    return RecordingView()


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def file_store(tmp_path) -> JsonFileStore:
    return JsonFileStore(tmp_path / "data")


@pytest.fixture
async def library(store: MemoryStore) -> SessionLibrary:
    lib = SessionLibrary(store)
    await lib.load()
    return lib
