"""View sink that turns state-machine callbacks into NDJSON events.

Every callback becomes one JSON object with a "type" field:

  {"type": "turn", "turn": {...}}            a finalized turn to render
  {"type": "loading", "label": "..." | null} loading indicator on/off
  {"type": "stream", "text": "..."}          in-progress narrator text
  {"type": "notice", "message": "..."}       user-visible failure notice
  {"type": "help"}                           show the help panel
  {"type": "combat", "enemies": [...]}       combat tracker roster
  {"type": "combat_hidden"}                  hide the combat tracker
  {"type": "quick_start", "characters": [...]}
  {"type": "session", "session": {...}}      sidebar summary changed
  {"type": "done", "accepted": bool, "outcome": "..."}   always last
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable
from typing import Any

from dm_os.models import CharacterSheet, Enemy, Session, Turn
from dm_os.session import SubmitResult

logger = logging.getLogger(__name__)

_END = object()
_running: set[asyncio.Task] = set()


class QueueView:
    def __init__(self) -> None:
        self.queue: asyncio.Queue[Any] = asyncio.Queue()

    def _emit(self, event: dict) -> None:
        self.queue.put_nowait(event)

    def render_turn(self, turn: Turn) -> None:
        if not turn.hidden:
            self._emit({"type": "turn", "turn": turn.to_json()})

    def set_loading(self, label: str | None) -> None:
        self._emit({"type": "loading", "label": label})

    def stream_update(self, text: str) -> None:
        self._emit({"type": "stream", "text": text})

    def show_notice(self, message: str) -> None:
        self._emit({"type": "notice", "message": message})

    def show_help(self) -> None:
        self._emit({"type": "help"})

    def show_combat(self, enemies: list[Enemy]) -> None:
        self._emit({"type": "combat", "enemies": [e.to_json() for e in enemies]})

    def hide_combat(self) -> None:
        self._emit({"type": "combat_hidden"})

    def offer_quick_start(self, characters: list[CharacterSheet]) -> None:
        self._emit({"type": "quick_start", "characters": [c.to_json() for c in characters]})

    def session_updated(self, session: Session) -> None:
        self._emit({"type": "session", "session": session.summary()})

    def drain(self) -> list[dict]:
        """Events queued so far, for non-streaming endpoints."""
        events = []
        while not self.queue.empty():
            event = self.queue.get_nowait()
            if event is not _END:
                events.append(event)
        return events

    async def run(self, operation: Awaitable[SubmitResult]) -> AsyncIterator[str]:
        """Run an operation and yield its events as NDJSON lines."""

        async def _drive() -> None:
            try:
                result = await operation
                self._emit({"type": "done", "accepted": result.accepted, "outcome": result.outcome})
            except Exception as e:
                logger.exception("Chat operation failed")
                self._emit({"type": "notice", "message": str(e)})
                self._emit({"type": "done", "accepted": False, "outcome": "error"})
            finally:
                self.queue.put_nowait(_END)

        task = asyncio.create_task(_drive())
        _running.add(task)
        task.add_done_callback(_running.discard)
        try:
            while True:
                event = await self.queue.get()
                if event is _END:
                    break
                yield json.dumps(event) + "\n"
        finally:
            if not task.done():
                # Client went away; let the turn finish and persist on its own.
                logger.info("Event stream closed before the turn finished")
