"""Derived-state generation: the session's logbook.

Each snapshot (character sheet, achievements, NPC roster, inventory, quest
log) is produced by one one-shot narrator call over the visible history and
replaces the previous snapshot wholesale. Calls go through the retry
wrapper; output that does not validate raises MalformedResponseError and
the caller keeps the old snapshot.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from pydantic import TypeAdapter, ValidationError

from dm_os.models import NPC, Achievement, CharacterSheet, Turn
from dm_os.narrator import Narrator
from dm_os.prompts import logbook_prompt, quick_start_prompt
from dm_os.retry import RetryPolicy, with_retry

logger = logging.getLogger(__name__)

_sheet_adapter = TypeAdapter(CharacterSheet)
_sheets_adapter = TypeAdapter(list[CharacterSheet])
_achievements_adapter = TypeAdapter(list[Achievement])
_npcs_adapter = TypeAdapter(list[NPC])

SHEET_SCHEMA: dict[str, Any] = _sheet_adapter.json_schema(by_alias=True)
QUICK_START_SCHEMA: dict[str, Any] = _sheets_adapter.json_schema(by_alias=True)
ACHIEVEMENTS_SCHEMA: dict[str, Any] = _achievements_adapter.json_schema(by_alias=True)
NPCS_SCHEMA: dict[str, Any] = _npcs_adapter.json_schema(by_alias=True)


class MalformedResponseError(ValueError):
    """A structured sub-request returned text that does not fit its schema."""


def _parse_json_output(text: str) -> Any:
    """Parse JSON from narrator output, stripping markdown fences."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        lines = cleaned.split("\n")
        lines = [l for l in lines[1:] if not l.strip().startswith("```")]
        cleaned = "\n".join(lines)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.warning("Structured output is not valid JSON: %s", e)
        raise MalformedResponseError(f"Response is not valid JSON: {e}") from e


def _validate(adapter: TypeAdapter, data: Any, what: str) -> Any:
    try:
        return adapter.validate_python(data)
    except ValidationError as e:
        logger.warning("Structured %s output failed validation: %s", what, e)
        raise MalformedResponseError(f"Response is not a valid {what}") from e


class Logbook:
    def __init__(self, narrator: Narrator, policy: RetryPolicy | None = None) -> None:
        self._generate = with_retry(policy)(narrator.generate)

    async def _text(self, kind: str, turns: list[Turn]) -> str:
        text = (await self._generate(logbook_prompt(kind, turns))).strip()
        if not text:
            raise MalformedResponseError(f"Empty {kind} response")
        return text

    async def character_sheet(self, turns: list[Turn]) -> CharacterSheet:
        raw = await self._generate(logbook_prompt("sheet", turns), SHEET_SCHEMA)
        return _validate(_sheet_adapter, _parse_json_output(raw), "character sheet")

    async def achievements(self, turns: list[Turn]) -> list[Achievement]:
        raw = await self._generate(logbook_prompt("achievements", turns), ACHIEVEMENTS_SCHEMA)
        return _validate(_achievements_adapter, _parse_json_output(raw), "achievement list")

    async def npcs(self, turns: list[Turn]) -> list[NPC]:
        raw = await self._generate(logbook_prompt("npcs", turns), NPCS_SCHEMA)
        return _validate(_npcs_adapter, _parse_json_output(raw), "NPC roster")

    async def inventory(self, turns: list[Turn]) -> str:
        return await self._text("inventory", turns)

    async def quest_log(self, turns: list[Turn]) -> str:
        return await self._text("quests", turns)

    async def quick_start_characters(self, count: int = 4) -> list[CharacterSheet]:
        raw = await self._generate(quick_start_prompt(count), QUICK_START_SCHEMA)
        sheets = _validate(_sheets_adapter, _parse_json_output(raw), "character list")
        if not sheets:
            raise MalformedResponseError("No quick-start characters returned")
        return sheets

    async def suggest_title(self, turns: list[Turn]) -> str:
        text = await self._text("title", turns)
        return text.splitlines()[0].strip().strip('*"[] ').strip() or text
