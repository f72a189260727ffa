"""Sentinel parsing for complete narrator responses.

The narrator smuggles control information into its prose as bracketed tags:

  [WORLD_CREATION_COMPLETE]            world settled, build the character next
  [CHARACTER_CREATION_COMPLETE]        character settled, pick a narrator style
  [GENERATE_QUICK_START_CHARACTERS]    user chose Quick Start
  [SETUP_COMPLETE]                     setup finished; a "Title: ..." line names the adventure
  [COMBAT_STATUS:<json>]               enemy roster update (play only)

parse_response() runs on the fully drained text, never on fragments: a tag
can be split across stream chunks. It returns at most one Signal plus the
text with every recognised tag removed.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from dm_os.models import Enemy

logger = logging.getLogger(__name__)

WORLD_COMPLETE = "[WORLD_CREATION_COMPLETE]"
CHARACTER_COMPLETE = "[CHARACTER_CREATION_COMPLETE]"
QUICK_START = "[GENERATE_QUICK_START_CHARACTERS]"
SETUP_COMPLETE = "[SETUP_COMPLETE]"
COMBAT_PREFIX = "[COMBAT_STATUS:"

DEFAULT_ADVENTURE_TITLE = "New Adventure"

_TITLE_RE = re.compile(r"^[ \t]*Title:[ \t]*(.*)$", re.MULTILINE)


# ── Signal types ─────────────────────────────────────────


class WorldCreationComplete(BaseModel):
    kind: Literal["world_creation_complete"] = "world_creation_complete"


class CharacterCreationComplete(BaseModel):
    kind: Literal["character_creation_complete"] = "character_creation_complete"


class QuickStartRequested(BaseModel):
    kind: Literal["quick_start_requested"] = "quick_start_requested"


class SetupComplete(BaseModel):
    kind: Literal["setup_complete"] = "setup_complete"
    title: str = DEFAULT_ADVENTURE_TITLE


class CombatStatus(BaseModel):
    """Enemy roster update. enemies is None when the payload was unreadable."""

    kind: Literal["combat_status"] = "combat_status"
    enemies: list[Enemy] | None = None


Signal = Annotated[
    Union[
        WorldCreationComplete,
        CharacterCreationComplete,
        QuickStartRequested,
        SetupComplete,
        CombatStatus,
    ],
    Field(discriminator="kind"),
]

_enemy_list = TypeAdapter(list[Enemy])


class ParsedResponse(BaseModel):
    signal: Signal | None = None
    text: str


# ── Parsing ──────────────────────────────────────────────


def _clean(text: str) -> str:
    """Collapse the blank lines a removed tag leaves behind."""
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _extract_title(text: str) -> tuple[str, str]:
    match = _TITLE_RE.search(text)
    if not match:
        return DEFAULT_ADVENTURE_TITLE, text
    title = match.group(1).strip().strip('*"[] ').strip()
    text = text[: match.start()] + text[match.end():]
    return title or DEFAULT_ADVENTURE_TITLE, text


def _decode_enemies(payload: object) -> list[Enemy] | None:
    if isinstance(payload, dict):
        payload = payload.get("enemies")
    if not isinstance(payload, list):
        return None
    try:
        return _enemy_list.validate_python(payload)
    except ValidationError as e:
        logger.warning("Combat roster failed validation: %s", e)
        return None


def _parse_combat(text: str) -> tuple[CombatStatus | None, str]:
    """Find the first combat tag; strip every one.

    The payload is decoded in place with raw_decode, so brackets inside the
    JSON do not end the tag early. When decoding fails the tag runs to the
    next closing bracket on its line, or to the end of that line.
    """
    start = text.find(COMBAT_PREFIX)
    if start < 0:
        return None, text

    status: CombatStatus | None = None
    decoder = json.JSONDecoder()
    while start >= 0:
        body = start + len(COMBAT_PREFIX)
        while body < len(text) and text[body] in " \t":
            body += 1
        enemies = None
        end = -1
        try:
            payload, payload_end = decoder.raw_decode(text, body)
        except json.JSONDecodeError:
            payload_end = -1
        if payload_end >= 0:
            close = payload_end
            while close < len(text) and text[close] in " \t":
                close += 1
            if close < len(text) and text[close] == "]":
                enemies = _decode_enemies(payload)
                end = close + 1
        if end < 0:
            search = payload_end if payload_end >= 0 else body
            line_end = text.find("\n", search)
            if line_end < 0:
                line_end = len(text)
            close = text.find("]", search, line_end)
            end = line_end if close < 0 else close + 1
            logger.warning("Unreadable combat status payload: %r", text[body:end][:200])
        if status is None:
            status = CombatStatus(enemies=enemies)
        text = text[:start] + text[end:]
        start = text.find(COMBAT_PREFIX, start)
    return status, text


def parse_response(text: str, *, in_play: bool) -> ParsedResponse:
    """Extract at most one signal from a complete narrator response.

    Setup tags are only honoured outside play and the combat tag only in
    play; tags from the other group are left in the text untouched. When
    several setup tags appear, setup-complete wins over quick-start, which
    wins over character-complete, which wins over world-complete.
    """
    if in_play:
        status, cleaned = _parse_combat(text)
        return ParsedResponse(signal=status, text=_clean(cleaned) if status else text)

    found = [tag for tag in (SETUP_COMPLETE, QUICK_START, CHARACTER_COMPLETE, WORLD_COMPLETE) if tag in text]
    if not found:
        return ParsedResponse(signal=None, text=text)

    cleaned = text
    for tag in found:
        cleaned = cleaned.replace(tag, "")

    signal: Signal
    top = found[0]
    if top == SETUP_COMPLETE:
        title, cleaned = _extract_title(cleaned)
        signal = SetupComplete(title=title)
    elif top == QUICK_START:
        signal = QuickStartRequested()
    elif top == CHARACTER_COMPLETE:
        signal = CharacterCreationComplete()
    else:
        signal = WorldCreationComplete()
    return ParsedResponse(signal=signal, text=_clean(cleaned))
