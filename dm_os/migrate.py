"""Defensive migration of persisted and imported session records.

`migrate_session()` takes any decoded JSON value and returns a valid
`Session`. It never raises: every field is checked independently, and a
missing or wrong-typed field is replaced by its default instead of rejecting
the record. Nested structures are deep-merged against canonical defaults so
a record written by an older version picks up new fields with sane values.

Older record shapes are read as well:
  messages       → turns     (sender "model" → "narrator")
  isPinned       → pinned
  adminPassword  → secret
  creationPhase  → phase     (true → guided, false → steady_state)
  npcList        → npcs
  quickStartChars→ quickStartCharacters
snake_case keys are accepted everywhere the camelCase key is.
"""

from __future__ import annotations

import copy
import math
import time
import uuid
from typing import Any

from dm_os.models import (
    ABILITIES,
    CharacterSheet,
    GameSettings,
    Phase,
    Session,
)
from dm_os.prompts import DEFAULT_PERSONA_ID, PERSONAS

DEFAULT_TITLE = "Untitled Adventure"

_SENDERS = {"user": "user", "narrator": "narrator", "model": "narrator",
            "system": "system", "error": "error"}

_LEGACY_PHASES = {
    "guided": Phase.GUIDED,
    "password_capture": Phase.PASSWORD_CAPTURE,
    "world_creation": Phase.WORLD_CREATION,
    "character_creation": Phase.CHARACTER_CREATION,
    "narrator_selection": Phase.NARRATOR_SELECTION,
    "quick_start_selection": Phase.QUICK_START_SELECTION,
    "quick_start_password": Phase.QUICK_START_PASSWORD,
    "steady_state": Phase.STEADY_STATE,
}

_DEFAULT_SHEET: dict[str, Any] = CharacterSheet().to_json()
_DEFAULT_SETTINGS: dict[str, Any] = GameSettings().to_json()
_SETTING_CHOICES: dict[str, tuple[str, ...]] = {
    "tone": ("heroic", "gritty", "comedic"),
    "narration": ("concise", "descriptive", "cinematic"),
    "difficulty": ("easy", "normal", "hard"),
}


def new_session_id() -> str:
    return f"chat-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def now_ms() -> float:
    return float(int(time.time() * 1000))


# ── Checked coercions ────────────────────────────────────


def _pick(raw: dict, *keys: str) -> Any:
    """First present key wins."""
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _finite_float(value: Any) -> float | None:
    if not _is_number(value):
        return None
    try:
        number = float(value)
    except OverflowError:
        return None
    return number if math.isfinite(number) else None


def _str(value: Any, default: str) -> str:
    return value if isinstance(value, str) else default


def _int(value: Any, default: int) -> int:
    if _is_int(value):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return default


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively overlay override onto a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ── Per-structure migration ──────────────────────────────


def _migrate_turns(value: Any) -> list[dict]:
    if not isinstance(value, list):
        return []
    turns = []
    for item in value:
        if not isinstance(item, dict):
            continue
        sender = item.get("sender")
        text = item.get("text")
        if not isinstance(sender, str) or sender not in _SENDERS or not isinstance(text, str):
            continue
        hidden = item.get("hidden")
        turns.append({
            "sender": _SENDERS[sender],
            "text": text,
            "hidden": hidden if isinstance(hidden, bool) else False,
        })
    return turns


def _migrate_phase(value: Any) -> Phase:
    if value is True:
        return Phase.GUIDED
    if isinstance(value, str):
        return _LEGACY_PHASES.get(value, Phase.STEADY_STATE)
    return Phase.STEADY_STATE


def migrate_character_sheet(value: Any) -> dict | None:
    """Coerce a character sheet object; None when the value is not a dict."""
    if not isinstance(value, dict):
        return None
    raw = dict(value)
    for snake, camel in (("ability_scores", "abilityScores"), ("armor_class", "armorClass"),
                         ("hit_points", "hitPoints"), ("features_and_traits", "featuresAndTraits"),
                         ("class_name", "class")):
        if snake in raw and camel not in raw:
            raw[camel] = raw.pop(snake)
    merged = _deep_merge(_DEFAULT_SHEET, {k: v for k, v in raw.items() if k in _DEFAULT_SHEET})
    default = _DEFAULT_SHEET

    sheet: dict[str, Any] = {
        "name": _str(merged["name"], default["name"]),
        "race": _str(merged["race"], default["race"]),
        "class": _str(merged["class"], default["class"]),
        "level": max(1, _int(merged["level"], default["level"])),
        "armorClass": _int(merged["armorClass"], default["armorClass"]),
        "speed": _str(merged["speed"], default["speed"]),
        "backstory": _str(merged["backstory"], default["backstory"]),
    }
    if _is_int(merged["speed"]):
        sheet["speed"] = f"{merged['speed']}ft"

    scores = merged["abilityScores"] if isinstance(merged["abilityScores"], dict) else {}
    sheet["abilityScores"] = {}
    for ability in ABILITIES:
        entry = scores.get(ability)
        base = default["abilityScores"][ability]
        if _is_int(entry):
            # Older sheets stored bare scores.
            entry = {"score": entry, "modifier": _modifier(entry)}
        if not isinstance(entry, dict):
            entry = base
        score = _int(entry.get("score"), base["score"])
        sheet["abilityScores"][ability] = {
            "score": score,
            "modifier": _str(entry.get("modifier"), _modifier(score)),
        }

    hp = merged["hitPoints"] if isinstance(merged["hitPoints"], dict) else {}
    sheet["hitPoints"] = {
        "current": _int(hp.get("current"), default["hitPoints"]["current"]),
        "max": _int(hp.get("max"), default["hitPoints"]["max"]),
    }

    skills = merged["skills"] if isinstance(merged["skills"], list) else []
    sheet["skills"] = [
        {"name": s["name"], "proficient": s.get("proficient") is True}
        for s in skills
        if isinstance(s, dict) and isinstance(s.get("name"), str)
    ]

    features = merged["featuresAndTraits"] if isinstance(merged["featuresAndTraits"], list) else []
    sheet["featuresAndTraits"] = [f for f in features if isinstance(f, str)]
    return sheet


def _modifier(score: int) -> str:
    mod = (score - 10) // 2
    return f"+{mod}" if mod >= 0 else str(mod)


def _migrate_settings(value: Any) -> dict:
    incoming = value if isinstance(value, dict) else {}
    merged = _deep_merge(_DEFAULT_SETTINGS, incoming)
    return {
        key: merged[key] if merged.get(key) in choices else _DEFAULT_SETTINGS[key]
        for key, choices in _SETTING_CHOICES.items()
    }


def _filter_records(value: Any, fields: tuple[str, ...]) -> list[dict]:
    if not isinstance(value, list):
        return []
    return [
        {f: item[f] for f in fields}
        for item in value
        if isinstance(item, dict) and all(isinstance(item.get(f), str) for f in fields)
    ]


# ── Entry points ─────────────────────────────────────────


def migrate_session(obj: Any) -> Session:
    """Turn an arbitrary decoded object into a valid Session. Never raises."""
    raw = obj if isinstance(obj, dict) else {}

    session_id = raw.get("id")
    title = raw.get("title")
    created_at = _finite_float(_pick(raw, "createdAt", "created_at"))
    pinned = _pick(raw, "pinned", "isPinned")
    secret = _pick(raw, "secret", "adminPassword")
    persona_id = _pick(raw, "personaId", "persona_id")
    known_personas = {p.id for p in PERSONAS}

    if "phase" in raw:
        phase = _migrate_phase(raw["phase"])
    else:
        phase = _migrate_phase(raw.get("creationPhase"))

    sheet_value = _pick(raw, "characterSheet", "character_sheet")
    if isinstance(sheet_value, str):
        character_sheet: Any = sheet_value
    else:
        character_sheet = migrate_character_sheet(sheet_value)

    quick_start = _pick(raw, "quickStartCharacters", "quick_start_characters", "quickStartChars")
    quick_start_sheets = []
    if isinstance(quick_start, list):
        quick_start_sheets = [
            s for s in (migrate_character_sheet(item) for item in quick_start) if s is not None
        ]

    data = {
        "id": session_id if isinstance(session_id, str) and session_id else new_session_id(),
        "title": title if isinstance(title, str) and title.strip() else DEFAULT_TITLE,
        "turns": _migrate_turns(_pick(raw, "turns", "messages")),
        "createdAt": created_at if created_at is not None else now_ms(),
        "pinned": pinned if isinstance(pinned, bool) else False,
        "secret": secret if isinstance(secret, str) else None,
        "personaId": persona_id if isinstance(persona_id, str) and persona_id in known_personas else DEFAULT_PERSONA_ID,
        "phase": phase,
        "characterSheet": character_sheet,
        "inventory": _str(raw.get("inventory"), ""),
        "questLog": _str(_pick(raw, "questLog", "quest_log"), ""),
        "npcs": _filter_records(_pick(raw, "npcs", "npcList"), ("name", "description", "relationship")),
        "achievements": _filter_records(raw.get("achievements"), ("name", "description")),
        "characterImageUrl": _str(_pick(raw, "characterImageUrl", "character_image_url"), ""),
        "settings": _migrate_settings(raw.get("settings")),
        "quickStartCharacters": quick_start_sheets,
    }
    return Session.model_validate(data)


def migrate_collection(obj: Any) -> list[Session]:
    """Migrate a list of sessions, dropping later duplicates of an id."""
    if not isinstance(obj, list):
        return []
    sessions: list[Session] = []
    seen: set[str] = set()
    for item in obj:
        session = migrate_session(item)
        if session.id in seen:
            continue
        seen.add(session.id)
        sessions.append(session)
    return sessions
