"""Session library: the persisted collection plus user-level data.

Everything lives in the key-value store under fixed keys and is written back
whole after each mutation:

    dm-os-chat-history   list of Session records
    dm-os-user-context   list of free-form strings shared by all sessions
    dm-os-theme          UI preferences, one scalar per key
    dm-os-font-size
    dm-os-persona

Records are migrated on load and on import, so anything read from storage
or from a backup file has the current shape.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from dm_os.migrate import migrate_collection, migrate_session, new_session_id
from dm_os.models import Session
from dm_os.store import KeyValueStore

logger = logging.getLogger(__name__)

HISTORY_KEY = "dm-os-chat-history"
CONTEXT_KEY = "dm-os-user-context"
PREFERENCE_KEYS = {
    "theme": "dm-os-theme",
    "fontSize": "dm-os-font-size",
    "persona": "dm-os-persona",
}
PREFERENCE_DEFAULTS: dict[str, Any] = {
    "theme": "dark",
    "fontSize": "medium",
    "persona": "purist",
}

EXPORT_VERSION = 1


@dataclass
class ImportResult:
    imported: list[str] = field(default_factory=list)
    replaced: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    context_added: int = 0


class SessionLibrary:
    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        self.sessions: list[Session] = []
        self.user_context: list[str] = []

    # ── Load / save ──────────────────────────────────────

    async def load(self) -> None:
        self.sessions = migrate_collection(await self._store.get(HISTORY_KEY))
        raw_context = await self._store.get(CONTEXT_KEY)
        if isinstance(raw_context, list):
            self.user_context = [c for c in raw_context if isinstance(c, str)]
        else:
            self.user_context = []
        logger.info("Loaded %d sessions, %d context entries", len(self.sessions), len(self.user_context))

    async def save(self) -> None:
        await self._store.set(HISTORY_KEY, [s.to_json() for s in self.sessions])

    async def _save_context(self) -> None:
        await self._store.set(CONTEXT_KEY, list(self.user_context))

    # ── Sessions ─────────────────────────────────────────

    def ordered(self) -> list[Session]:
        """Pinned sessions first, then newest first."""
        return sorted(self.sessions, key=lambda s: (not s.pinned, -s.created_at))

    def get(self, session_id: str) -> Session | None:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    async def add(self, session: Session) -> Session:
        if self.get(session.id) is not None:
            raise ValueError(f"Session '{session.id}' already exists")
        self.sessions.insert(0, session)
        await self.save()
        return session

    async def delete(self, session_id: str) -> bool:
        before = len(self.sessions)
        self.sessions = [s for s in self.sessions if s.id != session_id]
        if len(self.sessions) == before:
            return False
        await self.save()
        return True

    async def rename(self, session_id: str, title: str) -> Session | None:
        session = self.get(session_id)
        if session is None:
            return None
        title = title.strip()
        if title:
            session.title = title
            await self.save()
        return session

    async def toggle_pin(self, session_id: str) -> Session | None:
        session = self.get(session_id)
        if session is None:
            return None
        session.pinned = not session.pinned
        await self.save()
        return session

    # ── Import / export ──────────────────────────────────

    def export_session(self, session_id: str) -> dict | None:
        session = self.get(session_id)
        return None if session is None else session.to_json()

    def export_all(self) -> dict:
        return {
            "version": EXPORT_VERSION,
            "chats": [s.to_json() for s in self.sessions],
            "userContext": list(self.user_context),
        }

    async def import_payload(self, data: Any, overwrite: bool = False) -> ImportResult:
        """Import a backup: one session, a {version, chats, userContext}
        collection, or a bare list of sessions.

        A single session whose id already exists gets a fresh id unless
        overwrite is set. Collection entries whose id exists are skipped
        (or replaced with overwrite). User context is merged without
        duplicates.
        """
        result = ImportResult()
        if isinstance(data, dict) and "chats" in data:
            self._import_collection(data.get("chats"), overwrite, result)
            self._merge_context(data.get("userContext"), result)
        elif isinstance(data, list):
            self._import_collection(data, overwrite, result)
        else:
            self._import_single(data, overwrite, result)

        await self.save()
        if result.context_added:
            await self._save_context()
        logger.info(
            "Import: %d new, %d replaced, %d skipped",
            len(result.imported), len(result.replaced), len(result.skipped),
        )
        return result

    def _import_single(self, data: Any, overwrite: bool, result: ImportResult) -> None:
        session = migrate_session(data)
        existing = self.get(session.id)
        if existing is None:
            self.sessions.insert(0, session)
            result.imported.append(session.id)
        elif overwrite:
            self.sessions[self.sessions.index(existing)] = session
            result.replaced.append(session.id)
        else:
            session.id = new_session_id()
            self.sessions.insert(0, session)
            result.imported.append(session.id)

    def _import_collection(self, chats: Any, overwrite: bool, result: ImportResult) -> None:
        for session in migrate_collection(chats):
            existing = self.get(session.id)
            if existing is None:
                self.sessions.append(session)
                result.imported.append(session.id)
            elif overwrite:
                self.sessions[self.sessions.index(existing)] = session
                result.replaced.append(session.id)
            else:
                result.skipped.append(session.id)

    def _merge_context(self, entries: Any, result: ImportResult) -> None:
        if not isinstance(entries, list):
            return
        for entry in entries:
            if isinstance(entry, str) and entry not in self.user_context:
                self.user_context.append(entry)
                result.context_added += 1

    # ── User context ─────────────────────────────────────

    async def add_context(self, text: str) -> list[str]:
        text = text.strip()
        if text and text not in self.user_context:
            self.user_context.append(text)
            await self._save_context()
        return self.user_context

    async def delete_context(self, index: int) -> list[str]:
        if not 0 <= index < len(self.user_context):
            raise IndexError(f"No user context entry at index {index}")
        del self.user_context[index]
        await self._save_context()
        return self.user_context

    # ── Preferences ──────────────────────────────────────

    async def get_preferences(self) -> dict[str, Any]:
        prefs = dict(PREFERENCE_DEFAULTS)
        for name, key in PREFERENCE_KEYS.items():
            value = await self._store.get(key)
            if isinstance(value, str) and value:
                prefs[name] = value
        return prefs

    async def set_preferences(self, values: dict[str, Any]) -> dict[str, Any]:
        for name, value in values.items():
            key = PREFERENCE_KEYS.get(name)
            if key is None:
                raise KeyError(name)
            if value is not None:
                await self._store.set(key, str(value))
        return await self.get_preferences()
