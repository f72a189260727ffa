"""Tests for dm_os.library — the persisted session collection."""

import pytest

from dm_os.library import CONTEXT_KEY, EXPORT_VERSION, HISTORY_KEY, SessionLibrary
from dm_os.models import Phase, Session, Turn
from dm_os.store import JsonFileStore, MemoryStore


def _session(session_id: str, created_at: float = 1.0, **fields) -> Session:
    return Session(id=session_id, created_at=created_at, **fields)


async def _fresh(store) -> SessionLibrary:
    lib = SessionLibrary(store)
    await lib.load()
    return lib


class TestLoad:
    async def test_empty_store(self, library: SessionLibrary) -> None:
        assert library.sessions == []
        assert library.user_context == []

    async def test_stored_records_migrated(self) -> None:
        store = MemoryStore({
            HISTORY_KEY: [
                {"id": "a", "title": "Old", "messages": [{"sender": "model", "text": "Hi"}], "isPinned": True},
                {"id": "a", "title": "Duplicate"},
                "garbage",
            ],
            CONTEXT_KEY: ["likes dragons", 5],
        })
        lib = await _fresh(store)
        assert [s.id for s in lib.sessions][:1] == ["a"]
        assert lib.sessions[0].title == "Old"
        assert lib.sessions[0].turns[0].sender == "narrator"
        assert lib.sessions[0].pinned
        assert lib.user_context == ["likes dragons"]

    async def test_non_list_history_is_empty(self) -> None:
        lib = await _fresh(MemoryStore({HISTORY_KEY: {"oops": True}}))
        assert lib.sessions == []


class TestSessions:
    async def test_add_and_get(self, library: SessionLibrary, store) -> None:
        session = await library.add(_session("a"))
        assert library.get("a") is session
        assert (await _fresh(store)).get("a") == session

    async def test_add_duplicate_rejected(self, library: SessionLibrary) -> None:
        await library.add(_session("a"))
        with pytest.raises(ValueError):
            await library.add(_session("a"))

    async def test_ordered_pinned_then_newest(self, library: SessionLibrary) -> None:
        await library.add(_session("old", 1.0))
        await library.add(_session("new", 3.0))
        await library.add(_session("pinned-old", 0.5, pinned=True))
        await library.add(_session("mid", 2.0))
        assert [s.id for s in library.ordered()] == ["pinned-old", "new", "mid", "old"]

    async def test_delete(self, library: SessionLibrary, store) -> None:
        await library.add(_session("a"))
        assert await library.delete("a") is True
        assert await library.delete("a") is False
        assert (await _fresh(store)).sessions == []

    async def test_rename(self, library: SessionLibrary, store) -> None:
        await library.add(_session("a"))
        await library.rename("a", "  The Long Night ")
        assert (await _fresh(store)).get("a").title == "The Long Night"

    async def test_blank_rename_ignored(self, library: SessionLibrary) -> None:
        await library.add(_session("a", title="Keep"))
        await library.rename("a", "   ")
        assert library.get("a").title == "Keep"

    async def test_rename_missing(self, library: SessionLibrary) -> None:
        assert await library.rename("nope", "x") is None

    async def test_toggle_pin(self, library: SessionLibrary) -> None:
        await library.add(_session("a"))
        assert (await library.toggle_pin("a")).pinned is True
        assert (await library.toggle_pin("a")).pinned is False
        assert await library.toggle_pin("missing") is None


class TestExportImport:
    async def test_single_session_reimport_gets_fresh_id(self, library: SessionLibrary) -> None:
        await library.add(_session("a", title="Wyrm", turns=[Turn(sender="user", text="hi")]))
        exported = library.export_session("a")

        result = await library.import_payload(exported)

        assert len(result.imported) == 1
        new_id = result.imported[0]
        assert new_id != "a"
        copy = library.get(new_id)
        assert copy.title == "Wyrm"
        assert copy.turns == library.get("a").turns
        assert len(library.sessions) == 2

    async def test_single_session_overwrite(self, library: SessionLibrary) -> None:
        await library.add(_session("a", title="Before"))
        exported = library.export_session("a")
        exported["title"] = "After"

        result = await library.import_payload(exported, overwrite=True)

        assert result.replaced == ["a"]
        assert len(library.sessions) == 1
        assert library.get("a").title == "After"

    async def test_single_new_session_keeps_id(self, library: SessionLibrary) -> None:
        result = await library.import_payload({"id": "chat-x", "title": "Imported"})
        assert result.imported == ["chat-x"]

    async def test_export_missing(self, library: SessionLibrary) -> None:
        assert library.export_session("nope") is None

    async def test_collection_skips_existing(self, library: SessionLibrary) -> None:
        await library.add(_session("a", title="Mine"))
        payload = {
            "version": EXPORT_VERSION,
            "chats": [{"id": "a", "title": "Theirs"}, {"id": "b", "title": "New"}],
            "userContext": [],
        }
        result = await library.import_payload(payload)
        assert result.imported == ["b"]
        assert result.skipped == ["a"]
        assert library.get("a").title == "Mine"

    async def test_collection_overwrite(self, library: SessionLibrary) -> None:
        await library.add(_session("a", title="Mine"))
        result = await library.import_payload({"chats": [{"id": "a", "title": "Theirs"}]}, overwrite=True)
        assert result.replaced == ["a"]
        assert library.get("a").title == "Theirs"

    async def test_collection_deduplicated(self, library: SessionLibrary) -> None:
        result = await library.import_payload({"chats": [
            {"id": "a", "title": "First"}, {"id": "a", "title": "Second"},
        ]})
        assert result.imported == ["a"]
        assert library.get("a").title == "First"

    async def test_bare_list(self, library: SessionLibrary) -> None:
        result = await library.import_payload([{"id": "a"}, {"id": "b"}])
        assert sorted(result.imported) == ["a", "b"]

    async def test_user_context_merged(self, library: SessionLibrary, store) -> None:
        await library.add_context("likes dragons")
        result = await library.import_payload({
            "chats": [], "userContext": ["likes dragons", "hates spiders", 7],
        })
        assert result.context_added == 1
        assert (await _fresh(store)).user_context == ["likes dragons", "hates spiders"]

    async def test_export_all_roundtrip(self, library: SessionLibrary) -> None:
        await library.add(_session("a", phase=Phase.WORLD_CREATION, secret="s3cret"))
        await library.add_context("plays a bard")
        backup = library.export_all()
        assert backup["version"] == EXPORT_VERSION
        assert backup["userContext"] == ["plays a bard"]

        other = await _fresh(MemoryStore())
        await other.import_payload(backup)
        restored = other.get("a")
        assert restored.phase is Phase.WORLD_CREATION
        assert restored.secret == "s3cret"
        assert other.user_context == ["plays a bard"]

    async def test_junk_import_yields_default_session(self, library: SessionLibrary) -> None:
        result = await library.import_payload("not a session")
        assert len(result.imported) == 1
        assert library.get(result.imported[0]).turns == []


class TestUserContext:
    async def test_add_trims_and_dedupes(self, library: SessionLibrary) -> None:
        await library.add_context("  likes dragons ")
        await library.add_context("likes dragons")
        await library.add_context("   ")
        assert library.user_context == ["likes dragons"]

    async def test_delete(self, library: SessionLibrary, store) -> None:
        await library.add_context("a")
        await library.add_context("b")
        assert await library.delete_context(0) == ["b"]
        assert (await _fresh(store)).user_context == ["b"]

    async def test_delete_out_of_range(self, library: SessionLibrary) -> None:
        with pytest.raises(IndexError):
            await library.delete_context(3)


class TestPreferences:
    async def test_defaults(self, library: SessionLibrary) -> None:
        assert await library.get_preferences() == {"theme": "dark", "fontSize": "medium", "persona": "purist"}

    async def test_set_and_persist(self, library: SessionLibrary, store) -> None:
        prefs = await library.set_preferences({"theme": "light", "fontSize": None})
        assert prefs["theme"] == "light"
        assert prefs["fontSize"] == "medium"
        assert await store.get("dm-os-theme") == "light"

    async def test_unknown_preference(self, library: SessionLibrary) -> None:
        with pytest.raises(KeyError):
            await library.set_preferences({"volume": 11})


class TestJsonFilePersistence:
    async def test_survives_reload(self, file_store: JsonFileStore, tmp_path) -> None:
        lib = await _fresh(file_store)
        await lib.add(_session("a", title="Wyrm", turns=[Turn(sender="narrator", text="Welcome")]))
        await lib.add_context("likes dragons")

        reloaded = await _fresh(JsonFileStore(tmp_path / "data"))
        assert reloaded.get("a").title == "Wyrm"
        assert reloaded.get("a").turns[0].text == "Welcome"
        assert reloaded.user_context == ["likes dragons"]
