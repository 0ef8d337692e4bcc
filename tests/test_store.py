from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import aiosqlite
import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tavern_context.errors import NotFoundError, StorageError  # noqa: E402
from tavern_context.models import (  # noqa: E402
    ROLE_ASSISTANT,
    ROLE_USER,
    ContentPart,
    HistoryItem,
    LoreEntry,
    PartsContent,
)
from tavern_context.storage.active import ACTIVE_LORE, ACTIVE_PERSONA, ACTIVE_PRESET  # noqa: E402
from tavern_context.storage.store import TavernStore  # noqa: E402


async def _set_user_version(db_path: Path, version: int) -> None:
    async with aiosqlite.connect(db_path) as db:
        await db.execute(f"PRAGMA user_version = {version}")
        await db.commit()


def test_newer_schema_is_refused_without_reset_flag(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("STORE_SQLITE_RESET_ON_SCHEMA_MISMATCH", raising=False)
    db_path = tmp_path / "tavern.db"
    store = TavernStore(db_path)

    async def scenario() -> None:
        await store.init()
        await _set_user_version(db_path, 99)
        await store.init()

    with pytest.raises(RuntimeError, match="schema version mismatch"):
        asyncio.run(scenario())


def test_reset_flag_rebuilds_newer_schema(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STORE_SQLITE_RESET_ON_SCHEMA_MISMATCH", "1")
    db_path = tmp_path / "tavern.db"
    store = TavernStore(db_path)

    async def scenario():  # type: ignore[no-untyped-def]
        await store.init()
        await store.create_persona(None, "Mira", "{}")
        await _set_user_version(db_path, 99)
        await store.init()
        async with aiosqlite.connect(db_path) as db:
            async with db.execute("PRAGMA user_version") as cursor:
                row = await cursor.fetchone()
        return int(row[0]), await store.list_personas(None)

    version, personas = asyncio.run(scenario())

    assert version == TavernStore.SCHEMA_VERSION
    assert personas == []


def test_init_is_idempotent_and_ping_works(tmp_path: Path) -> None:
    store = TavernStore(tmp_path / "nested" / "tavern.db")

    async def scenario() -> None:
        await store.init()
        await store.init()
        await store.ping()

    asyncio.run(scenario())
    assert (tmp_path / "nested" / "tavern.db").exists()


def test_missing_resources_raise_not_found(tmp_path: Path) -> None:
    store = TavernStore(tmp_path / "tavern.db")

    async def scenario() -> list[str]:
        await store.init()
        failures: list[str] = []
        calls = (
            ("persona", store.get_persona(404)),
            ("lore", store.get_lore_database(404)),
            ("entries", store.list_lore_entries(404)),
            ("preset", store.get_preset(404)),
            ("rule", store.get_rewrite_rule(404)),
            ("delete", store.delete_persona(404)),
        )
        for name, call in calls:
            try:
                await call
            except NotFoundError:
                failures.append(name)
        return failures

    assert asyncio.run(scenario()) == ["persona", "lore", "entries", "preset", "rule", "delete"]


def test_personal_resources_are_only_listed_for_their_owner(tmp_path: Path) -> None:
    store = TavernStore(tmp_path / "tavern.db")

    async def scenario():  # type: ignore[no-untyped-def]
        await store.init()
        await store.create_persona(None, "Global", "{}")
        await store.create_persona(1, "Mine", "{}")
        await store.create_persona(2, "Theirs", "{}")
        await store.create_preset(1, "Warm", "gemini", "{}")
        await store.create_preset(1, "Cold", "openai", "{}")
        return (
            [persona.name for persona in await store.list_personas(None)],
            [persona.name for persona in await store.list_personas(1)],
            [preset.name for preset in await store.list_presets(1, "gemini")],
            [preset.name for preset in await store.list_presets(2)],
        )

    global_only, mine, gemini_presets, theirs = asyncio.run(scenario())

    assert global_only == ["Global"]
    assert mine == ["Global", "Mine"]
    assert gemini_presets == ["Warm"]
    assert theirs == []


def test_active_selection_falls_back_to_global_and_is_cleared_on_delete(tmp_path: Path) -> None:
    store = TavernStore(tmp_path / "tavern.db")

    async def scenario():  # type: ignore[no-untyped-def]
        await store.init()
        global_persona = await store.create_persona(None, "Global", "{}")
        own = await store.create_persona(4, "Own", "{}")
        await store.set_active(ACTIVE_PERSONA, None, global_persona.id)
        fallback = await store.get_active_id(ACTIVE_PERSONA, 4)
        await store.set_active(ACTIVE_PERSONA, 4, own.id)
        personal = await store.get_active_id(ACTIVE_PERSONA, 4)
        await store.delete_persona(own.id)
        after_delete = await store.get_active_id(ACTIVE_PERSONA, 4)
        await store.set_active(ACTIVE_PRESET, None, 11, "gemini")
        other_family = await store.get_active_id(ACTIVE_PRESET, 4, "openai")
        await store.clear_active(ACTIVE_PERSONA, None)
        cleared = await store.get_active_id(ACTIVE_PERSONA, 4)
        return global_persona.id, own.id, fallback, personal, after_delete, other_family, cleared

    global_id, own_id, fallback, personal, after_delete, other_family, cleared = asyncio.run(scenario())

    assert fallback == global_id
    assert personal == own_id
    assert after_delete == global_id
    assert other_family is None
    assert cleared is None


def test_deleting_lore_database_cascades_to_entries(tmp_path: Path) -> None:
    store = TavernStore(tmp_path / "tavern.db")

    async def scenario():  # type: ignore[no-untyped-def]
        await store.init()
        database = await store.create_lore_database(None, "World", "{}", [LoreEntry(content="x", keys=["k"])])
        await store.set_active(ACTIVE_LORE, None, database.id)
        await store.delete_lore_database(database.id)
        async with aiosqlite.connect(store.db_path) as db:
            async with db.execute("SELECT COUNT(*) FROM lore_entries") as cursor:
                row = await cursor.fetchone()
        return int(row[0]), await store.get_active_id(ACTIVE_LORE, None)

    remaining, active = asyncio.run(scenario())

    assert remaining == 0
    assert active is None


def test_history_keeps_structured_content_and_flags(tmp_path: Path) -> None:
    store = TavernStore(tmp_path / "tavern.db")
    parts = PartsContent((ContentPart("text", text="look"), ContentPart("image", image="data:image/png;base64,AAAA")))
    marker = HistoryItem.create(ROLE_USER, "cleared")
    marker.truncated = True
    items = [HistoryItem.create(ROLE_USER, parts), HistoryItem.create(ROLE_ASSISTANT, "nice"), marker]

    async def scenario():  # type: ignore[no-untyped-def]
        await store.init()
        await store.save_history("1:2:-:-", items)
        return await store.load_history("1:2:-:-"), await store.load_history("missing")

    loaded, missing = asyncio.run(scenario())

    assert loaded == items
    assert loaded[0].text() == "look"
    assert missing == []


@pytest.mark.parametrize("blob", ["{oops", '{"role": "user"}'])
def test_unreadable_history_raises_instead_of_reading_empty(tmp_path: Path, blob: str) -> None:
    store = TavernStore(tmp_path / "tavern.db")

    async def scenario() -> None:
        await store.init()
        async with aiosqlite.connect(store.db_path) as db:
            await db.execute("INSERT INTO session_histories (session_key, items_json) VALUES ('bad', ?)", (blob,))
            await db.commit()
        await store.load_history("bad")

    with pytest.raises(StorageError):
        asyncio.run(scenario())
