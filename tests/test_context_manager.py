from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import aiosqlite
import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tavern_context.config import ContextConfig  # noqa: E402
from tavern_context.errors import StorageError, SummaryError, ValidationError  # noqa: E402
from tavern_context.memory.context import ContextManager, build_view  # noqa: E402
from tavern_context.memory.tokens import estimate_tokens  # noqa: E402
from tavern_context.models import (  # noqa: E402
    ROLE_ASSISTANT,
    ROLE_SUMMARY,
    ROLE_SYSTEM,
    ROLE_USER,
    HistoryItem,
    SessionKey,
)
from tavern_context.storage.store import TavernStore  # noqa: E402


SESSION = SessionKey(chat_id=10, bot_id=1, user_id=5)
SMALL_BUDGET = ContextConfig(
    max_context_length=256,
    summary_threshold=0.5,
    min_recent_pairs=1,
    tokens_per_message=10.0,
    tokens_per_char=1.0,
)


class _FakeLLM:
    def __init__(self, reply: str = "They talked.", gate: asyncio.Event | None = None) -> None:
        self.reply = reply
        self.gate = gate
        self.calls: list[list[dict[str, str]]] = []

    async def chat(self, messages, temperature=None, max_output_tokens=None):  # type: ignore[no-untyped-def]
        self.calls.append(list(messages))
        if self.gate is not None:
            await self.gate.wait()
        return self.reply


class _FailingLLM:
    async def chat(self, messages, temperature=None, max_output_tokens=None):  # type: ignore[no-untyped-def]
        raise RuntimeError("upstream exploded")


class _SlowLLM:
    async def chat(self, messages, temperature=None, max_output_tokens=None):  # type: ignore[no-untyped-def]
        await asyncio.sleep(5)
        return "too late"


class _RewritingLLM:
    def __init__(self, store: TavernStore) -> None:
        self.store = store

    async def chat(self, messages, temperature=None, max_output_tokens=None):  # type: ignore[no-untyped-def]
        await self.store.save_history(SESSION.storage_key, [HistoryItem.create(ROLE_USER, "replaced")])
        return "summary"


def _manager(tmp_path: Path, llm=None, **kwargs) -> ContextManager:  # type: ignore[no-untyped-def]
    store = TavernStore(tmp_path / "tavern.db")
    return ContextManager(store, llm, kwargs.pop("config", SMALL_BUDGET), **kwargs)


def test_view_orders_system_then_summary_then_conversation() -> None:
    history = [
        HistoryItem.create(ROLE_USER, "u1"),
        HistoryItem.create(ROLE_SYSTEM, "s1"),
        HistoryItem.create(ROLE_ASSISTANT, "a1"),
        HistoryItem.create(ROLE_SUMMARY, "sum"),
        HistoryItem.create(ROLE_USER, "u2"),
    ]
    assert [item.text() for item in build_view(history)] == ["s1", "sum", "u1", "a1", "u2"]


def test_estimate_grows_with_every_item() -> None:
    items: list[HistoryItem] = []
    previous = estimate_tokens(items, ContextConfig())
    for text in ("", "a", "hello there"):
        items.append(HistoryItem.create(ROLE_USER, text))
        current = estimate_tokens(items, ContextConfig())
        assert current > previous
        previous = current


def test_clear_hides_earlier_items_but_keeps_them_stored(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    async def scenario():  # type: ignore[no-untyped-def]
        await manager.store.init()
        await manager.add_message(SESSION, ROLE_USER, "hello")
        await manager.add_message(SESSION, ROLE_ASSISTANT, "hi")
        await manager.clear_history(SESSION)
        empty = await manager.get_build_history(SESSION)
        await manager.add_message(SESSION, ROLE_USER, "again")
        after = await manager.get_build_history(SESSION)
        full = await manager.get_full_history(SESSION)
        raw = await manager.store.load_history(SESSION.storage_key)
        return empty, after, full, raw

    empty, after, full, raw = asyncio.run(scenario())

    assert empty == []
    assert [item.text() for item in after] == ["again"]
    assert [item.text() for item in full] == ["hello", "hi", "again"]
    assert raw[2].truncated is True
    assert raw[2].text() == "[Conversation cleared by user]"


def test_sessions_do_not_share_history(tmp_path: Path) -> None:
    manager = _manager(tmp_path)
    other = SessionKey(chat_id=10, bot_id=1, user_id=6)

    async def scenario():  # type: ignore[no-untyped-def]
        await manager.store.init()
        await manager.add_message(SESSION, ROLE_USER, "mine")
        return await manager.get_build_history(other)

    assert asyncio.run(scenario()) == []


def test_unknown_roles_are_rejected(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    async def scenario() -> None:
        await manager.store.init()
        await manager.add_message(SESSION, "tool", "nope")

    with pytest.raises(ValidationError):
        asyncio.run(scenario())


def test_summary_folds_older_turns_and_keeps_clear_marker_prefix(tmp_path: Path) -> None:
    llm = _FakeLLM()
    manager = _manager(tmp_path, llm)

    async def scenario():  # type: ignore[no-untyped-def]
        await manager.store.init()
        await manager.add_message(SESSION, ROLE_USER, "before clear")
        await manager.clear_history(SESSION)
        await manager.add_message(SESSION, ROLE_SYSTEM, "rules")
        await manager.add_message(SESSION, ROLE_USER, "x" * 40)
        await manager.add_message(SESSION, ROLE_ASSISTANT, "y" * 40)
        await manager.add_message(SESSION, ROLE_USER, "z" * 40)
        await manager.drain()
        return await manager.store.load_history(SESSION.storage_key), await manager.get_build_history(SESSION)

    raw, view = asyncio.run(scenario())

    assert len(llm.calls) == 1
    prompt = llm.calls[0][0]["content"]
    assert prompt.startswith("Please provide a concise summary")
    assert "user: " + "x" * 40 in prompt
    assert "y" * 40 not in prompt

    assert raw[0].text() == "before clear"
    assert raw[1].truncated is True
    assert [item.role for item in raw[2:]] == [ROLE_SYSTEM, ROLE_SUMMARY, ROLE_ASSISTANT, ROLE_USER]
    assert raw[3].text() == "Previous conversation summary: They talked."
    assert [item.text() for item in view] == [
        "rules",
        "Previous conversation summary: They talked.",
        "y" * 40,
        "z" * 40,
    ]


def test_summary_failure_is_logged_and_never_reaches_the_caller(
    tmp_path: Path, caplog: pytest.LogCaptureFixture
) -> None:
    manager = _manager(tmp_path, _FailingLLM())

    async def scenario():  # type: ignore[no-untyped-def]
        await manager.store.init()
        for role, text in ((ROLE_USER, "a" * 60), (ROLE_ASSISTANT, "b" * 60), (ROLE_USER, "c" * 60)):
            await manager.add_message(SESSION, role, text)
        await manager.drain()
        return await manager.get_build_history(SESSION)

    with caplog.at_level(logging.WARNING, logger="tavern_context.memory"):
        view = asyncio.run(scenario())

    assert [item.role for item in view] == [ROLE_USER, ROLE_ASSISTANT, ROLE_USER]
    assert "upstream exploded" in caplog.text


def test_only_one_summary_runs_per_session(tmp_path: Path) -> None:
    async def scenario():  # type: ignore[no-untyped-def]
        gate = asyncio.Event()
        llm = _FakeLLM(gate=gate)
        manager = _manager(tmp_path, llm)
        await manager.store.init()
        for index in range(6):
            role = ROLE_USER if index % 2 == 0 else ROLE_ASSISTANT
            await manager.add_message(SESSION, role, f"{index}" * 60)
        pending = manager.scheduler.pending_count
        gate.set()
        await manager.drain()
        history = await manager.store.load_history(SESSION.storage_key)
        return llm, pending, history

    llm, pending, history = asyncio.run(scenario())

    assert pending == 1
    assert len(llm.calls) == 1
    # Messages appended while the summary ran survive the rewrite.
    assert history[-1].text() == "5" * 60
    assert sum(1 for item in history if item.role == ROLE_SUMMARY) == 1


def test_summary_is_discarded_when_history_was_rewritten(tmp_path: Path) -> None:
    store = TavernStore(tmp_path / "tavern.db")
    manager = ContextManager(store, _RewritingLLM(store), SMALL_BUDGET, summary_enabled=False)

    async def scenario():  # type: ignore[no-untyped-def]
        await store.init()
        for role, text in ((ROLE_USER, "one"), (ROLE_ASSISTANT, "two"), (ROLE_USER, "three")):
            await manager.add_message(SESSION, role, text)
        applied = await manager.trigger_summary(SESSION)
        return applied, await store.load_history(SESSION.storage_key)

    applied, history = asyncio.run(scenario())

    assert applied is False
    assert [item.text() for item in history] == ["replaced"]


def test_summary_timeout_raises_summary_error(tmp_path: Path) -> None:
    manager = _manager(tmp_path, _SlowLLM(), summary_enabled=False, summary_timeout_seconds=0.05)

    async def scenario() -> None:
        await manager.store.init()
        for role, text in ((ROLE_USER, "one"), (ROLE_ASSISTANT, "two"), (ROLE_USER, "three")):
            await manager.add_message(SESSION, role, text)
        await manager.trigger_summary(SESSION)

    with pytest.raises(SummaryError, match="timed out"):
        asyncio.run(scenario())


def test_nothing_to_summarize_with_only_recent_turns(tmp_path: Path) -> None:
    llm = _FakeLLM()
    manager = _manager(tmp_path, llm)

    async def scenario() -> bool:
        await manager.store.init()
        await manager.add_message(SESSION, ROLE_USER, "hi")
        await manager.add_message(SESSION, ROLE_ASSISTANT, "hello")
        return await manager.trigger_summary(SESSION)

    assert asyncio.run(scenario()) is False
    assert llm.calls == []


def test_without_llm_summaries_are_never_scheduled(tmp_path: Path) -> None:
    manager = _manager(tmp_path, None)

    async def scenario() -> int:
        await manager.store.init()
        for index in range(4):
            await manager.add_message(SESSION, ROLE_USER, "w" * 200)
        return manager.scheduler.pending_count

    assert manager.summary_enabled is False
    assert asyncio.run(scenario()) == 0


def test_concurrent_adds_on_one_session_keep_every_message(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    async def scenario() -> list[HistoryItem]:
        await manager.store.init()
        await asyncio.gather(*(manager.add_message(SESSION, ROLE_USER, f"message {index}") for index in range(20)))
        return await manager.store.load_history(SESSION.storage_key)

    history = asyncio.run(scenario())

    assert len(history) == 20
    assert sorted(item.text() for item in history) == sorted(f"message {index}" for index in range(20))


def test_corrupt_history_survives_a_failed_add(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    async def scenario() -> str:
        await manager.store.init()
        await manager.add_message(SESSION, ROLE_USER, "one")
        await manager.add_message(SESSION, ROLE_ASSISTANT, "two")
        async with aiosqlite.connect(manager.store.db_path) as db:
            await db.execute(
                "UPDATE session_histories SET items_json = items_json || 'x' WHERE session_key = ?",
                (SESSION.storage_key,),
            )
            await db.commit()
        for call in (manager.add_message(SESSION, ROLE_USER, "new"), manager.clear_history(SESSION)):
            with pytest.raises(StorageError):
                await call
        async with aiosqlite.connect(manager.store.db_path) as db:
            async with db.execute(
                "SELECT items_json FROM session_histories WHERE session_key = ?",
                (SESSION.storage_key,),
            ) as cursor:
                row = await cursor.fetchone()
        return str(row[0])

    blob = asyncio.run(scenario())

    assert blob.endswith("x")
    assert '"one"' in blob and '"two"' in blob
    assert '"new"' not in blob


def test_idle_session_locks_are_dropped(tmp_path: Path) -> None:
    manager = _manager(tmp_path)

    async def scenario() -> int:
        await manager.store.init()
        for chat_id in range(5):
            await manager.add_message(SessionKey(chat_id=chat_id, bot_id=1), ROLE_USER, "hi")
        await manager.clear_history(SESSION)
        return len(manager._locks)

    assert asyncio.run(scenario()) == 0
