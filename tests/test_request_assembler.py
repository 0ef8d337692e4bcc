from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tavern_context.assembler import RequestAssembler, enforce_role_alternation  # noqa: E402
from tavern_context.errors import PersonaDocumentError  # noqa: E402
from tavern_context.lore.engine import select_triggered_entries  # noqa: E402
from tavern_context.models import (  # noqa: E402
    DIRECTION_INPUT,
    DIRECTION_OUTPUT,
    PLACEMENT_AFTER_PERSONA,
    PLACEMENT_BEFORE_PERSONA,
    ROLE_ASSISTANT,
    ROLE_SUMMARY,
    ROLE_SYSTEM,
    ROLE_USER,
    BuildContext,
    HistoryItem,
    LoreDatabase,
    LoreEntry,
    RewriteRule,
)
from tavern_context.persona.cards import CharacterCard  # noqa: E402
from tavern_context.presets.loader import parse_preset_parameters  # noqa: E402
from tavern_context.rewrite.rules import RegexRewriter  # noqa: E402
from tavern_context.rewrite.safety import PatternSafetyChecker  # noqa: E402
from tavern_context.storage.store import TavernStore  # noqa: E402


class _FakeRewriter:
    def __init__(self, replacements: dict[str, str] | None = None) -> None:
        self.replacements = replacements or {}
        self.calls: list[tuple[str, int | None, str]] = []

    async def apply(self, direction: str, owner_id: int | None, text: str) -> str:
        self.calls.append((direction, owner_id, text))
        for old, new in self.replacements.items():
            text = text.replace(old, new)
        return text


class _BrokenRewriter:
    async def apply(self, direction: str, owner_id: int | None, text: str) -> str:
        raise RuntimeError("rewrite store offline")


class _FakePersonas:
    def __init__(self, card: CharacterCard | None = None, error: Exception | None = None) -> None:
        self.card = card
        self.error = error

    async def load_card(self, owner_id: int | None) -> CharacterCard | None:
        if self.error is not None:
            raise self.error
        return self.card


class _FakeLore:
    def __init__(self, entries: list[LoreEntry]) -> None:
        self.entries = entries

    async def load_active(self, owner_id: int | None) -> LoreDatabase:
        return LoreDatabase(id=1, owner_id=None, name="World", raw_document="{}")

    async def trigger(self, database_id, history, extra_entries=()):  # type: ignore[no-untyped-def]
        return await self.trigger_entries([*self.entries, *extra_entries], history)

    async def trigger_entries(self, entries, history):  # type: ignore[no-untyped-def]
        return select_triggered_entries(entries, history, PatternSafetyChecker(run_probe=False))


class _FakePresets:
    def __init__(self, raw: dict[str, object]) -> None:
        self.raw = raw
        self.families: list[str] = []

    async def load_parameters(self, owner_id: int | None, api_family: str):  # type: ignore[no-untyped-def]
        self.families.append(api_family)
        return parse_preset_parameters(self.raw)


def _items(*pairs: tuple[str, str]) -> list[HistoryItem]:
    return [HistoryItem.create(role, text) for role, text in pairs]


def _build(assembler: RequestAssembler, history: list[HistoryItem], text: str, api_family: str = ""):  # type: ignore[no-untyped-def]
    return asyncio.run(assembler.build(BuildContext(owner_id=7, history=history, current_input=text, api_family=api_family)))


def _assert_alternates(messages) -> None:  # type: ignore[no-untyped-def]
    conversation = [message for message in messages if message.role != ROLE_SYSTEM]
    assert conversation
    assert conversation[0].role == ROLE_USER
    assert conversation[-1].role == ROLE_USER
    for previous, current in zip(conversation, conversation[1:]):
        assert previous.role != current.role


def test_same_role_turns_are_merged_and_input_closes_the_request() -> None:
    history = _items((ROLE_USER, "Hi"), (ROLE_USER, "Still there?"), (ROLE_ASSISTANT, "Yes"))

    request = _build(RequestAssembler(), history, "Great")

    assert [(message.role, message.content) for message in request.messages] == [
        (ROLE_USER, "Hi\n\nStill there?"),
        (ROLE_ASSISTANT, "Yes"),
        (ROLE_USER, "Great"),
    ]


@pytest.mark.parametrize(
    "pairs,raw_input",
    [
        ([], ""),
        ([], "hello"),
        ([(ROLE_ASSISTANT, "Welcome!")], ""),
        ([(ROLE_ASSISTANT, "a"), (ROLE_ASSISTANT, "b")], "x"),
        ([(ROLE_USER, "u"), (ROLE_ASSISTANT, "a")], "   "),
        ([(ROLE_SYSTEM, "s"), (ROLE_USER, ""), (ROLE_ASSISTANT, "a"), (ROLE_USER, "u")], ""),
        ([(ROLE_USER, "u1"), (ROLE_USER, "u2"), (ROLE_USER, "u3")], "u4"),
    ],
)
def test_alternation_invariants_hold(pairs: list[tuple[str, str]], raw_input: str) -> None:
    _assert_alternates(enforce_role_alternation(pairs, raw_input))


def test_leading_assistant_gets_a_placeholder_user_turn() -> None:
    messages = enforce_role_alternation([(ROLE_ASSISTANT, "Welcome!")], "")
    assert [(message.role, message.content) for message in messages] == [
        (ROLE_USER, "[conversation start]"),
        (ROLE_ASSISTANT, "Welcome!"),
        (ROLE_USER, "[continue]"),
    ]


def test_system_message_orders_lore_around_persona() -> None:
    card = CharacterCard(name="Mira", description="Mira is a smuggler.")
    lore = _FakeLore(
        [
            LoreEntry(content="Dragons are rare.", keys=["dragon"], placement=PLACEMENT_BEFORE_PERSONA, order=1),
            LoreEntry(content="The harbor is closed.", keys=["harbor"], placement=PLACEMENT_AFTER_PERSONA, order=2),
        ]
    )
    history = _items(
        (ROLE_SYSTEM, "Be concise."),
        (ROLE_SUMMARY, "Previous conversation summary: they met."),
        (ROLE_USER, "Any dragons?"),
        (ROLE_ASSISTANT, "Maybe."),
    )

    request = _build(RequestAssembler(personas=_FakePersonas(card), lore=lore), history, "Head to the harbor")

    system = request.messages[0]
    assert system.role == ROLE_SYSTEM
    assert system.content == "\n\n".join(
        [
            "Be concise.",
            "Previous conversation summary: they met.",
            "Dragons are rare.",
            "Mira is a smuggler.\n\n",
            "The harbor is closed.",
        ]
    )
    assert [message.role for message in request.messages[1:]] == [ROLE_USER, ROLE_ASSISTANT, ROLE_USER]
    assert request.messages[-1].content == "Head to the harbor"


def test_embedded_character_book_triggers_without_active_database() -> None:
    card = CharacterCard(
        name="Mira",
        description="Mira.",
        lore_entries=[LoreEntry(content="The bell rings at noon.", keys=["bell"])],
    )

    class _NoDatabase(_FakeLore):
        async def load_active(self, owner_id: int | None) -> None:  # type: ignore[override]
            return None

    request = _build(
        RequestAssembler(personas=_FakePersonas(card), lore=_NoDatabase([])),
        [],
        "ring the bell",
    )

    assert "The bell rings at noon." in request.messages[0].content


def test_input_is_rewritten_before_it_is_sent() -> None:
    rewriter = _FakeRewriter({"hello": "hi"})
    request = _build(RequestAssembler(rewriter=rewriter), [], "hello world")

    assert request.messages[-1].content == "hi world"
    assert rewriter.calls == [(DIRECTION_INPUT, 7, "hello world")]


def test_failing_collaborators_degrade_with_logs(caplog: pytest.LogCaptureFixture) -> None:
    assembler = RequestAssembler(
        rewriter=_BrokenRewriter(),
        personas=_FakePersonas(error=PersonaDocumentError("card is corrupt")),
    )

    with caplog.at_level(logging.WARNING, logger="tavern_context.assembler"):
        request = _build(assembler, _items((ROLE_ASSISTANT, "Hello")), "raw text")

    assert [message.role for message in request.messages] == [ROLE_USER, ROLE_ASSISTANT, ROLE_USER]
    assert request.messages[-1].content == "raw text"
    assert "card is corrupt" in caplog.text
    assert "rewrite failed" in caplog.text


def test_preset_is_applied_for_the_requested_api_family() -> None:
    presets = _FakePresets({"temperature": 0.8, "max_tokens": 300, "stop": ["\nUser:"]})
    assembler = RequestAssembler(presets=presets, model="gemini-2.5-flash")

    request = _build(assembler, [], "hi", api_family="gemini")
    bare = _build(assembler, [], "hi")

    assert presets.families == ["gemini"]
    payload = request.to_payload()
    assert payload["model"] == "gemini-2.5-flash"
    assert payload["temperature"] == pytest.approx(0.8)
    assert payload["max_tokens"] == 300
    assert payload["stop"] == ["\nUser:"]
    assert bare.temperature is None


def test_empty_input_after_assistant_turn_uses_continue_placeholder() -> None:
    request = _build(RequestAssembler(), _items((ROLE_USER, "hi"), (ROLE_ASSISTANT, "hello")), "")
    assert request.messages[-1].content == "[continue]"


def test_truncated_items_never_reach_the_request() -> None:
    marker = HistoryItem.create(ROLE_SYSTEM, "[Conversation cleared by user]")
    marker.truncated = True
    request = _build(RequestAssembler(), [marker], "hi")
    assert [message.role for message in request.messages] == [ROLE_USER]


def test_output_rewrite_uses_only_output_rules(tmp_path: Path) -> None:
    store = TavernStore(tmp_path / "tavern.db")
    assembler = RequestAssembler(rewriter=RegexRewriter(store, PatternSafetyChecker(run_probe=False)))

    async def scenario() -> tuple[str, str]:
        await store.init()
        await assembler.rewriter.save_rule(RewriteRule(pattern="hello", replacement="hi", direction=DIRECTION_INPUT))
        await assembler.rewriter.save_rule(
            RewriteRule(pattern=r"\*(\w+)\*", replacement="_${1}_", direction=DIRECTION_OUTPUT)
        )
        rewritten = await assembler.rewrite_output(7, "hello *waves*")
        request = await assembler.build(BuildContext(owner_id=7, history=[], current_input="hello *waves*"))
        return rewritten, request.messages[-1].content

    output, sent = asyncio.run(scenario())

    assert output == "hello _waves_"
    assert sent == "hi *waves*"


def test_output_rewrite_failure_returns_raw_reply(caplog: pytest.LogCaptureFixture) -> None:
    assembler = RequestAssembler(rewriter=_BrokenRewriter())

    with caplog.at_level(logging.WARNING, logger="tavern_context.assembler"):
        reply = asyncio.run(assembler.rewrite_output(7, "model reply"))

    assert reply == "model reply"
    assert "output rewrite failed" in caplog.text
