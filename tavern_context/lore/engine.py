from __future__ import annotations

import asyncio
import logging
import re
from typing import Iterable, List, Optional, Sequence

from ..common import is_visible
from ..errors import LoreDocumentError, NotFoundError, RewritePatternError
from ..models import PLACEMENT_BEFORE_PERSONA, ROLE_SUMMARY, ROLE_SYSTEM, ROLE_USER, HistoryItem, LoreDatabase, LoreEntry
from ..rewrite.safety import PatternSafetyChecker
from ..storage.active import ACTIVE_LORE
from .documents import parse_lore_document

logger = logging.getLogger("tavern_context.lore")


def build_corpus(history: Iterable[HistoryItem]) -> str:
    return " ".join(item.text(" ") for item in history).casefold()


def _regex_key(key: str) -> str | None:
    if len(key) > 2 and key.startswith("/") and key.endswith("/"):
        return key[1:-1]
    return None


def _key_matches(key: str, corpus: str, checker: PatternSafetyChecker) -> bool:
    key = key.strip()
    if not key:
        return False
    pattern = _regex_key(key)
    if pattern is None:
        return key.casefold() in corpus
    try:
        checker.validate(pattern)
    except RewritePatternError as exc:
        logger.warning("[lore.trigger] ignoring regex key %r: %s", key, exc)
        return False
    return re.search(pattern, corpus, flags=re.IGNORECASE) is not None


def select_triggered_entries(
    entries: Iterable[LoreEntry],
    history: Sequence[HistoryItem],
    checker: PatternSafetyChecker | None = None,
) -> List[LoreEntry]:
    """Entries activated by ``history``, ordered by ascending ``order``."""
    checker = checker or PatternSafetyChecker()
    corpus = build_corpus(history)
    triggered: List[LoreEntry] = []
    for entry in entries:
        if not entry.enabled:
            continue
        if entry.constant:
            triggered.append(entry)
            continue
        matched = any(_key_matches(key, corpus, checker) for key in entry.keys)
        if not matched and entry.selective:
            matched = any(_key_matches(key, corpus, checker) for key in entry.secondary_keys)
        if matched:
            triggered.append(entry)
    triggered.sort(key=lambda entry: entry.order)
    return triggered


def inject_entries(history: Sequence[HistoryItem], triggered: Sequence[LoreEntry]) -> List[HistoryItem]:
    """Insert triggered entries into ``history`` as synthetic system items.

    Before-persona entries go right after the leading system/summary run.
    After-persona entries go right before the trailing run of user items.
    """
    if not triggered:
        return list(history)

    before = [entry for entry in triggered if entry.placement == PLACEMENT_BEFORE_PERSONA]
    after = [entry for entry in triggered if entry.placement != PLACEMENT_BEFORE_PERSONA]

    leading = 0
    for item in history:
        if item.role not in (ROLE_SYSTEM, ROLE_SUMMARY):
            break
        leading += 1

    result = list(history[:leading])
    result.extend(HistoryItem.create(ROLE_SYSTEM, entry.content) for entry in before)
    result.extend(history[leading:])

    if after:
        insert_at = len(result)
        while insert_at > 0 and result[insert_at - 1].role == ROLE_USER:
            insert_at -= 1
        result[insert_at:insert_at] = [HistoryItem.create(ROLE_SYSTEM, entry.content) for entry in after]

    return result


class LoreEngine:
    def __init__(self, store, checker: PatternSafetyChecker | None = None) -> None:
        self.store = store
        self.checker = checker or PatternSafetyChecker()

    async def trigger(
        self,
        database_id: int,
        history: Sequence[HistoryItem],
        extra_entries: Iterable[LoreEntry] = (),
    ) -> List[LoreEntry]:
        entries = list(await self.store.list_lore_entries(database_id))
        entries.extend(extra_entries)
        return await self.trigger_entries(entries, history)

    async def trigger_entries(self, entries: Iterable[LoreEntry], history: Sequence[HistoryItem]) -> List[LoreEntry]:
        # Regex keys may run the safety probe, which blocks.
        return await asyncio.to_thread(select_triggered_entries, list(entries), list(history), self.checker)

    async def inject(
        self,
        database_id: Optional[int],
        history: Sequence[HistoryItem],
        extra_entries: Iterable[LoreEntry] = (),
    ) -> List[HistoryItem]:
        if database_id is None:
            triggered = await self.trigger_entries(extra_entries, history)
        else:
            triggered = await self.trigger(database_id, history, extra_entries)
        if triggered:
            logger.debug("[lore.inject] database=%s triggered=%s", database_id, len(triggered))
        return inject_entries(history, triggered)

    async def load_active(self, owner_id: Optional[int]) -> Optional[LoreDatabase]:
        database_id = await self.store.get_active_id(ACTIVE_LORE, owner_id)
        if database_id is None:
            return None
        return await self.store.get_lore_database(database_id)

    async def list_databases(self, owner_id: Optional[int]) -> List[LoreDatabase]:
        return await self.store.list_lore_databases(owner_id)

    async def save_database(
        self,
        owner_id: Optional[int],
        raw_document: str,
        database_id: int | None = None,
    ) -> LoreDatabase:
        document = parse_lore_document(raw_document)
        if not document.name:
            raise LoreDocumentError("lore database name is required")
        if database_id is None:
            database = await self.store.create_lore_database(owner_id, document.name, raw_document, document.entries)
        else:
            existing = await self.store.get_lore_database(database_id)
            if existing.owner_id != owner_id:
                raise NotFoundError(f"lore database {database_id} not found")
            database = await self.store.replace_lore_database(
                database_id, document.name, raw_document, document.entries
            )
        logger.info(
            "[lore.save] id=%s owner=%s name=%r entries=%s",
            database.id,
            owner_id,
            database.name,
            len(document.entries),
        )
        return database

    async def set_entry_enabled(self, entry_id: int, enabled: bool) -> None:
        await self.store.set_lore_entry_enabled(entry_id, enabled)

    async def activate(self, owner_id: Optional[int], database_id: int) -> None:
        database = await self.store.get_lore_database(database_id)
        if not is_visible(owner_id, database.owner_id):
            raise NotFoundError(f"lore database {database_id} not found")
        await self.store.set_active(ACTIVE_LORE, owner_id, database_id)
        logger.info("[lore.activate] owner=%s database=%s", owner_id, database_id)
