from __future__ import annotations

import asyncio
import logging
import weakref
from typing import List, Optional, Sequence, Union

from ..config import ContextConfig
from ..errors import SummaryError, ValidationError
from ..models import (
    CONVERSATION_ROLES,
    HISTORY_ROLES,
    ROLE_SUMMARY,
    ROLE_SYSTEM,
    ROLE_USER,
    BuildContext,
    Content,
    HistoryItem,
    SessionKey,
)
from ..prompts.context import build_summary_item_text, build_summary_request, clear_marker_text
from .scheduler import SummaryScheduler
from .tokens import estimate_tokens

logger = logging.getLogger("tavern_context.memory")


def last_marker_index(history: Sequence[HistoryItem]) -> int:
    for index in range(len(history) - 1, -1, -1):
        if history[index].truncated:
            return index
    return -1


def build_view(history: Sequence[HistoryItem]) -> List[HistoryItem]:
    """Items after the last truncation marker, as ``[system..., summary..., conversation...]``."""
    working = history[last_marker_index(history) + 1 :]
    system = [item for item in working if item.role == ROLE_SYSTEM]
    summaries = [item for item in working if item.role == ROLE_SUMMARY]
    conversation = [item for item in working if item.role in CONVERSATION_ROLES]
    return system + summaries + conversation


class ContextManager:
    """Per-session history with token budgeting and background summarization."""

    def __init__(
        self,
        store,
        llm,
        config: ContextConfig | None = None,
        *,
        summary_enabled: bool = True,
        summary_timeout_seconds: float = 60.0,
    ) -> None:
        self.store = store
        self.llm = llm
        self.config = config or ContextConfig()
        self.summary_enabled = summary_enabled and llm is not None
        self.summary_timeout_seconds = summary_timeout_seconds
        self.scheduler = SummaryScheduler(self.trigger_summary)
        # A lock lives only while some coroutine holds or awaits it.
        self._locks: weakref.WeakValueDictionary[SessionKey, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, session: SessionKey) -> asyncio.Lock:
        lock = self._locks.get(session)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session] = lock
        return lock

    async def add_message(
        self,
        session: SessionKey,
        role: str,
        content: Union[Content, str, list, None],
    ) -> HistoryItem:
        if role not in HISTORY_ROLES:
            raise ValidationError(f"unsupported history role: {role!r}")
        item = HistoryItem.create(role, content)
        async with self._lock(session):
            history = await self.store.load_history(session.storage_key)
            history.append(item)
            await self.store.save_history(session.storage_key, history)
            view = build_view(history)

        if self.summary_enabled:
            estimated = estimate_tokens(view, self.config)
            if estimated > self.config.summary_trigger_tokens:
                logger.debug(
                    "[memory.summary] session=%s estimated=%.1f threshold=%.1f",
                    session.storage_key,
                    estimated,
                    self.config.summary_trigger_tokens,
                )
                self.scheduler.schedule(session)
        return item

    async def get_build_history(self, session: SessionKey) -> List[HistoryItem]:
        return build_view(await self.store.load_history(session.storage_key))

    async def get_full_history(self, session: SessionKey) -> List[HistoryItem]:
        history = await self.store.load_history(session.storage_key)
        return [item for item in history if item.role in CONVERSATION_ROLES]

    async def clear_history(self, session: SessionKey) -> None:
        marker = HistoryItem.create(ROLE_SYSTEM, clear_marker_text())
        marker.truncated = True
        async with self._lock(session):
            history = await self.store.load_history(session.storage_key)
            history.append(marker)
            await self.store.save_history(session.storage_key, history)
        logger.info("[memory.clear] session=%s", session.storage_key)

    async def build_context(
        self,
        session: SessionKey,
        owner_id: Optional[int],
        current_input: str,
        api_family: str = "",
    ) -> BuildContext:
        return BuildContext(
            owner_id=owner_id,
            history=await self.get_build_history(session),
            current_input=current_input,
            api_family=api_family,
        )

    async def _request_summary(self, prompt: str) -> str:
        try:
            reply = await asyncio.wait_for(
                self.llm.chat([{"role": ROLE_USER, "content": prompt}]),
                timeout=self.summary_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise SummaryError(f"summary request timed out after {self.summary_timeout_seconds}s") from exc
        except Exception as exc:
            raise SummaryError(f"failed to generate summary: {exc}") from exc
        summary = str(reply or "").strip()
        if not summary:
            raise SummaryError("received empty summary from the model")
        return summary

    async def trigger_summary(self, session: SessionKey) -> bool:
        """Fold older conversation into one summary item.

        Returns ``False`` when there was nothing to summarize or the history
        changed underneath the request in a way that invalidates it.
        """
        async with self._lock(session):
            snapshot = await self.store.load_history(session.storage_key)

        marker_index = last_marker_index(snapshot)
        view = build_view(snapshot)
        system_items = [item for item in view if item.role == ROLE_SYSTEM]
        summaries = [item for item in view if item.role == ROLE_SUMMARY]
        conversation = [item for item in view if item.role in CONVERSATION_ROLES]

        keep = self.config.min_recent_pairs * 2
        if len(conversation) <= keep:
            return False
        older = conversation[: len(conversation) - keep]
        recent = conversation[len(conversation) - keep :]

        prompt = build_summary_request((item.role, item.text("\n")) for item in older)
        summary = await self._request_summary(prompt)
        summary_item = HistoryItem.create(ROLE_SUMMARY, build_summary_item_text(summary))

        async with self._lock(session):
            current = await self.store.load_history(session.storage_key)
            if current[: len(snapshot)] != snapshot:
                logger.info(
                    "[memory.summary] history rewritten during summary for session=%s, discarding result",
                    session.storage_key,
                )
                return False
            appended = current[len(snapshot) :]
            rewritten = list(snapshot[: marker_index + 1])
            rewritten.extend(system_items)
            rewritten.extend(summaries)
            rewritten.append(summary_item)
            rewritten.extend(recent)
            rewritten.extend(appended)
            await self.store.save_history(session.storage_key, rewritten)

        logger.info(
            "[memory.summary] session=%s summarized=%s kept=%s appended_during=%s",
            session.storage_key,
            len(older),
            len(recent),
            len(appended),
        )
        return True

    async def drain(self) -> None:
        await self.scheduler.drain()

    async def aclose(self) -> None:
        await self.scheduler.aclose()
