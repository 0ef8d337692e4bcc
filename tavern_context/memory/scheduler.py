from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict

from ..errors import SummaryError
from ..models import SessionKey

logger = logging.getLogger("tavern_context.memory")


class SummaryScheduler:
    """Runs at most one background summary per session.

    A request for a session that already has a summary in flight is dropped;
    the next threshold crossing schedules again. Failures are logged here and
    never reach the code that added the message.
    """

    def __init__(self, runner: Callable[[SessionKey], Awaitable[object]]) -> None:
        self._runner = runner
        self._tasks: Dict[SessionKey, asyncio.Task] = {}

    def in_flight(self, session: SessionKey) -> bool:
        task = self._tasks.get(session)
        return task is not None and not task.done()

    @property
    def pending_count(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def schedule(self, session: SessionKey) -> bool:
        if self.in_flight(session):
            logger.debug("[memory.summary] already running for session=%s, skipped", session.storage_key)
            return False
        task = asyncio.create_task(self._run(session), name=f"summary:{session.storage_key}")
        self._tasks[session] = task
        return True

    async def _run(self, session: SessionKey) -> None:
        try:
            await self._runner(session)
        except asyncio.CancelledError:
            raise
        except SummaryError as exc:
            logger.warning("[memory.summary] skipped for session=%s: %s", session.storage_key, exc)
        except Exception:
            logger.exception("Summary worker error for session=%s", session.storage_key)
        finally:
            if self._tasks.get(session) is asyncio.current_task():
                del self._tasks[session]

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
            for key in [key for key, task in self._tasks.items() if task.done()]:
                del self._tasks[key]

    async def aclose(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
