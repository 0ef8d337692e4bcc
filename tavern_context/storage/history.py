from __future__ import annotations

import json
from typing import List

from ..errors import StorageError
from ..models import HistoryItem


class HistoryMixin:
    async def load_history(self, session_key: str) -> List[HistoryItem]:
        async with self._connect() as db:
            async with db.execute(
                "SELECT items_json FROM session_histories WHERE session_key = ?",
                (session_key,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            return []
        try:
            payload = json.loads(str(row["items_json"]))
        except json.JSONDecodeError as exc:
            raise StorageError(f"stored history for session {session_key!r} is not valid JSON") from exc
        if not isinstance(payload, list):
            raise StorageError(f"stored history for session {session_key!r} is not a list")
        return [HistoryItem.from_dict(item) for item in payload if isinstance(item, dict)]

    async def save_history(self, session_key: str, items: List[HistoryItem]) -> None:
        encoded = json.dumps([item.to_dict() for item in items], ensure_ascii=False)
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO session_histories (session_key, items_json, updated_at)
                VALUES (?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(session_key) DO UPDATE SET
                    items_json = excluded.items_json,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (session_key, encoded),
            )
            await db.commit()
