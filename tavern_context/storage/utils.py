from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import aiosqlite


def sqlite_busy_timeout_ms(default: int = 5000) -> int:
    raw = os.getenv("STORE_SQLITE_BUSY_TIMEOUT_MS", str(default)).strip()
    try:
        timeout = int(raw)
    except ValueError:
        timeout = default
    return max(0, min(timeout, 60000))


@asynccontextmanager
async def sqlite_connection(db_path: str | Path, busy_timeout_ms: int) -> AsyncIterator[aiosqlite.Connection]:
    async with aiosqlite.connect(db_path) as db:
        await db.execute("PRAGMA foreign_keys=ON")
        if busy_timeout_ms > 0:
            await db.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
        db.row_factory = aiosqlite.Row
        yield db


def owner_filter(owner_id: Optional[int], column: str = "owner_id") -> tuple[str, tuple[object, ...]]:
    """SQL clause selecting rows visible to ``owner_id``: globals plus the owner's own."""
    if owner_id is None:
        return f"{column} IS NULL", ()
    return f"({column} IS NULL OR {column} = ?)", (owner_id,)


def scope_key(owner_id: Optional[int]) -> str:
    return "global" if owner_id is None else str(owner_id)


def optional_int(value: object) -> Optional[int]:
    if value is None:
        return None
    return int(value)


def dump_str_list(values: list[str]) -> str:
    return json.dumps(list(values), ensure_ascii=False)


def load_str_list(raw: object) -> list[str]:
    if not raw:
        return []
    try:
        payload = json.loads(str(raw))
    except json.JSONDecodeError:
        return []
    if not isinstance(payload, list):
        return []
    return [str(item) for item in payload if isinstance(item, str)]
