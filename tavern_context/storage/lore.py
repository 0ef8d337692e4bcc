from __future__ import annotations

from typing import Iterable, List, Optional

import aiosqlite

from ..errors import NotFoundError
from ..models import LoreDatabase, LoreEntry
from .utils import dump_str_list, load_str_list, optional_int, owner_filter


def _row_to_database(row: aiosqlite.Row) -> LoreDatabase:
    return LoreDatabase(
        id=int(row["id"]),
        owner_id=optional_int(row["owner_id"]),
        name=str(row["name"]),
        raw_document=str(row["raw_document"]),
    )


def _row_to_entry(row: aiosqlite.Row) -> LoreEntry:
    return LoreEntry(
        id=int(row["id"]),
        database_id=int(row["database_id"]),
        uid=str(row["uid"]),
        keys=load_str_list(row["keys_json"]),
        secondary_keys=load_str_list(row["secondary_keys_json"]),
        content=str(row["content"]),
        comment=str(row["comment"]),
        constant=bool(row["constant"]),
        selective=bool(row["selective"]),
        order=int(row["sort_order"]),
        placement=str(row["placement"]),
        enabled=bool(row["enabled"]),
    )


class LoreMixin:
    async def _insert_lore_entries(
        self,
        db: aiosqlite.Connection,
        database_id: int,
        entries: Iterable[LoreEntry],
    ) -> None:
        await db.executemany(
            """
            INSERT INTO lore_entries (
                database_id, uid, keys_json, secondary_keys_json, content, comment,
                constant, selective, sort_order, placement, enabled
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    database_id,
                    entry.uid,
                    dump_str_list(entry.keys),
                    dump_str_list(entry.secondary_keys),
                    entry.content,
                    entry.comment,
                    int(entry.constant),
                    int(entry.selective),
                    int(entry.order),
                    entry.placement,
                    int(entry.enabled),
                )
                for entry in entries
            ],
        )

    async def create_lore_database(
        self,
        owner_id: Optional[int],
        name: str,
        raw_document: str,
        entries: Iterable[LoreEntry],
    ) -> LoreDatabase:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO lore_databases (owner_id, name, raw_document, created_at, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                """,
                (owner_id, name, raw_document),
            )
            database_id = int(cursor.lastrowid)
            await self._insert_lore_entries(db, database_id, entries)
            await db.commit()
        return LoreDatabase(id=database_id, owner_id=owner_id, name=name, raw_document=raw_document)

    async def replace_lore_database(
        self,
        database_id: int,
        name: str,
        raw_document: str,
        entries: Iterable[LoreEntry],
    ) -> LoreDatabase:
        """Overwrite a database document and replace its entries wholesale."""
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE lore_databases
                SET name = ?, raw_document = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (name, raw_document, database_id),
            )
            if cursor.rowcount == 0:
                await db.rollback()
                raise NotFoundError(f"lore database {database_id} not found")
            await db.execute("DELETE FROM lore_entries WHERE database_id = ?", (database_id,))
            await self._insert_lore_entries(db, database_id, entries)
            await db.commit()
        return await self.get_lore_database(database_id)

    async def get_lore_database(self, database_id: int) -> LoreDatabase:
        async with self._connect() as db:
            async with db.execute(
                "SELECT id, owner_id, name, raw_document FROM lore_databases WHERE id = ?",
                (database_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"lore database {database_id} not found")
        return _row_to_database(row)

    async def list_lore_databases(self, owner_id: Optional[int]) -> List[LoreDatabase]:
        clause, params = owner_filter(owner_id)
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT id, owner_id, name, raw_document
                FROM lore_databases
                WHERE {clause}
                ORDER BY id ASC
                """,
                params,
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_database(row) for row in rows]

    async def delete_lore_database(self, database_id: int) -> None:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM lore_databases WHERE id = ?", (database_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"lore database {database_id} not found")
            await db.execute(
                "DELETE FROM active_selections WHERE kind = 'lore' AND resource_id = ?",
                (database_id,),
            )
            await db.commit()

    async def list_lore_entries(self, database_id: int) -> List[LoreEntry]:
        async with self._connect() as db:
            async with db.execute("SELECT 1 FROM lore_databases WHERE id = ?", (database_id,)) as cursor:
                if await cursor.fetchone() is None:
                    raise NotFoundError(f"lore database {database_id} not found")
            async with db.execute(
                """
                SELECT id, database_id, uid, keys_json, secondary_keys_json, content, comment,
                       constant, selective, sort_order, placement, enabled
                FROM lore_entries
                WHERE database_id = ?
                ORDER BY sort_order ASC, id ASC
                """,
                (database_id,),
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    async def set_lore_entry_enabled(self, entry_id: int, enabled: bool) -> None:
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE lore_entries SET enabled = ? WHERE id = ?",
                (int(enabled), entry_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"lore entry {entry_id} not found")
