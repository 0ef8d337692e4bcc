from __future__ import annotations

from typing import List, Optional

import aiosqlite

from ..errors import NotFoundError
from ..models import Persona
from .utils import optional_int, owner_filter


def _row_to_persona(row: aiosqlite.Row) -> Persona:
    return Persona(
        id=int(row["id"]),
        owner_id=optional_int(row["owner_id"]),
        name=str(row["name"]),
        raw_document=str(row["raw_document"]),
    )


class PersonasMixin:
    async def create_persona(self, owner_id: Optional[int], name: str, raw_document: str) -> Persona:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO personas (owner_id, name, raw_document, created_at, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                """,
                (owner_id, name, raw_document),
            )
            await db.commit()
            persona_id = int(cursor.lastrowid)
        return Persona(id=persona_id, owner_id=owner_id, name=name, raw_document=raw_document)

    async def update_persona(self, persona_id: int, name: str, raw_document: str) -> Persona:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE personas
                SET name = ?, raw_document = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (name, raw_document, persona_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"persona {persona_id} not found")
        return await self.get_persona(persona_id)

    async def get_persona(self, persona_id: int) -> Persona:
        async with self._connect() as db:
            async with db.execute(
                "SELECT id, owner_id, name, raw_document FROM personas WHERE id = ?",
                (persona_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"persona {persona_id} not found")
        return _row_to_persona(row)

    async def list_personas(self, owner_id: Optional[int]) -> List[Persona]:
        clause, params = owner_filter(owner_id)
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT id, owner_id, name, raw_document
                FROM personas
                WHERE {clause}
                ORDER BY id ASC
                """,
                params,
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_persona(row) for row in rows]

    async def delete_persona(self, persona_id: int) -> None:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM personas WHERE id = ?", (persona_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"persona {persona_id} not found")
            await db.execute(
                "DELETE FROM active_selections WHERE kind = 'persona' AND resource_id = ?",
                (persona_id,),
            )
            await db.commit()
