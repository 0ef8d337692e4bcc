from __future__ import annotations

from typing import List, Optional

import aiosqlite

from ..errors import NotFoundError
from ..models import Preset
from .utils import optional_int, owner_filter


def _row_to_preset(row: aiosqlite.Row) -> Preset:
    return Preset(
        id=int(row["id"]),
        owner_id=optional_int(row["owner_id"]),
        name=str(row["name"]),
        api_family=str(row["api_family"]),
        raw_parameters=str(row["raw_parameters"]),
    )


class PresetsMixin:
    async def create_preset(
        self,
        owner_id: Optional[int],
        name: str,
        api_family: str,
        raw_parameters: str,
    ) -> Preset:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO presets (owner_id, name, api_family, raw_parameters, created_at, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                """,
                (owner_id, name, api_family, raw_parameters),
            )
            await db.commit()
            preset_id = int(cursor.lastrowid)
        return Preset(
            id=preset_id,
            owner_id=owner_id,
            name=name,
            api_family=api_family,
            raw_parameters=raw_parameters,
        )

    async def update_preset(self, preset_id: int, name: str, api_family: str, raw_parameters: str) -> Preset:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE presets
                SET name = ?, api_family = ?, raw_parameters = ?, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (name, api_family, raw_parameters, preset_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"preset {preset_id} not found")
        return await self.get_preset(preset_id)

    async def get_preset(self, preset_id: int) -> Preset:
        async with self._connect() as db:
            async with db.execute(
                "SELECT id, owner_id, name, api_family, raw_parameters FROM presets WHERE id = ?",
                (preset_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"preset {preset_id} not found")
        return _row_to_preset(row)

    async def list_presets(self, owner_id: Optional[int], api_family: str | None = None) -> List[Preset]:
        clause, params = owner_filter(owner_id)
        if api_family:
            clause = f"{clause} AND api_family = ?"
            params = (*params, api_family)
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT id, owner_id, name, api_family, raw_parameters
                FROM presets
                WHERE {clause}
                ORDER BY id ASC
                """,
                params,
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_preset(row) for row in rows]

    async def delete_preset(self, preset_id: int) -> None:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM presets WHERE id = ?", (preset_id,))
            if cursor.rowcount == 0:
                raise NotFoundError(f"preset {preset_id} not found")
            await db.execute(
                "DELETE FROM active_selections WHERE kind = 'preset' AND resource_id = ?",
                (preset_id,),
            )
            await db.commit()
