from __future__ import annotations

from typing import Optional

from .utils import scope_key

ACTIVE_PERSONA = "persona"
ACTIVE_LORE = "lore"
ACTIVE_PRESET = "preset"


class ActiveSelectionMixin:
    async def set_active(
        self,
        kind: str,
        owner_id: Optional[int],
        resource_id: int,
        api_family: str = "",
    ) -> None:
        async with self._connect() as db:
            await db.execute(
                """
                INSERT INTO active_selections (scope, kind, api_family, resource_id, updated_at)
                VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(scope, kind, api_family) DO UPDATE SET
                    resource_id = excluded.resource_id,
                    updated_at = CURRENT_TIMESTAMP
                """,
                (scope_key(owner_id), kind, api_family, resource_id),
            )
            await db.commit()

    async def clear_active(self, kind: str, owner_id: Optional[int], api_family: str = "") -> None:
        async with self._connect() as db:
            await db.execute(
                "DELETE FROM active_selections WHERE scope = ? AND kind = ? AND api_family = ?",
                (scope_key(owner_id), kind, api_family),
            )
            await db.commit()

    async def get_active_id(self, kind: str, owner_id: Optional[int], api_family: str = "") -> Optional[int]:
        """Active resource id for the scope, falling back to the global selection."""
        scopes = [scope_key(owner_id)]
        if owner_id is not None:
            scopes.append(scope_key(None))
        async with self._connect() as db:
            for scope in scopes:
                async with db.execute(
                    """
                    SELECT resource_id
                    FROM active_selections
                    WHERE scope = ? AND kind = ? AND api_family = ?
                    """,
                    (scope, kind, api_family),
                ) as cursor:
                    row = await cursor.fetchone()
                if row is not None:
                    return int(row["resource_id"])
        return None
