from __future__ import annotations

from typing import List, Optional

import aiosqlite

from ..errors import NotFoundError
from ..models import RewriteRule
from .utils import optional_int, owner_filter

_RULE_COLUMNS = "id, owner_id, name, pattern, replacement, direction, sort_order, enabled"


def _row_to_rule(row: aiosqlite.Row) -> RewriteRule:
    return RewriteRule(
        id=int(row["id"]),
        owner_id=optional_int(row["owner_id"]),
        name=str(row["name"]),
        pattern=str(row["pattern"]),
        replacement=str(row["replacement"]),
        direction=str(row["direction"]),
        order=int(row["sort_order"]),
        enabled=bool(row["enabled"]),
    )


class RewriteRulesMixin:
    async def create_rewrite_rule(self, rule: RewriteRule) -> RewriteRule:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                INSERT INTO rewrite_rules (
                    owner_id, name, pattern, replacement, direction, sort_order, enabled, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
                """,
                (
                    rule.owner_id,
                    rule.name,
                    rule.pattern,
                    rule.replacement,
                    rule.direction,
                    int(rule.order),
                    int(rule.enabled),
                ),
            )
            await db.commit()
            rule_id = int(cursor.lastrowid)
        return await self.get_rewrite_rule(rule_id)

    async def update_rewrite_rule(self, rule: RewriteRule) -> RewriteRule:
        async with self._connect() as db:
            cursor = await db.execute(
                """
                UPDATE rewrite_rules
                SET name = ?, pattern = ?, replacement = ?, direction = ?, sort_order = ?, enabled = ?,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
                """,
                (
                    rule.name,
                    rule.pattern,
                    rule.replacement,
                    rule.direction,
                    int(rule.order),
                    int(rule.enabled),
                    rule.id,
                ),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"rewrite rule {rule.id} not found")
        return await self.get_rewrite_rule(rule.id)

    async def get_rewrite_rule(self, rule_id: int) -> RewriteRule:
        async with self._connect() as db:
            async with db.execute(
                f"SELECT {_RULE_COLUMNS} FROM rewrite_rules WHERE id = ?",
                (rule_id,),
            ) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"rewrite rule {rule_id} not found")
        return _row_to_rule(row)

    async def list_rewrite_rules(self, owner_id: Optional[int], direction: str | None = None) -> List[RewriteRule]:
        clause, params = owner_filter(owner_id)
        if direction:
            clause = f"{clause} AND direction = ?"
            params = (*params, direction)
        async with self._connect() as db:
            async with db.execute(
                f"""
                SELECT {_RULE_COLUMNS}
                FROM rewrite_rules
                WHERE {clause}
                ORDER BY sort_order ASC, id ASC
                """,
                params,
            ) as cursor:
                rows = await cursor.fetchall()
        return [_row_to_rule(row) for row in rows]

    async def set_rewrite_rule_enabled(self, rule_id: int, enabled: bool) -> None:
        async with self._connect() as db:
            cursor = await db.execute(
                "UPDATE rewrite_rules SET enabled = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
                (int(enabled), rule_id),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"rewrite rule {rule_id} not found")

    async def delete_rewrite_rule(self, rule_id: int) -> None:
        async with self._connect() as db:
            cursor = await db.execute("DELETE FROM rewrite_rules WHERE id = ?", (rule_id,))
            await db.commit()
            if cursor.rowcount == 0:
                raise NotFoundError(f"rewrite rule {rule_id} not found")
