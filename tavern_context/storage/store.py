from __future__ import annotations

from .active import ActiveSelectionMixin
from .history import HistoryMixin
from .lore import LoreMixin
from .personas import PersonasMixin
from .presets import PresetsMixin
from .rewrite_rules import RewriteRulesMixin
from .schema import StoreSchemaMixin


class TavernStore(
    StoreSchemaMixin,
    PersonasMixin,
    LoreMixin,
    PresetsMixin,
    RewriteRulesMixin,
    HistoryMixin,
    ActiveSelectionMixin,
):
    """Persistent store for personas, lore, presets, rewrite rules, session history and active selections."""

    backend_name = "sqlite"

    async def ping(self) -> None:
        async with self._connect() as db:
            await db.execute("SELECT 1")
