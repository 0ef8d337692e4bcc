from .active import ACTIVE_LORE, ACTIVE_PERSONA, ACTIVE_PRESET, ActiveSelectionMixin
from .history import HistoryMixin
from .lore import LoreMixin
from .personas import PersonasMixin
from .presets import PresetsMixin
from .rewrite_rules import RewriteRulesMixin
from .schema import StoreSchemaMixin
from .store import TavernStore

__all__ = [
    "ACTIVE_LORE",
    "ACTIVE_PERSONA",
    "ACTIVE_PRESET",
    "StoreSchemaMixin",
    "PersonasMixin",
    "LoreMixin",
    "PresetsMixin",
    "RewriteRulesMixin",
    "HistoryMixin",
    "ActiveSelectionMixin",
    "TavernStore",
]
