from .assembler import RequestAssembler, enforce_role_alternation
from .config import ContextConfig, Settings
from .errors import (
    LoreDocumentError,
    NotFoundError,
    PersonaDocumentError,
    PresetDocumentError,
    RewritePatternError,
    StorageError,
    SummaryError,
    TavernError,
    UnsupportedCardVersionError,
    ValidationError,
)
from .lore import LoreEngine
from .memory import ContextManager
from .models import AIRequest, BuildContext, HistoryItem, Message, SessionKey
from .persona import PersonaLoader
from .presets import PresetLoader
from .rewrite import PatternSafetyChecker, RegexRewriter
from .storage import TavernStore

__version__ = "0.1.0"

__all__ = [
    "AIRequest",
    "BuildContext",
    "ContextConfig",
    "ContextManager",
    "HistoryItem",
    "LoreDocumentError",
    "LoreEngine",
    "Message",
    "NotFoundError",
    "PatternSafetyChecker",
    "PersonaDocumentError",
    "PersonaLoader",
    "PresetDocumentError",
    "PresetLoader",
    "RegexRewriter",
    "RequestAssembler",
    "RewritePatternError",
    "SessionKey",
    "Settings",
    "StorageError",
    "SummaryError",
    "TavernError",
    "TavernStore",
    "UnsupportedCardVersionError",
    "ValidationError",
    "enforce_role_alternation",
]
