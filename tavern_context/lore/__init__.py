from .documents import LoreDocument, parse_lore_document
from .engine import LoreEngine, build_corpus, inject_entries, select_triggered_entries

__all__ = [
    "LoreDocument",
    "LoreEngine",
    "build_corpus",
    "inject_entries",
    "parse_lore_document",
    "select_triggered_entries",
]
