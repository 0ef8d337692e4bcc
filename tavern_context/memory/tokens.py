from __future__ import annotations

from typing import Iterable

from ..config import ContextConfig
from ..models import HistoryItem


def estimate_tokens(items: Iterable[HistoryItem], config: ContextConfig) -> float:
    """Rough token count: a fixed overhead per item plus a per-character factor.

    This is an approximation for budget decisions only, not a tokenizer.
    """
    total = 0.0
    for item in items:
        total += config.tokens_per_message + len(item.text()) * config.tokens_per_char
    return total
