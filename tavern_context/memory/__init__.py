from .context import ContextManager, build_view, last_marker_index
from .scheduler import SummaryScheduler
from .tokens import estimate_tokens

__all__ = ["ContextManager", "SummaryScheduler", "build_view", "estimate_tokens", "last_marker_index"]
