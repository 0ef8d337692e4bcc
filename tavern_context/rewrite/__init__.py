from .rules import RegexRewriter, expand_replacement
from .safety import PatternSafetyChecker, find_structural_hazard

__all__ = ["PatternSafetyChecker", "RegexRewriter", "expand_replacement", "find_structural_hazard"]
