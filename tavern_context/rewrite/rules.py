from __future__ import annotations

import asyncio
import logging
import re
from typing import List, Optional

from ..common import preview
from ..errors import RewritePatternError, ValidationError
from ..models import DIRECTIONS, RewriteRule
from .safety import PatternSafetyChecker

logger = logging.getLogger("tavern_context.rewrite")

_TEMPLATE_TOKEN_RE = re.compile(r"\$(?:\$|\{([^}]*)\}|(\w+))")


def expand_replacement(template: str, match: re.Match) -> str:
    """Expand ``$1``, ``$name``, ``${name}`` and ``$$`` against ``match``.

    A reference to a group that does not exist, or did not participate in the
    match, expands to an empty string. A lone ``$`` stays literal.
    """

    def _group(name: str) -> str:
        try:
            value = match.group(int(name) if name.isdigit() else name)
        except IndexError:
            return ""
        return value or ""

    def _token(token: re.Match) -> str:
        braced, bare = token.group(1), token.group(2)
        if braced is None and bare is None:
            return "$"
        return _group(braced if braced is not None else bare)

    return _TEMPLATE_TOKEN_RE.sub(_token, template)


def check_direction(direction: str) -> str:
    normalized = str(direction or "").strip().lower()
    if normalized not in DIRECTIONS:
        raise ValidationError(f"invalid pattern type: {direction!r} (expected input or output)")
    return normalized


class RegexRewriter:
    """Ordered regex substitutions on user input and model output."""

    def __init__(self, store, checker: PatternSafetyChecker | None = None) -> None:
        self.store = store
        self.checker = checker or PatternSafetyChecker()

    async def list_rules(self, owner_id: Optional[int], direction: str | None = None) -> List[RewriteRule]:
        if direction is not None:
            direction = check_direction(direction)
        return await self.store.list_rewrite_rules(owner_id, direction)

    async def save_rule(self, rule: RewriteRule) -> RewriteRule:
        rule.direction = check_direction(rule.direction)
        await asyncio.to_thread(self.checker.validate, rule.pattern)
        if rule.id:
            saved = await self.store.update_rewrite_rule(rule)
        else:
            saved = await self.store.create_rewrite_rule(rule)
        logger.info(
            "[rewrite.save] id=%s owner=%s direction=%s order=%s pattern=%r",
            saved.id,
            saved.owner_id,
            saved.direction,
            saved.order,
            preview(saved.pattern, 80),
        )
        return saved

    async def set_rule_enabled(self, rule_id: int, enabled: bool) -> None:
        await self.store.set_rewrite_rule_enabled(rule_id, enabled)

    async def apply(self, direction: str, owner_id: Optional[int], text: str) -> str:
        direction = check_direction(direction)
        rules = await self.store.list_rewrite_rules(owner_id, direction)
        active = sorted((rule for rule in rules if rule.enabled), key=lambda rule: (rule.order, rule.id))
        for rule in active:
            try:
                await asyncio.to_thread(self.checker.validate, rule.pattern)
                compiled = re.compile(rule.pattern)
            except RewritePatternError as exc:
                logger.warning("[rewrite.apply] skipping rule id=%s: %s", rule.id, exc)
                continue
            text = compiled.sub(lambda match, template=rule.replacement: expand_replacement(template, match), text)
        return text
