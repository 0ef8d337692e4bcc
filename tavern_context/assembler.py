from __future__ import annotations

import logging
from typing import Iterable, List, Optional

from .common import preview
from .errors import TavernError
from .lore.engine import inject_entries
from .models import (
    CONVERSATION_ROLES,
    DIRECTION_INPUT,
    DIRECTION_OUTPUT,
    PLACEMENT_BEFORE_PERSONA,
    ROLE_ASSISTANT,
    ROLE_SUMMARY,
    ROLE_SYSTEM,
    ROLE_USER,
    AIRequest,
    BuildContext,
    HistoryItem,
    LoreEntry,
    Message,
)
from .persona.cards import build_system_prompt
from .presets.loader import apply_preset
from .prompts.context import continue_placeholder, conversation_start_placeholder

logger = logging.getLogger("tavern_context.assembler")

PREAMBLE_ROLES = (ROLE_SYSTEM, ROLE_SUMMARY)


def enforce_role_alternation(items: Iterable[tuple[str, str]], raw_input: str) -> List[Message]:
    """Fold ``(role, text)`` pairs into a strictly alternating user/assistant list.

    The result starts and ends with a user message. Adjacent same-role items
    are merged with a blank line; roles other than user/assistant are dropped.
    """
    result: List[Message] = []
    for role, text in items:
        if role not in CONVERSATION_ROLES or not text:
            continue
        if not result and role == ROLE_ASSISTANT:
            result.append(Message(role=ROLE_USER, content=conversation_start_placeholder()))
        if result and result[-1].role == role:
            result[-1].content += "\n\n" + text
        else:
            result.append(Message(role=role, content=text))

    if not result or result[-1].role != ROLE_USER:
        tail = raw_input if raw_input.strip() else continue_placeholder()
        result.append(Message(role=ROLE_USER, content=tail))
    return result


def _leading_preamble_count(history: Iterable[HistoryItem]) -> int:
    count = 0
    for item in history:
        if item.role not in PREAMBLE_ROLES:
            break
        count += 1
    return count


class RequestAssembler:
    """Builds one outbound request from persona, lore, preset, rewrite rules and history.

    Every step is best effort: a failing collaborator is logged and the build
    continues without its contribution.
    """

    def __init__(
        self,
        rewriter=None,
        personas=None,
        lore=None,
        presets=None,
        model: str = "",
    ) -> None:
        self.rewriter = rewriter
        self.personas = personas
        self.lore = lore
        self.presets = presets
        self.model = model

    async def _rewrite(self, direction: str, owner_id: Optional[int], text: str) -> str:
        if self.rewriter is None:
            return text
        try:
            return await self.rewriter.apply(direction, owner_id, text)
        except Exception:
            logger.exception("[assembler.rewrite] %s rewrite failed for owner=%s, using raw text", direction, owner_id)
            return text

    async def rewrite_output(self, owner_id: Optional[int], text: str) -> str:
        return await self._rewrite(DIRECTION_OUTPUT, owner_id, text)

    async def _persona(self, owner_id: Optional[int]) -> tuple[str, List[LoreEntry]]:
        if self.personas is None:
            return "", []
        try:
            card = await self.personas.load_card(owner_id)
        except TavernError as exc:
            logger.warning("[assembler.persona] skipped for owner=%s: %s", owner_id, exc)
            return "", []
        except Exception:
            logger.exception("[assembler.persona] failed to load persona for owner=%s", owner_id)
            return "", []
        if card is None:
            return "", []
        return build_system_prompt(card), list(card.lore_entries)

    async def _inject_lore(
        self,
        owner_id: Optional[int],
        history: List[HistoryItem],
        embedded: List[LoreEntry],
    ) -> tuple[List[HistoryItem], int]:
        if self.lore is None:
            return history, 0
        try:
            database = await self.lore.load_active(owner_id)
            if database is not None:
                triggered = await self.lore.trigger(database.id, history, embedded)
            elif embedded:
                triggered = await self.lore.trigger_entries(embedded, history)
            else:
                return history, 0
        except TavernError as exc:
            logger.warning("[assembler.lore] skipped for owner=%s: %s", owner_id, exc)
            return history, 0
        except Exception:
            logger.exception("[assembler.lore] failed to trigger lore for owner=%s", owner_id)
            return history, 0
        if triggered:
            logger.debug(
                "[assembler.lore] owner=%s triggered=%s",
                owner_id,
                ", ".join(f"{entry.uid or entry.id}@{entry.order}" for entry in triggered),
            )
        before = sum(1 for entry in triggered if entry.placement == PLACEMENT_BEFORE_PERSONA)
        return inject_entries(history, triggered), before

    async def _apply_preset(self, request: AIRequest, owner_id: Optional[int], api_family: str) -> None:
        if self.presets is None or not api_family:
            return
        try:
            params = await self.presets.load_parameters(owner_id, api_family)
        except TavernError as exc:
            logger.warning("[assembler.preset] skipped for owner=%s api=%s: %s", owner_id, api_family, exc)
            return
        except Exception:
            logger.exception("[assembler.preset] failed to load preset for owner=%s api=%s", owner_id, api_family)
            return
        apply_preset(request, params)

    async def build(self, context: BuildContext) -> AIRequest:
        owner_id = context.owner_id
        raw_input = context.current_input or ""

        rewritten = await self._rewrite(DIRECTION_INPUT, owner_id, raw_input)
        persona_prompt, embedded = await self._persona(owner_id)

        history = list(context.history)
        if rewritten:
            history.append(HistoryItem.create(ROLE_USER, rewritten))
        leading = _leading_preamble_count(history)
        history, before_count = await self._inject_lore(owner_id, history, embedded)
        persona_slot = leading + before_count

        before_persona: List[str] = []
        after_persona: List[str] = []
        conversation: List[tuple[str, str]] = []
        for index, item in enumerate(history):
            if item.truncated:
                continue
            text = item.text()
            if item.role in PREAMBLE_ROLES:
                if text:
                    (before_persona if index < persona_slot else after_persona).append(text)
            elif item.role in CONVERSATION_ROLES:
                conversation.append((item.role, text))

        request = AIRequest(model=self.model)
        system_parts = before_persona + ([persona_prompt] if persona_prompt else []) + after_persona
        if system_parts:
            request.messages.append(Message(role=ROLE_SYSTEM, content="\n\n".join(system_parts)))
        request.messages.extend(enforce_role_alternation(conversation, raw_input))

        await self._apply_preset(request, owner_id, context.api_family)

        if logger.isEnabledFor(logging.DEBUG):
            for index, message in enumerate(request.messages):
                logger.debug("[assembler.build] [%s] %s: %s", index, message.role, preview(message.content))
        logger.info(
            "[assembler.build] owner=%s api=%s messages=%s persona=%s",
            owner_id,
            context.api_family or "-",
            len(request.messages),
            bool(persona_prompt),
        )
        return request
