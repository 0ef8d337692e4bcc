from __future__ import annotations

import logging
from typing import List, Optional

from ..common import is_visible
from ..errors import NotFoundError
from ..models import Persona
from ..storage.active import ACTIVE_PERSONA
from .cards import CharacterCard, parse_card, validate_card
from .png import extract_card_json

logger = logging.getLogger("tavern_context.persona")


class PersonaLoader:
    def __init__(self, store) -> None:
        self.store = store

    async def load(self, owner_id: Optional[int]) -> Optional[Persona]:
        persona_id = await self.store.get_active_id(ACTIVE_PERSONA, owner_id)
        if persona_id is None:
            return None
        return await self.store.get_persona(persona_id)

    async def load_card(self, owner_id: Optional[int]) -> Optional[CharacterCard]:
        persona = await self.load(owner_id)
        if persona is None:
            return None
        return parse_card(persona.raw_document)

    async def list_personas(self, owner_id: Optional[int]) -> List[Persona]:
        return await self.store.list_personas(owner_id)

    async def save_card(self, owner_id: Optional[int], raw_document: str, persona_id: int | None = None) -> Persona:
        card = validate_card(raw_document)
        if persona_id is None:
            persona = await self.store.create_persona(owner_id, card.name, raw_document)
        else:
            existing = await self.store.get_persona(persona_id)
            if existing.owner_id != owner_id:
                raise NotFoundError(f"persona {persona_id} not found")
            persona = await self.store.update_persona(persona_id, card.name, raw_document)
        logger.info("[persona.save] id=%s owner=%s name=%r", persona.id, owner_id, persona.name)
        return persona

    async def import_png(self, owner_id: Optional[int], png_bytes: bytes) -> Persona:
        return await self.save_card(owner_id, extract_card_json(png_bytes))

    async def activate(self, owner_id: Optional[int], persona_id: int) -> None:
        persona = await self.store.get_persona(persona_id)
        if not is_visible(owner_id, persona.owner_id):
            raise NotFoundError(f"persona {persona_id} not found")
        await self.store.set_active(ACTIVE_PERSONA, owner_id, persona_id)
        logger.info("[persona.activate] owner=%s persona=%s", owner_id, persona_id)
