from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..common import as_bool, as_int, as_str_list
from ..errors import PersonaDocumentError, UnsupportedCardVersionError
from ..models import PLACEMENT_AFTER_PERSONA, PLACEMENT_BEFORE_PERSONA, LoreEntry

CARD_SPEC_V2 = "chara_card_v2"


@dataclass(slots=True)
class CharacterCard:
    name: str = ""
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_mes: str = ""
    mes_example: str = ""
    creator_notes: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    alternate_greetings: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    creator: str = ""
    character_version: str = ""
    spec_version: str = ""
    extensions: Dict[str, Any] = field(default_factory=dict)
    lore_entries: List[LoreEntry] = field(default_factory=list)


def _text(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    return value if isinstance(value, str) else ""


def _book_entry(raw: Any, index: int) -> Optional[LoreEntry]:
    if not isinstance(raw, dict):
        return None
    content = _text(raw, "content")
    if not content.strip():
        return None
    position = _text(raw, "position").strip().lower()
    return LoreEntry(
        uid=str(raw.get("id", index)),
        keys=as_str_list(raw.get("keys")),
        secondary_keys=as_str_list(raw.get("secondary_keys")),
        content=content,
        comment=_text(raw, "comment"),
        constant=as_bool(raw.get("constant"), False),
        selective=as_bool(raw.get("selective"), False),
        order=as_int(raw.get("insertion_order"), 0),
        placement=PLACEMENT_BEFORE_PERSONA if position == "before_char" else PLACEMENT_AFTER_PERSONA,
        enabled=as_bool(raw.get("enabled"), True),
    )


def _load_json(raw: str | bytes | Dict[str, Any]) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        raise PersonaDocumentError(f"invalid character card JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise PersonaDocumentError("character card root must be an object")
    return payload


def parse_card(raw: str | bytes | Dict[str, Any]) -> CharacterCard:
    """Parse a SillyTavern V2 character card. Other card versions are rejected, not converted."""
    payload = _load_json(raw)
    spec = payload.get("spec")
    if spec != CARD_SPEC_V2:
        raise UnsupportedCardVersionError(
            f"only SillyTavern V2 cards are supported (spec={spec!r})"
        )
    spec_version = payload.get("spec_version")
    spec_version = str(spec_version).strip() if spec_version is not None else ""
    if spec_version and spec_version.split(".", 1)[0] != "2":
        raise UnsupportedCardVersionError(f"unsupported card spec_version {spec_version!r}")

    data = payload.get("data")
    if not isinstance(data, dict):
        raise PersonaDocumentError("character card is missing its data object")

    book = data.get("character_book")
    raw_entries = book.get("entries") if isinstance(book, dict) else None
    lore_entries: List[LoreEntry] = []
    if isinstance(raw_entries, list):
        for index, item in enumerate(raw_entries):
            entry = _book_entry(item, index)
            if entry is not None:
                lore_entries.append(entry)

    extensions = data.get("extensions")
    return CharacterCard(
        name=_text(data, "name"),
        description=_text(data, "description"),
        personality=_text(data, "personality"),
        scenario=_text(data, "scenario"),
        first_mes=_text(data, "first_mes"),
        mes_example=_text(data, "mes_example"),
        creator_notes=_text(data, "creator_notes"),
        system_prompt=_text(data, "system_prompt"),
        post_history_instructions=_text(data, "post_history_instructions"),
        alternate_greetings=as_str_list(data.get("alternate_greetings")),
        tags=as_str_list(data.get("tags")),
        creator=_text(data, "creator"),
        character_version=_text(data, "character_version"),
        spec_version=spec_version,
        extensions=extensions if isinstance(extensions, dict) else {},
        lore_entries=lore_entries,
    )


def validate_card(raw: str | bytes | Dict[str, Any]) -> CharacterCard:
    card = parse_card(raw)
    if not card.spec_version:
        raise PersonaDocumentError("spec_version is required")
    if not card.name.strip():
        raise PersonaDocumentError("character name is required")
    return card


def build_system_prompt(card: Optional[CharacterCard]) -> str:
    if card is None:
        return ""

    if card.system_prompt:
        prompt = card.system_prompt
    else:
        prompt = ""
        if card.description:
            prompt += card.description + "\n\n"
        if card.personality:
            prompt += "Personality: " + card.personality + "\n\n"
        if card.scenario:
            prompt += "Scenario: " + card.scenario + "\n\n"

    if card.post_history_instructions:
        prompt += "\n" + card.post_history_instructions

    return prompt
