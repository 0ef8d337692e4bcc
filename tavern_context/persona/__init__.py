from .cards import CharacterCard, build_system_prompt, parse_card, validate_card
from .loader import PersonaLoader
from .png import extract_card_json

__all__ = [
    "CharacterCard",
    "PersonaLoader",
    "build_system_prompt",
    "extract_card_json",
    "parse_card",
    "validate_card",
]
