from __future__ import annotations


class TavernError(Exception):
    """Base class for errors raised by tavern_context."""


class NotFoundError(TavernError, LookupError):
    """A persona, lore database, preset, rule or entry does not exist (or is not visible)."""


class ValidationError(TavernError, ValueError):
    """Submitted data is malformed. Raised to whoever submitted it, never coerced."""


class PersonaDocumentError(ValidationError):
    pass


class UnsupportedCardVersionError(PersonaDocumentError):
    pass


class LoreDocumentError(ValidationError):
    pass


class PresetDocumentError(ValidationError):
    pass


class RewritePatternError(ValidationError):
    pass


class SummaryError(TavernError):
    """The LLM collaborator failed to produce a usable summary."""


class StorageError(TavernError):
    """Stored data exists but cannot be read back."""
