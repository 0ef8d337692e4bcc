from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List

from ..common import as_bool, as_int, as_str_list
from ..errors import LoreDocumentError
from ..models import PLACEMENT_AFTER_PERSONA, PLACEMENT_BEFORE_PERSONA, LoreEntry


@dataclass(slots=True)
class LoreDocument:
    name: str
    entries: List[LoreEntry] = field(default_factory=list)


def _entry_from_json(raw: Dict[str, Any], fallback_uid: str) -> LoreEntry:
    content = raw.get("content")
    if not isinstance(content, str):
        raise LoreDocumentError(f"entry {fallback_uid!r} is missing its content")
    uid = raw.get("uid")
    position = as_int(raw.get("position"), 0)
    return LoreEntry(
        uid=str(uid) if uid is not None else fallback_uid,
        keys=as_str_list(raw.get("key", raw.get("keys"))),
        secondary_keys=as_str_list(raw.get("keysecondary", raw.get("secondary_keys"))),
        content=content,
        comment=str(raw.get("comment") or ""),
        constant=as_bool(raw.get("constant"), False),
        selective=as_bool(raw.get("selective"), False),
        order=as_int(raw.get("order"), 0),
        placement=PLACEMENT_BEFORE_PERSONA if position == 0 else PLACEMENT_AFTER_PERSONA,
        enabled=not as_bool(raw.get("disable"), False),
    )


def parse_lore_document(raw: str | bytes | Dict[str, Any]) -> LoreDocument:
    """Parse SillyTavern world-info JSON; ``entries`` may be an object keyed by uid or a list."""
    if isinstance(raw, dict):
        payload: Any = raw
    else:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise LoreDocumentError(f"invalid lore JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise LoreDocumentError("lore document root must be an object")

    raw_entries = payload.get("entries", {})
    if isinstance(raw_entries, dict):
        items = [(str(key), value) for key, value in raw_entries.items()]
    elif isinstance(raw_entries, list):
        items = [(str(index), value) for index, value in enumerate(raw_entries)]
    else:
        raise LoreDocumentError("lore entries must be an object or a list")

    entries: List[LoreEntry] = []
    for fallback_uid, value in items:
        if not isinstance(value, dict):
            raise LoreDocumentError(f"entry {fallback_uid!r} must be an object")
        entries.append(_entry_from_json(value, fallback_uid))

    return LoreDocument(name=str(payload.get("name") or "").strip(), entries=entries)
