from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_SUMMARY = "summary"

CONVERSATION_ROLES = frozenset({ROLE_USER, ROLE_ASSISTANT})
HISTORY_ROLES = frozenset({ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT, ROLE_SUMMARY})

DIRECTION_INPUT = "input"
DIRECTION_OUTPUT = "output"
DIRECTIONS = frozenset({DIRECTION_INPUT, DIRECTION_OUTPUT})

PLACEMENT_BEFORE_PERSONA = "before_persona"
PLACEMENT_AFTER_PERSONA = "after_persona"
PLACEMENTS = frozenset({PLACEMENT_BEFORE_PERSONA, PLACEMENT_AFTER_PERSONA})


@dataclass(frozen=True, slots=True)
class TextContent:
    text: str


@dataclass(frozen=True, slots=True)
class ContentPart:
    kind: str
    text: str = ""
    image: str = ""


@dataclass(frozen=True, slots=True)
class PartsContent:
    parts: tuple[ContentPart, ...] = ()


Content = Union[TextContent, PartsContent]


def content_text(content: Content, separator: str = "") -> str:
    """Plain text of a history item's content; non-text parts contribute nothing."""
    if isinstance(content, TextContent):
        return content.text
    if isinstance(content, PartsContent):
        return separator.join(part.text for part in content.parts if part.kind == "text")
    raise TypeError(f"Unsupported content type: {type(content).__name__}")


def content_to_json(content: Content) -> Any:
    if isinstance(content, TextContent):
        return content.text
    if isinstance(content, PartsContent):
        encoded: list[dict[str, str]] = []
        for part in content.parts:
            item = {"type": part.kind}
            if part.text:
                item["text"] = part.text
            if part.image:
                item["image"] = part.image
            encoded.append(item)
        return encoded
    raise TypeError(f"Unsupported content type: {type(content).__name__}")


def _part_from_json(raw: object) -> ContentPart:
    # Unparseable parts degrade to empty text instead of failing the whole item.
    if not isinstance(raw, dict):
        return ContentPart(kind="text")
    kind = raw.get("type")
    if not isinstance(kind, str) or not kind:
        return ContentPart(kind="text")
    text = raw.get("text")
    image = raw.get("image")
    return ContentPart(
        kind=kind,
        text=text if isinstance(text, str) else "",
        image=image if isinstance(image, str) else "",
    )


def content_from_json(raw: object) -> Content:
    if isinstance(raw, str):
        return TextContent(raw)
    if isinstance(raw, list):
        return PartsContent(tuple(_part_from_json(item) for item in raw))
    return TextContent("")


def coerce_content(value: Union[Content, str, list, None]) -> Content:
    if isinstance(value, (TextContent, PartsContent)):
        return value
    if value is None:
        return TextContent("")
    return content_from_json(value)


@dataclass(slots=True)
class HistoryItem:
    role: str
    content: Content
    timestamp: int = 0
    truncated: bool = False

    @classmethod
    def create(cls, role: str, content: Union[Content, str, list, None]) -> "HistoryItem":
        return cls(role=role, content=coerce_content(content), timestamp=int(time.time()))

    def text(self, separator: str = "") -> str:
        return content_text(self.content, separator)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "role": self.role,
            "content": content_to_json(self.content),
            "timestamp": self.timestamp,
        }
        if self.truncated:
            payload["truncated"] = True
        return payload

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "HistoryItem":
        timestamp = raw.get("timestamp")
        return cls(
            role=str(raw.get("role") or ""),
            content=content_from_json(raw.get("content")),
            timestamp=int(timestamp) if isinstance(timestamp, (int, float)) else 0,
            truncated=bool(raw.get("truncated", False)),
        )


@dataclass(frozen=True, slots=True)
class SessionKey:
    chat_id: int
    bot_id: int
    user_id: Optional[int] = None
    thread_id: Optional[int] = None

    @property
    def storage_key(self) -> str:
        user = "-" if self.user_id is None else str(self.user_id)
        thread = "-" if self.thread_id is None else str(self.thread_id)
        return f"{self.chat_id}:{self.bot_id}:{user}:{thread}"


@dataclass(slots=True)
class Persona:
    id: int
    owner_id: Optional[int]
    name: str
    raw_document: str


@dataclass(slots=True)
class LoreDatabase:
    id: int
    owner_id: Optional[int]
    name: str
    raw_document: str


@dataclass(slots=True)
class LoreEntry:
    content: str
    keys: List[str] = field(default_factory=list)
    secondary_keys: List[str] = field(default_factory=list)
    constant: bool = False
    selective: bool = False
    order: int = 0
    placement: str = PLACEMENT_AFTER_PERSONA
    enabled: bool = True
    uid: str = ""
    comment: str = ""
    id: int = 0
    database_id: int = 0


@dataclass(slots=True)
class Preset:
    id: int
    owner_id: Optional[int]
    name: str
    api_family: str
    raw_parameters: str


@dataclass(slots=True)
class RewriteRule:
    pattern: str
    replacement: str = ""
    direction: str = DIRECTION_INPUT
    order: int = 0
    enabled: bool = True
    name: str = ""
    owner_id: Optional[int] = None
    id: int = 0


@dataclass(slots=True)
class Message:
    role: str
    content: str


@dataclass(slots=True)
class AIRequest:
    messages: List[Message] = field(default_factory=list)
    model: str = ""
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    max_tokens: Optional[int] = None
    presence_penalty: Optional[float] = None
    frequency_penalty: Optional[float] = None
    stop_sequences: Optional[List[str]] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "messages": [{"role": msg.role, "content": msg.content} for msg in self.messages],
        }
        optional = {
            "model": self.model or None,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "top_k": self.top_k,
            "max_tokens": self.max_tokens,
            "presence_penalty": self.presence_penalty,
            "frequency_penalty": self.frequency_penalty,
            "stop": list(self.stop_sequences) if self.stop_sequences else None,
        }
        for key, value in optional.items():
            if value is not None:
                payload[key] = value
        return payload


@dataclass(slots=True)
class BuildContext:
    owner_id: Optional[int]
    history: List[HistoryItem]
    current_input: str
    api_family: str = ""
