from __future__ import annotations

from typing import Iterable

from .json_loader import load_prompt_json

_DEFAULTS = {
    "summary_request_prefix": (
        "Please provide a concise summary of the following conversation. "
        "Focus on key points, decisions, and important information:\n\n"
    ),
    "summary_line_template": "{role}: {content}\n",
    "summary_item_template": "Previous conversation summary: {summary}",
    "clear_marker_text": "[Conversation cleared by user]",
    "conversation_start_placeholder": "[conversation start]",
    "continue_placeholder": "[continue]",
}


def _cfg() -> dict[str, object]:
    return load_prompt_json("context.json", _DEFAULTS)


def _get(key: str) -> str:
    value = _cfg().get(key)
    if isinstance(value, str):
        return value
    return _DEFAULTS[key]


def build_summary_request(lines: Iterable[tuple[str, str]]) -> str:
    line_template = _get("summary_line_template")
    body = "".join(line_template.format(role=role, content=content) for role, content in lines)
    return _get("summary_request_prefix") + body


def build_summary_item_text(summary: str) -> str:
    return _get("summary_item_template").format(summary=summary)


def clear_marker_text() -> str:
    return _get("clear_marker_text")


def conversation_start_placeholder() -> str:
    return _get("conversation_start_placeholder")


def continue_placeholder() -> str:
    return _get("continue_placeholder")
