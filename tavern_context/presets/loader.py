from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..common import as_float, as_int, as_str_list, is_visible
from ..errors import NotFoundError, PresetDocumentError
from ..models import AIRequest, Preset
from ..storage.active import ACTIVE_PRESET

logger = logging.getLogger("tavern_context.presets")


@dataclass(slots=True)
class PresetParameters:
    name: str = ""
    temperature: float = 0.0
    top_p: float = 0.0
    top_k: int = 0
    max_tokens: int = 0
    presence_penalty: float = 0.0
    frequency_penalty: float = 0.0
    repetition_penalty: float = 0.0
    stop_sequences: List[str] = field(default_factory=list)


def _first(payload: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def parse_preset_parameters(raw: str | bytes | Dict[str, Any]) -> PresetParameters:
    if isinstance(raw, dict):
        payload: Any = raw
    else:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise PresetDocumentError(f"invalid preset JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise PresetDocumentError("preset root must be an object")

    return PresetParameters(
        name=str(payload.get("name") or "").strip(),
        temperature=as_float(_first(payload, "temperature", "temp")),
        top_p=as_float(_first(payload, "top_p")),
        top_k=as_int(_first(payload, "top_k")),
        max_tokens=as_int(_first(payload, "max_tokens", "openai_max_tokens", "max_length")),
        presence_penalty=as_float(_first(payload, "presence_penalty", "pres_pen")),
        frequency_penalty=as_float(_first(payload, "frequency_penalty", "freq_pen")),
        repetition_penalty=as_float(_first(payload, "repetition_penalty", "rep_pen")),
        stop_sequences=as_str_list(_first(payload, "stop_sequences", "stop")),
    )


def apply_preset(request: AIRequest, params: Optional[PresetParameters]) -> AIRequest:
    """Copy every set parameter onto ``request``; zero or empty values never overwrite."""
    if params is None:
        return request
    if params.temperature > 0:
        request.temperature = params.temperature
    if params.top_p > 0:
        request.top_p = params.top_p
    if params.top_k > 0:
        request.top_k = params.top_k
    if params.max_tokens > 0:
        request.max_tokens = params.max_tokens
    if params.presence_penalty != 0:
        request.presence_penalty = params.presence_penalty
    if params.frequency_penalty != 0:
        request.frequency_penalty = params.frequency_penalty
    if params.stop_sequences:
        request.stop_sequences = list(params.stop_sequences)
    return request


class PresetLoader:
    def __init__(self, store) -> None:
        self.store = store

    async def load(self, owner_id: Optional[int], api_family: str) -> Optional[Preset]:
        preset_id = await self.store.get_active_id(ACTIVE_PRESET, owner_id, api_family)
        if preset_id is None:
            return None
        return await self.store.get_preset(preset_id)

    async def load_parameters(self, owner_id: Optional[int], api_family: str) -> Optional[PresetParameters]:
        preset = await self.load(owner_id, api_family)
        if preset is None:
            return None
        return parse_preset_parameters(preset.raw_parameters)

    async def list_presets(self, owner_id: Optional[int], api_family: str | None = None) -> List[Preset]:
        return await self.store.list_presets(owner_id, api_family)

    async def save_preset(
        self,
        owner_id: Optional[int],
        api_family: str,
        raw_parameters: str,
        preset_id: int | None = None,
    ) -> Preset:
        api_family = str(api_family or "").strip()
        if not api_family:
            raise PresetDocumentError("API type is required")
        params = parse_preset_parameters(raw_parameters)
        name = params.name or "preset"
        if preset_id is None:
            preset = await self.store.create_preset(owner_id, name, api_family, raw_parameters)
        else:
            existing = await self.store.get_preset(preset_id)
            if existing.owner_id != owner_id:
                raise NotFoundError(f"preset {preset_id} not found")
            preset = await self.store.update_preset(preset_id, name, api_family, raw_parameters)
        logger.info("[presets.save] id=%s owner=%s api=%s name=%r", preset.id, owner_id, api_family, name)
        return preset

    async def activate(self, owner_id: Optional[int], preset_id: int) -> None:
        preset = await self.store.get_preset(preset_id)
        if not is_visible(owner_id, preset.owner_id):
            raise NotFoundError(f"preset {preset_id} not found")
        await self.store.set_active(ACTIVE_PRESET, owner_id, preset_id, preset.api_family)
        logger.info("[presets.activate] owner=%s preset=%s api=%s", owner_id, preset_id, preset.api_family)
