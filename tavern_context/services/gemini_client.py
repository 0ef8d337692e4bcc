from __future__ import annotations

import asyncio
import json
import logging
import random
from typing import Any, Dict, Iterable, List, Mapping, Union

import aiohttp

from ..models import AIRequest, Message

logger = logging.getLogger("tavern_context.gemini")

ChatMessage = Union[Message, Mapping[str, str]]

RETRIABLE_STATUSES = frozenset({408, 409, 429, 500, 502, 503, 504})


class GeminiClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: int,
        temperature: float,
        max_output_tokens: int,
        base_url: str = "https://generativelanguage.googleapis.com",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.temperature = temperature
        self.max_output_tokens: int | None = int(max_output_tokens) if int(max_output_tokens) > 0 else None
        self._session: aiohttp.ClientSession | None = None

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    def _endpoint(self, model: str | None = None) -> str:
        return f"{self.base_url}/v1beta/models/{model or self.model}:generateContent?key={self.api_key}"

    @staticmethod
    def _role_and_text(message: ChatMessage) -> tuple[str, str]:
        if isinstance(message, Message):
            return message.role, message.content
        return str(message.get("role", "")), str(message.get("content", ""))

    @classmethod
    def _map_messages(cls, messages: Iterable[ChatMessage]) -> Dict[str, Any]:
        system_lines: List[str] = []
        contents: List[Dict[str, Any]] = []

        for message in messages:
            role, content = cls._role_and_text(message)
            role = role.strip().lower()
            content = content.strip()
            if not content:
                continue
            if role == "system":
                system_lines.append(content)
                continue
            mapped_role = "model" if role == "assistant" else "user"
            contents.append({"role": mapped_role, "parts": [{"text": content}]})

        payload: Dict[str, Any] = {"contents": contents}
        if system_lines:
            payload["systemInstruction"] = {
                "parts": [{"text": "\n\n".join(system_lines)}],
            }
        return payload

    async def _request(self, payload: Dict[str, Any], model: str | None = None, retries: int = 3) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        url = self._endpoint(model)
        last_error: Exception | None = None

        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(url, json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        return json.loads(text)

                    if response.status not in RETRIABLE_STATUSES:
                        raise RuntimeError(f"Gemini error {response.status}: {text}")
                    last_error = RuntimeError(f"Gemini retriable error {response.status}: {text}")
            except (aiohttp.ClientError, asyncio.TimeoutError, json.JSONDecodeError) as exc:
                last_error = exc

            if attempt < retries:
                logger.warning("[gemini] attempt %s/%s failed: %s", attempt, retries, last_error)
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        raise RuntimeError(f"Gemini request failed after retries: {last_error}")

    @staticmethod
    def _extract_text(data: Dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            prompt_feedback = data.get("promptFeedback") or {}
            block_reason = prompt_feedback.get("blockReason")
            if block_reason:
                raise RuntimeError(f"Gemini blocked response: {block_reason}")
            raise RuntimeError("Gemini returned no candidates")

        first = candidates[0]
        content = first.get("content") or {}
        parts = content.get("parts") or []
        chunks: List[str] = []

        for part in parts:
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                chunks.append(text.strip())

        joined = "\n".join(chunks).strip()
        if joined:
            return joined

        finish_reason = first.get("finishReason")
        if finish_reason:
            raise RuntimeError(f"Gemini empty response (finishReason={finish_reason})")
        raise RuntimeError("Gemini empty response")

    async def chat(
        self,
        messages: Iterable[ChatMessage],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        payload = self._map_messages(messages)
        generation_config: Dict[str, Any] = {
            "temperature": self.temperature if temperature is None else temperature,
        }
        selected_tokens = self.max_output_tokens if max_output_tokens is None else max_output_tokens
        if selected_tokens is not None and int(selected_tokens) > 0:
            generation_config["maxOutputTokens"] = int(selected_tokens)
        payload["generationConfig"] = generation_config
        data = await self._request(payload)
        return self._extract_text(data)

    def _generation_config(self, request: AIRequest) -> Dict[str, Any]:
        config: Dict[str, Any] = {
            "temperature": self.temperature if request.temperature is None else request.temperature,
        }
        max_tokens = self.max_output_tokens if request.max_tokens is None else request.max_tokens
        if max_tokens:
            config["maxOutputTokens"] = int(max_tokens)
        if request.top_p is not None:
            config["topP"] = request.top_p
        if request.top_k is not None:
            config["topK"] = int(request.top_k)
        if request.presence_penalty is not None:
            config["presencePenalty"] = request.presence_penalty
        if request.frequency_penalty is not None:
            config["frequencyPenalty"] = request.frequency_penalty
        if request.stop_sequences:
            config["stopSequences"] = list(request.stop_sequences)
        return config

    async def send(self, request: AIRequest) -> str:
        """Send an assembled request, mapping its preset parameters onto ``generationConfig``."""
        payload = self._map_messages(request.messages)
        payload["generationConfig"] = self._generation_config(request)
        data = await self._request(payload, model=request.model or None)
        return self._extract_text(data)
