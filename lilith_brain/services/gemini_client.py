from __future__ import annotations

import asyncio
import json
import random
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List

import aiohttp

from ..common import strip_json_fences


@dataclass(slots=True)
class ToolCall:
    id: str
    name: str
    arguments: str


@dataclass(slots=True)
class ModelReply:
    text: str
    tool_calls: List[ToolCall] = field(default_factory=list)
    raw_parts: List[Dict[str, Any]] = field(default_factory=list)


class GeminiClient:
    """Gemini REST client: plain chat, structured JSON, function calling, vision parts and embeddings.

    Transcripts use chat-style dicts (``system``/``user``/``assistant``/``tool``). Assistant
    entries may carry ``tool_calls`` and the ``raw_parts`` returned by the model; tool entries
    carry ``tool_call_id``/``name``. User entries may carry ``images`` as
    ``{"mime_type", "data"}`` dicts with base64 payloads.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        timeout_seconds: int,
        temperature: float,
        max_output_tokens: int,
        base_url: str = "https://generativelanguage.googleapis.com",
        embedding_model: str = "text-embedding-004",
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.embedding_model = embedding_model
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

    def _endpoint(self, method: str = "generateContent", model: str | None = None) -> str:
        selected = model or self.model
        return f"{self.base_url}/v1beta/models/{selected}:{method}?key={self.api_key}"

    @staticmethod
    def _image_parts(images: Any) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = []
        for image in images or ():
            if not isinstance(image, dict):
                continue
            data = str(image.get("data") or "").strip()
            if not data:
                continue
            mime_type = str(image.get("mime_type") or "image/png").strip()
            parts.append({"inlineData": {"mimeType": mime_type, "data": data}})
        return parts

    @staticmethod
    def _function_call_parts(tool_calls: Any) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = []
        for call in tool_calls or ():
            if isinstance(call, ToolCall):
                name, arguments = call.name, call.arguments
            elif isinstance(call, dict):
                name, arguments = str(call.get("name", "")), call.get("arguments", "{}")
            else:
                continue
            try:
                args = json.loads(arguments) if isinstance(arguments, str) else dict(arguments or {})
            except (json.JSONDecodeError, TypeError, ValueError):
                args = {}
            if not isinstance(args, dict):
                args = {}
            parts.append({"functionCall": {"name": name, "args": args}})
        return parts

    @classmethod
    def _map_messages(cls, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        system_lines: List[str] = []
        contents: List[Dict[str, Any]] = []

        for message in messages:
            role = str(message.get("role", "")).strip().lower()
            content = str(message.get("content") or "").strip()

            if role == "system":
                if content:
                    system_lines.append(content)
                continue

            if role == "tool":
                part = {
                    "functionResponse": {
                        "name": str(message.get("name") or "tool"),
                        "response": {"result": content},
                    }
                }
                # Consecutive tool results answer one model turn and must share a content entry.
                previous = contents[-1] if contents else None
                if previous is not None and previous.get("_tool_results"):
                    previous["parts"].append(part)
                else:
                    contents.append({"role": "user", "parts": [part], "_tool_results": True})
                continue

            if role == "assistant":
                raw_parts = message.get("raw_parts")
                if raw_parts:
                    parts = list(raw_parts)
                else:
                    parts = [{"text": content}] if content else []
                    parts.extend(cls._function_call_parts(message.get("tool_calls")))
                if parts:
                    contents.append({"role": "model", "parts": parts})
                continue

            parts = [{"text": content}] if content else []
            parts.extend(cls._image_parts(message.get("images")))
            if parts:
                contents.append({"role": "user", "parts": parts})

        for entry in contents:
            entry.pop("_tool_results", None)

        payload: Dict[str, Any] = {"contents": contents}
        if system_lines:
            payload["systemInstruction"] = {
                "parts": [{"text": "\n\n".join(system_lines)}],
            }
        return payload

    async def _request(self, payload: Dict[str, Any], retries: int = 3, *, url: str | None = None) -> Dict[str, Any]:
        if self._session is None or self._session.closed:
            await self.start()
        assert self._session is not None

        url = url or self._endpoint()
        last_error: Exception | None = None

        for attempt in range(1, retries + 1):
            try:
                async with self._session.post(url, json=payload) as response:
                    text = await response.text()
                    if response.status == 200:
                        return json.loads(text)

                    retriable = response.status in {408, 409, 429, 500, 502, 503, 504}
                    if not retriable:
                        raise RuntimeError(f"Gemini error {response.status}: {text}")
                    last_error = RuntimeError(f"Gemini retriable error {response.status}: {text}")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                last_error = exc

            if attempt < retries:
                await asyncio.sleep(min(4.0, 0.35 * attempt + random.random() * 0.2))

        if last_error is not None:
            raise RuntimeError(f"Gemini request failed after retries: {last_error}")
        raise RuntimeError("Gemini request failed without explicit error")

    @staticmethod
    def _first_candidate(data: Dict[str, Any]) -> Dict[str, Any]:
        candidates = data.get("candidates") or []
        if not candidates:
            prompt_feedback = data.get("promptFeedback") or {}
            block_reason = prompt_feedback.get("blockReason")
            if block_reason:
                raise RuntimeError(f"Gemini blocked response: {block_reason}")
            raise RuntimeError("Gemini returned no candidates")
        return candidates[0]

    @classmethod
    def _extract_reply(cls, data: Dict[str, Any]) -> ModelReply:
        first = cls._first_candidate(data)
        content = first.get("content") or {}
        parts = content.get("parts") or []
        chunks: List[str] = []
        calls: List[ToolCall] = []

        for index, part in enumerate(parts):
            function_call = part.get("functionCall")
            if isinstance(function_call, dict):
                name = str(function_call.get("name") or "").strip()
                if not name:
                    continue
                call_id = str(function_call.get("id") or f"call_{index}_{uuid.uuid4().hex[:8]}")
                args = function_call.get("args") or {}
                calls.append(ToolCall(id=call_id, name=name, arguments=json.dumps(args, ensure_ascii=False)))
                continue
            if part.get("thought"):
                continue
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                chunks.append(text.strip())

        joined = "\n".join(chunks).strip()
        if joined or calls:
            return ModelReply(text=joined, tool_calls=calls, raw_parts=list(parts))

        finish_reason = first.get("finishReason")
        if finish_reason:
            raise RuntimeError(f"Gemini empty response (finishReason={finish_reason})")
        raise RuntimeError("Gemini empty response")

    @classmethod
    def _extract_text(cls, data: Dict[str, Any]) -> str:
        reply = cls._extract_reply(data)
        if not reply.text:
            raise RuntimeError("Gemini empty response (function call without text)")
        return reply.text

    def _generation_config(self, temperature: float | None, max_output_tokens: int | None) -> Dict[str, Any]:
        generation_config: Dict[str, Any] = {
            "temperature": self.temperature if temperature is None else temperature,
        }
        selected_tokens = self.max_output_tokens if max_output_tokens is None else max_output_tokens
        if selected_tokens is not None and int(selected_tokens) > 0:
            generation_config["maxOutputTokens"] = int(selected_tokens)
        return generation_config

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> str:
        payload = self._map_messages(messages)
        payload["generationConfig"] = self._generation_config(temperature, max_output_tokens)
        data = await self._request(payload)
        return self._extract_text(data)

    async def chat_with_tools(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> ModelReply:
        payload = self._map_messages(messages)
        payload["generationConfig"] = self._generation_config(temperature, max_output_tokens)
        if tools:
            payload["tools"] = [{"functionDeclarations": list(tools)}]
            payload["toolConfig"] = {"functionCallingConfig": {"mode": "AUTO"}}
        data = await self._request(payload)
        return self._extract_reply(data)

    async def json_chat(
        self,
        messages: List[Dict[str, Any]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> Dict[str, Any] | None:
        strict_messages = list(messages)
        strict_messages.append(
            {
                "role": "system",
                "content": (
                    "Return only valid JSON object with no markdown and no additional commentary. "
                    f"Schema hint: {schema_hint}"
                ),
            }
        )
        raw = await self.chat(
            strict_messages,
            temperature=temperature,
            max_output_tokens=max_output_tokens,
        )
        cleaned = strip_json_fences(raw)
        try:
            parsed = json.loads(cleaned)
        except json.JSONDecodeError:
            return None
        if not isinstance(parsed, dict):
            return None
        return parsed

    async def embed(self, text: str) -> List[float]:
        payload = {
            "model": f"models/{self.embedding_model}",
            "content": {"parts": [{"text": text}]},
        }
        data = await self._request(payload, url=self._endpoint("embedContent", self.embedding_model))
        values = (data.get("embedding") or {}).get("values") or []
        if not values:
            raise RuntimeError("Gemini returned an empty embedding")
        return [float(value) for value in values]
