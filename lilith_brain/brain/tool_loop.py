from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Protocol, Sequence

from ..memory.long_term import LongTermMemory
from ..prompts.dialogue import LOOP_EXHAUSTED_MESSAGE
from ..services.gemini_client import ModelReply, ToolCall
from ..tasks import BackgroundTasks
from ..tools.registry import ToolRegistry

logger = logging.getLogger("lilith_brain.brain.loop")

EMPTY_REPLY_TEXT = "..."


class _ToolChatBackend(Protocol):
    async def chat_with_tools(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        temperature: float | None = None,
        max_output_tokens: int | None = None,
    ) -> ModelReply: ...


def parse_tool_arguments(raw: str) -> Dict[str, Any] | str:
    """Return the decoded argument object, or an error string for the model to read."""
    if not raw or not raw.strip():
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        return f"[System Error] Invalid JSON arguments: {exc.msg}"
    if not isinstance(parsed, dict):
        return "[System Error] Tool arguments must be a JSON object."
    return parsed


class ToolExecutionLoop:
    """THINKING -> FINAL | TOOL_REQUESTED, bounded by ``max_steps`` model calls."""

    def __init__(
        self,
        llm: _ToolChatBackend | Any,
        registry: ToolRegistry,
        ltm: LongTermMemory | None,
        background: BackgroundTasks,
        *,
        max_steps: int = 5,
        exhausted_text: str = LOOP_EXHAUSTED_MESSAGE,
        temperature: float | None = 0.7,
    ) -> None:
        self.llm = llm
        self.registry = registry
        self.ltm = ltm
        self.background = background
        self.max_steps = max_steps
        self.exhausted_text = exhausted_text
        self.temperature = temperature

    async def run_turn(
        self,
        persona: str,
        user_content: str,
        images: Sequence[Dict[str, str]] | None,
        prior_transcript: Sequence[Dict[str, Any]] | None,
        *,
        system_prompt: str,
        conversation_id: str | None = None,
        exhausted_text: str | None = None,
    ) -> str:
        user_message: Dict[str, Any] = {"role": "user", "content": user_content}
        if images:
            user_message["images"] = list(images)
        messages: List[Dict[str, Any]] = [
            {"role": "system", "content": system_prompt},
            *(prior_transcript or ()),
            user_message,
        ]

        step = 0
        while step < self.max_steps:
            step += 1
            reply = await self.llm.chat_with_tools(
                messages,
                self.registry.declarations(),
                temperature=self.temperature,
            )
            if not reply.tool_calls:
                return reply.text.strip() or EMPTY_REPLY_TEXT

            messages.append(
                {
                    "role": "assistant",
                    "content": reply.text,
                    "tool_calls": list(reply.tool_calls),
                    "raw_parts": list(reply.raw_parts),
                }
            )
            for call in reply.tool_calls:
                output = await self._execute(persona, call, conversation_id)
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "name": call.name,
                        "content": output,
                    }
                )

        logger.warning("[loop] %s hit the step bound (%s)", persona, self.max_steps)
        return exhausted_text or self.exhausted_text

    async def _execute(self, persona: str, call: ToolCall, conversation_id: str | None) -> str:
        args = parse_tool_arguments(call.arguments)
        if isinstance(args, str):
            logger.warning("[loop] %s sent malformed arguments to %s", persona, call.name)
            return args

        logger.info("[loop] %s calls %s", persona, call.name)
        output = await self.registry.execute(call.name, args)
        if self.ltm is not None:
            self.background.spawn(
                self.ltm.record_tool_use(call.name, call.arguments, output, conversation_id=conversation_id),
                name=f"tool-use-{call.name}",
            )
        return output
