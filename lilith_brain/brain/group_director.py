from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from ..common import collapse_spaces, parse_json_payload
from ..config import PERSONA_IDS
from ..emotion.engine import EmotionSnapshot
from ..prompts.dialogue import (
    IDLE_DEFAULT_TOPIC,
    IDLE_TRANSCRIPT_SEED_TEMPLATE,
    IDLE_TRIGGER_TEMPLATE,
    SPEAKER_CRASH_MESSAGE,
    build_director_messages,
    build_idle_director_messages,
    build_responder_prompt,
)
from ..prompts.persona import build_persona_system_prompt, persona_display_name
from .context import TurnContext, render_history_text
from .tool_loop import ToolExecutionLoop

logger = logging.getLogger("lilith_brain.brain.director")

USER_TURN_FALLBACK_PLAN = ("demon",)
IDLE_TURN_FALLBACK_PLAN = ("angel", "demon")
IDLE_PLAN_SCHEMA_HINT = '{"plan": ["angel", "demon"], "topic": "string"}'


@dataclass(slots=True)
class SpeakerTurn:
    speaker: str
    content: str


def parse_plan(payload: Any, fallback: Sequence[str], max_length: int = 3) -> List[str]:
    """Accept ``[...]`` or ``{"plan": [...]}``; anything unusable yields ``fallback``."""
    if isinstance(payload, dict):
        payload = payload.get("plan")
    if not isinstance(payload, list):
        return list(fallback)
    plan = [str(item).strip().lower() for item in payload if isinstance(item, str)]
    plan = [item for item in plan if item in PERSONA_IDS][:max_length]
    return plan or list(fallback)


class GroupDialogueDirector:
    """Plans who speaks and runs each speaker through the tool loop in order."""

    def __init__(self, llm: Any, loop: ToolExecutionLoop, *, max_plan_length: int = 3, history_limit: int = 20) -> None:
        self.llm = llm
        self.loop = loop
        self.max_plan_length = max_plan_length
        self.history_limit = history_limit

    async def _plan_for_user_turn(self, user_text: str, context: TurnContext, history: Sequence[Dict[str, Any]]) -> List[str]:
        messages = build_director_messages(
            user_text,
            context.facts_text,
            render_history_text(history, self.history_limit),
        )
        try:
            raw = await self.llm.chat(messages, temperature=0.3, max_output_tokens=200)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[director] planning failed, using fallback: %s", exc)
            return list(USER_TURN_FALLBACK_PLAN)
        plan = parse_plan(parse_json_payload(raw), USER_TURN_FALLBACK_PLAN, self.max_plan_length)
        logger.info("[director] plan=%s", plan)
        return plan

    async def _plan_for_idle_turn(self, snapshot: EmotionSnapshot) -> tuple[List[str], str]:
        messages = build_idle_director_messages(
            snapshot.personas["demon"].mood,
            snapshot.personas["angel"].mood,
        )
        try:
            payload = await self.llm.json_chat(messages, IDLE_PLAN_SCHEMA_HINT, temperature=0.7, max_output_tokens=200)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[director] idle planning failed, using fallback: %s", exc)
            payload = None
        plan = parse_plan(payload, IDLE_TURN_FALLBACK_PLAN, self.max_plan_length)
        topic = ""
        if isinstance(payload, dict):
            topic = collapse_spaces(str(payload.get("topic") or ""))
        topic = topic or IDLE_DEFAULT_TOPIC
        logger.info("[director] idle plan=%s topic=%s", plan, topic)
        return plan, topic

    async def _run_plan(
        self,
        plan: Sequence[str],
        trigger_text: str,
        context: TurnContext,
        images: Sequence[Dict[str, str]] | None,
        *,
        conversation_id: str | None,
        transcript_seed: str = "",
    ) -> List[SpeakerTurn]:
        turns: List[SpeakerTurn] = []
        transcript = transcript_seed
        for speaker in plan:
            system_prompt = build_persona_system_prompt(speaker, context.snapshot, context.facts_text, context.rag_text)
            prompt = build_responder_prompt(persona_display_name(speaker), trigger_text, transcript)
            try:
                content = await self.loop.run_turn(
                    speaker,
                    prompt,
                    images,
                    [],
                    system_prompt=system_prompt,
                    conversation_id=conversation_id,
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[director] speaker %s crashed", speaker)
                content = SPEAKER_CRASH_MESSAGE
            turns.append(SpeakerTurn(speaker=speaker, content=content))
            transcript += f"\n[{persona_display_name(speaker)}]: {content}"
        return turns

    async def orchestrate_group(
        self,
        user_text: str,
        context: TurnContext,
        history: Sequence[Dict[str, Any]],
        images: Sequence[Dict[str, str]] | None = None,
        *,
        conversation_id: str | None = None,
    ) -> List[SpeakerTurn]:
        plan = await self._plan_for_user_turn(user_text, context, history)
        return await self._run_plan(
            plan,
            user_text,
            context,
            images,
            conversation_id=conversation_id,
        )

    async def run_idle_chat(
        self,
        snapshot: EmotionSnapshot,
        *,
        conversation_id: str | None = None,
        facts_text: str = "",
    ) -> tuple[str, List[SpeakerTurn]]:
        """Run an autonomous round; returns the synthetic trigger line and the speaker turns."""
        plan, topic = await self._plan_for_idle_turn(snapshot)
        trigger_text = IDLE_TRIGGER_TEMPLATE.format(topic=topic)
        turns = await self._run_plan(
            plan,
            trigger_text,
            TurnContext(snapshot=snapshot, facts_text=facts_text),
            None,
            conversation_id=conversation_id,
            transcript_seed=IDLE_TRANSCRIPT_SEED_TEMPLATE.format(topic=topic),
        )
        return trigger_text, turns
