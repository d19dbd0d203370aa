from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol

from ..common import collapse_spaces
from ..config import PERSONA_IDS
from ..prompts.memory import FACT_EXTRACTOR_SCHEMA_HINT, build_fact_extractor_messages, render_fact_buckets
from ..prompts.persona import persona_display_name, persona_signature
from .storage.facts import normalize_fact_scope
from .store import MemoryStore

logger = logging.getLogger("lilith_brain.memory.facts")


@dataclass(slots=True)
class FactRecall:
    facts: List[Dict[str, str]] = field(default_factory=list)
    text: str = ""


@dataclass(slots=True)
class FactCandidate:
    key: str
    detail: str
    scope: str


class _JsonChatBackend(Protocol):
    async def json_chat(
        self,
        messages: list[dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> dict[str, object] | None: ...


class PersonaMemoryEngine:
    """Relational facts about the user, the personas and their shared story."""

    def __init__(
        self,
        memory: MemoryStore,
        llm: _JsonChatBackend | Any,
        *,
        rng: random.Random | None = None,
        pair_primary: str = "demon",
    ) -> None:
        self.memory = memory
        self.llm = llm
        self.rng = rng or random.Random()
        self.pair_primary = pair_primary

    async def recall(self, conversation_id: str) -> FactRecall:
        facts = await self.memory.get_facts(conversation_id)
        return FactRecall(facts=facts, text=render_fact_buckets(facts))

    def recording_persona(self, mode: str) -> str:
        if mode in PERSONA_IDS:
            return mode
        if mode == "group":
            return self.rng.choice(PERSONA_IDS)
        return self.pair_primary

    @staticmethod
    def parse_candidate(payload: object) -> FactCandidate | None:
        if not isinstance(payload, dict):
            return None
        key = collapse_spaces(str(payload.get("fact_key") or ""))
        detail = collapse_spaces(str(payload.get("fact_detail") or ""))
        if not key or not detail:
            return None
        return FactCandidate(key=key, detail=detail, scope=normalize_fact_scope(payload.get("scope")))

    async def memorize(self, conversation_id: str, user_text: str, ai_text: str, mode: str) -> bool:
        persona = self.recording_persona(mode)
        existing = await self.memory.get_facts(conversation_id)
        messages = build_fact_extractor_messages(
            render_fact_buckets(existing),
            user_text,
            ai_text,
            persona_display_name(persona),
        )
        try:
            payload = await self.llm.json_chat(messages, FACT_EXTRACTOR_SCHEMA_HINT, temperature=0.1, max_output_tokens=400)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("[memory.facts] extraction failed (non-critical): %s", exc)
            return False

        candidate = self.parse_candidate(payload)
        if candidate is None:
            return False

        detail = f"{persona_signature(persona)} {candidate.detail}"
        saved = await self.memory.save_fact(conversation_id, candidate.key, detail, candidate.scope)
        if saved:
            logger.info(
                "[memory.facts] memorized by=%s scope=%s key=%s",
                persona,
                candidate.scope,
                candidate.key,
            )
        return saved
