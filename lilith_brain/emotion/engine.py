from __future__ import annotations

import asyncio
import logging
import math
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Protocol
from zoneinfo import ZoneInfo

from ..common import as_float, clamp
from ..config import PERSONA_IDS
from ..memory.store import MemoryStore
from ..prompts.emotion import REACTION_SCHEMA_HINT, build_reaction_messages
from ..prompts.persona import persona_profile
from .rules import AFFECTION_RULES, MOOD_RULES, TRUST_RULES, RelationshipRule, rule_by_score

logger = logging.getLogger("lilith_brain.emotion")

AFFECTION_RANGE = (0, 100)
TRUST_RANGE = (0, 100)
MOOD_RANGE = (-50, 50)

DEFAULT_AFFECTION = 20
DEFAULT_TRUST = 10
DEFAULT_MOOD = 0

MOOD_DRIFT_CHOICES = (-1, 0, 1)


def _clamp_int(value: float, bounds: tuple[int, int]) -> int:
    return int(clamp(int(value), bounds[0], bounds[1]))


def effective_affection(affection: int, mood: int) -> int:
    return _clamp_int(affection + math.floor(mood / 10), AFFECTION_RANGE)


def active_personas(mode: str) -> tuple[str, ...]:
    if mode in PERSONA_IDS:
        return (mode,)
    return PERSONA_IDS


@dataclass(slots=True)
class PersonaState:
    affection: int = DEFAULT_AFFECTION
    trust: int = DEFAULT_TRUST
    mood: int = DEFAULT_MOOD

    @property
    def effective_affection(self) -> int:
        return effective_affection(self.affection, self.mood)

    def apply(self, delta: "ReactionDelta") -> None:
        self.affection = _clamp_int(self.affection + delta.affection, AFFECTION_RANGE)
        self.trust = _clamp_int(self.trust + delta.trust, TRUST_RANGE)
        self.mood = _clamp_int(self.mood + delta.mood, MOOD_RANGE)


@dataclass(slots=True)
class PersonaRules:
    affection: RelationshipRule
    trust: RelationshipRule
    mood: RelationshipRule


@dataclass(slots=True)
class EnvContext:
    full: str
    hour: int
    date: str


@dataclass(slots=True)
class ReactionDelta:
    affection: int
    trust: int
    mood: int
    degraded: bool = False


@dataclass(slots=True)
class EmotionSnapshot:
    conversation_id: str
    personas: Dict[str, PersonaState]
    rules: Dict[str, PersonaRules]
    env: EnvContext
    last_user_activity: str | None = None

    def as_dict(self) -> Dict[str, Any]:
        values: Dict[str, Any] = {}
        for persona, state in self.personas.items():
            values[f"{persona}_affection"] = state.affection
            values[f"{persona}_trust"] = state.trust
            values[f"{persona}_mood"] = state.mood
            values[f"{persona}_effective_affection"] = state.effective_affection
        return values


class _JsonChatBackend(Protocol):
    async def json_chat(
        self,
        messages: list[dict[str, str]],
        schema_hint: str,
        temperature: float = 0.1,
        max_output_tokens: int = 900,
    ) -> dict[str, object] | None: ...


def rules_for(state: PersonaState) -> PersonaRules:
    return PersonaRules(
        affection=rule_by_score(AFFECTION_RULES, state.effective_affection),
        trust=rule_by_score(TRUST_RULES, state.trust),
        mood=rule_by_score(MOOD_RULES, state.mood),
    )


class EmotionEngine:
    """Per-conversation affection/trust/mood for both personas, updated by model-judged reactions."""

    def __init__(
        self,
        memory: MemoryStore,
        llm: _JsonChatBackend | Any,
        *,
        rng: random.Random | None = None,
        timezone_name: str = "Asia/Taipei",
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.memory = memory
        self.llm = llm
        self.rng = rng or random.Random()
        self.tz = ZoneInfo(timezone_name)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _env_context(self) -> EnvContext:
        now = self.clock().astimezone(self.tz)
        return EnvContext(
            full=now.strftime("%Y-%m-%d %H:%M:%S %Z"),
            hour=now.hour,
            date=now.date().isoformat(),
        )

    @staticmethod
    def _states_from_record(record: Dict[str, Any]) -> Dict[str, PersonaState]:
        states: Dict[str, PersonaState] = {}
        for persona in PERSONA_IDS:
            states[persona] = PersonaState(
                affection=_clamp_int(record.get(f"{persona}_affection", DEFAULT_AFFECTION), AFFECTION_RANGE),
                trust=_clamp_int(record.get(f"{persona}_trust", DEFAULT_TRUST), TRUST_RANGE),
                mood=_clamp_int(record.get(f"{persona}_mood", DEFAULT_MOOD), MOOD_RANGE),
            )
        return states

    def _snapshot(self, conversation_id: str, states: Dict[str, PersonaState], last_activity: str | None) -> EmotionSnapshot:
        return EmotionSnapshot(
            conversation_id=conversation_id,
            personas=states,
            rules={persona: rules_for(state) for persona, state in states.items()},
            env=self._env_context(),
            last_user_activity=last_activity,
        )

    async def _load_record(self, conversation_id: str) -> Dict[str, Any]:
        record = await self.memory.get_relationship(conversation_id)
        if record is None:
            record = await self.memory.create_relationship(conversation_id)
            logger.info("[emotion] relationship initialized conversation=%s", conversation_id)
        return record

    async def get_state(self, conversation_id: str) -> EmotionSnapshot:
        record = await self._load_record(conversation_id)
        return self._snapshot(
            conversation_id,
            self._states_from_record(record),
            record.get("last_user_activity"),
        )

    async def perceive(self, conversation_id: str, text: str, mode: str = "demon") -> EmotionSnapshot:
        record = await self._load_record(conversation_id)
        states = self._states_from_record(record)
        personas = active_personas(mode)

        deltas = await asyncio.gather(*(self._analyze(persona, states[persona], text) for persona in personas))
        for persona, delta in zip(personas, deltas):
            states[persona].apply(delta)

        values: Dict[str, int] = {}
        for persona, state in states.items():
            values[f"{persona}_affection"] = state.affection
            values[f"{persona}_trust"] = state.trust
            values[f"{persona}_mood"] = state.mood
        if not await self.memory.update_relationship(conversation_id, values):
            logger.warning("[emotion] state write skipped conversation=%s", conversation_id)

        activity = self.clock().astimezone(timezone.utc).isoformat(timespec="seconds")
        await self.memory.update_user_activity(conversation_id, activity)
        return self._snapshot(conversation_id, states, activity)

    async def _analyze(self, persona: str, state: PersonaState, text: str) -> ReactionDelta:
        drift = self.rng.choice(MOOD_DRIFT_CHOICES)
        messages = build_reaction_messages(
            persona_profile(persona).get("character_card", ""),
            affection=state.affection,
            trust=state.trust,
            mood=state.mood,
            text=text,
        )
        try:
            result = await self.llm.json_chat(messages, REACTION_SCHEMA_HINT, temperature=0.2, max_output_tokens=300)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[emotion] %s analysis failed: %s", persona, exc)
            return self._degraded_delta()

        if not isinstance(result, dict):
            logger.warning("[emotion] %s analysis returned invalid JSON", persona)
            return self._degraded_delta()

        raw = [as_float(result.get(key), 0.0) for key in ("affection_delta", "trust_delta", "mood_delta")]
        if not all(math.isfinite(value) for value in raw):
            logger.warning("[emotion] %s analysis returned non-finite deltas: %s", persona, raw)
            return self._degraded_delta()

        delta = ReactionDelta(
            affection=round(raw[0]),
            trust=round(raw[1]),
            mood=round(raw[2]) + drift,
        )
        if delta.affection or delta.trust or delta.mood:
            logger.info(
                "[emotion] %s reaction aff=%+d trust=%+d mood=%+d",
                persona,
                delta.affection,
                delta.trust,
                delta.mood,
            )
        return delta

    def _degraded_delta(self) -> ReactionDelta:
        return ReactionDelta(affection=0, trust=0, mood=self.rng.choice((-1, 1)), degraded=True)
