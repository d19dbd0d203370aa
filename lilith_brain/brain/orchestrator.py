from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Protocol, Sequence

from ..common import as_float, clamp, collapse_spaces, parse_timestamp, utc_now_iso
from ..config import DIALOGUE_MODES, PERSONA_IDS
from ..emotion.engine import EmotionEngine, EmotionSnapshot
from ..memory.long_term import EpisodicMemory, LongTermMemory
from ..memory.persona_memory import FactRecall, PersonaMemoryEngine
from ..memory.store import MemoryStore
from ..memory.vector_recall import VectorRecallBridge
from ..prompts.dialogue import (
    BUSY_PLACEHOLDER,
    EMPTY_PERCEPTION_TEXT,
    IDLE_HISTORY_USER_MARKER,
    IMAGE_ONLY_PERCEPTION_TEXT,
    INTERNAL_ERROR_MESSAGE,
    SOLO_EXHAUSTED_MESSAGE,
    format_speaker_message,
)
from ..prompts.memory import (
    IMPORTANCE_SCHEMA_HINT,
    REFLECTION_SCHEMA_HINT,
    build_importance_messages,
    build_reflection_messages,
)
from ..prompts.persona import build_persona_system_prompt, build_reactor_prompt
from ..scheduler import Impulse, ImpulseType
from ..tasks import BackgroundTasks
from .attachments import Attachment, split_attachments
from .context import TurnContext, history_to_messages
from .group_director import GroupDialogueDirector, SpeakerTurn
from .tool_loop import ToolExecutionLoop

logger = logging.getLogger("lilith_brain.brain")

DEFAULT_EPISODE_IMPORTANCE = 0.5


@dataclass(slots=True)
class TurnResult:
    messages: List[str] = field(default_factory=list)
    emotion: EmotionSnapshot | None = None
    mode: str = "demon"
    should_restart: bool = False
    busy: bool = False


class ActiveConversationSelector(Protocol):
    async def select(self, memory: MemoryStore) -> Dict[str, Any] | None: ...


class MostRecentActivitySelector:
    """Pick the conversation with the latest user activity; ties go to the smallest id."""

    async def select(self, memory: MemoryStore) -> Dict[str, Any] | None:
        return await memory.get_most_active_user()


class WeightedRecencySelector:
    """Pick among recently active conversations, weighting rank ``i`` by ``1 / (i + 1)``."""

    def __init__(self, rng: random.Random | None = None, candidates: int = 10) -> None:
        self.rng = rng or random.Random()
        self.candidates = candidates

    async def select(self, memory: MemoryStore) -> Dict[str, Any] | None:
        rows = await memory.list_recent_activity(self.candidates)
        if not rows:
            return None
        weights = [1.0 / (index + 1) for index in range(len(rows))]
        return self.rng.choices(rows, weights=weights, k=1)[0]


def build_selector(strategy: str, rng: random.Random | None = None) -> ActiveConversationSelector:
    if strategy == "weighted":
        return WeightedRecencySelector(rng)
    return MostRecentActivitySelector()


def contains_restart_marker(messages: Iterable[str], marker: str) -> bool:
    return any(marker in message for message in messages)


class AgentOrchestrator:
    """Entry point for user turns and scheduler impulses.

    One process-wide lock makes the brain single-flight: a user turn that arrives while
    another turn or impulse is running gets a placeholder reply, and impulses are dropped.
    """

    def __init__(
        self,
        *,
        memory: MemoryStore,
        emotion: EmotionEngine,
        persona_memory: PersonaMemoryEngine,
        ltm: LongTermMemory,
        loop: ToolExecutionLoop,
        director: GroupDialogueDirector,
        reactor_llm: Any,
        memory_llm: Any,
        background: BackgroundTasks,
        vectors: VectorRecallBridge | None = None,
        selector: ActiveConversationSelector | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
        default_mode: str = "demon",
        pair_primary: str = "demon",
        history_store_limit: int = 60,
        history_context_limit: int = 20,
        rag_recall_limit: int = 3,
        idle_threshold_minutes: int = 60,
        idle_probability_threshold: float = 0.7,
        reflection_window_hours: int = 24,
        reflection_batch_limit: int = 10,
        reflection_min_importance: float | None = None,
        restart_marker: str = "SYSTEM_RESTART_TRIGGER",
    ) -> None:
        self.memory = memory
        self.emotion = emotion
        self.persona_memory = persona_memory
        self.ltm = ltm
        self.loop = loop
        self.director = director
        self.reactor_llm = reactor_llm
        self.memory_llm = memory_llm
        self.background = background
        self.vectors = vectors
        self.rng = rng or random.Random()
        self.selector = selector or MostRecentActivitySelector()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.default_mode = default_mode
        self.pair_primary = pair_primary
        self.pair_secondary = next(p for p in PERSONA_IDS if p != pair_primary)
        self.history_store_limit = history_store_limit
        self.history_context_limit = history_context_limit
        self.rag_recall_limit = rag_recall_limit
        self.idle_threshold_minutes = idle_threshold_minutes
        self.idle_probability_threshold = idle_probability_threshold
        self.reflection_window_hours = reflection_window_hours
        self.reflection_batch_limit = reflection_batch_limit
        self.reflection_min_importance = reflection_min_importance
        self.restart_marker = restart_marker
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------ user turns

    async def process_turn(
        self,
        conversation_id: str,
        user_text: str,
        attachments: Sequence[Attachment | Dict[str, Any]] = (),
        mode: str | None = None,
    ) -> TurnResult:
        mode = (mode or self.default_mode).strip().lower()
        if mode not in DIALOGUE_MODES:
            mode = self.default_mode
        if self._lock.locked():
            logger.info("[brain] busy, placeholder for conversation=%s", conversation_id)
            return TurnResult(messages=[BUSY_PLACEHOLDER], mode=mode, busy=True)

        async with self._lock:
            try:
                return await self._process_turn_locked(conversation_id, user_text, attachments, mode)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[brain] turn failed conversation=%s", conversation_id)
                return TurnResult(messages=[INTERNAL_ERROR_MESSAGE], mode=mode)

    async def _process_turn_locked(
        self,
        conversation_id: str,
        user_text: str,
        attachments: Sequence[Attachment | Dict[str, Any]],
        mode: str,
    ) -> TurnResult:
        split = split_attachments(user_text, attachments)
        reasoning_text = split.text
        if reasoning_text:
            perception_text = reasoning_text
        elif split.images:
            perception_text = IMAGE_ONLY_PERCEPTION_TEXT
        else:
            perception_text = EMPTY_PERCEPTION_TEXT

        history, context = await self._perceive(conversation_id, perception_text, mode)

        if mode in PERSONA_IDS:
            messages = [await self._run_solo(mode, reasoning_text, split.images, history, context, conversation_id)]
            speakers = [mode]
        elif mode == "pair":
            turns = await self._run_pair(reasoning_text, split.images, history, context, conversation_id)
            messages = [format_speaker_message(turn.speaker, turn.content) for turn in turns]
            speakers = [turn.speaker for turn in turns]
        else:
            turns = await self.director.orchestrate_group(
                reasoning_text,
                context,
                history,
                split.images,
                conversation_id=conversation_id,
            )
            messages = [format_speaker_message(turn.speaker, turn.content) for turn in turns]
            speakers = [turn.speaker for turn in turns]

        await self._append_history(conversation_id, history, perception_text, messages, speakers, mode)

        ai_text = "\n".join(messages)
        self.background.spawn(
            self.persona_memory.memorize(conversation_id, perception_text, ai_text, mode),
            name=f"facts-{conversation_id}",
        )
        self.background.spawn(
            self._record_conversation_episode(conversation_id, perception_text, ai_text),
            name=f"episode-{conversation_id}",
        )

        should_restart = contains_restart_marker(messages, self.restart_marker)
        if should_restart:
            logger.warning("[brain] restart requested conversation=%s", conversation_id)
        return TurnResult(messages=messages, emotion=context.snapshot, mode=mode, should_restart=should_restart)

    async def _perceive(self, conversation_id: str, text: str, mode: str) -> tuple[List[Dict[str, Any]], TurnContext]:
        use_vectors = self.vectors is not None and self.vectors.enabled
        results = await asyncio.gather(
            self.emotion.perceive(conversation_id, text, mode),
            self.persona_memory.recall(conversation_id),
            self.memory.get_history(conversation_id),
            self.vectors.recall(text, self.rag_recall_limit) if use_vectors else _empty_text(),
            return_exceptions=True,
        )
        snapshot, recall, history, rag = results
        for result in results:
            if isinstance(result, asyncio.CancelledError):
                raise result

        if isinstance(snapshot, BaseException):
            logger.warning("[brain] emotion perception failed: %s", snapshot)
            snapshot = await self.emotion.get_state(conversation_id)
        if isinstance(recall, BaseException):
            logger.warning("[brain] fact recall failed: %s", recall)
            recall = FactRecall()
        if isinstance(history, BaseException):
            logger.warning("[brain] history load failed: %s", history)
            history = []
        if isinstance(rag, BaseException):
            logger.warning("[brain] vector recall failed: %s", rag)
            rag = ""
        return list(history), TurnContext(snapshot=snapshot, facts_text=recall.text, rag_text=rag)

    async def _run_solo(
        self,
        persona: str,
        text: str,
        images: List[Dict[str, str]],
        history: List[Dict[str, Any]],
        context: TurnContext,
        conversation_id: str,
    ) -> str:
        system_prompt = build_persona_system_prompt(persona, context.snapshot, context.facts_text, context.rag_text)
        return await self.loop.run_turn(
            persona,
            text,
            images,
            history_to_messages(history, self.history_context_limit),
            system_prompt=system_prompt,
            conversation_id=conversation_id,
            exhausted_text=SOLO_EXHAUSTED_MESSAGE,
        )

    async def _run_pair(
        self,
        text: str,
        images: List[Dict[str, str]],
        history: List[Dict[str, Any]],
        context: TurnContext,
        conversation_id: str,
    ) -> List[SpeakerTurn]:
        primary, secondary = self.pair_primary, self.pair_secondary
        reply = await self._run_solo(primary, text, images, history, context, conversation_id)
        turns = [SpeakerTurn(speaker=primary, content=reply)]

        reaction_prompt = build_reactor_prompt(secondary, primary, context.snapshot, reply)
        try:
            reaction = await self.reactor_llm.chat(
                [{"role": "system", "content": reaction_prompt}, {"role": "user", "content": text or reply}],
                temperature=0.9,
                max_output_tokens=200,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[brain] %s reaction failed, staying silent: %s", secondary, exc)
            reaction = ""
        reaction = reaction.strip()
        if reaction:
            turns.append(SpeakerTurn(speaker=secondary, content=reaction))
        return turns

    async def _append_history(
        self,
        conversation_id: str,
        history: List[Dict[str, Any]],
        user_text: str,
        messages: Sequence[str],
        speakers: Sequence[str],
        mode: str,
    ) -> None:
        now = utc_now_iso()
        entries = list(history)
        entries.append({"role": "user", "content": user_text, "timestamp": now, "meta": {"target": mode}})
        for message, speaker in zip(messages, speakers):
            entries.append({"role": "assistant", "content": message, "timestamp": now, "meta": {"speaker": speaker}})
        if not await self.memory.save_history(conversation_id, entries, self.history_store_limit):
            logger.warning("[brain] history write skipped conversation=%s", conversation_id)

    async def _record_conversation_episode(self, conversation_id: str, user_text: str, ai_text: str) -> None:
        importance = DEFAULT_EPISODE_IMPORTANCE
        summary = ""
        try:
            payload = await self.memory_llm.json_chat(
                build_importance_messages(user_text, ai_text),
                IMPORTANCE_SCHEMA_HINT,
                temperature=0.1,
                max_output_tokens=200,
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("[brain] importance scoring failed (non-critical): %s", exc)
            payload = None
        if isinstance(payload, dict):
            importance = clamp(as_float(payload.get("importance_score"), DEFAULT_EPISODE_IMPORTANCE), 0.0, 1.0)
            summary = collapse_spaces(str(payload.get("summary") or ""))
        await self.ltm.record(
            EpisodicMemory(
                type="conversation",
                trigger=user_text,
                action=summary or "reply",
                result=ai_text,
                importance_score=importance,
                conversation_id=conversation_id,
            )
        )

    # ------------------------------------------------------------------ impulses

    async def handle_impulse(self, impulse: Impulse) -> TurnResult | None:
        if self._lock.locked():
            logger.debug("[brain] busy, impulse dropped type=%s", impulse.type.value)
            return None
        async with self._lock:
            try:
                if impulse.type is ImpulseType.TRIGGER_SELF_REFLECTION:
                    await self._perform_self_reflection()
                    return None
                return await self._check_idle()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[brain] impulse failed type=%s", impulse.type.value)
                return None

    async def _perform_self_reflection(self) -> int:
        records = await self.ltm.retrieve(
            None,
            self.reflection_batch_limit,
            period_hours=self.reflection_window_hours,
            min_importance=self.reflection_min_importance,
            unreflected_only=True,
        )
        if not records:
            logger.info("[brain.reflection] nothing to reflect on")
            return 0

        batch = [
            {
                "memory_id": record.id,
                "type": record.type,
                "trigger": record.trigger,
                "action": record.action,
                "result": record.result,
                "importance_score": record.importance_score,
            }
            for record in records
        ]
        payload = await self.memory_llm.json_chat(
            build_reflection_messages(batch),
            REFLECTION_SCHEMA_HINT,
            temperature=0.3,
            max_output_tokens=900,
        )
        if not isinstance(payload, dict):
            logger.warning("[brain.reflection] model returned no usable insights")
            return 0

        allowed = {record.id for record in records}
        written = 0
        for insight in payload.get("insights") or ():
            if not isinstance(insight, dict):
                continue
            try:
                memory_id = int(insight.get("memory_id"))
            except (TypeError, ValueError):
                continue
            text = collapse_spaces(str(insight.get("reflection_text") or ""))
            if memory_id not in allowed or not text:
                continue
            if await self.ltm.add_reflection(memory_id, text):
                written += 1
        logger.info("[brain.reflection] reviewed=%s written=%s", len(records), written)
        return written

    def _should_start_idle_chat(self) -> bool:
        return self.rng.random() > self.idle_probability_threshold

    async def _check_idle(self) -> TurnResult | None:
        target = await self.selector.select(self.memory)
        if not target:
            return None
        conversation_id = str(target["conversation_id"])
        now = self.clock()
        last_activity = parse_timestamp(target.get("last_user_activity"))
        if last_activity is None:
            logger.info("[brain.idle] activity missing for conversation=%s, touching", conversation_id)
            await self.memory.update_user_activity(conversation_id, now.astimezone(timezone.utc).isoformat(timespec="seconds"))
            return None

        idle_minutes = (now - last_activity).total_seconds() / 60.0
        if idle_minutes <= self.idle_threshold_minutes:
            return None
        if not self._should_start_idle_chat():
            return None
        logger.info("[brain.idle] conversation=%s idle for %.0f min, starting chat", conversation_id, idle_minutes)
        return await self._run_background_chat(conversation_id)

    async def _run_background_chat(self, conversation_id: str) -> TurnResult:
        snapshot = await self.emotion.get_state(conversation_id)
        recall = await self.persona_memory.recall(conversation_id)
        _trigger, turns = await self.director.run_idle_chat(
            snapshot,
            conversation_id=conversation_id,
            facts_text=recall.text,
        )
        messages = [format_speaker_message(turn.speaker, turn.content) for turn in turns]
        history = await self.memory.get_history(conversation_id)
        await self._append_history(
            conversation_id,
            history,
            IDLE_HISTORY_USER_MARKER,
            messages,
            [turn.speaker for turn in turns],
            "group",
        )
        return TurnResult(
            messages=messages,
            emotion=snapshot,
            mode="group",
            should_restart=contains_restart_marker(messages, self.restart_marker),
        )


async def _empty_text() -> str:
    return ""
