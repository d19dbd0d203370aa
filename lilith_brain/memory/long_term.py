from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional

from ..common import as_float, clamp, utc_now
from ..tasks import BackgroundTasks
from .store import MemoryStore
from .vector_recall import VectorRecallBridge

logger = logging.getLogger("lilith_brain.memory.ltm")

RAG_INDEXING_THRESHOLD = 0.8
EXPERIENCE_IMPORTANCE = 0.9
VECTOR_SYNC_SOURCE = "LTM_AUTO_SYNC"


@dataclass(slots=True)
class EpisodicMemory:
    type: str
    trigger: str
    action: str
    result: str
    importance_score: float = 0.5
    conversation_id: str | None = None
    id: int | None = None
    reflection: str | None = None
    timestamp: str | None = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "EpisodicMemory":
        return cls(
            id=int(row["id"]),
            type=str(row.get("type") or ""),
            trigger=str(row.get("trigger") or ""),
            action=str(row.get("action") or ""),
            result=str(row.get("result") or ""),
            importance_score=as_float(row.get("importance_score"), 0.5),
            conversation_id=row.get("conversation_id"),
            reflection=row.get("reflection"),
            timestamp=row.get("timestamp"),
        )


def describe_memory(memory: EpisodicMemory) -> str:
    """Render an episodic record as one sentence suited for embedding."""
    if memory.type == "experience":
        try:
            payload = json.loads(memory.result)
        except (json.JSONDecodeError, TypeError):
            payload = None
        if isinstance(payload, dict):
            feedback = str(payload.get("feedback") or "")
            refined = str(payload.get("refined_output") or memory.result)
            return (
                f'[Experience] When facing "{memory.trigger}" I used "{memory.action}". '
                f'Feedback said "{feedback}", and the refined approach is: {refined}'
            )
        return f"[Experience] Event: {memory.trigger} -> Action: {memory.action} -> Result: {memory.result}"
    if memory.type == "tool_use":
        return f'[Tool memory] I used tool {memory.action} to handle "{memory.trigger}", result: {memory.result}'
    return f"[Memory fragment] {memory.trigger} -> {memory.result}"


class LongTermMemory:
    """Episodic memory coordinator: SQL first, then threshold-gated vector indexing in the background."""

    def __init__(
        self,
        memory: MemoryStore,
        vectors: VectorRecallBridge | None,
        background: BackgroundTasks,
        *,
        index_threshold: float = RAG_INDEXING_THRESHOLD,
    ) -> None:
        self.memory = memory
        self.vectors = vectors
        self.background = background
        self.index_threshold = index_threshold

    async def record(self, memory: EpisodicMemory) -> Optional[int]:
        memory.importance_score = clamp(as_float(memory.importance_score, 0.5), 0.0, 1.0)
        memory_id = await self.memory.create_memory(
            memory.type,
            memory.trigger,
            memory.action,
            memory.result,
            memory.importance_score,
            conversation_id=memory.conversation_id,
        )
        if memory_id is None:
            return None
        memory.id = memory_id

        if memory.importance_score >= self.index_threshold and self.vectors is not None:
            self.background.spawn(
                self._sync_to_vectors(memory_id, memory),
                name=f"ltm-vector-sync-{memory_id}",
            )
        return memory_id

    async def _sync_to_vectors(self, sql_id: int, memory: EpisodicMemory) -> None:
        assert self.vectors is not None
        metadata = {
            "source": VECTOR_SYNC_SOURCE,
            "original_type": memory.type,
            "sql_id": sql_id,
        }
        vector_id = await self.vectors.memorize(describe_memory(memory), metadata)
        if vector_id is None:
            logger.warning("[ltm] vector sync skipped memory=%s", sql_id)
            return
        logger.info("[ltm] memory #%s synced to vector index (importance=%.2f)", sql_id, memory.importance_score)

    async def record_tool_use(
        self,
        tool_name: str,
        arguments: str,
        result: str,
        *,
        conversation_id: str | None = None,
        importance_score: float = 0.5,
    ) -> Optional[int]:
        return await self.record(
            EpisodicMemory(
                type="tool_use",
                trigger=arguments,
                action=tool_name,
                result=result[:200],
                importance_score=importance_score,
                conversation_id=conversation_id,
            )
        )

    async def store_experience(
        self,
        *,
        trigger: str,
        output: str,
        feedback: str,
        refined_output: str,
        context: Dict[str, Any] | None = None,
    ) -> Optional[int]:
        result = json.dumps(
            {
                "original_output": output,
                "feedback": feedback,
                "refined_output": refined_output,
                "context": context or {},
            },
            ensure_ascii=False,
        )
        return await self.record(
            EpisodicMemory(
                type="experience",
                trigger=trigger or "System Event",
                action="Self-Refine Process",
                result=result,
                importance_score=EXPERIENCE_IMPORTANCE,
            )
        )

    async def retrieve(
        self,
        memory_type: str | None = None,
        limit: int = 10,
        *,
        period_hours: int | None = None,
        min_importance: float | None = None,
        unreflected_only: bool = False,
    ) -> List[EpisodicMemory]:
        since = None
        if period_hours is not None:
            since = (utc_now() - timedelta(hours=period_hours)).isoformat(timespec="seconds")
        rows = await self.memory.get_memories(
            memory_type,
            limit,
            since=since,
            min_importance=min_importance,
            unreflected_only=unreflected_only,
        )
        return [EpisodicMemory.from_row(row) for row in rows]

    async def add_reflection(self, memory_id: int, reflection: str) -> bool:
        written = await self.memory.update_reflection(memory_id, reflection)
        if written:
            logger.info("[ltm] reflection added memory=%s", memory_id)
        else:
            logger.debug("[ltm] reflection skipped memory=%s (missing or already reflected)", memory_id)
        return written
