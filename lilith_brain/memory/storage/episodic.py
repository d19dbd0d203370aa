from __future__ import annotations

from typing import Any, Dict, List, Optional

import aiosqlite

from ...common import utc_now_iso
from .utils import STORE_ERRORS, _clamp, _sqlite_memory_connection, logger


def _episodic_row(row: aiosqlite.Row) -> Dict[str, Any]:
    return {
        "id": int(row["memory_id"]),
        "type": str(row["memory_type"]),
        "trigger": str(row["trigger_text"]),
        "action": str(row["action_text"]),
        "result": str(row["result_text"]),
        "importance_score": float(row["importance_score"]),
        "reflection": row["reflection"],
        "conversation_id": row["conversation_id"],
        "timestamp": str(row["created_at"]),
    }


class MemoryEpisodicMixin:
    async def create_memory(
        self,
        memory_type: str,
        trigger: str,
        action: str,
        result: str,
        importance_score: float,
        *,
        conversation_id: str | None = None,
        timestamp: str | None = None,
    ) -> Optional[int]:
        try:
            async with _sqlite_memory_connection(self.db_path) as db:
                cursor = await db.execute(
                    """
                    INSERT INTO memories_episodic (
                        memory_type, trigger_text, action_text, result_text,
                        importance_score, conversation_id, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        memory_type,
                        trigger or "",
                        action or "",
                        result or "",
                        _clamp(float(importance_score), 0.0, 1.0),
                        conversation_id,
                        timestamp or utc_now_iso(),
                    ),
                )
                await db.commit()
                return int(cursor.lastrowid)
        except STORE_ERRORS:
            logger.exception("[memory.episodic] insert failed type=%s", memory_type)
            return None

    async def get_memories(
        self,
        memory_type: str | None = None,
        limit: int = 10,
        *,
        since: str | None = None,
        min_importance: float | None = None,
        unreflected_only: bool = False,
    ) -> List[Dict[str, Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        if memory_type:
            clauses.append("memory_type = ?")
            params.append(memory_type)
        if since:
            clauses.append("created_at >= ?")
            params.append(since)
        if min_importance is not None:
            clauses.append("importance_score >= ?")
            params.append(float(min_importance))
        if unreflected_only:
            clauses.append("reflection IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, int(limit)))

        try:
            async with _sqlite_memory_connection(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(
                    f"""
                    SELECT memory_id, memory_type, trigger_text, action_text, result_text,
                           importance_score, reflection, conversation_id, created_at
                    FROM memories_episodic
                    {where}
                    ORDER BY created_at DESC, memory_id DESC
                    LIMIT ?
                    """,
                    params,
                ) as cursor:
                    rows = await cursor.fetchall()
        except STORE_ERRORS:
            logger.exception("[memory.episodic] read failed type=%s", memory_type)
            return []
        return [_episodic_row(row) for row in rows]

    async def update_reflection(self, memory_id: int, reflection: str) -> bool:
        """Write a reflection once; later writes to the same memory are ignored."""
        text = str(reflection or "").strip()
        if not text:
            return False
        try:
            async with _sqlite_memory_connection(self.db_path) as db:
                cursor = await db.execute(
                    "UPDATE memories_episodic SET reflection = ? WHERE memory_id = ? AND reflection IS NULL",
                    (text, int(memory_id)),
                )
                await db.commit()
                return cursor.rowcount > 0
        except STORE_ERRORS:
            logger.exception("[memory.episodic] reflection write failed id=%s", memory_id)
            return False
