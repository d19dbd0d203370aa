from __future__ import annotations

from typing import Any, Dict, List, Sequence

from .utils import STORE_ERRORS, _dumps_json, _loads_json, _sqlite_memory_connection, logger


class MemoryHistoryMixin:
    async def get_history(self, conversation_id: str) -> List[Dict[str, Any]]:
        try:
            async with _sqlite_memory_connection(self.db_path) as db:
                async with db.execute(
                    "SELECT history_json FROM chat_histories WHERE conversation_id = ?",
                    (conversation_id,),
                ) as cursor:
                    row = await cursor.fetchone()
        except STORE_ERRORS:
            logger.exception("[memory.history] read failed conversation=%s", conversation_id)
            return []
        if row is None:
            return []
        entries = _loads_json(row[0], [])
        return [entry for entry in entries if isinstance(entry, dict)]

    async def save_history(
        self,
        conversation_id: str,
        entries: Sequence[Dict[str, Any]],
        limit: int = 60,
    ) -> bool:
        """Persist the newest ``limit`` entries as the conversation's history blob."""
        trimmed = list(entries)[-max(1, int(limit)) :]
        try:
            async with _sqlite_memory_connection(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO chat_histories (conversation_id, history_json, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(conversation_id) DO UPDATE SET
                        history_json = excluded.history_json,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    (conversation_id, _dumps_json(trimmed)),
                )
                await db.commit()
        except STORE_ERRORS:
            logger.exception("[memory.history] write failed conversation=%s", conversation_id)
            return False
        return True
