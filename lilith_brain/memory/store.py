from __future__ import annotations

from .storage.episodic import MemoryEpisodicMixin
from .storage.facts import MemoryFactsMixin
from .storage.history import MemoryHistoryMixin
from .storage.relationships import MemoryRelationshipsMixin
from .storage.schema import MemorySchemaMixin
from .storage.utils import _sqlite_memory_connection, logger
from .storage.vectors import MemoryVectorsMixin


class MemoryStore(
    MemorySchemaMixin,
    MemoryRelationshipsMixin,
    MemoryHistoryMixin,
    MemoryFactsMixin,
    MemoryEpisodicMixin,
    MemoryVectorsMixin,
):
    """Persistent brain memory: relationships, chat history, facts, episodic records and vectors."""

    async def reset_conversation(self, conversation_id: str) -> None:
        """Drop history, facts and relationship state for one conversation."""
        async with _sqlite_memory_connection(self.db_path) as db:
            for table in ("chat_histories", "memories_facts", "relationships"):
                await db.execute(f"DELETE FROM {table} WHERE conversation_id = ?", (conversation_id,))
            await db.commit()
        logger.info("[memory] conversation reset conversation=%s", conversation_id)
