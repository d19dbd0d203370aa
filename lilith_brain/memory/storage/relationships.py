from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import aiosqlite

from ...common import utc_now_iso
from .utils import STORE_ERRORS, _sqlite_memory_connection, logger

RELATIONSHIP_VALUE_COLUMNS = (
    "demon_affection",
    "demon_trust",
    "demon_mood",
    "angel_affection",
    "angel_trust",
    "angel_mood",
)

_SELECT_RELATIONSHIP = """
    SELECT conversation_id, demon_affection, demon_trust, demon_mood,
           angel_affection, angel_trust, angel_mood, last_user_activity, updated_at
    FROM relationships
    WHERE conversation_id = ?
"""


def _relationship_row(row: aiosqlite.Row) -> Dict[str, Any]:
    record: Dict[str, Any] = {"conversation_id": str(row["conversation_id"])}
    for column in RELATIONSHIP_VALUE_COLUMNS:
        record[column] = int(row[column])
    record["last_user_activity"] = row["last_user_activity"]
    record["updated_at"] = row["updated_at"]
    return record


class MemoryRelationshipsMixin:
    async def get_relationship(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        try:
            async with _sqlite_memory_connection(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(_SELECT_RELATIONSHIP, (conversation_id,)) as cursor:
                    row = await cursor.fetchone()
        except STORE_ERRORS:
            logger.exception("[memory.relationships] read failed conversation=%s", conversation_id)
            return None
        if row is None:
            return None
        return _relationship_row(row)

    async def create_relationship(self, conversation_id: str) -> Dict[str, Any]:
        """Insert default state if missing and return the stored row. Errors propagate."""
        async with _sqlite_memory_connection(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(
                """
                INSERT OR IGNORE INTO relationships (conversation_id, last_user_activity)
                VALUES (?, ?)
                """,
                (conversation_id, utc_now_iso()),
            )
            await db.commit()
            async with db.execute(_SELECT_RELATIONSHIP, (conversation_id,)) as cursor:
                row = await cursor.fetchone()
        if row is None:
            raise RuntimeError(f"Relationship row missing after insert: {conversation_id}")
        return _relationship_row(row)

    async def update_relationship(self, conversation_id: str, values: Mapping[str, int]) -> bool:
        columns = [column for column in RELATIONSHIP_VALUE_COLUMNS if column in values]
        if not columns:
            return False
        assignments = ", ".join(f"{column} = ?" for column in columns)
        params = [int(values[column]) for column in columns]
        try:
            async with _sqlite_memory_connection(self.db_path) as db:
                cursor = await db.execute(
                    f"""
                    UPDATE relationships
                    SET {assignments}, updated_at = CURRENT_TIMESTAMP
                    WHERE conversation_id = ?
                    """,
                    (*params, conversation_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except STORE_ERRORS:
            logger.exception("[memory.relationships] update failed conversation=%s", conversation_id)
            return False

    async def update_user_activity(self, conversation_id: str, when: str | None = None) -> bool:
        try:
            async with _sqlite_memory_connection(self.db_path) as db:
                cursor = await db.execute(
                    "UPDATE relationships SET last_user_activity = ? WHERE conversation_id = ?",
                    (when or utc_now_iso(), conversation_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except STORE_ERRORS:
            logger.exception("[memory.relationships] activity touch failed conversation=%s", conversation_id)
            return False

    async def list_recent_activity(self, limit: int = 20) -> List[Dict[str, Any]]:
        try:
            async with _sqlite_memory_connection(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(
                    """
                    SELECT conversation_id, last_user_activity
                    FROM relationships
                    ORDER BY last_user_activity IS NULL, last_user_activity DESC, conversation_id ASC
                    LIMIT ?
                    """,
                    (max(1, int(limit)),),
                ) as cursor:
                    rows = await cursor.fetchall()
        except STORE_ERRORS:
            logger.exception("[memory.relationships] activity listing failed")
            return []
        return [
            {
                "conversation_id": str(row["conversation_id"]),
                "last_user_activity": row["last_user_activity"],
            }
            for row in rows
        ]

    async def get_most_active_user(self) -> Optional[Dict[str, Any]]:
        rows = await self.list_recent_activity(limit=1)
        return rows[0] if rows else None
