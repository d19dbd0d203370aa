from __future__ import annotations

from typing import Dict, List

import aiosqlite

from ...common import collapse_spaces, utc_now_iso
from .utils import STORE_ERRORS, _sqlite_memory_connection, logger

FACT_SCOPES = ("user", "agent", "us")

_SCOPE_ALIASES = {
    "self": "user",
    "human": "user",
    "assistant": "agent",
    "persona": "agent",
    "ai": "agent",
    "shared": "us",
    "both": "us",
    "relationship": "us",
}


def normalize_fact_scope(value: object, *, default: str = "user") -> str:
    raw = str(value or "").strip().casefold()
    normalized = _SCOPE_ALIASES.get(raw, raw)
    return normalized if normalized in FACT_SCOPES else default


def normalize_fact_key(value: object) -> str:
    return collapse_spaces(str(value or "")).casefold()[:100]


class MemoryFactsMixin:
    async def get_facts(self, conversation_id: str) -> List[Dict[str, str]]:
        try:
            async with _sqlite_memory_connection(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(
                    """
                    SELECT fact_key, fact_detail, scope, updated_at
                    FROM memories_facts
                    WHERE conversation_id = ?
                    ORDER BY scope ASC, fact_key ASC
                    """,
                    (conversation_id,),
                ) as cursor:
                    rows = await cursor.fetchall()
        except STORE_ERRORS:
            logger.exception("[memory.facts] read failed conversation=%s", conversation_id)
            return []
        return [
            {
                "fact_key": str(row["fact_key"]),
                "fact_detail": str(row["fact_detail"]),
                "scope": str(row["scope"]),
                "updated_at": str(row["updated_at"]),
            }
            for row in rows
        ]

    async def save_fact(self, conversation_id: str, fact_key: str, fact_detail: str, scope: str) -> bool:
        """Upsert one fact; the latest detail wins and the timestamp is refreshed."""
        key = normalize_fact_key(fact_key)
        detail = collapse_spaces(str(fact_detail or ""))
        if not key or not detail:
            return False
        try:
            async with _sqlite_memory_connection(self.db_path) as db:
                await db.execute(
                    """
                    INSERT INTO memories_facts (conversation_id, fact_key, fact_detail, scope, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(conversation_id, fact_key) DO UPDATE SET
                        fact_detail = excluded.fact_detail,
                        scope = excluded.scope,
                        updated_at = excluded.updated_at
                    """,
                    (conversation_id, key, detail, normalize_fact_scope(scope), utc_now_iso()),
                )
                await db.commit()
        except STORE_ERRORS:
            logger.exception("[memory.facts] upsert failed conversation=%s key=%s", conversation_id, key)
            return False
        return True
