from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence

import aiosqlite

from ...common import as_int, utc_now_iso
from .utils import STORE_ERRORS, _dumps_json, _loads_json, _sqlite_memory_connection, logger


class MemoryVectorsMixin:
    async def add_vector(
        self,
        text: str,
        embedding: Sequence[float],
        metadata: Mapping[str, Any] | None = None,
    ) -> Optional[int]:
        meta = dict(metadata or {})
        sql_id = meta.get("sql_id")
        try:
            async with _sqlite_memory_connection(self.db_path) as db:
                cursor = await db.execute(
                    """
                    INSERT INTO memory_vectors (text, embedding_json, metadata_json, sql_id, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        text,
                        _dumps_json([float(value) for value in embedding]),
                        _dumps_json(meta),
                        as_int(sql_id) if sql_id is not None else None,
                        utc_now_iso(),
                    ),
                )
                await db.commit()
                return int(cursor.lastrowid)
        except STORE_ERRORS:
            logger.exception("[memory.vectors] insert failed")
            return None

    async def get_vectors(self, limit: int = 5000) -> List[Dict[str, Any]]:
        try:
            async with _sqlite_memory_connection(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                async with db.execute(
                    """
                    SELECT vector_id, text, embedding_json, metadata_json, sql_id, created_at
                    FROM memory_vectors
                    ORDER BY vector_id DESC
                    LIMIT ?
                    """,
                    (max(1, int(limit)),),
                ) as cursor:
                    rows = await cursor.fetchall()
        except STORE_ERRORS:
            logger.exception("[memory.vectors] read failed")
            return []
        return [
            {
                "id": int(row["vector_id"]),
                "text": str(row["text"]),
                "embedding": _loads_json(row["embedding_json"], []),
                "metadata": _loads_json(row["metadata_json"], {}),
                "sql_id": row["sql_id"],
                "created_at": str(row["created_at"]),
            }
            for row in rows
        ]
