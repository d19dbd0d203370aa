from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Protocol, Sequence

import numpy as np

from .store import MemoryStore

logger = logging.getLogger("lilith_brain.memory.vectors")


class _Embedder(Protocol):
    async def embed(self, text: str) -> Sequence[float]: ...


class VectorRecallBridge:
    """Embedding-backed recall over the ``memory_vectors`` table.

    Without an embedding provider every call is a no-op: ``memorize`` returns None and
    ``recall`` returns an empty string.
    """

    def __init__(
        self,
        memory: MemoryStore,
        embedder: _Embedder | None,
        *,
        min_similarity: float = 0.35,
        scan_limit: int = 5000,
    ) -> None:
        self.memory = memory
        self.embedder = embedder
        self.min_similarity = min_similarity
        self.scan_limit = max(1, int(scan_limit))

    @property
    def enabled(self) -> bool:
        return self.embedder is not None

    async def _embed(self, text: str) -> List[float] | None:
        if self.embedder is None:
            return None
        try:
            values = await self.embedder.embed(text)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[vectors] embedding failed: %s", exc)
            return None
        if not values:
            return None
        return [float(value) for value in values]

    async def memorize(self, text: str, metadata: Mapping[str, Any] | None = None) -> int | None:
        cleaned = str(text or "").strip()
        if not cleaned:
            return None
        embedding = await self._embed(cleaned)
        if embedding is None:
            return None
        vector_id = await self.memory.add_vector(cleaned, embedding, metadata)
        if vector_id is not None:
            logger.debug("[vectors] stored id=%s meta=%s", vector_id, dict(metadata or {}))
        return vector_id

    async def search(self, query: str, limit: int = 3) -> List[Dict[str, Any]]:
        cleaned = str(query or "").strip()
        if not cleaned:
            return []
        query_vector = await self._embed(cleaned)
        if query_vector is None:
            return []
        rows = await self.memory.get_vectors(limit=self.scan_limit)
        if not rows:
            return []

        q = np.asarray(query_vector, dtype=np.float32)
        q_norm = float(np.linalg.norm(q))
        if q_norm == 0.0:
            return []

        scored: List[Dict[str, Any]] = []
        for row in rows:
            vec = np.asarray(row.get("embedding") or [], dtype=np.float32)
            if vec.shape != q.shape:
                continue
            v_norm = float(np.linalg.norm(vec))
            if v_norm == 0.0:
                continue
            similarity = float(np.dot(q, vec) / (q_norm * v_norm))
            if similarity < self.min_similarity:
                continue
            scored.append({**row, "similarity": similarity})

        scored.sort(key=lambda item: (-item["similarity"], -int(item["id"])))
        return scored[: max(1, int(limit))]

    async def recall(self, query: str, limit: int = 3) -> str:
        """Ranked memory lines for prompt injection; empty when nothing relevant is stored."""
        hits = await self.search(query, limit=limit)
        return "\n".join(f"- ({hit['similarity']:.2f}) {hit['text']}" for hit in hits)
