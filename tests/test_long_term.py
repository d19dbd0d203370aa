from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from lilith_brain.memory.long_term import EpisodicMemory, LongTermMemory, describe_memory  # noqa: E402
from lilith_brain.memory.store import MemoryStore  # noqa: E402
from lilith_brain.memory.vector_recall import VectorRecallBridge  # noqa: E402
from lilith_brain.tasks import BackgroundTasks  # noqa: E402


class _FakeEmbedder:
    """Maps text onto a tiny bag-of-keywords vector."""

    KEYWORDS = ("coffee", "python", "rain", "tool")

    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.calls = 0

    async def embed(self, text: str) -> list[float]:
        self.calls += 1
        if self.fail:
            raise RuntimeError("embedding service down")
        lowered = text.lower()
        return [1.0 if word in lowered else 0.0 for word in self.KEYWORDS] + [0.1]


def _memory(importance: float, trigger: str = "senpai drinks coffee") -> EpisodicMemory:
    return EpisodicMemory(
        type="conversation",
        trigger=trigger,
        action="reply",
        result="noted",
        importance_score=importance,
    )


def test_importance_gates_vector_indexing_with_sql_link(tmp_path: Path) -> None:
    async def scenario():
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        background = BackgroundTasks()
        ltm = LongTermMemory(store, VectorRecallBridge(store, _FakeEmbedder()), background)
        low_id = await ltm.record(_memory(0.79))
        high_id = await ltm.record(_memory(0.8))
        await background.drain(timeout=5)
        return low_id, high_id, await store.get_vectors()

    low_id, high_id, vectors = asyncio.run(scenario())

    assert low_id is not None and high_id is not None
    assert len(vectors) == 1
    metadata = vectors[0]["metadata"]
    assert metadata["sql_id"] == high_id
    assert metadata["source"] == "LTM_AUTO_SYNC"
    assert metadata["original_type"] == "conversation"


def test_vector_sync_failure_keeps_episodic_row(tmp_path: Path) -> None:
    async def scenario():
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        background = BackgroundTasks()
        embedder = _FakeEmbedder(fail=True)
        ltm = LongTermMemory(store, VectorRecallBridge(store, embedder), background)
        memory_id = await ltm.record(_memory(0.95))
        await background.drain(timeout=5)
        return memory_id, embedder.calls, await store.get_vectors(), await ltm.retrieve()

    memory_id, calls, vectors, records = asyncio.run(scenario())

    assert memory_id is not None
    assert calls == 1
    assert vectors == []
    assert records[0].id == memory_id


def test_store_experience_is_always_indexed(tmp_path: Path) -> None:
    async def scenario():
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        background = BackgroundTasks()
        ltm = LongTermMemory(store, VectorRecallBridge(store, _FakeEmbedder()), background)
        memory_id = await ltm.store_experience(
            trigger="python import error",
            output="reinstalled everything",
            feedback="too slow",
            refined_output="check the virtualenv first",
        )
        await background.drain(timeout=5)
        return memory_id, await ltm.retrieve("experience", 5), await store.get_vectors()

    memory_id, records, vectors = asyncio.run(scenario())

    assert records[0].id == memory_id
    assert records[0].importance_score == 0.9
    assert json.loads(records[0].result)["refined_output"] == "check the virtualenv first"
    assert len(vectors) == 1
    assert vectors[0]["text"].startswith("[Experience]")


def test_retrieve_filters_by_period_and_reflection_state(tmp_path: Path) -> None:
    async def scenario():
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        ltm = LongTermMemory(store, None, BackgroundTasks())
        await store.create_memory("conversation", "old", "a", "b", 0.5, timestamp="2000-01-01T00:00:00+00:00")
        fresh_id = await ltm.record(_memory(0.5, "fresh"))
        reflected_id = await ltm.record(_memory(0.5, "reflected"))
        assert await ltm.add_reflection(reflected_id, "already thought about it")
        assert not await ltm.add_reflection(reflected_id, "again")
        return fresh_id, await ltm.retrieve(None, 10, period_hours=24, unreflected_only=True)

    fresh_id, records = asyncio.run(scenario())

    assert [record.id for record in records] == [fresh_id]


def test_vector_recall_ranks_by_similarity(tmp_path: Path) -> None:
    async def scenario():
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        bridge = VectorRecallBridge(store, _FakeEmbedder())
        await bridge.memorize("senpai loves coffee in the rain", {"source": "test"})
        await bridge.memorize("python tool failed", {"source": "test"})
        return await bridge.recall("coffee", limit=3), await VectorRecallBridge(store, None).recall("coffee")

    recalled, disabled = asyncio.run(scenario())

    lines = recalled.splitlines()
    assert len(lines) == 1
    assert "coffee" in lines[0]
    assert lines[0].startswith("- (")
    assert disabled == ""


def test_describe_memory_templates() -> None:
    tool = EpisodicMemory(type="tool_use", trigger='{"url": "x"}', action="readUrl", result="page text")
    experience = EpisodicMemory(
        type="experience",
        trigger="deploy failed",
        action="Self-Refine Process",
        result=json.dumps({"feedback": "missing env", "refined_output": "load .env first"}),
    )
    generic = EpisodicMemory(type="conversation", trigger="hi", action="reply", result="hello")

    assert describe_memory(tool).startswith("[Tool memory] I used tool readUrl")
    assert "load .env first" in describe_memory(experience)
    assert describe_memory(generic) == "[Memory fragment] hi -> hello"
