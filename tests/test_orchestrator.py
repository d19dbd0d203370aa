from __future__ import annotations

import asyncio
import random
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from lilith_brain.brain.group_director import GroupDialogueDirector  # noqa: E402
from lilith_brain.brain.orchestrator import (  # noqa: E402
    AgentOrchestrator,
    MostRecentActivitySelector,
    TurnResult,
    WeightedRecencySelector,
)
from lilith_brain.emotion.engine import EmotionEngine  # noqa: E402
from lilith_brain.memory.long_term import LongTermMemory  # noqa: E402
from lilith_brain.memory.persona_memory import PersonaMemoryEngine  # noqa: E402
from lilith_brain.memory.store import MemoryStore  # noqa: E402
from lilith_brain.prompts.dialogue import (  # noqa: E402
    BUSY_PLACEHOLDER,
    IDLE_HISTORY_USER_MARKER,
    IMAGE_ONLY_PERCEPTION_TEXT,
    INTERNAL_ERROR_MESSAGE,
    SOLO_EXHAUSTED_MESSAGE,
)
from lilith_brain.prompts.memory import REFLECTION_SCHEMA_HINT  # noqa: E402
from lilith_brain.scheduler import Impulse, ImpulseType  # noqa: E402
from lilith_brain.tasks import BackgroundTasks  # noqa: E402

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class _JsonLLM:
    def __init__(self, payload: object = None, *, reflection: object = None) -> None:
        self.payload = payload if payload is not None else {}
        self.reflection = reflection
        self.reflection_batches: list[list[dict]] = []

    async def json_chat(self, messages, schema_hint, **kwargs):  # type: ignore[no-untyped-def]
        if schema_hint == REFLECTION_SCHEMA_HINT:
            self.reflection_batches.append(messages)
            return self.reflection
        return self.payload

    async def chat(self, messages, **kwargs):  # type: ignore[no-untyped-def]
        return '{"plan": ["demon", "angel"]}'


class _ReactorLLM:
    def __init__(self, reply: str = "Hmph. Show-off.", *, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error

    async def chat(self, messages, **kwargs):  # type: ignore[no-untyped-def]
        if self.error is not None:
            raise self.error
        return self.reply


class _FakeLoop:
    def __init__(self, reply: str = "Fine, senpai.", *, error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.gate: asyncio.Event | None = None
        self.entered: asyncio.Event | None = None
        self.calls: list[dict] = []

    async def run_turn(self, persona, user_content, images, prior, **kwargs):  # type: ignore[no-untyped-def]
        self.calls.append({"persona": persona, "content": user_content, "images": images, **kwargs})
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.reply


def _build(
    tmp_path: Path,
    *,
    loop: _FakeLoop | None = None,
    reactor: _ReactorLLM | None = None,
    memory_llm: _JsonLLM | None = None,
    rng: random.Random | None = None,
) -> tuple[AgentOrchestrator, MemoryStore, BackgroundTasks, _FakeLoop]:
    store = MemoryStore(tmp_path / "memory.db")
    background = BackgroundTasks()
    loop = loop or _FakeLoop()
    planner = _JsonLLM()
    orchestrator = AgentOrchestrator(
        memory=store,
        emotion=EmotionEngine(store, _JsonLLM({"affection_delta": 1}), rng=random.Random(0)),
        persona_memory=PersonaMemoryEngine(store, _JsonLLM({}), rng=random.Random(0)),
        ltm=LongTermMemory(store, None, background),
        loop=loop,  # type: ignore[arg-type]
        director=GroupDialogueDirector(planner, loop),  # type: ignore[arg-type]
        reactor_llm=reactor or _ReactorLLM(),
        memory_llm=memory_llm or _JsonLLM({"importance_score": 0.3, "summary": "small talk"}),
        background=background,
        rng=rng or random.Random(0),
        clock=lambda: NOW,
    )
    return orchestrator, store, background, loop


def test_solo_turn_replies_and_records_history(tmp_path: Path) -> None:
    async def scenario():
        orchestrator, store, background, loop = _build(tmp_path)
        await store.init()
        result = await orchestrator.process_turn("c1", "hello", mode="angel")
        await background.drain(timeout=5)
        return result, await store.get_history("c1"), await store.get_memories("conversation"), loop

    result, history, episodes, loop = asyncio.run(scenario())

    assert result.messages == ["Fine, senpai."]
    assert result.mode == "angel"
    assert result.emotion is not None
    assert loop.calls[0]["persona"] == "angel"
    assert loop.calls[0]["exhausted_text"] == SOLO_EXHAUSTED_MESSAGE
    assert [entry["role"] for entry in history] == ["user", "assistant"]
    assert history[0]["meta"] == {"target": "angel"}
    assert history[1]["meta"] == {"speaker": "angel"}
    assert episodes[0]["importance_score"] == 0.3
    assert episodes[0]["action"] == "small talk"


def test_busy_brain_returns_placeholder_without_touching_history(tmp_path: Path) -> None:
    async def scenario():
        loop = _FakeLoop()
        loop.gate = asyncio.Event()
        loop.entered = asyncio.Event()
        orchestrator, store, background, _ = _build(tmp_path, loop=loop)
        await store.init()

        first = asyncio.create_task(orchestrator.process_turn("c1", "first", mode="demon"))
        await loop.entered.wait()
        busy = await orchestrator.process_turn("c1", "second", mode="demon")
        history_while_busy = await store.get_history("c1")
        dropped = await orchestrator.handle_impulse(Impulse(ImpulseType.IDLE_CHECK))
        loop.gate.set()
        done = await first
        await background.drain(timeout=5)
        return busy, history_while_busy, dropped, done, await store.get_history("c1")

    busy, history_while_busy, dropped, done, history = asyncio.run(scenario())

    assert busy.busy is True
    assert busy.messages == [BUSY_PLACEHOLDER]
    assert history_while_busy == []
    assert dropped is None
    assert done.busy is False
    assert [entry["content"] for entry in history] == ["first", "Fine, senpai."]


def test_history_stays_bounded_and_ordered_over_many_turns(tmp_path: Path) -> None:
    async def scenario():
        orchestrator, store, background, _ = _build(tmp_path)
        await store.init()
        for index in range(35):
            await orchestrator.process_turn("c1", f"turn {index}", mode="demon")
        await background.drain(timeout=10)
        return await store.get_history("c1")

    history = asyncio.run(scenario())

    assert len(history) == 60
    user_turns = [entry["content"] for entry in history if entry["role"] == "user"]
    assert user_turns == [f"turn {index}" for index in range(5, 35)]
    assert history[-1]["role"] == "assistant"


def test_restart_marker_sets_flag(tmp_path: Path) -> None:
    async def scenario():
        loop = _FakeLoop("SYSTEM_RESTART_TRIGGER Restart scheduled.")
        orchestrator, store, background, _ = _build(tmp_path, loop=loop)
        await store.init()
        result = await orchestrator.process_turn("c1", "please restart", mode="demon")
        await background.drain(timeout=5)
        return result

    assert asyncio.run(scenario()).should_restart is True


def test_unexpected_failure_returns_internal_error_and_releases_lock(tmp_path: Path) -> None:
    async def scenario():
        loop = _FakeLoop(error=RuntimeError("model crashed"))
        orchestrator, store, background, _ = _build(tmp_path, loop=loop)
        await store.init()
        failed = await orchestrator.process_turn("c1", "hello", mode="demon")
        history_after_failure = await store.get_history("c1")
        loop.error = None
        recovered = await orchestrator.process_turn("c1", "hello again", mode="demon")
        await background.drain(timeout=5)
        return failed, history_after_failure, recovered

    failed, history_after_failure, recovered = asyncio.run(scenario())

    assert failed.messages == [INTERNAL_ERROR_MESSAGE]
    assert history_after_failure == []
    assert recovered.messages == ["Fine, senpai."]


def test_pair_mode_adds_reaction_and_stays_silent_on_failure(tmp_path: Path) -> None:
    async def scenario():
        orchestrator, store, background, _ = _build(tmp_path)
        await store.init()
        with_reaction = await orchestrator.process_turn("c1", "look at this", mode="pair")
        orchestrator.reactor_llm = _ReactorLLM(error=RuntimeError("timeout"))
        silent = await orchestrator.process_turn("c1", "and this", mode="pair")
        await background.drain(timeout=5)
        return with_reaction, silent

    with_reaction, silent = asyncio.run(scenario())

    assert with_reaction.messages == ["[SPEAKER:demon]Fine, senpai.", "[SPEAKER:angel]Hmph. Show-off."]
    assert silent.messages == ["[SPEAKER:demon]Fine, senpai."]


def test_group_mode_formats_speaker_messages(tmp_path: Path) -> None:
    async def scenario():
        orchestrator, store, background, loop = _build(tmp_path)
        await store.init()
        result = await orchestrator.process_turn("c1", "both of you", mode="group")
        await background.drain(timeout=5)
        return result, loop

    result, loop = asyncio.run(scenario())

    assert result.messages == ["[SPEAKER:demon]Fine, senpai.", "[SPEAKER:angel]Fine, senpai."]
    assert [call["persona"] for call in loop.calls] == ["demon", "angel"]


def test_image_only_turn_uses_placeholder_for_perception_only(tmp_path: Path) -> None:
    async def scenario():
        orchestrator, store, background, loop = _build(tmp_path)
        await store.init()
        attachments = [
            {"name": "cat.png", "mime_type": "image/png", "data": "iVBORw0KGgo="},
            {"name": "song.mp3", "mime_type": "audio/mpeg", "data": "SUQz"},
        ]
        await orchestrator.process_turn("c1", "", attachments, mode="demon")
        await background.drain(timeout=5)
        return loop, await store.get_history("c1")

    loop, history = asyncio.run(scenario())

    assert IMAGE_ONLY_PERCEPTION_TEXT not in loop.calls[0]["content"]
    assert loop.calls[0]["images"][0]["mime_type"] == "image/png"
    assert history[0]["content"] == IMAGE_ONLY_PERCEPTION_TEXT


def test_idle_impulses_start_chats_about_thirty_percent_of_the_time(tmp_path: Path) -> None:
    async def scenario():
        orchestrator, store, _, _ = _build(tmp_path, rng=random.Random(1234))
        await store.init()
        started: list[str] = []

        async def fake_background_chat(conversation_id: str) -> TurnResult:
            started.append(conversation_id)
            return TurnResult(messages=["[SPEAKER:demon]..."], mode="group")

        orchestrator._run_background_chat = fake_background_chat  # type: ignore[method-assign]
        await store.create_relationship("c1")

        await store.update_user_activity("c1", (NOW - timedelta(minutes=61)).isoformat())
        for _ in range(1000):
            await orchestrator.handle_impulse(Impulse(ImpulseType.IDLE_CHECK))
        after_long_idle = len(started)

        await store.update_user_activity("c1", (NOW - timedelta(minutes=60)).isoformat())
        for _ in range(200):
            await orchestrator.handle_impulse(Impulse(ImpulseType.IDLE_CHECK))
        return after_long_idle, len(started)

    after_long_idle, total = asyncio.run(scenario())

    assert 250 <= after_long_idle <= 350
    assert total == after_long_idle


def test_idle_check_requires_long_idle_and_a_winning_draw(tmp_path: Path) -> None:
    class _AlwaysHigh(random.Random):
        def random(self) -> float:
            return 0.95

    async def scenario():
        orchestrator, store, background, _ = _build(tmp_path, rng=_AlwaysHigh())
        await store.init()
        started: list[str] = []

        async def fake_background_chat(conversation_id: str) -> TurnResult:
            started.append(conversation_id)
            return TurnResult(messages=["[SPEAKER:angel]..."], mode="group")

        orchestrator._run_background_chat = fake_background_chat  # type: ignore[method-assign]
        await store.create_relationship("c1")
        await store.update_user_activity("c1", (NOW - timedelta(minutes=30)).isoformat())
        recent = await orchestrator.handle_impulse(Impulse(ImpulseType.IDLE_CHECK))
        await store.update_user_activity("c1", (NOW - timedelta(minutes=90)).isoformat())
        idle = await orchestrator.handle_impulse(Impulse(ImpulseType.TRIGGER_MORNING_BRIEFING))
        return recent, idle, started

    recent, idle, started = asyncio.run(scenario())

    assert recent is None
    assert idle is not None
    assert started == ["c1"]


def test_idle_check_touches_unparsable_activity(tmp_path: Path) -> None:
    async def scenario():
        orchestrator, store, _, _ = _build(tmp_path)
        await store.init()
        await store.create_relationship("c1")
        await store.update_user_activity("c1", "not-a-timestamp")
        result = await orchestrator.handle_impulse(Impulse(ImpulseType.IDLE_CHECK))
        return result, await store.get_relationship("c1")

    result, record = asyncio.run(scenario())

    assert result is None
    assert record is not None
    assert record["last_user_activity"] == NOW.isoformat(timespec="seconds")


def test_background_chat_saves_group_history_with_idle_marker(tmp_path: Path) -> None:
    async def scenario():
        orchestrator, store, _, _ = _build(tmp_path)
        await store.init()
        await store.create_relationship("c1")
        result = await orchestrator._run_background_chat("c1")
        return result, await store.get_history("c1")

    result, history = asyncio.run(scenario())

    assert result.mode == "group"
    assert history[0]["content"] == IDLE_HISTORY_USER_MARKER
    assert history[0]["meta"] == {"target": "group"}
    assert len(history) == 1 + len(result.messages)


def test_reflection_only_writes_for_reviewed_memories(tmp_path: Path) -> None:
    async def scenario():
        memory_llm = _JsonLLM()
        orchestrator, store, _, _ = _build(tmp_path, memory_llm=memory_llm)
        await store.init()
        first = await store.create_memory("conversation", "a", "b", "c", 0.9)
        second = await store.create_memory("tool_use", "{}", "readUrl", "ok", 0.5)
        memory_llm.reflection = {
            "insights": [
                {"memory_id": first, "reflection_text": "senpai likes short answers"},
                {"memory_id": 9999, "reflection_text": "invented"},
                {"memory_id": second, "reflection_text": ""},
            ]
        }
        await orchestrator.handle_impulse(Impulse(ImpulseType.TRIGGER_SELF_REFLECTION))
        return first, second, await store.get_memories(None, 10)

    first, second, rows = asyncio.run(scenario())

    by_id = {row["id"]: row for row in rows}
    assert by_id[first]["reflection"] == "senpai likes short answers"
    assert by_id[second]["reflection"] is None
    assert 9999 not in by_id


def test_selectors_pick_recent_conversations(tmp_path: Path) -> None:
    async def scenario():
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        for cid, minutes in (("old", 300), ("new", 5)):
            await store.create_relationship(cid)
            await store.update_user_activity(cid, (NOW - timedelta(minutes=minutes)).isoformat())
        recent = await MostRecentActivitySelector().select(store)
        weighted = [await WeightedRecencySelector(random.Random(seed)).select(store) for seed in range(50)]
        return recent, weighted

    recent, weighted = asyncio.run(scenario())

    assert recent is not None and recent["conversation_id"] == "new"
    picked = {row["conversation_id"] for row in weighted if row}
    assert picked == {"new", "old"}
