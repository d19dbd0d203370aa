from __future__ import annotations

import asyncio
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from lilith_brain.brain.tool_loop import ToolExecutionLoop, parse_tool_arguments  # noqa: E402
from lilith_brain.memory.long_term import LongTermMemory  # noqa: E402
from lilith_brain.memory.store import MemoryStore  # noqa: E402
from lilith_brain.prompts.dialogue import LOOP_EXHAUSTED_MESSAGE  # noqa: E402
from lilith_brain.services.gemini_client import ModelReply, ToolCall  # noqa: E402
from lilith_brain.tasks import BackgroundTasks  # noqa: E402
from lilith_brain.tools.registry import Tool, ToolRegistry  # noqa: E402


class _ScriptedLLM:
    """Returns queued replies; once the queue is empty it repeats the last one."""

    def __init__(self, replies: list[ModelReply]) -> None:
        self.replies = list(replies)
        self.calls: list[list[dict]] = []

    async def chat_with_tools(self, messages, tools, **kwargs):  # type: ignore[no-untyped-def]
        self.calls.append(list(messages))
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


def _echo_registry() -> ToolRegistry:
    async def echo(args: dict) -> str:
        return f"echo:{args.get('text', '')}"

    registry = ToolRegistry()
    registry.register(
        Tool(
            name="echo",
            description="Echo text back.",
            handler=echo,
            parameters={"type": "object", "properties": {"text": {"type": "string"}}, "required": ["text"]},
        )
    )
    return registry


def _call(name: str, arguments: str, call_id: str = "call_1") -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


def test_final_text_without_tool_calls_returns_immediately(tmp_path: Path) -> None:
    async def scenario():
        llm = _ScriptedLLM([ModelReply(text="  Hmph, fine.  ")])
        loop = ToolExecutionLoop(llm, _echo_registry(), None, BackgroundTasks())
        result = await loop.run_turn(
            "demon",
            "hello",
            [{"mime_type": "image/png", "data": "AAAA"}],
            [{"role": "user", "content": "earlier"}],
            system_prompt="SYSTEM",
        )
        return llm, result

    llm, result = asyncio.run(scenario())

    assert result == "Hmph, fine."
    messages = llm.calls[0]
    assert messages[0] == {"role": "system", "content": "SYSTEM"}
    assert messages[1]["content"] == "earlier"
    assert messages[-1]["images"][0]["mime_type"] == "image/png"


def test_loop_stops_at_step_bound_with_abort_text(tmp_path: Path) -> None:
    async def scenario():
        llm = _ScriptedLLM([ModelReply(text="", tool_calls=[_call("echo", '{"text": "again"}')])])
        loop = ToolExecutionLoop(llm, _echo_registry(), None, BackgroundTasks(), max_steps=5)
        result = await loop.run_turn("angel", "loop forever", None, None, system_prompt="SYSTEM")
        return llm, result

    llm, result = asyncio.run(scenario())

    assert len(llm.calls) == 5
    assert result == LOOP_EXHAUSTED_MESSAGE


def test_exhausted_text_can_be_overridden_per_turn() -> None:
    async def scenario():
        llm = _ScriptedLLM([ModelReply(text="", tool_calls=[_call("echo", '{"text": "x"}')])])
        loop = ToolExecutionLoop(llm, _echo_registry(), None, BackgroundTasks(), max_steps=2)
        return await loop.run_turn("demon", "x", None, None, system_prompt="S", exhausted_text="(aborting)")

    assert asyncio.run(scenario()) == "(aborting)"


def test_tool_results_are_fed_back_with_call_id() -> None:
    async def scenario():
        llm = _ScriptedLLM(
            [
                ModelReply(text="let me check", tool_calls=[_call("echo", '{"text": "ping"}', "call_a")]),
                ModelReply(text="done"),
            ]
        )
        loop = ToolExecutionLoop(llm, _echo_registry(), None, BackgroundTasks())
        result = await loop.run_turn("demon", "ping it", None, None, system_prompt="S")
        return llm, result

    llm, result = asyncio.run(scenario())

    assert result == "done"
    second_call = llm.calls[1]
    assert second_call[-2]["role"] == "assistant"
    assert second_call[-2]["tool_calls"][0].name == "echo"
    assert second_call[-1] == {"role": "tool", "tool_call_id": "call_a", "name": "echo", "content": "echo:ping"}


def test_malformed_arguments_and_unknown_tools_become_error_strings() -> None:
    async def scenario():
        llm = _ScriptedLLM(
            [
                ModelReply(
                    text="",
                    tool_calls=[
                        _call("echo", "{not json", "call_bad"),
                        _call("doesNotExist", "{}", "call_missing"),
                        _call("echo", "[1, 2]", "call_list"),
                    ],
                ),
                ModelReply(text="recovered"),
            ]
        )
        loop = ToolExecutionLoop(llm, _echo_registry(), None, BackgroundTasks())
        result = await loop.run_turn("demon", "break things", None, None, system_prompt="S")
        return llm, result

    llm, result = asyncio.run(scenario())

    assert result == "recovered"
    tool_messages = [m for m in llm.calls[1] if m["role"] == "tool"]
    assert tool_messages[0]["content"].startswith("[System Error] Invalid JSON arguments")
    assert tool_messages[1]["content"] == "[System Error] Tool 'doesNotExist' not found."
    assert tool_messages[2]["content"] == "[System Error] Tool arguments must be a JSON object."


def test_parse_tool_arguments_accepts_empty_payload() -> None:
    assert parse_tool_arguments("") == {}
    assert parse_tool_arguments('{"a": 1}') == {"a": 1}


def test_executed_tool_calls_are_recorded_as_tool_use(tmp_path: Path) -> None:
    async def scenario():
        store = MemoryStore(tmp_path / "memory.db")
        await store.init()
        background = BackgroundTasks()
        ltm = LongTermMemory(store, None, background)

        async def long_output(args: dict) -> str:
            return "x" * 500

        registry = _echo_registry()
        registry.register(Tool(name="dump", description="Large output.", handler=long_output))
        llm = _ScriptedLLM(
            [
                ModelReply(text="", tool_calls=[_call("dump", '{"depth": 2}'), _call("echo", "{oops")]),
                ModelReply(text="ok"),
            ]
        )
        loop = ToolExecutionLoop(llm, registry, ltm, background)
        await loop.run_turn("angel", "dump it", None, None, system_prompt="S", conversation_id="c1")
        await background.drain(timeout=5)
        return await store.get_memories("tool_use", 10)

    rows = asyncio.run(scenario())

    assert len(rows) == 1
    assert rows[0]["action"] == "dump"
    assert rows[0]["trigger"] == '{"depth": 2}'
    assert len(rows[0]["result"]) == 200
    assert rows[0]["conversation_id"] == "c1"
