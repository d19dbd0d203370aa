from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest
from aiohttp import test_utils, web


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from lilith_brain.brain.attachments import split_attachments  # noqa: E402
from lilith_brain.memory.long_term import LongTermMemory  # noqa: E402
from lilith_brain.memory.store import MemoryStore  # noqa: E402
from lilith_brain.memory.vector_recall import VectorRecallBridge  # noqa: E402
from lilith_brain.tasks import BackgroundTasks  # noqa: E402
from lilith_brain.tools.builtin import (  # noqa: E402
    build_default_registry,
    extract_text_from_html,
    format_search_results,
)
from lilith_brain.tools.registry import Tool, ToolRegistry  # noqa: E402


def _registry(tmp_path: Path, *, embedder: object = None) -> tuple[ToolRegistry, MemoryStore]:
    store = MemoryStore(tmp_path / "memory.db")
    vectors = VectorRecallBridge(store, embedder)  # type: ignore[arg-type]
    ltm = LongTermMemory(store, vectors, BackgroundTasks())
    return build_default_registry(vectors=vectors, ltm=ltm, restart_marker="SYSTEM_RESTART_TRIGGER"), store


class _FakeEmbedder:
    async def embed(self, text: str) -> list[float]:
        return [1.0, float(len(text) % 3)]


def test_default_registry_skips_memory_tools_without_embedder(tmp_path: Path) -> None:
    registry, _ = _registry(tmp_path)

    assert "logInternalChat" in registry
    assert "restartSystem" in registry
    assert "recordExperience" in registry
    assert "readUrl" in registry
    assert "searchInternet" in registry
    assert "storeMemory" not in registry
    assert "runTerminalCommand" not in registry


def test_declarations_omit_empty_parameter_schemas(tmp_path: Path) -> None:
    registry, _ = _registry(tmp_path, embedder=_FakeEmbedder())
    declarations = {item["name"]: item for item in registry.declarations()}

    assert "parameters" not in declarations["restartSystem"]
    assert declarations["storeMemory"]["parameters"]["required"] == ["content"]


def test_restart_tool_returns_marker(tmp_path: Path) -> None:
    registry, _ = _registry(tmp_path)

    output = asyncio.run(registry.execute("restartSystem", {}))

    assert "SYSTEM_RESTART_TRIGGER" in output


def test_store_and_query_memory_round_trip_through_tools(tmp_path: Path) -> None:
    async def scenario():
        registry, store = _registry(tmp_path, embedder=_FakeEmbedder())
        await store.init()
        stored = await registry.execute("storeMemory", {"content": "senpai's birthday is in May"})
        queried = await registry.execute("queryMemory", {"query": "birthday", "limit": 2})
        return stored, queried

    stored, queried = asyncio.run(scenario())

    assert stored.startswith("Memory stored")
    assert "birthday is in May" in queried


def test_registry_reports_missing_arguments_and_handler_errors() -> None:
    async def explode(args: dict) -> str:
        raise ValueError("bad input")

    registry = ToolRegistry()
    registry.register(
        Tool(
            name="explode",
            description="Always fails.",
            handler=explode,
            parameters={"type": "object", "properties": {"x": {"type": "string"}}, "required": ["x"]},
        )
    )

    missing = asyncio.run(registry.execute("explode", {}))
    failed = asyncio.run(registry.execute("explode", {"x": "1"}))

    assert missing == "[System Error] Tool 'explode' missing required arguments: x"
    assert failed == "[System Error] Tool 'explode' failed: bad input"
    with pytest.raises(ValueError):
        registry.register(Tool(name="explode", description="dup", handler=explode))


def test_read_url_rejects_relative_urls(tmp_path: Path) -> None:
    registry, _ = _registry(tmp_path)

    output = asyncio.run(registry.execute("readUrl", {"url": "example.com/page"}))

    assert output.startswith("[System Error]")


def test_html_extraction_drops_scripts_and_navigation() -> None:
    html = """
    <html><head><style>body {color: red}</style><script>alert('x')</script></head>
    <body><nav>Home | About</nav><h1>Release notes</h1><p>Version   2 ships   today.</p>
    <footer>copyright</footer></body></html>
    """

    text = extract_text_from_html(html)

    assert text == "Release notes Version 2 ships today."


def test_split_attachments_decodes_text_files_and_keeps_images() -> None:
    split = split_attachments(
        "review this",
        [
            {"name": "main.py", "mime_type": "application/octet-stream", "data": "cHJpbnQoJ2hpJyk="},
            {"name": "cat.jpg", "mime_type": "image/jpeg", "data": "/9j/"},
            {"name": "clip.mp3", "mime_type": "audio/mpeg", "data": "SUQz"},
        ],
    )

    assert split.text.startswith("review this")
    assert "--- [File: main.py] ---\nprint('hi')" in split.text
    assert "clip.mp3" not in split.text
    assert split.images == [{"mime_type": "image/jpeg", "data": "/9j/"}]


def _search_registry(tmp_path: Path, endpoint: str, *, api_key: str = "k", cx: str = "cx") -> ToolRegistry:
    store = MemoryStore(tmp_path / "memory.db")
    vectors = VectorRecallBridge(store, None)  # type: ignore[arg-type]
    ltm = LongTermMemory(store, vectors, BackgroundTasks())
    return build_default_registry(
        vectors=vectors,
        ltm=ltm,
        restart_marker="SYSTEM_RESTART_TRIGGER",
        search_api_key=api_key,
        search_cx=cx,
        search_limit=2,
        search_endpoint=endpoint,
    )


def test_search_without_credentials_reports_missing_configuration(tmp_path: Path) -> None:
    registry = _search_registry(tmp_path, "http://127.0.0.1:1/unused", api_key="", cx="")

    output = asyncio.run(registry.execute("searchInternet", {"query": "weather taipei"}))

    assert output.startswith("[System Alert]")
    assert "GOOGLE_SEARCH_API_KEY" in output


def test_search_formats_results_and_reports_api_errors(tmp_path: Path) -> None:
    seen: list[dict] = []

    async def handle(request: web.Request) -> web.Response:
        seen.append(dict(request.query))
        if request.query.get("q") == "quota":
            return web.json_response({"error": {"message": "Quota exceeded"}}, status=429)
        return web.json_response(
            {
                "items": [
                    {"title": "Taipei weather", "snippet": "Rain\nall day", "link": "https://w.example/tpe"},
                    {"title": "Forecast", "snippet": "Cooler tomorrow", "link": "https://w.example/f"},
                    {"title": "Ignored", "snippet": "over the limit", "link": "https://w.example/x"},
                ]
            }
        )

    async def scenario():
        app = web.Application()
        app.router.add_get("/customsearch/v1", handle)
        server = test_utils.TestServer(app)
        await server.start_server()
        try:
            registry = _search_registry(tmp_path, str(server.make_url("/customsearch/v1")))
            found = await registry.execute("searchInternet", {"query": "weather taipei"})
            failed = await registry.execute("searchInternet", {"query": "quota"})
        finally:
            await server.close()
        return found, failed

    found, failed = asyncio.run(scenario())

    assert seen[0] == {"key": "k", "cx": "cx", "q": "weather taipei", "num": "2"}
    assert found.startswith('Search results for "weather taipei"')
    assert "[1] Taipei weather\n   Summary: Rain all day\n   Source: https://w.example/tpe" in found
    assert "[2] Forecast" in found
    assert "Ignored" not in found
    assert failed == "[System Error] Search failed: Google API Error: Quota exceeded"


def test_search_result_formatting_handles_empty_items() -> None:
    assert format_search_results("nothing", []) == '[Search] No results found for "nothing".'
    assert format_search_results("nothing", None) == '[Search] No results found for "nothing".'
