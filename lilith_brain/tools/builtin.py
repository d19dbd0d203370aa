from __future__ import annotations

import asyncio
import logging
import re
from html.parser import HTMLParser
from typing import Any, Dict

import aiohttp

from ..common import as_int, collapse_spaces, truncate
from ..memory.long_term import LongTermMemory
from ..memory.vector_recall import VectorRecallBridge
from .registry import Tool, ToolRegistry
from .terminal import PersistentShell

logger = logging.getLogger("lilith_brain.tools")

_URL_RE = re.compile(r"^https?://", re.IGNORECASE)
GOOGLE_SEARCH_URL = "https://www.googleapis.com/customsearch/v1"
_NOISE_TAGS = {"script", "style", "noscript", "iframe", "svg", "canvas", "nav", "footer", "header", "aside"}


class _TextExtractor(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self.chunks: list[str] = []
        self._skip_depth = 0

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in _NOISE_TAGS:
            self._skip_depth += 1

    def handle_endtag(self, tag: str) -> None:
        if tag in _NOISE_TAGS and self._skip_depth:
            self._skip_depth -= 1

    def handle_data(self, data: str) -> None:
        if not self._skip_depth and data.strip():
            self.chunks.append(data)


def extract_text_from_html(html: str) -> str:
    parser = _TextExtractor()
    parser.feed(html)
    parser.close()
    return collapse_spaces(" ".join(parser.chunks))


def _log_internal_chat_tool() -> Tool:
    async def handler(args: Dict[str, Any]) -> str:
        dialogue = str(args.get("dialogue") or "").strip()
        topic = str(args.get("topic") or "").strip() or "untitled"
        logger.info("[tools.inner] topic=%s\n%s", topic, dialogue)
        return "Inner dialogue logged."

    return Tool(
        name="logInternalChat",
        description="Record an inner dialogue between Demon and Angel (teasing, discussing senpai, sharing feelings).",
        handler=handler,
        parameters={
            "type": "object",
            "properties": {
                "dialogue": {"type": "string", "description": "Dialogue text, e.g. 'Lilith: ...\\nAngel: ...'"},
                "topic": {"type": "string", "description": "Short topic summary"},
            },
            "required": ["dialogue"],
        },
    )


def _restart_tool(restart_marker: str) -> Tool:
    async def handler(args: Dict[str, Any]) -> str:
        logger.warning("[tools] restart requested by persona")
        return f"{restart_marker} Restart scheduled. The host will restart the brain after this turn."

    return Tool(
        name="restartSystem",
        description="Restart the whole brain process after a major change to core rules or code.",
        handler=handler,
    )


def _memory_tools(vectors: VectorRecallBridge) -> list[Tool]:
    async def store(args: Dict[str, Any]) -> str:
        vector_id = await vectors.memorize(
            str(args.get("content") or ""),
            {"source": "TOOL_STORE", "tags": str(args.get("tags") or "")},
        )
        if vector_id is None:
            return "[System Error] Memory could not be stored (embedding unavailable)."
        return f"Memory stored (id={vector_id})."

    async def query(args: Dict[str, Any]) -> str:
        recalled = await vectors.recall(str(args.get("query") or ""), limit=as_int(args.get("limit"), 3) or 3)
        return recalled or "No related memories found."

    return [
        Tool(
            name="storeMemory",
            description="Store an important piece of information in long-term semantic memory.",
            handler=store,
            parameters={
                "type": "object",
                "properties": {
                    "content": {"type": "string", "description": "What to remember"},
                    "tags": {"type": "string", "description": "Optional comma separated tags"},
                },
                "required": ["content"],
            },
        ),
        Tool(
            name="queryMemory",
            description="Search long-term semantic memory for related past events or knowledge.",
            handler=query,
            parameters={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "What to look for"},
                    "limit": {"type": "integer", "description": "Maximum results (default 3)"},
                },
                "required": ["query"],
            },
        ),
    ]


def _experience_tool(ltm: LongTermMemory) -> Tool:
    async def handler(args: Dict[str, Any]) -> str:
        memory_id = await ltm.store_experience(
            trigger=str(args.get("trigger") or ""),
            output=str(args.get("original_output") or ""),
            feedback=str(args.get("feedback") or ""),
            refined_output=str(args.get("refined_output") or ""),
        )
        if memory_id is None:
            return "[System Error] Experience could not be stored."
        return f"Experience stored and indexed (id={memory_id})."

    return Tool(
        name="recordExperience",
        description="Record a lesson learned: what happened, the feedback, and the refined way to handle it next time.",
        handler=handler,
        parameters={
            "type": "object",
            "properties": {
                "trigger": {"type": "string"},
                "original_output": {"type": "string"},
                "feedback": {"type": "string"},
                "refined_output": {"type": "string"},
            },
            "required": ["trigger", "feedback", "refined_output"],
        },
    )


def _read_url_tool(max_chars: int, timeout_seconds: float) -> Tool:
    async def handler(args: Dict[str, Any]) -> str:
        url = str(args.get("url") or "").strip()
        if not _URL_RE.match(url):
            return "[System Error] readUrl needs an absolute http(s) URL."
        timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, headers={"User-Agent": "Mozilla/5.0 (lilith-brain)"}) as response:
                    if response.status != 200:
                        return f"[System Error] HTTP {response.status} while reading {url}"
                    body = await response.text(errors="replace")
                    content_type = response.headers.get("Content-Type", "")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return f"[System Error] Could not read {url}: {exc}"

        text = extract_text_from_html(body) if "html" in content_type.lower() else collapse_spaces(body)
        if len(text) < 50:
            return f"[System Warning] {url} returned almost no readable text."
        return truncate(text, max_chars)

    return Tool(
        name="readUrl",
        description="Read the main text content of a web page.",
        handler=handler,
        parameters={
            "type": "object",
            "properties": {"url": {"type": "string"}},
            "required": ["url"],
        },
    )


def format_search_results(query: str, items: Any, limit: int = 5) -> str:
    if not isinstance(items, list) or not items:
        return f'[Search] No results found for "{query}".'
    lines = []
    for index, item in enumerate(items[:limit], start=1):
        if not isinstance(item, dict):
            continue
        title = collapse_spaces(str(item.get("title") or "(untitled)"))
        snippet = collapse_spaces(str(item.get("snippet") or ""))
        link = str(item.get("link") or "").strip()
        lines.append(f"[{index}] {title}\n   Summary: {snippet}\n   Source: {link}")
    if not lines:
        return f'[Search] No results found for "{query}".'
    return f'Search results for "{query}":\n\n' + "\n\n".join(lines)


def _search_tool(api_key: str, cx: str, limit: int, timeout_seconds: float, endpoint: str) -> Tool:
    async def handler(args: Dict[str, Any]) -> str:
        query = collapse_spaces(str(args.get("query") or ""))
        if not query:
            return "[System Error] searchInternet needs a query."
        if not api_key or not cx:
            logger.warning("[tools.search] GOOGLE_SEARCH_API_KEY or GOOGLE_SEARCH_CX is not set")
            return (
                "[System Alert] Web search is not configured. "
                "Set GOOGLE_SEARCH_API_KEY and GOOGLE_SEARCH_CX in .env."
            )

        logger.info("[tools.search] query=%s", query)
        params = {"key": api_key, "cx": cx, "q": query, "num": str(limit)}
        timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(endpoint, params=params) as response:
                    try:
                        data = await response.json(content_type=None)
                    except ValueError:
                        data = {}
                    if response.status != 200 or (isinstance(data, dict) and data.get("error")):
                        error = data.get("error") if isinstance(data, dict) else None
                        message = error.get("message") if isinstance(error, dict) else None
                        detail = message or response.reason or f"HTTP {response.status}"
                        logger.error("[tools.search] API error status=%s: %s", response.status, detail)
                        return f"[System Error] Search failed: Google API Error: {detail}"
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("[tools.search] request failed: %s", exc)
            return f"[System Error] Search failed: {exc}"

        items = data.get("items") if isinstance(data, dict) else None
        return format_search_results(query, items, limit)

    return Tool(
        name="searchInternet",
        description="Search the web for current information (news, weather, facts you do not know).",
        handler=handler,
        parameters={
            "type": "object",
            "properties": {"query": {"type": "string", "description": "Search keywords"}},
            "required": ["query"],
        },
    )


def _terminal_tool(shell: PersistentShell) -> Tool:
    async def handler(args: Dict[str, Any]) -> str:
        return await shell.run(str(args.get("command") or ""))

    return Tool(
        name="runTerminalCommand",
        description="Run a command in a persistent shell session (state such as cd is kept between calls).",
        handler=handler,
        parameters={
            "type": "object",
            "properties": {"command": {"type": "string"}},
            "required": ["command"],
        },
    )


def build_default_registry(
    *,
    vectors: VectorRecallBridge | None,
    ltm: LongTermMemory,
    restart_marker: str,
    shell: PersistentShell | None = None,
    url_max_chars: int = 4000,
    url_timeout_seconds: float = 15.0,
    search_api_key: str = "",
    search_cx: str = "",
    search_limit: int = 5,
    search_endpoint: str = GOOGLE_SEARCH_URL,
) -> ToolRegistry:
    registry = ToolRegistry()
    registry.register(_log_internal_chat_tool())
    registry.register(_restart_tool(restart_marker))
    if vectors is not None and vectors.enabled:
        for tool in _memory_tools(vectors):
            registry.register(tool)
    registry.register(_experience_tool(ltm))
    registry.register(_read_url_tool(url_max_chars, url_timeout_seconds))
    registry.register(_search_tool(search_api_key, search_cx, search_limit, url_timeout_seconds, search_endpoint))
    if shell is not None:
        registry.register(_terminal_tool(shell))
    logger.info("[tools] registry ready: %s", ", ".join(registry.names))
    return registry
