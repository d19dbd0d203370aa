from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping

logger = logging.getLogger("lilith_brain.tools")

ToolHandler = Callable[[Dict[str, Any]], Awaitable[str]]


@dataclass(slots=True)
class Tool:
    name: str
    description: str
    handler: ToolHandler
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def declaration(self) -> Dict[str, Any]:
        declaration: Dict[str, Any] = {"name": self.name, "description": self.description}
        if self.parameters.get("properties"):
            declaration["parameters"] = self.parameters
        return declaration


class ToolRegistry:
    """Name to tool mapping; ``execute`` turns every failure into an error string."""

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool

    def declarations(self) -> List[Dict[str, Any]]:
        return [tool.declaration() for tool in self._tools.values()]

    async def execute(self, name: str, args: Mapping[str, Any] | None) -> str:
        tool = self._tools.get(name)
        if tool is None:
            return f"[System Error] Tool '{name}' not found."
        missing = [key for key in tool.parameters.get("required", ()) if key not in (args or {})]
        if missing:
            return f"[System Error] Tool '{name}' missing required arguments: {', '.join(missing)}"
        try:
            output = await tool.handler(dict(args or {}))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("[tools] %s failed", name)
            return f"[System Error] Tool '{name}' failed: {exc}"
        return output if isinstance(output, str) else str(output)
