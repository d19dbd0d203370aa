from .builtin import build_default_registry
from .registry import Tool, ToolRegistry
from .terminal import PersistentShell

__all__ = ["PersistentShell", "Tool", "ToolRegistry", "build_default_registry"]
