from .gemini_client import GeminiClient, ModelReply, ToolCall

__all__ = ["GeminiClient", "ModelReply", "ToolCall"]
