from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List

from ..emotion.engine import EmotionSnapshot
from ..prompts.persona import persona_display_name

_SPEAKER_TAG_RE = re.compile(r"^\[SPEAKER:([a-z]+)\]\s*")


@dataclass(slots=True)
class TurnContext:
    """Everything perception produced for one turn."""

    snapshot: EmotionSnapshot
    facts_text: str = ""
    rag_text: str = ""


def history_to_messages(history: Iterable[Dict[str, Any]], limit: int = 20) -> List[Dict[str, str]]:
    """Map stored history entries onto chat messages, keeping the newest ``limit``."""
    entries = [entry for entry in history if isinstance(entry, dict)]
    if limit > 0:
        entries = entries[-limit:]
    messages: List[Dict[str, str]] = []
    for entry in entries:
        content = str(entry.get("content") or "").strip()
        if not content:
            continue
        if entry.get("role") == "assistant":
            speaker = str((entry.get("meta") or {}).get("speaker") or "")
            tagged = _SPEAKER_TAG_RE.match(content)
            if tagged:
                speaker = speaker or tagged.group(1)
                content = content[tagged.end():]
                if not content:
                    continue
            if speaker:
                content = f"[{persona_display_name(speaker)}]: {content}"
            messages.append({"role": "assistant", "content": content})
        else:
            messages.append({"role": "user", "content": content})
    return messages


def render_history_text(history: Iterable[Dict[str, Any]], limit: int = 20) -> str:
    lines = []
    for message in history_to_messages(history, limit):
        prefix = "User" if message["role"] == "user" else "AI"
        lines.append(f"{prefix}: {message['content']}")
    return "\n".join(lines)
