from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping

logger = logging.getLogger("lilith_brain.brain")

_TEXT_EXTENSIONS = re.compile(r"\.(py|js|ts|md|txt|html|css|json|yaml|yml|toml|ini|cfg|csv|log|sh)$", re.IGNORECASE)


@dataclass(slots=True)
class Attachment:
    name: str
    mime_type: str
    data: str

    @classmethod
    def coerce(cls, value: "Attachment | Mapping[str, Any]") -> "Attachment":
        if isinstance(value, Attachment):
            return value
        return cls(
            name=str(value.get("name") or "attachment"),
            mime_type=str(value.get("mime_type") or value.get("mimeType") or "application/octet-stream"),
            data=str(value.get("data") or ""),
        )


@dataclass(slots=True)
class SplitInput:
    text: str
    images: List[Dict[str, str]] = field(default_factory=list)


def is_text_file(attachment: Attachment) -> bool:
    mime = attachment.mime_type.lower()
    if mime.startswith("text/") or "json" in mime or "javascript" in mime or "x-python" in mime:
        return True
    return bool(_TEXT_EXTENSIONS.search(attachment.name))


def split_attachments(user_text: str, attachments: Iterable[Attachment | Mapping[str, Any]] | None) -> SplitInput:
    """Images become inline image parts; text files are decoded and appended to the prompt text."""
    text = user_text or ""
    images: List[Dict[str, str]] = []
    for raw in attachments or ():
        attachment = Attachment.coerce(raw)
        if attachment.mime_type.lower().startswith("image/"):
            images.append({"mime_type": attachment.mime_type, "data": attachment.data})
            continue
        if not is_text_file(attachment):
            logger.debug("[brain.attachments] skipped unsupported file name=%s mime=%s", attachment.name, attachment.mime_type)
            continue
        try:
            decoded = base64.b64decode(attachment.data, validate=False).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError):
            logger.warning("[brain.attachments] failed to decode text file name=%s", attachment.name)
            continue
        text += f"\n\n--- [File: {attachment.name}] ---\n{decoded}\n--- [End of File] ---"
    return SplitInput(text=text.strip(), images=images)
