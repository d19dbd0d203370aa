from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger("lilith_brain.prompts")

PROMPTS_DIR_ENV = "LILITH_PROMPTS_DIR"


@dataclass(slots=True)
class _CachedPrompt:
    mtime_ns: int | None
    data: dict[str, Any]


_CACHE: dict[str, _CachedPrompt] = {}


def prompt_data_dir() -> Path:
    """Directory holding ``*.json`` prompt overrides; ``LILITH_PROMPTS_DIR`` wins over the bundled one."""
    override = os.getenv(PROMPTS_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path(__file__).with_name("data")


def clear_prompt_cache() -> None:
    _CACHE.clear()


def _mtime_ns(path: Path) -> int | None:
    try:
        return path.stat().st_mtime_ns
    except OSError:
        return None


def _merge_into(target: dict[str, Any], override: Mapping[str, Any]) -> None:
    # Nested objects merge key by key; lists and scalars replace.
    for key, value in override.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            _merge_into(current, value)
        else:
            target[key] = copy.deepcopy(value)


def _read_override(path: Path) -> Mapping[str, Any] | None:
    try:
        payload = json.loads(path.read_text(encoding="utf-8-sig"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("[prompts] ignoring unreadable %s: %s", path.name, exc)
        return None
    if not isinstance(payload, dict):
        logger.warning("[prompts] ignoring %s: root must be a JSON object", path.name)
        return None
    return payload


def load_prompt_json(filename: str, defaults: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``defaults`` with the matching JSON override merged in.

    Results are cached per file and refreshed when its mtime changes, so editing a
    prompt file takes effect on the next lookup. A missing, unreadable or non-object
    file leaves the defaults untouched.
    """
    path = prompt_data_dir() / filename
    mtime_ns = _mtime_ns(path)
    cache_key = str(path)

    entry = _CACHE.get(cache_key)
    if entry is None or entry.mtime_ns != mtime_ns:
        data = copy.deepcopy(dict(defaults))
        if mtime_ns is None:
            logger.debug("[prompts] %s not found, using defaults", path)
        else:
            override = _read_override(path)
            if override:
                _merge_into(data, override)
        entry = _CachedPrompt(mtime_ns=mtime_ns, data=data)
        _CACHE[cache_key] = entry
    return copy.deepcopy(entry.data)
