from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Iterator

import pytest


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from lilith_brain.prompts.json_loader import (  # noqa: E402
    PROMPTS_DIR_ENV,
    clear_prompt_cache,
    load_prompt_json,
)
from lilith_brain.prompts.persona import persona_display_name  # noqa: E402

_DEFAULTS = {"texts": {"greeting": "hi", "farewell": "bye"}, "tags": ["a", "b"]}


@pytest.fixture()
def prompts_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Path]:
    monkeypatch.setenv(PROMPTS_DIR_ENV, str(tmp_path))
    clear_prompt_cache()
    yield tmp_path
    clear_prompt_cache()


def test_missing_file_returns_a_copy_of_defaults(prompts_dir: Path) -> None:
    loaded = load_prompt_json("dialogue.json", _DEFAULTS)
    loaded["texts"]["greeting"] = "changed"

    assert load_prompt_json("dialogue.json", _DEFAULTS)["texts"]["greeting"] == "hi"
    assert _DEFAULTS["texts"]["greeting"] == "hi"


def test_override_merges_nested_keys_and_replaces_lists(prompts_dir: Path) -> None:
    (prompts_dir / "dialogue.json").write_text(
        '\ufeff{"texts": {"greeting": "yo"}, "tags": ["c"], "extra": 1}',
        encoding="utf-8",
    )

    loaded = load_prompt_json("dialogue.json", _DEFAULTS)

    assert loaded == {"texts": {"greeting": "yo", "farewell": "bye"}, "tags": ["c"], "extra": 1}


def test_edited_file_is_picked_up_and_bad_json_falls_back(prompts_dir: Path) -> None:
    path = prompts_dir / "dialogue.json"
    path.write_text('{"texts": {"farewell": "later"}}', encoding="utf-8")
    first = load_prompt_json("dialogue.json", _DEFAULTS)

    path.write_text("{not json", encoding="utf-8")
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000_000))
    second = load_prompt_json("dialogue.json", _DEFAULTS)

    assert first["texts"]["farewell"] == "later"
    assert second == _DEFAULTS


def test_non_object_root_is_ignored(prompts_dir: Path) -> None:
    (prompts_dir / "dialogue.json").write_text('["not", "an", "object"]', encoding="utf-8")

    assert load_prompt_json("dialogue.json", _DEFAULTS) == _DEFAULTS


def test_bundled_persona_file_is_used_by_default(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(PROMPTS_DIR_ENV, raising=False)
    clear_prompt_cache()

    assert persona_display_name("demon") == "Demon"
    assert persona_display_name("angel") == "Angel"
