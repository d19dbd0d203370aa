from __future__ import annotations

import json
from typing import Any

from .json_loader import load_prompt_json

_DEFAULTS: dict[str, Any] = {
    "reaction_schema_hint_object": {
        "affection_delta": 0,
        "trust_delta": 0,
        "mood_delta": 0,
        "reason": "string",
    },
    "reaction_system_prompt": (
        "You are the sentiment analysis engine of a persistent character. "
        "Judge how the character's feelings toward the user change because of the user's latest message. "
        "Deltas are small integers, usually between -5 and 5. "
        "Scoring rules: teasing with trust >= 30 is positive; a dominant user with high trust is positive; "
        "generic or bored talk is slightly negative."
    ),
    "reaction_user_prompt_template": (
        "Character card:\n{character_card}\n\n"
        "Current state: trust={trust} affection={affection} mood={mood}\n\n"
        "User message: \"{text}\"\n"
        "Return JSON."
    ),
}


def _cfg() -> dict[str, Any]:
    return load_prompt_json("emotion.json", _DEFAULTS)


_CFG = _cfg()
_SCHEMA_OBJ = _CFG.get("reaction_schema_hint_object", _DEFAULTS["reaction_schema_hint_object"])
if not isinstance(_SCHEMA_OBJ, dict):
    _SCHEMA_OBJ = _DEFAULTS["reaction_schema_hint_object"]

REACTION_SCHEMA_HINT = json.dumps(_SCHEMA_OBJ, ensure_ascii=False, separators=(",", ":"))
REACTION_SYSTEM_PROMPT = str(_CFG.get("reaction_system_prompt", _DEFAULTS["reaction_system_prompt"]))
REACTION_USER_PROMPT_TEMPLATE = str(
    _CFG.get("reaction_user_prompt_template", _DEFAULTS["reaction_user_prompt_template"])
)


def build_reaction_messages(
    character_card: str,
    *,
    affection: int,
    trust: int,
    mood: int,
    text: str,
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": REACTION_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": REACTION_USER_PROMPT_TEMPLATE.format(
                character_card=character_card,
                affection=affection,
                trust=trust,
                mood=mood,
                text=text,
            ),
        },
    ]
