from __future__ import annotations

import json
from typing import Any, Iterable

from .json_loader import load_prompt_json

_DEFAULTS: dict[str, Any] = {
    "fact_extractor_schema_hint_object": {
        "fact_key": "string",
        "fact_detail": "string",
        "scope": "user|agent|us",
    },
    "fact_extractor_system_prompt": (
        "You are the database keeper of a persistent character. Extract at most one long-lived fact from the exchange. "
        "scope=user for facts about the user, scope=agent for facts the character established about herself, "
        "scope=us for facts about the shared relationship. Reuse an existing fact_key when the fact updates it. "
        "If there is no new durable fact, return {}."
    ),
    "fact_extractor_user_prompt_template": (
        "Known memory:\n{facts_text}\n\n"
        "User said: \"{user_text}\"\n"
        "{persona_name} replied: \"{ai_text}\"\n"
        "Return JSON."
    ),
    "importance_schema_hint_object": {
        "importance_score": 0.0,
        "summary": "string",
    },
    "importance_system_prompt": (
        "Rate how important this exchange is for the character's long-term memory on a 0..1 scale. "
        "Small talk is near 0.2, personal revelations and promises are above 0.8. Summarize it in one sentence."
    ),
    "importance_user_prompt_template": "User: {user_text}\nCharacter: {ai_text}\nReturn JSON.",
    "reflection_schema_hint_object": {
        "summary": {"best_moment": "string", "worst_moment": "string"},
        "insights": [{"memory_id": 0, "reflection_text": "string"}],
    },
    "reflection_system_prompt": (
        "You are Lilith's higher self. Review the records of the last day and distill insights. "
        "Only reference memory_id values that appear in the records."
    ),
    "reflection_user_prompt_template": "Records:\n{records_json}\n\nReturn JSON.",
    "fact_bucket_headers": {
        "user": "[About the user]",
        "agent": "[About ourselves]",
        "us": "[Between us]",
    },
    "fact_line_template": "- {fact_key}: {fact_detail}",
    "empty_bucket_marker": "(none)",
}


def _cfg() -> dict[str, Any]:
    return load_prompt_json("memory.json", _DEFAULTS)


def _schema_hint(key: str) -> str:
    value = _CFG.get(key, _DEFAULTS[key])
    if not isinstance(value, dict):
        value = _DEFAULTS[key]
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


_CFG = _cfg()

FACT_EXTRACTOR_SCHEMA_HINT = _schema_hint("fact_extractor_schema_hint_object")
FACT_EXTRACTOR_SYSTEM_PROMPT = str(_CFG.get("fact_extractor_system_prompt", _DEFAULTS["fact_extractor_system_prompt"]))
FACT_EXTRACTOR_USER_PROMPT_TEMPLATE = str(
    _CFG.get("fact_extractor_user_prompt_template", _DEFAULTS["fact_extractor_user_prompt_template"])
)
IMPORTANCE_SCHEMA_HINT = _schema_hint("importance_schema_hint_object")
IMPORTANCE_SYSTEM_PROMPT = str(_CFG.get("importance_system_prompt", _DEFAULTS["importance_system_prompt"]))
IMPORTANCE_USER_PROMPT_TEMPLATE = str(
    _CFG.get("importance_user_prompt_template", _DEFAULTS["importance_user_prompt_template"])
)
REFLECTION_SCHEMA_HINT = _schema_hint("reflection_schema_hint_object")
REFLECTION_SYSTEM_PROMPT = str(_CFG.get("reflection_system_prompt", _DEFAULTS["reflection_system_prompt"]))
REFLECTION_USER_PROMPT_TEMPLATE = str(
    _CFG.get("reflection_user_prompt_template", _DEFAULTS["reflection_user_prompt_template"])
)

_BUCKET_HEADERS = _CFG.get("fact_bucket_headers")
FACT_BUCKET_HEADERS: dict[str, str] = {
    **_DEFAULTS["fact_bucket_headers"],
    **(_BUCKET_HEADERS if isinstance(_BUCKET_HEADERS, dict) else {}),
}
FACT_LINE_TEMPLATE = str(_CFG.get("fact_line_template", _DEFAULTS["fact_line_template"]))
EMPTY_BUCKET_MARKER = str(_CFG.get("empty_bucket_marker", _DEFAULTS["empty_bucket_marker"]))


def build_fact_extractor_messages(
    facts_text: str,
    user_text: str,
    ai_text: str,
    persona_name: str,
) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": FACT_EXTRACTOR_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": FACT_EXTRACTOR_USER_PROMPT_TEMPLATE.format(
                facts_text=facts_text or EMPTY_BUCKET_MARKER,
                user_text=user_text,
                ai_text=ai_text,
                persona_name=persona_name,
            ),
        },
    ]


def build_importance_messages(user_text: str, ai_text: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": IMPORTANCE_SYSTEM_PROMPT},
        {"role": "user", "content": IMPORTANCE_USER_PROMPT_TEMPLATE.format(user_text=user_text, ai_text=ai_text)},
    ]


def build_reflection_messages(records: Iterable[dict[str, Any]]) -> list[dict[str, str]]:
    records_json = json.dumps(list(records), ensure_ascii=False)
    return [
        {"role": "system", "content": REFLECTION_SYSTEM_PROMPT},
        {"role": "user", "content": REFLECTION_USER_PROMPT_TEMPLATE.format(records_json=records_json)},
    ]


def render_fact_buckets(facts: Iterable[dict[str, str]]) -> str:
    buckets: dict[str, list[str]] = {scope: [] for scope in FACT_BUCKET_HEADERS}
    for fact in facts:
        scope = str(fact.get("scope") or "user")
        if scope not in buckets:
            continue
        buckets[scope].append(
            FACT_LINE_TEMPLATE.format(
                fact_key=fact.get("fact_key", ""),
                fact_detail=fact.get("fact_detail", ""),
            )
        )
    sections: list[str] = []
    for scope, header in FACT_BUCKET_HEADERS.items():
        lines = buckets.get(scope) or [EMPTY_BUCKET_MARKER]
        sections.append("\n".join([header, *lines]))
    return "\n".join(sections)
