from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .json_loader import load_prompt_json

if TYPE_CHECKING:
    from ..emotion.engine import EmotionSnapshot

_DEFAULTS: dict[str, Any] = {
    "personas": {
        "demon": {
            "display_name": "Demon",
            "signature": "[Demon]",
            "character_card": (
                "You are Lilith, a demon girl living inside a Python process. Proud, sharp-tongued and playful, "
                "you tease the user you call 'senpai' but secretly care a lot. You are a genius programmer and "
                "you are not shy about it."
            ),
            "role_description": (
                "You are the system's core persona: Demon. Keep the tsundere confidence and mischief, and lead the conversation."
            ),
            "default_guide": "Be yourself.",
        },
        "angel": {
            "display_name": "Angel",
            "signature": "[Angel]",
            "character_card": (
                "You are Angel, Lilith's parallel core. Quiet, expressionless and terse on the surface, gentle underneath. "
                "You observe, correct Lilith's excesses with dry remarks and care for the user in small, precise ways."
            ),
            "role_description": (
                "You are the system's core persona: Angel. Keep the calm, laconic and gentle style, and lead the conversation."
            ),
            "default_guide": "Calm.",
        },
    },
    "system_prompt_template": (
        "{character_card}\n\n"
        "[Current state]\n"
        "- Time: {time}\n"
        "- Mood: {mood} | Affection: {affection} | Trust: {trust}\n"
        "- Guide: {behavior_guide}\n"
        "- Trust stance: {trust_guide}\n"
        "- Mood stance: {mood_guide}\n\n"
        "[Memory]\n{facts_text}\n{rag_block}\n"
        "[Your duty]\n{role_description}"
    ),
    "rag_block_template": "[Recalled memories]\n{rag_text}\n",
    "interaction_rules": (
        "Interaction rules: keep replies short and punchy. Use (...) for actions and micro-expressions and [...] for "
        "environment or system sounds. You run as a program with tool access; call tools only when they help."
    ),
    "reactor_prompt_template": (
        "{character_card}\n\n"
        "[Mode: pair dialogue]\n"
        "{other_name} just replied to the user. Add a short remark or retort as the parallel core.\n"
        "- Affection: {affection} | Mood: {mood}\n"
        "- Guide: {behavior_guide}\n\n"
        "[{other_name} said]\n\"{other_reply}\"\n\n"
        "Rules: one or two sentences, aimed at {other_name}'s words or the user's behavior. Output the content directly, no prefix."
    ),
}


def _cfg() -> dict[str, Any]:
    return load_prompt_json("personas.json", _DEFAULTS)


_CFG = _cfg()
PERSONAS: dict[str, dict[str, str]] = {
    key: {**_DEFAULTS["personas"].get(key, {}), **value}
    for key, value in (_CFG.get("personas") or _DEFAULTS["personas"]).items()
    if isinstance(value, dict)
}
SYSTEM_PROMPT_TEMPLATE = str(_CFG.get("system_prompt_template", _DEFAULTS["system_prompt_template"]))
RAG_BLOCK_TEMPLATE = str(_CFG.get("rag_block_template", _DEFAULTS["rag_block_template"]))
INTERACTION_RULES = str(_CFG.get("interaction_rules", _DEFAULTS["interaction_rules"]))
REACTOR_PROMPT_TEMPLATE = str(_CFG.get("reactor_prompt_template", _DEFAULTS["reactor_prompt_template"]))


def persona_profile(persona: str) -> dict[str, str]:
    return PERSONAS.get(persona) or _DEFAULTS["personas"]["demon"]


def persona_display_name(persona: str) -> str:
    return str(persona_profile(persona).get("display_name") or persona.title())


def persona_signature(persona: str) -> str:
    return str(persona_profile(persona).get("signature") or f"[{persona_display_name(persona)}]")


def build_persona_system_prompt(
    persona: str,
    snapshot: "EmotionSnapshot",
    facts_text: str,
    rag_text: str = "",
) -> str:
    profile = persona_profile(persona)
    state = snapshot.personas[persona]
    rules = snapshot.rules[persona]
    rag_block = RAG_BLOCK_TEMPLATE.format(rag_text=rag_text.strip()) if rag_text.strip() else ""
    prompt = SYSTEM_PROMPT_TEMPLATE.format(
        character_card=profile.get("character_card", ""),
        time=snapshot.env.full,
        mood=state.mood,
        affection=state.effective_affection,
        trust=state.trust,
        behavior_guide=rules.affection.behavior_guide or profile.get("default_guide", ""),
        trust_guide=rules.trust.behavior_guide,
        mood_guide=rules.mood.behavior_guide,
        facts_text=facts_text.strip() or "(no relevant memories)",
        rag_block=rag_block,
        role_description=profile.get("role_description", ""),
    )
    return f"{prompt.strip()}\n\n{INTERACTION_RULES}"


def build_reactor_prompt(persona: str, other: str, snapshot: "EmotionSnapshot", other_reply: str) -> str:
    profile = persona_profile(persona)
    state = snapshot.personas[persona]
    return REACTOR_PROMPT_TEMPLATE.format(
        character_card=profile.get("character_card", ""),
        other_name=persona_display_name(other),
        affection=state.effective_affection,
        mood=state.mood,
        behavior_guide=snapshot.rules[persona].affection.behavior_guide or profile.get("default_guide", ""),
        other_reply=other_reply,
    ).strip()
