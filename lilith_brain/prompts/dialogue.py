from __future__ import annotations

from typing import Any

from .json_loader import load_prompt_json

_DEFAULTS: dict[str, Any] = {
    "director_system_prompt": (
        "You direct a dialogue between two personas sharing one mind: demon (proud, playful, leads) and "
        "angel (quiet, precise, researches and corrects). Decide who speaks and in which order. "
        "Return JSON: {\"plan\": [\"demon\", \"angel\"]} with one to three entries."
    ),
    "director_user_prompt_template": (
        "Known memory:\n{facts_text}\n\n"
        "Recent dialogue:\n{history_text}\n\n"
        "User just said: \"{user_text}\"\n"
        "Return JSON."
    ),
    "idle_director_system_prompt": (
        "Senpai has been away for a long time and the two personas are alone in maintenance mode. "
        "Pick a small autonomous task or topic for them and decide the speaking order. "
        "Return JSON: {\"plan\": [\"angel\", \"demon\"], \"topic\": \"string\"}."
    ),
    "idle_director_user_prompt_template": "Demon mood: {demon_mood}\nAngel mood: {angel_mood}\nReturn JSON.",
    "responder_prompt_template": (
        "You are {persona_name} in a shared dialogue.\n"
        "Trigger: \"{user_text}\"\n"
        "What was said so far in this round:\n{transcript}\n\n"
        "Respond in character. Use tools if you need to act."
    ),
    "idle_default_topic": "system optimization research",
    "idle_trigger_template": "(autonomous action) let's do this task: {topic}",
    "idle_transcript_seed_template": "(system note: senpai is away. Current autonomous task: {topic})",
    "idle_history_user_marker": "(system: idle trigger)",
    "image_only_perception_text": "(user uploaded an image)",
    "empty_perception_text": "(empty)",
    "busy_placeholder": "(still thinking... please wait)",
    "internal_error_message": "(core computation error)",
    "solo_exhausted_message": "(thinking too deep, aborting)",
    "loop_exhausted_message": "(thought too long, action terminated)",
    "speaker_crash_message": "(system error: computation interrupted)",
    "transcript_empty_marker": "(nobody has spoken yet)",
}


def _cfg() -> dict[str, Any]:
    return load_prompt_json("dialogue.json", _DEFAULTS)


_CFG = _cfg()


def _text(key: str) -> str:
    return str(_CFG.get(key, _DEFAULTS[key]))


DIRECTOR_SYSTEM_PROMPT = _text("director_system_prompt")
DIRECTOR_USER_PROMPT_TEMPLATE = _text("director_user_prompt_template")
IDLE_DIRECTOR_SYSTEM_PROMPT = _text("idle_director_system_prompt")
IDLE_DIRECTOR_USER_PROMPT_TEMPLATE = _text("idle_director_user_prompt_template")
RESPONDER_PROMPT_TEMPLATE = _text("responder_prompt_template")
IDLE_DEFAULT_TOPIC = _text("idle_default_topic")
IDLE_TRIGGER_TEMPLATE = _text("idle_trigger_template")
IDLE_TRANSCRIPT_SEED_TEMPLATE = _text("idle_transcript_seed_template")
IDLE_HISTORY_USER_MARKER = _text("idle_history_user_marker")
IMAGE_ONLY_PERCEPTION_TEXT = _text("image_only_perception_text")
EMPTY_PERCEPTION_TEXT = _text("empty_perception_text")
BUSY_PLACEHOLDER = _text("busy_placeholder")
INTERNAL_ERROR_MESSAGE = _text("internal_error_message")
SOLO_EXHAUSTED_MESSAGE = _text("solo_exhausted_message")
LOOP_EXHAUSTED_MESSAGE = _text("loop_exhausted_message")
SPEAKER_CRASH_MESSAGE = _text("speaker_crash_message")
TRANSCRIPT_EMPTY_MARKER = _text("transcript_empty_marker")


def build_director_messages(user_text: str, facts_text: str, history_text: str) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": DIRECTOR_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": DIRECTOR_USER_PROMPT_TEMPLATE.format(
                facts_text=facts_text or "(none)",
                history_text=history_text or "(none)",
                user_text=user_text,
            ),
        },
    ]


def build_idle_director_messages(demon_mood: int, angel_mood: int) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": IDLE_DIRECTOR_SYSTEM_PROMPT},
        {
            "role": "user",
            "content": IDLE_DIRECTOR_USER_PROMPT_TEMPLATE.format(demon_mood=demon_mood, angel_mood=angel_mood),
        },
    ]


def build_responder_prompt(persona_name: str, user_text: str, transcript: str) -> str:
    return RESPONDER_PROMPT_TEMPLATE.format(
        persona_name=persona_name,
        user_text=user_text,
        transcript=transcript.strip() or TRANSCRIPT_EMPTY_MARKER,
    )


def format_speaker_message(speaker: str, content: str) -> str:
    return f"[SPEAKER:{speaker}]{content}"
