from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()

PERSONA_IDS = ("demon", "angel")
DIALOGUE_MODES = ("demon", "angel", "pair", "group")
CONVERSATION_STRATEGIES = ("recency", "weighted")


def _env_lookup(name: str, aliases: tuple[str, ...] = ()) -> str | None:
    for key in (name, *aliases):
        # Be tolerant to UTF-8 BOM accidentally saved in .env key names.
        for candidate in (key, f"\ufeff{key}"):
            raw = os.getenv(candidate)
            if raw is not None:
                return raw
    return None


def _env_bool(name: str, default: bool, aliases: tuple[str, ...] = ()) -> bool:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int, aliases: tuple[str, ...] = ()) -> int:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _env_float(name: str, default: float, aliases: tuple[str, ...] = ()) -> float:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _env_str(name: str, default: str, aliases: tuple[str, ...] = ()) -> str:
    raw = _env_lookup(name, aliases)
    if raw is None:
        return default
    value = raw.strip()
    return value if value else default


def _env_optional_path(name: str, aliases: tuple[str, ...] = ()) -> Path | None:
    raw = (_env_lookup(name, aliases) or "").strip()
    if not raw:
        return None
    return Path(raw).expanduser()


@dataclass(slots=True)
class Settings:
    gemini_api_key: str
    gemini_base_url: str
    gemini_model: str
    gemini_fast_model: str
    gemini_memory_model: str
    gemini_embedding_model: str
    gemini_timeout_seconds: int
    gemini_temperature: float
    gemini_max_output_tokens: int

    sqlite_path: Path
    history_store_limit: int
    history_context_limit: int
    max_tool_steps: int
    vector_index_threshold: float
    rag_recall_enabled: bool
    rag_recall_limit: int

    default_mode: str
    pair_primary_persona: str

    idle_threshold_minutes: int
    idle_chat_probability_threshold: float
    active_conversation_strategy: str

    scheduler_timezone: str
    reflection_hour: int
    morning_briefing_hour: int
    heartbeat_seconds: int
    reflection_window_hours: int
    reflection_batch_limit: int
    reflection_min_importance: float

    shell_tool_enabled: bool
    shell_timeout_seconds: int
    url_reader_max_chars: int
    google_search_api_key: str
    google_search_cx: str
    search_result_limit: int
    restart_marker: str

    log_level: str
    log_dir: Path | None

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            gemini_api_key=_env_str("GEMINI_API_KEY", "", aliases=("GOOGLE_API_KEY",)),
            gemini_base_url=_env_str("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
            gemini_model=_env_str("GEMINI_MODEL", "gemini-2.5-pro"),
            gemini_fast_model=_env_str("GEMINI_FAST_MODEL", "gemini-2.5-flash", aliases=("GEMINI_EMOTION_MODEL",)),
            gemini_memory_model=_env_str("GEMINI_MEMORY_MODEL", "gemini-2.5-flash"),
            gemini_embedding_model=_env_str("GEMINI_EMBEDDING_MODEL", "text-embedding-004"),
            gemini_timeout_seconds=_env_int("GEMINI_TIMEOUT_SECONDS", 90),
            gemini_temperature=_env_float("GEMINI_TEMPERATURE", 0.8),
            gemini_max_output_tokens=_env_int("GEMINI_MAX_OUTPUT_TOKENS", 0),
            sqlite_path=Path(_env_str("SQLITE_PATH", "./data/lilith_brain.db", aliases=("DB_PATH",))).expanduser(),
            history_store_limit=_env_int("HISTORY_STORE_LIMIT", 60, aliases=("MAX_HISTORY_STORE",)),
            history_context_limit=_env_int("HISTORY_CONTEXT_LIMIT", 20, aliases=("MAX_HISTORY_CONTEXT",)),
            max_tool_steps=_env_int("MAX_TOOL_STEPS", 5),
            vector_index_threshold=_env_float("VECTOR_INDEX_THRESHOLD", 0.8),
            rag_recall_enabled=_env_bool("RAG_RECALL_ENABLED", True),
            rag_recall_limit=_env_int("RAG_RECALL_LIMIT", 3),
            default_mode=_env_str("DEFAULT_MODE", "demon").lower(),
            pair_primary_persona=_env_str("PAIR_PRIMARY_PERSONA", "demon").lower(),
            idle_threshold_minutes=_env_int("IDLE_THRESHOLD_MINUTES", 60),
            idle_chat_probability_threshold=_env_float("IDLE_CHAT_PROBABILITY_THRESHOLD", 0.7),
            active_conversation_strategy=_env_str("ACTIVE_CONVERSATION_STRATEGY", "recency").lower(),
            scheduler_timezone=_env_str("SCHEDULER_TIMEZONE", "Asia/Taipei", aliases=("TZ_NAME",)),
            reflection_hour=_env_int("REFLECTION_HOUR", 0),
            morning_briefing_hour=_env_int("MORNING_BRIEFING_HOUR", 8),
            heartbeat_seconds=_env_int("HEARTBEAT_SECONDS", 60),
            reflection_window_hours=_env_int("REFLECTION_WINDOW_HOURS", 24),
            reflection_batch_limit=_env_int("REFLECTION_BATCH_LIMIT", 10),
            reflection_min_importance=_env_float("REFLECTION_MIN_IMPORTANCE", 0.0),
            shell_tool_enabled=_env_bool("SHELL_TOOL_ENABLED", False),
            shell_timeout_seconds=_env_int("SHELL_TIMEOUT_SECONDS", 30),
            url_reader_max_chars=_env_int("URL_READER_MAX_CHARS", 4000),
            google_search_api_key=_env_str("GOOGLE_SEARCH_API_KEY", ""),
            google_search_cx=_env_str("GOOGLE_SEARCH_CX", "", aliases=("GOOGLE_SEARCH_ENGINE_ID",)),
            search_result_limit=_env_int("SEARCH_RESULT_LIMIT", 5),
            restart_marker=_env_str("RESTART_MARKER", "SYSTEM_RESTART_TRIGGER"),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
            log_dir=_env_optional_path("LOG_DIR"),
        )

    def validate(self) -> None:
        if not self.gemini_api_key:
            raise ValueError("GEMINI_API_KEY is required")
        if self.gemini_api_key == "put_your_gemini_api_key_here":
            raise ValueError("GEMINI_API_KEY is still placeholder")
        if self.gemini_timeout_seconds < 10:
            raise ValueError("GEMINI_TIMEOUT_SECONDS must be >= 10")
        if self.gemini_max_output_tokens < 0:
            raise ValueError("GEMINI_MAX_OUTPUT_TOKENS must be >= 0 (0 disables explicit cap)")

        if self.history_store_limit < 2:
            raise ValueError("HISTORY_STORE_LIMIT must be >= 2")
        if self.history_context_limit < 1 or self.history_context_limit > self.history_store_limit:
            raise ValueError("HISTORY_CONTEXT_LIMIT must be in [1, HISTORY_STORE_LIMIT]")
        if self.max_tool_steps < 1:
            raise ValueError("MAX_TOOL_STEPS must be >= 1")
        if self.vector_index_threshold < 0.0 or self.vector_index_threshold > 1.0:
            raise ValueError("VECTOR_INDEX_THRESHOLD must be in [0, 1]")
        if self.rag_recall_limit < 1:
            raise ValueError("RAG_RECALL_LIMIT must be >= 1")

        if self.default_mode not in DIALOGUE_MODES:
            raise ValueError(f"DEFAULT_MODE must be one of {', '.join(DIALOGUE_MODES)}")
        if self.pair_primary_persona not in PERSONA_IDS:
            raise ValueError(f"PAIR_PRIMARY_PERSONA must be one of {', '.join(PERSONA_IDS)}")

        if self.idle_threshold_minutes < 1:
            raise ValueError("IDLE_THRESHOLD_MINUTES must be >= 1")
        if self.idle_chat_probability_threshold < 0.0 or self.idle_chat_probability_threshold > 1.0:
            raise ValueError("IDLE_CHAT_PROBABILITY_THRESHOLD must be in [0, 1]")
        if self.active_conversation_strategy not in CONVERSATION_STRATEGIES:
            raise ValueError(
                f"ACTIVE_CONVERSATION_STRATEGY must be one of {', '.join(CONVERSATION_STRATEGIES)}"
            )

        for name, hour in (("REFLECTION_HOUR", self.reflection_hour), ("MORNING_BRIEFING_HOUR", self.morning_briefing_hour)):
            if hour < 0 or hour > 23:
                raise ValueError(f"{name} must be in [0, 23]")
        if self.heartbeat_seconds < 5:
            raise ValueError("HEARTBEAT_SECONDS must be >= 5")
        if self.reflection_window_hours < 1:
            raise ValueError("REFLECTION_WINDOW_HOURS must be >= 1")
        if self.reflection_batch_limit < 1:
            raise ValueError("REFLECTION_BATCH_LIMIT must be >= 1")
        if self.reflection_min_importance < 0.0 or self.reflection_min_importance > 1.0:
            raise ValueError("REFLECTION_MIN_IMPORTANCE must be in [0, 1]")

        if self.shell_timeout_seconds < 1:
            raise ValueError("SHELL_TIMEOUT_SECONDS must be >= 1")
        if self.url_reader_max_chars < 200:
            raise ValueError("URL_READER_MAX_CHARS must be >= 200")
        if not 1 <= self.search_result_limit <= 10:
            raise ValueError("SEARCH_RESULT_LIMIT must be in [1, 10]")
        if not self.restart_marker.strip():
            raise ValueError("RESTART_MARKER cannot be empty")
