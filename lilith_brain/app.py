from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import random
import sys
from dataclasses import dataclass, field
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import List

from .brain.group_director import GroupDialogueDirector
from .brain.orchestrator import AgentOrchestrator, TurnResult, build_selector
from .brain.tool_loop import ToolExecutionLoop
from .config import DIALOGUE_MODES, Settings
from .emotion.engine import EmotionEngine
from .memory.long_term import LongTermMemory
from .memory.persona_memory import PersonaMemoryEngine
from .memory.store import MemoryStore
from .memory.vector_recall import VectorRecallBridge
from .scheduler import ImpulseChannel, ProactiveScheduler
from .services.gemini_client import GeminiClient
from .tasks import BackgroundTasks
from .tools.builtin import build_default_registry
from .tools.terminal import PersistentShell

logger = logging.getLogger("lilith_brain")

RESTART_EXIT_CODE = 3
CONSOLE_CONVERSATION_ID = "console"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: str = "INFO", log_dir: Path | None = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            TimedRotatingFileHandler(
                log_dir / "lilith_brain.log",
                when="midnight",
                backupCount=14,
                encoding="utf-8",
            )
        )
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT, handlers=handlers)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def _is_process_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _acquire_instance_lock(lock_path: Path) -> None:
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    if lock_path.exists():
        stale_pid = 0
        with contextlib.suppress(OSError, ValueError):
            stale_pid = int(lock_path.read_text(encoding="utf-8").strip() or "0")
        if stale_pid > 0 and _is_process_alive(stale_pid):
            raise RuntimeError(f"Brain is already running (pid={stale_pid}). Stop it before starting a new one.")
        with contextlib.suppress(OSError):
            lock_path.unlink()

    lock_path.write_text(str(os.getpid()), encoding="utf-8")


def _release_instance_lock(lock_path: Path) -> None:
    with contextlib.suppress(OSError):
        if lock_path.exists():
            lock_path.unlink()


@dataclass(slots=True)
class Brain:
    settings: Settings
    memory: MemoryStore
    orchestrator: AgentOrchestrator
    scheduler: ProactiveScheduler
    channel: ImpulseChannel
    background: BackgroundTasks
    clients: List[GeminiClient] = field(default_factory=list)
    shell: PersistentShell | None = None

    async def start(self) -> None:
        await self.memory.init()
        for client in self.clients:
            await client.start()
        self.scheduler.start()

    async def close(self) -> None:
        self.scheduler.stop()
        await self.background.drain(timeout=10.0)
        await self.background.cancel_all()
        if self.shell is not None:
            await self.shell.close()
        for client in self.clients:
            await client.close()


def _gemini(settings: Settings, model: str) -> GeminiClient:
    return GeminiClient(
        api_key=settings.gemini_api_key,
        model=model,
        timeout_seconds=settings.gemini_timeout_seconds,
        temperature=settings.gemini_temperature,
        max_output_tokens=settings.gemini_max_output_tokens,
        base_url=settings.gemini_base_url,
        embedding_model=settings.gemini_embedding_model,
    )


def build_brain(settings: Settings, rng: random.Random | None = None) -> Brain:
    rng = rng or random.Random()
    reasoning_llm = _gemini(settings, settings.gemini_model)
    fast_llm = _gemini(settings, settings.gemini_fast_model)
    memory_llm = _gemini(settings, settings.gemini_memory_model)

    background = BackgroundTasks()
    memory = MemoryStore(settings.sqlite_path)
    vectors = VectorRecallBridge(memory, memory_llm)
    ltm = LongTermMemory(memory, vectors, background, index_threshold=settings.vector_index_threshold)
    emotion = EmotionEngine(memory, fast_llm, rng=rng, timezone_name=settings.scheduler_timezone)
    persona_memory = PersonaMemoryEngine(memory, memory_llm, rng=rng, pair_primary=settings.pair_primary_persona)

    shell = PersistentShell(timeout_seconds=settings.shell_timeout_seconds) if settings.shell_tool_enabled else None
    registry = build_default_registry(
        vectors=vectors,
        ltm=ltm,
        restart_marker=settings.restart_marker,
        shell=shell,
        url_max_chars=settings.url_reader_max_chars,
        search_api_key=settings.google_search_api_key,
        search_cx=settings.google_search_cx,
        search_limit=settings.search_result_limit,
    )
    loop = ToolExecutionLoop(
        reasoning_llm,
        registry,
        ltm,
        background,
        max_steps=settings.max_tool_steps,
        temperature=settings.gemini_temperature,
    )
    director = GroupDialogueDirector(fast_llm, loop, history_limit=settings.history_context_limit)
    orchestrator = AgentOrchestrator(
        memory=memory,
        emotion=emotion,
        persona_memory=persona_memory,
        ltm=ltm,
        loop=loop,
        director=director,
        reactor_llm=fast_llm,
        memory_llm=memory_llm,
        background=background,
        vectors=vectors if settings.rag_recall_enabled else None,
        selector=build_selector(settings.active_conversation_strategy, rng),
        rng=rng,
        default_mode=settings.default_mode,
        pair_primary=settings.pair_primary_persona,
        history_store_limit=settings.history_store_limit,
        history_context_limit=settings.history_context_limit,
        rag_recall_limit=settings.rag_recall_limit,
        idle_threshold_minutes=settings.idle_threshold_minutes,
        idle_probability_threshold=settings.idle_chat_probability_threshold,
        reflection_window_hours=settings.reflection_window_hours,
        reflection_batch_limit=settings.reflection_batch_limit,
        reflection_min_importance=settings.reflection_min_importance,
        restart_marker=settings.restart_marker,
    )
    channel = ImpulseChannel()
    scheduler = ProactiveScheduler(
        channel,
        timezone_name=settings.scheduler_timezone,
        reflection_hour=settings.reflection_hour,
        briefing_hour=settings.morning_briefing_hour,
        heartbeat_seconds=settings.heartbeat_seconds,
    )
    return Brain(
        settings=settings,
        memory=memory,
        orchestrator=orchestrator,
        scheduler=scheduler,
        channel=channel,
        background=background,
        clients=[reasoning_llm, fast_llm, memory_llm],
        shell=shell,
    )


def _print_result(result: TurnResult) -> None:
    for message in result.messages:
        print(message, flush=True)


async def _impulse_worker(brain: Brain, restart: asyncio.Event) -> None:
    while True:
        impulse = await brain.channel.get()
        result = await brain.orchestrator.handle_impulse(impulse)
        if result is None:
            continue
        _print_result(result)
        if result.should_restart:
            restart.set()
            return


async def _console_loop(brain: Brain, restart: asyncio.Event) -> None:
    mode = brain.settings.default_mode
    print(f"lilith-brain ready (mode={mode}). Commands: /mode <{'|'.join(DIALOGUE_MODES)}>, /quit", flush=True)
    while True:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            return
        text = line.strip()
        if not text:
            continue
        if text == "/quit":
            return
        if text.startswith("/mode"):
            requested = text[len("/mode"):].strip().lower()
            if requested in DIALOGUE_MODES:
                mode = requested
                print(f"(mode -> {mode})", flush=True)
            else:
                print(f"(unknown mode; choose one of {', '.join(DIALOGUE_MODES)})", flush=True)
            continue

        result = await brain.orchestrator.process_turn(CONSOLE_CONVERSATION_ID, text, mode=mode)
        _print_result(result)
        if result.should_restart:
            restart.set()
            return


async def _run_brain(settings: Settings) -> int:
    brain = build_brain(settings)
    await brain.start()
    restart = asyncio.Event()
    impulse_task = asyncio.create_task(_impulse_worker(brain, restart), name="impulse-worker")
    console_task = asyncio.create_task(_console_loop(brain, restart), name="console")
    try:
        await asyncio.wait({impulse_task, console_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (impulse_task, console_task):
            task.cancel()
        await asyncio.gather(impulse_task, console_task, return_exceptions=True)
        await brain.close()
    if restart.is_set():
        logger.warning("Restart requested, exiting with code %s.", RESTART_EXIT_CODE)
        return RESTART_EXIT_CODE
    return 0


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level, settings.log_dir)
    settings.validate()
    lock_path = settings.sqlite_path.parent / "lilith_brain.pid"
    _acquire_instance_lock(lock_path)
    exit_code = 0
    try:
        exit_code = asyncio.run(_run_brain(settings))
    except KeyboardInterrupt:
        logger.info("Shutdown requested, exiting.")
    finally:
        _release_instance_lock(lock_path)
    sys.exit(exit_code)
