from __future__ import annotations

import asyncio
import sys
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from lilith_brain.scheduler import Impulse, ImpulseChannel, ImpulseType, ProactiveScheduler  # noqa: E402


def test_full_channel_drops_new_impulses() -> None:
    async def scenario():
        channel = ImpulseChannel(maxsize=2)
        accepted = [channel.publish(Impulse(ImpulseType.IDLE_CHECK)) for _ in range(3)]
        first = await channel.get()
        return channel, accepted, first

    channel, accepted, first = asyncio.run(scenario())

    assert accepted == [True, True, False]
    assert channel.dropped == 1
    assert len(channel) == 1
    assert first.type is ImpulseType.IDLE_CHECK


def test_scheduler_registers_calendar_and_heartbeat_jobs() -> None:
    async def scenario():
        scheduler = ProactiveScheduler(
            ImpulseChannel(),
            timezone_name="Asia/Taipei",
            reflection_hour=0,
            briefing_hour=8,
            heartbeat_seconds=60,
        )
        scheduler.start()
        running = scheduler.running
        jobs = {job.id: job for job in scheduler.scheduler.get_jobs()}
        scheduler.stop()
        await asyncio.sleep(0)
        return running, jobs, scheduler.running

    running, jobs, stopped_running = asyncio.run(scenario())

    assert running is True
    assert set(jobs) == {"daily-reflection", "morning-briefing", "heartbeat"}
    assert "hour='0'" in str(jobs["daily-reflection"].trigger)
    assert "hour='8'" in str(jobs["morning-briefing"].trigger)
    assert jobs["heartbeat"].trigger.interval.total_seconds() == 60
    assert stopped_running is False


def test_emit_publishes_one_impulse_per_firing() -> None:
    async def scenario():
        channel = ImpulseChannel()
        scheduler = ProactiveScheduler(channel)
        await scheduler._emit(ImpulseType.TRIGGER_SELF_REFLECTION)
        await scheduler._emit(ImpulseType.TRIGGER_MORNING_BRIEFING)
        return [await channel.get(), await channel.get()]

    impulses = asyncio.run(scenario())

    assert [impulse.type for impulse in impulses] == [
        ImpulseType.TRIGGER_SELF_REFLECTION,
        ImpulseType.TRIGGER_MORNING_BRIEFING,
    ]
    assert impulses[0].timestamp.tzinfo is not None
