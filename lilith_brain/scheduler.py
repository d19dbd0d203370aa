from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger("lilith_brain.scheduler")


class ImpulseType(str, enum.Enum):
    TRIGGER_SELF_REFLECTION = "TRIGGER_SELF_REFLECTION"
    TRIGGER_MORNING_BRIEFING = "TRIGGER_MORNING_BRIEFING"
    IDLE_CHECK = "IDLE_CHECK"


@dataclass(slots=True)
class Impulse:
    type: ImpulseType
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ImpulseChannel:
    """Bounded queue between the scheduler and the brain. A full channel drops new impulses."""

    def __init__(self, maxsize: int = 16) -> None:
        self._queue: asyncio.Queue[Impulse] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def __len__(self) -> int:
        return self._queue.qsize()

    def publish(self, impulse: Impulse) -> bool:
        try:
            self._queue.put_nowait(impulse)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("[scheduler] channel full, impulse dropped type=%s", impulse.type.value)
            return False
        return True

    async def get(self) -> Impulse:
        return await self._queue.get()


class ProactiveScheduler:
    """Publishes timed impulses: daily reflection, morning briefing and a heartbeat idle check."""

    def __init__(
        self,
        channel: ImpulseChannel,
        *,
        timezone_name: str = "Asia/Taipei",
        reflection_hour: int = 0,
        briefing_hour: int = 8,
        heartbeat_seconds: int = 60,
    ) -> None:
        self.channel = channel
        self.tz = ZoneInfo(timezone_name)
        self.scheduler = AsyncIOScheduler(
            timezone=self.tz,
            job_defaults={"coalesce": True, "max_instances": 1},
        )
        self.scheduler.add_job(
            self._emit,
            CronTrigger(hour=reflection_hour, minute=0, timezone=self.tz),
            args=[ImpulseType.TRIGGER_SELF_REFLECTION],
            id="daily-reflection",
        )
        self.scheduler.add_job(
            self._emit,
            CronTrigger(hour=briefing_hour, minute=0, timezone=self.tz),
            args=[ImpulseType.TRIGGER_MORNING_BRIEFING],
            id="morning-briefing",
        )
        self.scheduler.add_job(
            self._emit,
            IntervalTrigger(seconds=heartbeat_seconds, timezone=self.tz),
            args=[ImpulseType.IDLE_CHECK],
            id="heartbeat",
        )

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def job_ids(self) -> list[str]:
        return [job.id for job in self.scheduler.get_jobs()]

    async def _emit(self, impulse_type: ImpulseType) -> None:
        impulse = Impulse(type=impulse_type)
        if self.channel.publish(impulse):
            logger.debug("[scheduler] impulse published type=%s", impulse_type.value)

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.start()
        logger.info("[scheduler] started jobs=%s tz=%s", ", ".join(self.job_ids()), self.tz.key)

    def stop(self) -> None:
        if not self.scheduler.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("[scheduler] stopped")
