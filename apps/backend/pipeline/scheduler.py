"""
Cron-style recurring triggers.

Each firing builds a fresh Job from the registered template and hands it to
the queue's normal enqueue path.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from apscheduler.triggers.cron import CronTrigger

from pipeline.jobs import Job

logger = logging.getLogger(__name__)


class RecurringSchedule:
    """A named cron trigger plus the job template it enqueues"""

    def __init__(self, name: str, template: Dict[str, Any], expression: str, trigger: CronTrigger):
        self.name = name
        self.template = dict(template)
        self.expression = expression
        self.trigger = trigger
        self.last_fired: Optional[datetime] = None
        self.next_fire: Optional[datetime] = None
        self.fire_count = 0

    def to_dict(self) -> Dict:
        return {
            'name': self.name,
            'source': self.template.get('source'),
            'kind': self.template.get('kind'),
            'schedule': self.expression,
            'last_fired': self.last_fired.isoformat() if self.last_fired else None,
            'next_fire': self.next_fire.isoformat() if self.next_fire else None,
            'fire_count': self.fire_count,
        }


class RecurringScheduler:
    """Fires registered schedules into the queue"""

    def __init__(self, queue, poll_interval: float = 30.0, tz=timezone.utc):
        """
        Args:
            queue: JobQueue that receives the jobs
            poll_interval: Seconds between due checks in the background loop
            tz: Timezone cron expressions are evaluated in
        """
        self.queue = queue
        self.poll_interval = poll_interval
        self.tz = tz
        self._schedules: Dict[str, RecurringSchedule] = {}
        self._task: Optional[asyncio.Task] = None

    def add(self, name: str, template: Dict[str, Any], expression: str, now: Optional[datetime] = None) -> Optional[datetime]:
        """
        Register or replace a schedule.

        Returns:
            The next fire time

        Raises:
            ValueError: If the cron expression is invalid
        """
        trigger = CronTrigger.from_crontab(expression, timezone=self.tz)
        schedule = RecurringSchedule(name, template, expression, trigger)
        now = now or datetime.now(self.tz)
        schedule.next_fire = trigger.get_next_fire_time(None, now)

        if name in self._schedules:
            logger.warning(f"[scheduler] Replacing schedule '{name}'")
        self._schedules[name] = schedule
        logger.info(f"[scheduler] Registered '{name}' ({expression}), next run {schedule.next_fire}")
        return schedule.next_fire

    def remove(self, name: str) -> bool:
        removed = self._schedules.pop(name, None)
        if removed:
            logger.info(f"[scheduler] Removed schedule '{name}'")
        return removed is not None

    def list_schedules(self) -> List[Dict]:
        return [s.to_dict() for s in self._schedules.values()]

    def fire_due(self, now: Optional[datetime] = None) -> List[str]:
        """
        Enqueue a job for every schedule whose fire time has passed.

        A schedule that fell behind fires once, then moves to its next
        future fire time.

        Returns:
            Ids of the jobs enqueued
        """
        now = now or datetime.now(self.tz)
        job_ids = []

        for schedule in list(self._schedules.values()):
            if schedule.next_fire is None or schedule.next_fire > now:
                continue

            template = dict(schedule.template)
            metadata = dict(template.pop('metadata', None) or {})
            metadata['recurring'] = schedule.name
            job = Job(metadata=metadata, **template)

            try:
                job_ids.append(self.queue.enqueue(job))
            except Exception as e:
                logger.error(f"[scheduler] Schedule '{schedule.name}' failed to enqueue: {e}")

            schedule.last_fired = now
            schedule.fire_count += 1
            schedule.next_fire = schedule.trigger.get_next_fire_time(schedule.next_fire, now)
            while schedule.next_fire is not None and schedule.next_fire <= now:
                schedule.next_fire = schedule.trigger.get_next_fire_time(schedule.next_fire, now)

        return job_ids

    async def _loop(self):
        while True:
            try:
                fired = self.fire_due()
                if fired:
                    logger.info(f"[scheduler] Enqueued {len(fired)} recurring jobs")
            except Exception as e:
                logger.error(f"[scheduler] Loop error: {e}", exc_info=True)
            await asyncio.sleep(self.poll_interval)

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._loop())
            logger.info(f"[scheduler] Started with {len(self._schedules)} schedules")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("[scheduler] Stopped")
