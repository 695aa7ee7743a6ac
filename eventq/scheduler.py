"""
Recurring triggers for the `scheduled` queue.

Each trigger is stored once under its key in the `repeatables` table.
`Scheduler.tick` enqueues every due trigger with a job id derived from the
key and run time, then moves the trigger forward with a conditional update,
so restarts and several schedulers running side by side fire each run once.
"""

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from . import repository as repo
from .jobs import SCHEDULED, ScheduledJob
from .models import JobHandle, JobOptions
from .queues import QueueRegistry
from .utils import from_iso, to_iso, utcnow

logger = logging.getLogger(__name__)


def _at(dt: datetime, hour: int, minute: int) -> datetime:
    return dt.replace(hour=hour, minute=minute, second=0, microsecond=0)


@dataclass(frozen=True)
class Every:
    """Every `minutes`, aligned to midnight (minutes 0, 15, 30, 45 for 15)."""
    minutes: int

    def next_after(self, dt: datetime) -> datetime:
        midnight = _at(dt, 0, 0)
        elapsed = int((dt - midnight).total_seconds() // 60)
        return midnight + timedelta(minutes=(elapsed // self.minutes + 1) * self.minutes)

    def __str__(self):
        return f"every {self.minutes}m"


@dataclass(frozen=True)
class Daily:
    hour: int
    minute: int = 0

    def next_after(self, dt: datetime) -> datetime:
        candidate = _at(dt, self.hour, self.minute)
        return candidate if candidate > dt else candidate + timedelta(days=1)

    def __str__(self):
        return f"daily {self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class Weekly:
    weekday: int  # Monday is 0
    hour: int
    minute: int = 0

    def next_after(self, dt: datetime) -> datetime:
        candidate = _at(dt, self.hour, self.minute) + timedelta(days=(self.weekday - dt.weekday()) % 7)
        return candidate if candidate > dt else candidate + timedelta(days=7)

    def __str__(self):
        return f"weekly {self.weekday} {self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class Monthly:
    day: int
    hour: int
    minute: int = 0

    def __post_init__(self):
        if not 1 <= self.day <= 28:
            raise ValueError("Monthly day must be between 1 and 28")

    def next_after(self, dt: datetime) -> datetime:
        candidate = _at(dt, self.hour, self.minute).replace(day=self.day)
        if candidate > dt:
            return candidate
        if candidate.month == 12:
            return candidate.replace(year=candidate.year + 1, month=1)
        return candidate.replace(month=candidate.month + 1)

    def __str__(self):
        return f"monthly {self.day} {self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class Trigger:
    key: str
    job_type: ScheduledJob
    schedule: object


RECURRING_TRIGGERS: Tuple[Trigger, ...] = (
    Trigger("event-reminder-24h", ScheduledJob.EVENT_REMINDER_24H, Every(15)),
    Trigger("event-reminder-1h", ScheduledJob.EVENT_REMINDER_1H, Every(15)),
    Trigger("feedback-request", ScheduledJob.FEEDBACK_REQUEST, Daily(10)),
    Trigger("cleanup-notifications", ScheduledJob.CLEANUP_NOTIFICATIONS, Daily(2)),
    Trigger("daily-analytics", ScheduledJob.DAILY_ANALYTICS, Daily(1)),
    Trigger("weekly-analytics", ScheduledJob.WEEKLY_ANALYTICS, Weekly(0, 3)),
    Trigger("monthly-analytics", ScheduledJob.MONTHLY_ANALYTICS, Monthly(1, 4)),
)


class Scheduler:
    def __init__(self, registry: QueueRegistry, triggers: Tuple[Trigger, ...] = RECURRING_TRIGGERS,
                 clock: Callable[[], datetime] = utcnow):
        self.registry = registry
        self.triggers: Dict[str, Trigger] = {t.key: t for t in triggers}
        self._clock = clock

    def setup(self, now: Optional[datetime] = None) -> Dict[str, bool]:
        """Register every trigger. Returns `{key: created}`; re-running creates nothing."""
        now = now or self._clock()
        out = {}
        with self.registry.connect() as conn:
            for t in self.triggers.values():
                out[t.key] = repo.upsert_repeatable(
                    conn,
                    key=t.key,
                    queue=SCHEDULED,
                    job_type=t.job_type.value,
                    data={},
                    schedule=str(t.schedule),
                    next_run_at=to_iso(t.schedule.next_after(now)),
                )
        logger.info("Scheduled jobs set up: %s", ", ".join(self.triggers))
        return out

    def tick(self, now: Optional[datetime] = None) -> List[JobHandle]:
        """Enqueue every trigger that is due at `now`."""
        now = now or self._clock()
        fired: List[JobHandle] = []
        with self.registry.connect() as conn:
            due = repo.due_repeatables(conn, now)
            for row in due:
                trigger = self.triggers.get(row["key"])
                if trigger is None:
                    logger.warning("Skipping unknown repeatable job '%s'", row["key"])
                    continue
                run_at = row["next_run_at"]
                # Runs missed while nothing was ticking collapse into this one.
                next_run = trigger.schedule.next_after(max(now, from_iso(run_at)))
                handle = self.registry.enqueue(
                    row["queue"], row["type"], json.loads(row["data"] or "{}"),
                    JobOptions(job_id=f"repeat:{row['key']}:{run_at}"),
                )
                if repo.advance_repeatable(conn, row["key"], run_at, to_iso(next_run)):
                    logger.info("Repeatable job '%s' fired for %s", row["key"], run_at)
                    fired.append(handle)
        return fired

    def run(self, stop_event: threading.Event):
        logger.info("Scheduler started")
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            interval = float(self.registry.config().get("scheduler_tick_seconds", "60"))
            stop_event.wait(interval)
        logger.info("Scheduler stopped")
