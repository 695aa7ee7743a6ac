"""
Sweeps fired by the scheduler.

Sweeps only find the affected users and enqueue child jobs. Each reminder or
feedback request is marked as sent on the registration once its jobs are
enqueued. The child jobs carry fixed ids, so a sweep retried after a failed
enqueue, or two overlapping sweeps, re-enqueue the same jobs as no-ops.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from ..jobs import (
    ANALYTICS, EMAIL, NOTIFICATION, SCHEDULED,
    AnalyticsJob, EmailJob, NotificationJob, ScheduledJob,
)
from ..models import JobOptions
from ..queues import QueueRegistry
from ..store import MemoryStore, User, Event
from ..utils import to_iso, utcnow
from .base import Processor

logger = logging.getLogger(__name__)

NOTIFICATION_RETENTION = timedelta(days=30)


class ScheduledProcessor(Processor):
    queue = SCHEDULED

    def __init__(self, registry: QueueRegistry, store: MemoryStore,
                 clock: Callable[[], datetime] = utcnow):
        self.registry = registry
        self.store = store
        self._clock = clock
        super().__init__()

    def handlers(self):
        return {
            ScheduledJob.EVENT_REMINDER_24H: self.event_reminder_24h,
            ScheduledJob.EVENT_REMINDER_1H: self.event_reminder_1h,
            ScheduledJob.FEEDBACK_REQUEST: self.feedback_request,
            ScheduledJob.CLEANUP_NOTIFICATIONS: self.cleanup_notifications,
            ScheduledJob.DAILY_ANALYTICS: lambda data: self._report(AnalyticsJob.DAILY_REPORT),
            ScheduledJob.WEEKLY_ANALYTICS: lambda data: self._report(AnalyticsJob.WEEKLY_REPORT),
            ScheduledJob.MONTHLY_ANALYTICS: lambda data: self._report(AnalyticsJob.MONTHLY_REPORT),
        }

    def _enqueue(self, queue: str, job_type, data: Dict[str, Any], job_id: str) -> Dict[str, str]:
        return self.registry.enqueue(queue, job_type, data, JobOptions(job_id=job_id)).to_dict()

    def _reminder_email(self, user: User, event: Event, reminder_type: str) -> Dict[str, str]:
        return self._enqueue(EMAIL, EmailJob.EVENT_REMINDER, {
            "to": user.email,
            "name": user.first_name,
            "userId": user.id,
            "eventTitle": event.title,
            "eventDate": to_iso(event.start_time),
            "eventVenue": event.venue,
            "reminderType": reminder_type,
        }, f"reminder-{reminder_type}-email:{user.id}:{event.id}")

    def _reminder_notification(self, user: User, event: Event, reminder_type: str) -> Dict[str, str]:
        return self._enqueue(NOTIFICATION, NotificationJob.EVENT_REMINDER, {
            "userId": user.id,
            "eventId": event.id,
            "reminderType": reminder_type,
        }, f"reminder-{reminder_type}-notification:{user.id}:{event.id}")

    def _remind(self, start: datetime, end: datetime, reminder_type: str, with_email: bool) -> Dict[str, Any]:
        jobs: List[Dict[str, str]] = []
        events = self.store.events_starting_between(start, end)
        for event in events:
            for user in self.store.registered_users(event.id):
                kind = f"reminder-{reminder_type}"
                if self.store.was_sent(user.id, event.id, kind):
                    continue
                if with_email:
                    jobs.append(self._reminder_email(user, event, reminder_type))
                jobs.append(self._reminder_notification(user, event, reminder_type))
                self.store.mark_sent(user.id, event.id, kind)
        logger.info("Queued %d %s event reminder jobs for %d events", len(jobs), reminder_type, len(events))
        return {"events": len(events), "jobs": jobs}

    def event_reminder_24h(self, data: Dict[str, Any]) -> Dict[str, Any]:
        start = self._clock() + timedelta(hours=24)
        return self._remind(start, start + timedelta(hours=1), "24h", with_email=True)

    def event_reminder_1h(self, data: Dict[str, Any]) -> Dict[str, Any]:
        start = self._clock() + timedelta(hours=1)
        return self._remind(start, start + timedelta(minutes=15), "1h", with_email=False)

    def feedback_request(self, data: Dict[str, Any]) -> Dict[str, Any]:
        now = self._clock()
        yesterday = (now - timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
        jobs: List[Dict[str, str]] = []
        events = self.store.events_starting_between(yesterday, now)
        for event in events:
            for user in self.store.attendees(event.id):
                if self.store.was_sent(user.id, event.id, "feedback-request"):
                    continue
                jobs.append(self._enqueue(EMAIL, EmailJob.FEEDBACK_REQUEST, {
                    "to": user.email,
                    "name": user.first_name,
                    "userId": user.id,
                    "eventId": event.id,
                    "eventTitle": event.title,
                }, f"feedback-email:{user.id}:{event.id}"))
                jobs.append(self._enqueue(NOTIFICATION, NotificationJob.FEEDBACK_REQUEST, {
                    "userId": user.id,
                    "eventId": event.id,
                }, f"feedback-notification:{user.id}:{event.id}"))
                self.store.mark_sent(user.id, event.id, "feedback-request")
        logger.info("Queued %d feedback request jobs", len(jobs))
        return {"events": len(events), "jobs": jobs}

    def cleanup_notifications(self, data: Dict[str, Any]) -> Dict[str, int]:
        now = self._clock()
        read = self.store.delete_read_notifications(now - NOTIFICATION_RETENTION)
        expired = self.store.delete_expired_notifications(now)
        logger.info("Cleaned up %d read and %d expired notifications", read, expired)
        return {"deletedCount": read + expired, "deletedRead": read, "deletedExpired": expired}

    def _report(self, report) -> Dict[str, str]:
        handle = self.registry.enqueue(ANALYTICS, report)
        logger.info("%s queued", report.value)
        return handle.to_dict()
