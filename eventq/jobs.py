"""Closed sets of job types, one enum per queue.

Enqueue validates the type against the target queue's enum, and every
processor must register a handler for each member (see `processors.base`).
"""
from enum import Enum
from typing import Dict, Type

EMAIL = "email"
SMS = "sms"
NOTIFICATION = "notification"
CERTIFICATE = "certificate"
ANALYTICS = "analytics"
SCHEDULED = "scheduled"


class EmailJob(str, Enum):
    WELCOME = "welcome"
    EVENT_REGISTRATION = "event_registration"
    EVENT_REMINDER = "event_reminder"
    EVENT_UPDATE = "event_update"
    CERTIFICATE_READY = "certificate_ready"
    PASSWORD_RESET = "password_reset"
    FEEDBACK_REQUEST = "feedback_request"
    CUSTOM = "custom"


class SmsJob(str, Enum):
    OTP = "otp"
    EVENT_REGISTRATION = "event_registration"
    EVENT_REMINDER = "event_reminder"
    CERTIFICATE_READY = "certificate_ready"
    PASSWORD_RESET = "password_reset"
    CUSTOM = "custom"


class NotificationJob(str, Enum):
    CREATE = "create"
    EVENT_REGISTRATION = "event_registration"
    EVENT_REMINDER = "event_reminder"
    CERTIFICATE_READY = "certificate_ready"
    FEEDBACK_REQUEST = "feedback_request"
    BROADCAST = "broadcast"
    BULK = "bulk"


class CertificateJob(str, Enum):
    GENERATE_SINGLE = "generate_single"
    GENERATE_BULK = "generate_bulk"
    REGENERATE = "regenerate"


class AnalyticsJob(str, Enum):
    EVENT_STATS = "event_stats"
    USER_STATS = "user_stats"
    CERTIFICATE_STATS = "certificate_stats"
    FEEDBACK_STATS = "feedback_stats"
    DAILY_REPORT = "daily_report"
    WEEKLY_REPORT = "weekly_report"
    MONTHLY_REPORT = "monthly_report"


class ScheduledJob(str, Enum):
    EVENT_REMINDER_24H = "event_reminder_24h"
    EVENT_REMINDER_1H = "event_reminder_1h"
    FEEDBACK_REQUEST = "feedback_request"
    CLEANUP_NOTIFICATIONS = "cleanup_notifications"
    DAILY_ANALYTICS = "daily_analytics"
    WEEKLY_ANALYTICS = "weekly_analytics"
    MONTHLY_ANALYTICS = "monthly_analytics"


JOB_TYPES: Dict[str, Type[Enum]] = {
    EMAIL: EmailJob,
    SMS: SmsJob,
    NOTIFICATION: NotificationJob,
    CERTIFICATE: CertificateJob,
    ANALYTICS: AnalyticsJob,
    SCHEDULED: ScheduledJob,
}


def parse_job_type(queue: str, job_type) -> Enum:
    """Return the enum member for `job_type` on `queue` or raise ValueError."""
    kinds = JOB_TYPES.get(queue)
    if kinds is None:
        raise ValueError(f"No job types registered for queue '{queue}'")
    if isinstance(job_type, kinds):
        return job_type
    try:
        return kinds(job_type)
    except ValueError:
        allowed = ", ".join(k.value for k in kinds)
        raise ValueError(f"Unknown {queue} job type: {job_type!r} (allowed: {allowed})")
