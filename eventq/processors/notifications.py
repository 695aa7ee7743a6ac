from ..jobs import NOTIFICATION, NotificationJob
from ..services import NotificationService
from .base import Processor


class NotificationProcessor(Processor):
    queue = NOTIFICATION

    def __init__(self, notifications: NotificationService):
        self.notifications = notifications
        super().__init__()

    def handlers(self):
        n = self.notifications
        return {
            NotificationJob.CREATE: n.create,
            NotificationJob.EVENT_REGISTRATION: lambda d: n.event_registration(d["userId"], d["eventId"]),
            NotificationJob.EVENT_REMINDER: lambda d: n.event_reminder(
                d["userId"], d["eventId"], d.get("reminderType", "24h")),
            NotificationJob.CERTIFICATE_READY: lambda d: n.certificate_ready(d["userId"], d["certificateId"]),
            NotificationJob.FEEDBACK_REQUEST: lambda d: n.feedback_request(d["userId"], d["eventId"]),
            NotificationJob.BROADCAST: n.broadcast,
            NotificationJob.BULK: lambda d: n.bulk(d.get("notifications", [])),
        }
