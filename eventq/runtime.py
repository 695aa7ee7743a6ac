"""Wires the queues, services and processors of one process together."""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from .admin import QueueAdmin
from .jobs import ANALYTICS, CERTIFICATE, EMAIL, NOTIFICATION, SCHEDULED, SMS
from .processors.analytics import AnalyticsProcessor
from .processors.base import Processor
from .processors.certificates import CertificateProcessor
from .processors.emails import EmailProcessor
from .processors.notifications import NotificationProcessor
from .processors.scheduled import ScheduledProcessor
from .processors.sms import SmsProcessor
from .qr import QRCodec
from .queues import QueueRegistry
from .scheduler import Scheduler
from .senders import SmtpEmailSender, TwilioSmsSender
from .services import CertificateService, EmailService, NotificationService, SmsService
from .store import MemoryStore
from .utils import utcnow


@dataclass
class Runtime:
    registry: QueueRegistry
    store: MemoryStore
    codec: QRCodec
    email: EmailService
    sms: SmsService
    notifications: NotificationService
    certificates: CertificateService
    processors: Dict[str, Processor]
    admin: QueueAdmin
    scheduler: Scheduler


def build_runtime(db_path: Optional[str] = None, store: Optional[MemoryStore] = None,
                  email_sender=None, sms_sender=None, codec: Optional[QRCodec] = None,
                  certificate_dir: Optional[str] = None,
                  clock: Callable[[], datetime] = utcnow) -> Runtime:
    registry = QueueRegistry(db_path)
    store = store if store is not None else MemoryStore()
    codec = codec or QRCodec(clock=clock)
    email = EmailService(email_sender or SmtpEmailSender(), store)
    sms = SmsService(sms_sender or TwilioSmsSender(), store)
    notifications = NotificationService(store, clock)
    certificates = CertificateService(store, codec, output_dir=certificate_dir)
    processors: Dict[str, Processor] = {
        EMAIL: EmailProcessor(email),
        SMS: SmsProcessor(sms),
        NOTIFICATION: NotificationProcessor(notifications),
        CERTIFICATE: CertificateProcessor(registry, certificates),
        ANALYTICS: AnalyticsProcessor(store, clock),
        SCHEDULED: ScheduledProcessor(registry, store, clock),
    }
    return Runtime(
        registry=registry,
        store=store,
        codec=codec,
        email=email,
        sms=sms,
        notifications=notifications,
        certificates=certificates,
        processors=processors,
        admin=QueueAdmin(registry),
        scheduler=Scheduler(registry, clock=clock),
    )
