"""
In-process persistence for the domain records the job processors read and write.

The API server owns the real user/event database; workers receive an object
with this interface. `MemoryStore` backs the tests and single-process setups.
"""

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Set

from .utils import utcnow

# Registration status
REGISTERED = "registered"
CANCELLED = "cancelled"

# Event status
PUBLISHED = "published"

# Certificate status
ISSUED = "issued"
REVOKED = "revoked"

PENDING = "pending"
SENT = "sent"

PRIORITY_ORDER = {"urgent": 3, "high": 2, "normal": 1, "low": 0}


def new_id() -> str:
    return uuid.uuid4().hex[:24]


@dataclass
class Registration:
    event_id: str
    status: str = REGISTERED
    attended: bool = False
    certificate_issued: bool = False
    registered_at: datetime = field(default_factory=utcnow)
    sent: Set[str] = field(default_factory=set)


@dataclass
class User:
    id: str
    email: str
    first_name: str
    last_name: str = ""
    phone: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    registrations: Dict[str, Registration] = field(default_factory=dict)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


@dataclass
class Event:
    id: str
    title: str
    start_time: datetime
    venue: str = ""
    status: str = PUBLISHED
    certificate_enabled: bool = True
    certificate_template_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class CertificateTemplate:
    id: str
    name: str
    title: str = "Certificate of Participation"
    body: str = "This is to certify that {{ recipient_name }} attended {{ event_title }} on {{ event_date }}."
    is_default: bool = False
    is_active: bool = True


@dataclass
class Certificate:
    id: str
    user_id: str
    event_id: str
    number: str
    template_id: Optional[str] = None
    file_path: Optional[str] = None
    status: str = ISSUED
    verification_hash: str = ""
    issued_at: datetime = field(default_factory=utcnow)


@dataclass
class Notification:
    id: str
    user_id: Optional[str]
    title: str
    message: str
    type: str = "general"
    priority: str = "normal"
    status: str = PENDING
    read: bool = False
    data: Dict[str, Any] = field(default_factory=dict)
    dedupe_key: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Feedback:
    id: str
    event_id: str
    user_id: str
    overall: int
    nps_score: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


def _between(value: Optional[datetime], since: Optional[datetime], until: Optional[datetime]) -> bool:
    if value is None:
        return False
    if since is not None and value < since:
        return False
    if until is not None and value >= until:
        return False
    return True


class MemoryStore:
    def __init__(self):
        self._lock = threading.RLock()
        self.users: Dict[str, User] = {}
        self.events: Dict[str, Event] = {}
        self.templates: Dict[str, CertificateTemplate] = {}
        self.certificates: Dict[str, Certificate] = {}
        self.notifications: Dict[str, Notification] = {}
        self.feedback: List[Feedback] = []
        self._certificate_seq = 0

    # ---------- seeding ----------
    def add_user(self, user: User) -> User:
        with self._lock:
            self.users[user.id] = user
        return user

    def add_event(self, event: Event) -> Event:
        with self._lock:
            self.events[event.id] = event
        return event

    def add_template(self, template: CertificateTemplate) -> CertificateTemplate:
        with self._lock:
            self.templates[template.id] = template
        return template

    def add_feedback(self, feedback: Feedback) -> Feedback:
        with self._lock:
            self.feedback.append(feedback)
        return feedback

    def register(self, user_id: str, event_id: str) -> Registration:
        with self._lock:
            user = self.users[user_id]
            reg = user.registrations.get(event_id)
            if reg is None:
                reg = user.registrations[event_id] = Registration(event_id)
            return reg

    def cancel_registration(self, user_id: str, event_id: str):
        with self._lock:
            self.users[user_id].registrations[event_id].status = CANCELLED

    def mark_attended(self, user_id: str, event_id: str):
        with self._lock:
            self.users[user_id].registrations[event_id].attended = True

    # ---------- lookups ----------
    def get_user(self, user_id: str) -> Optional[User]:
        return self.users.get(str(user_id))

    def get_event(self, event_id: str) -> Optional[Event]:
        return self.events.get(str(event_id))

    def get_template(self, template_id: Optional[str]) -> Optional[CertificateTemplate]:
        return self.templates.get(template_id) if template_id else None

    def default_template(self) -> Optional[CertificateTemplate]:
        for t in self.templates.values():
            if t.is_default and t.is_active:
                return t
        return None

    def registered_users(self, event_id: str) -> List[User]:
        """Users holding a live (not cancelled) registration for the event."""
        return [u for u in list(self.users.values())
                if event_id in u.registrations and u.registrations[event_id].status == REGISTERED]

    def attendees(self, event_id: str) -> List[User]:
        return [u for u in list(self.users.values())
                if event_id in u.registrations and u.registrations[event_id].attended]

    def events_starting_between(self, start: datetime, end: datetime,
                                status: str = PUBLISHED) -> List[Event]:
        return [e for e in list(self.events.values())
                if e.status == status and start <= e.start_time < end]

    def was_sent(self, user_id: str, event_id: str, kind: str) -> bool:
        with self._lock:
            return kind in self.users[user_id].registrations[event_id].sent

    def mark_sent(self, user_id: str, event_id: str, kind: str) -> bool:
        """Record that `kind` was sent for a registration. False if it already was."""
        with self._lock:
            reg = self.users[user_id].registrations[event_id]
            if kind in reg.sent:
                return False
            reg.sent.add(kind)
            return True

    # ---------- certificates ----------
    def find_certificate(self, user_id: str, event_id: str) -> Optional[Certificate]:
        for c in list(self.certificates.values()):
            if c.user_id == user_id and c.event_id == event_id:
                return c
        return None

    def get_certificate(self, certificate_id: str) -> Optional[Certificate]:
        return self.certificates.get(str(certificate_id))

    def add_certificate(self, certificate: Certificate) -> Certificate:
        """Insert unless the user already holds a certificate for the event."""
        with self._lock:
            existing = self.find_certificate(certificate.user_id, certificate.event_id)
            if existing:
                return existing
            self.certificates[certificate.id] = certificate
            reg = self.users[certificate.user_id].registrations.get(certificate.event_id)
            if reg:
                reg.certificate_issued = True
            return certificate

    def delete_certificate(self, certificate_id: str) -> bool:
        with self._lock:
            cert = self.certificates.pop(certificate_id, None)
            if cert is None:
                return False
            reg = self.users[cert.user_id].registrations.get(cert.event_id)
            if reg:
                reg.certificate_issued = False
            return True

    def next_certificate_number(self) -> str:
        with self._lock:
            self._certificate_seq += 1
            return f"CERT-{utcnow():%Y}-{self._certificate_seq:06d}"

    # ---------- notifications ----------
    def add_notification(self, notification: Notification) -> Notification:
        """Insert a notification; one with an existing dedupe key is returned instead."""
        with self._lock:
            if notification.dedupe_key:
                for n in self.notifications.values():
                    if n.dedupe_key == notification.dedupe_key:
                        return n
            self.notifications[notification.id] = notification
            return notification

    def notifications_for(self, user_id: Optional[str]) -> List[Notification]:
        return [n for n in list(self.notifications.values()) if n.user_id == user_id]

    def pending_notifications(self, now: Optional[datetime] = None) -> List[Notification]:
        """Pending notifications that are (unscheduled or due) and (unexpired)."""
        now = now or utcnow()
        due = [
            n for n in list(self.notifications.values())
            if n.status == PENDING
            and (n.scheduled_for is None or n.scheduled_for <= now)
            and (n.expires_at is None or n.expires_at > now)
        ]
        due.sort(key=lambda n: (-PRIORITY_ORDER.get(n.priority, 1), n.created_at))
        return due

    def delete_read_notifications(self, before: datetime) -> int:
        with self._lock:
            ids = [n.id for n in self.notifications.values() if n.read and n.created_at < before]
            for i in ids:
                del self.notifications[i]
            return len(ids)

    def delete_expired_notifications(self, now: datetime) -> int:
        with self._lock:
            ids = [n.id for n in self.notifications.values()
                   if n.expires_at is not None and n.expires_at <= now]
            for i in ids:
                del self.notifications[i]
            return len(ids)

    # ---------- aggregates ----------
    def count_users(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> int:
        users = list(self.users.values())
        if since is None and until is None:
            return len(users)
        return sum(1 for u in users if _between(u.created_at, since, until))

    def count_events(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> int:
        events = list(self.events.values())
        if since is None and until is None:
            return len(events)
        return sum(1 for e in events if _between(e.created_at, since, until))

    def count_active_events(self, since: datetime) -> int:
        return sum(1 for e in list(self.events.values())
                   if e.status == PUBLISHED and e.start_time >= since)

    def count_certificates(self, status: Optional[str] = None, since: Optional[datetime] = None,
                           until: Optional[datetime] = None) -> int:
        certs = [c for c in list(self.certificates.values()) if status is None or c.status == status]
        if since is None and until is None:
            return len(certs)
        return sum(1 for c in certs if _between(c.issued_at, since, until))

    def count_feedback(self, since: Optional[datetime] = None, until: Optional[datetime] = None) -> int:
        items = list(self.feedback)
        if since is None and until is None:
            return len(items)
        return sum(1 for f in items if _between(f.created_at, since, until))

    def feedback_for(self, event_id: Optional[str] = None) -> List[Feedback]:
        return [f for f in list(self.feedback) if event_id is None or f.event_id == event_id]

    def registration_counts(self, event_id: str) -> Dict[str, int]:
        regs = [u.registrations[event_id] for u in list(self.users.values()) if event_id in u.registrations]
        live = [r for r in regs if r.status != CANCELLED]
        return {
            "registered": len(live),
            "attended": sum(1 for r in live if r.attended),
            "certificates": sum(1 for r in live if r.certificate_issued),
        }


def default_expiry(priority: str, now: Optional[datetime] = None) -> datetime:
    """Urgent notifications expire after 7 days, the rest after 30."""
    now = now or utcnow()
    return now + timedelta(days=7 if priority == "urgent" else 30)


