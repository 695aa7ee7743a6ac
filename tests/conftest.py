from datetime import datetime, timedelta, timezone

import pytest

from eventq.queues import QueueRegistry
from eventq.runtime import build_runtime
from eventq.store import CertificateTemplate, Event, MemoryStore, User

NOW = datetime(2026, 3, 11, 10, 7, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeEmailSender:
    def __init__(self):
        self.sent = []

    def send(self, message):
        self.sent.append(message)
        return {"success": True, "messageId": f"<msg-{len(self.sent)}@test>"}


class FakeSmsSender:
    def __init__(self):
        self.sent = []

    def send(self, phone, message):
        self.sent.append((phone, message))
        return {"success": True, "messageId": f"SM{len(self.sent)}"}


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "eventq.db")


@pytest.fixture
def registry(db_path):
    return QueueRegistry(db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    s = MemoryStore()
    s.add_template(CertificateTemplate("tpl-default", "Default", is_default=True))
    return s


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def sms_sender():
    return FakeSmsSender()


@pytest.fixture
def runtime(tmp_path, db_path, store, email_sender, sms_sender, clock):
    return build_runtime(
        db_path,
        store=store,
        email_sender=email_sender,
        sms_sender=sms_sender,
        certificate_dir=str(tmp_path / "certificates"),
        clock=clock,
    )


def add_user(store, user_id, **kwargs):
    kwargs.setdefault("email", f"{user_id}@example.com")
    kwargs.setdefault("first_name", user_id.capitalize())
    return store.add_user(User(user_id, **kwargs))


def add_event(store, event_id, start_time, **kwargs):
    kwargs.setdefault("title", f"Event {event_id}")
    return store.add_event(Event(event_id, start_time=start_time, **kwargs))
