import os
from datetime import timedelta

import pytest

from eventq.jobs import CERTIFICATE, EMAIL, NOTIFICATION, SCHEDULED, ANALYTICS, CertificateJob
from eventq.models import COMPLETED, FAILED, FIXED, Backoff, JobOptions
from eventq.pdf import CertificateRenderer
from eventq.processors.base import Processor
from eventq.store import CertificateTemplate, Feedback, Notification, new_id
from eventq.worker import Worker

from conftest import NOW, add_event, add_user


def run_one(runtime, queue):
    worker = Worker(runtime.registry, runtime.processors, name="test", queues=[queue])
    job = worker.process_next(queue)
    assert job is not None
    return runtime.registry.get(queue).get_job(job.id)


def attendee(store, user_id, event_id):
    add_user(store, user_id)
    store.register(user_id, event_id)
    store.mark_attended(user_id, event_id)


def test_processor_must_cover_every_job_type():
    class Partial(Processor):
        queue = CERTIFICATE

        def handlers(self):
            return {CertificateJob.GENERATE_SINGLE: lambda data: None}

    with pytest.raises(TypeError) as exc:
        Partial()
    assert "generate_bulk" in str(exc.value)
    assert "regenerate" in str(exc.value)


def test_email_template_is_rendered_and_sent(runtime, email_sender):
    runtime.registry.enqueue(EMAIL, "event_reminder", {
        "to": "ada@example.com", "name": "Ada", "eventTitle": "PyCon", "reminderType": "1h",
    })
    job = run_one(runtime, EMAIL)

    assert job.state == COMPLETED
    assert job.result["success"] is True
    (message,) = email_sender.sent
    assert message["to"] == "ada@example.com"
    assert message["subject"] == "Reminder: PyCon starts in 1 hour"
    assert "Ada" in message["html"]


def test_email_recipient_resolved_from_user(runtime, store, email_sender):
    add_user(store, "u1", email="u1@example.com")
    runtime.registry.enqueue(EMAIL, "certificate_ready", {"userId": "u1", "eventTitle": "PyCon"})
    run_one(runtime, EMAIL)
    assert email_sender.sent[0]["to"] == "u1@example.com"


def test_custom_email_is_sent_as_given(runtime, email_sender):
    msg = {"to": "x@example.com", "subject": "Hi", "html": "<p>Hi</p>", "text": "Hi"}
    runtime.registry.enqueue(EMAIL, "custom", msg)
    run_one(runtime, EMAIL)
    assert email_sender.sent == [msg]


def test_missing_template_and_recipient_are_results_not_errors(runtime, email_sender):
    assert runtime.email.send_template("newsletter", {"to": "a@example.com"}) == {
        "success": False, "error": "template_not_found",
    }
    runtime.registry.enqueue(EMAIL, "welcome", {"name": "Nobody"})
    job = run_one(runtime, EMAIL)
    assert job.state == COMPLETED
    assert job.result == {"success": False, "error": "missing_recipient"}
    assert email_sender.sent == []


def test_sms_template_uses_user_phone(runtime, store, sms_sender):
    add_user(store, "u1", phone="+15550001111")
    runtime.registry.enqueue("sms", "otp", {"userId": "u1", "otp": "424242"})
    run_one(runtime, "sms")
    assert sms_sender.sent == [("+15550001111", "Your verification code is 424242. It expires in 10 minutes.")]


def test_notification_reminder_is_deduped(runtime, store):
    add_user(store, "u1")
    add_event(store, "e1", NOW + timedelta(days=1))
    for _ in range(2):
        runtime.registry.enqueue(NOTIFICATION, "event_reminder",
                                 {"userId": "u1", "eventId": "e1", "reminderType": "24h"})
        run_one(runtime, NOTIFICATION)
    (n,) = store.notifications_for("u1")
    assert n.type == "event_reminder"
    assert "Event e1" in n.message


def test_broadcast_and_bulk(runtime, store):
    runtime.registry.enqueue(NOTIFICATION, "broadcast", {"title": "Maintenance", "message": "Tonight"})
    runtime.registry.enqueue(NOTIFICATION, "bulk", {"notifications": [
        {"userId": "a", "title": "t", "message": "m"},
        {"userId": "b", "title": "t", "message": "m"},
    ]})
    run_one(runtime, NOTIFICATION)
    job = run_one(runtime, NOTIFICATION)
    assert len(job.result) == 2
    assert store.notifications_for(None)[0].type == "broadcast"


def test_generate_single_creates_pdf_and_chains_jobs(runtime, store):
    add_event(store, "e1", NOW - timedelta(days=1))
    attendee(store, "u1", "e1")

    runtime.registry.enqueue(CERTIFICATE, "generate_single", {"userId": "u1", "eventId": "e1"})
    job = run_one(runtime, CERTIFICATE)

    assert job.state == COMPLETED
    cert_id = job.result["id"]
    assert os.path.exists(job.result["filePath"])
    assert store.users["u1"].registrations["e1"].certificate_issued
    email = runtime.registry.get(EMAIL).require_job(f"certificate-ready-email:{cert_id}")
    assert email.data["eventTitle"] == "Event e1"
    runtime.registry.get(NOTIFICATION).require_job(f"certificate-ready-notification:{cert_id}")


def test_generate_single_redelivery_is_idempotent(runtime, store):
    add_event(store, "e1", NOW - timedelta(days=1))
    attendee(store, "u1", "e1")

    first = runtime.certificates.generate("u1", "e1")
    runtime.registry.enqueue(CERTIFICATE, "generate_single", {"userId": "u1", "eventId": "e1"})
    runtime.registry.enqueue(CERTIFICATE, "generate_single", {"userId": "u1", "eventId": "e1"})
    a = run_one(runtime, CERTIFICATE)
    b = run_one(runtime, CERTIFICATE)

    assert a.result["id"] == b.result["id"] == first.id
    assert len(store.certificates) == 1
    assert runtime.registry.get(EMAIL).counts()["waiting"] == 1
    assert runtime.registry.get(NOTIFICATION).counts()["waiting"] == 1


def test_generate_bulk_collects_failures(runtime, store, monkeypatch):
    add_event(store, "e1", NOW - timedelta(days=1))
    for uid in ("u1", "u2", "u3"):
        attendee(store, uid, "e1")
    add_user(store, "u4")
    store.register("u4", "e1")

    real_generate = runtime.certificates.generate

    def generate(user_id, event_id, template_id=None):
        if user_id == "u2":
            raise RuntimeError("renderer crashed")
        return real_generate(user_id, event_id, template_id)

    monkeypatch.setattr(runtime.certificates, "generate", generate)
    runtime.registry.enqueue(CERTIFICATE, "generate_bulk", {"eventId": "e1"})
    job = run_one(runtime, CERTIFICATE)

    assert job.state == COMPLETED
    assert job.result["total"] == 3
    assert sorted(s["userId"] for s in job.result["success"]) == ["u1", "u3"]
    assert job.result["failed"] == [{"userId": "u2", "error": "renderer crashed"}]


def test_generate_bulk_rejects_disabled_event(runtime, store):
    add_event(store, "e1", NOW, certificate_enabled=False)
    runtime.registry.enqueue(CERTIFICATE, "generate_bulk", {"eventId": "e1"}, JobOptions(attempts=1))
    job = run_one(runtime, CERTIFICATE)
    assert job.state == FAILED
    assert "not enabled" in job.failed_reason


def test_regenerate_replaces_file_and_record(runtime, store):
    add_event(store, "e1", NOW - timedelta(days=1))
    attendee(store, "u1", "e1")
    old = runtime.certificates.generate("u1", "e1")
    old_path = old.file_path

    runtime.registry.enqueue(CERTIFICATE, "regenerate", {"certificateId": old.id})
    job = run_one(runtime, CERTIFICATE)

    assert job.result["id"] != old.id
    assert store.get_certificate(old.id) is None
    assert os.path.exists(job.result["filePath"])
    assert not os.path.exists(old_path)


def test_regenerate_keeps_old_certificate_until_retry_succeeds(runtime, store, monkeypatch):
    add_event(store, "e1", NOW - timedelta(days=1))
    attendee(store, "u1", "e1")
    old = runtime.certificates.generate("u1", "e1")

    renderer = runtime.certificates.renderer
    real_render = renderer.render
    calls = []

    def render(*args, **kwargs):
        calls.append(1)
        if len(calls) == 1:
            raise ConnectionError("font server unreachable")
        return real_render(*args, **kwargs)

    monkeypatch.setattr(renderer, "render", render)
    runtime.registry.enqueue(CERTIFICATE, "regenerate", {"certificateId": old.id},
                             JobOptions(attempts=3, backoff=Backoff(FIXED, 0)))

    first = run_one(runtime, CERTIFICATE)
    assert first.state != FAILED
    assert store.get_certificate(old.id) is old
    assert os.path.exists(old.file_path)

    job = run_one(runtime, CERTIFICATE)
    assert job.state == COMPLETED
    assert store.get_certificate(old.id) is None
    assert store.find_certificate("u1", "e1").id == job.result["id"]
    assert not os.path.exists(old.file_path)


def test_renderer_wraps_long_body_onto_one_page():
    template = CertificateTemplate("t1", "Long", body="{{ event_title }} " * 120)
    pdf = CertificateRenderer().render(template, {"recipient_name": "Ada", "event_title": "Workshop"})
    assert pdf.startswith(b"%PDF")
    assert b"/Count 1" in pdf


def test_feedback_stats(runtime, store):
    for overall, nps in ((5, 10), (4, 9), (3, 8), (2, 3)):
        store.add_feedback(Feedback(new_id(), "e1", new_id(), overall, nps))
    runtime.registry.enqueue(ANALYTICS, "feedback_stats", {"eventId": "e1"}, JobOptions(remove_on_complete=False))
    job = run_one(runtime, ANALYTICS)
    assert job.result == {
        "totalFeedback": 4,
        "averageRating": 3.5,
        "nps": 25.0,
        "satisfactionRate": 50.0,
    }


def test_event_and_certificate_stats(runtime, store):
    add_event(store, "e1", NOW)
    attendee(store, "u1", "e1")
    add_user(store, "u2")
    store.register("u2", "e1")
    runtime.certificates.generate("u1", "e1")

    assert runtime.processors[ANALYTICS].event_stats({"eventId": "e1"}) == {
        "eventId": "e1",
        "totalRegistrations": 2,
        "totalAttendance": 1,
        "attendanceRate": 50.0,
        "certificatesIssued": 1,
    }
    stats = runtime.processors[ANALYTICS].certificate_stats({})
    assert stats == {"total": 1, "issued": 1, "revoked": 0, "issuedRate": 100.0}


def test_daily_report_counts_today(runtime, store):
    add_user(store, "u1", created_at=NOW - timedelta(hours=2))
    add_user(store, "u2", created_at=NOW - timedelta(days=2))
    report = runtime.processors[ANALYTICS].daily_report({})
    assert report["date"] == "2026-03-11T00:00:00.000000Z"
    assert report["newUsers"] == 1


def test_reminder_sweep_only_targets_window(runtime, store):
    soon = add_event(store, "soon", NOW + timedelta(hours=24, minutes=30))
    add_event(store, "later", NOW + timedelta(hours=48))
    for uid in ("u1", "u2"):
        add_user(store, uid)
        store.register(uid, soon.id)
        store.register(uid, "later")
    store.cancel_registration("u2", soon.id)

    runtime.registry.enqueue(SCHEDULED, "event_reminder_24h")
    job = run_one(runtime, SCHEDULED)

    assert job.result["events"] == 1
    assert {j["jobId"] for j in job.result["jobs"]} == {
        "reminder-24h-email:u1:soon", "reminder-24h-notification:u1:soon",
    }

    runtime.registry.enqueue(SCHEDULED, "event_reminder_24h")
    again = run_one(runtime, SCHEDULED)
    assert again.result["jobs"] == []
    assert runtime.registry.get(EMAIL).counts()["waiting"] == 1


def test_one_hour_sweep_is_notification_only(runtime, store):
    add_event(store, "e1", NOW + timedelta(hours=1, minutes=5))
    add_user(store, "u1")
    store.register("u1", "e1")
    result = runtime.processors[SCHEDULED].event_reminder_1h({})
    assert [j["queue"] for j in result["jobs"]] == [NOTIFICATION]


def test_reminder_sweep_retry_after_failed_enqueue_still_sends(runtime, store, monkeypatch):
    add_event(store, "soon", NOW + timedelta(hours=24, minutes=30))
    add_user(store, "u1")
    store.register("u1", "soon")

    registry = runtime.registry
    real_enqueue = registry.enqueue
    failures = []

    def enqueue(queue, *args, **kwargs):
        if queue == EMAIL and not failures:
            failures.append(queue)
            raise RuntimeError("database is locked")
        return real_enqueue(queue, *args, **kwargs)

    monkeypatch.setattr(registry, "enqueue", enqueue)
    sweeps = runtime.processors[SCHEDULED]

    with pytest.raises(RuntimeError):
        sweeps.event_reminder_24h({})
    assert not store.was_sent("u1", "soon", "reminder-24h")

    result = sweeps.event_reminder_24h({})
    assert {j["jobId"] for j in result["jobs"]} == {
        "reminder-24h-email:u1:soon", "reminder-24h-notification:u1:soon",
    }
    assert store.was_sent("u1", "soon", "reminder-24h")
    assert registry.get(EMAIL).counts()["waiting"] == 1


def test_feedback_sweep_is_not_repeated_once_sent(runtime, store):
    add_event(store, "e1", NOW - timedelta(hours=20))
    attendee(store, "u1", "e1")
    sweeps = runtime.processors[SCHEDULED]

    assert len(sweeps.feedback_request({})["jobs"]) == 2
    assert sweeps.feedback_request({})["jobs"] == []
    assert runtime.registry.get(NOTIFICATION).counts()["waiting"] == 1


def test_feedback_sweep_targets_attendees_of_recent_events(runtime, store):
    add_event(store, "e1", NOW - timedelta(hours=20))
    add_event(store, "old", NOW - timedelta(days=3))
    attendee(store, "u1", "e1")
    attendee(store, "u2", "old")
    add_user(store, "u3")
    store.register("u3", "e1")

    result = runtime.processors[SCHEDULED].feedback_request({})

    assert {j["jobId"] for j in result["jobs"]} == {"feedback-email:u1:e1", "feedback-notification:u1:e1"}


def test_cleanup_notifications(runtime, store):
    def note(**kwargs):
        store.add_notification(Notification(new_id(), "u1", "t", "m", **kwargs))

    note(read=True, created_at=NOW - timedelta(days=31), expires_at=NOW + timedelta(days=5))
    note(read=False, created_at=NOW - timedelta(days=10), expires_at=NOW - timedelta(minutes=1))
    note(read=True, created_at=NOW - timedelta(days=1), expires_at=NOW + timedelta(days=5))

    result = runtime.processors[SCHEDULED].cleanup_notifications({})

    assert result == {"deletedCount": 2, "deletedRead": 1, "deletedExpired": 1}
    assert len(store.notifications) == 1


def test_analytics_triggers_enqueue_reports(runtime):
    runtime.registry.enqueue(SCHEDULED, "weekly_analytics")
    job = run_one(runtime, SCHEDULED)
    report = runtime.registry.get(ANALYTICS).require_job(job.result["jobId"])
    assert report.type == "weekly_report"
