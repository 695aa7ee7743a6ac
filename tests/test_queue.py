import threading
from datetime import timedelta

import pytest

from eventq import repository as repo
from eventq.errors import JobNotFound, QueueNotFound
from eventq.jobs import ANALYTICS, EMAIL, AnalyticsJob, EmailJob
from eventq.models import ACTIVE, COMPLETED, DELAYED, EXPONENTIAL, FAILED, FIXED, WAITING, Backoff, JobOptions
from eventq.processors.base import Processor
from eventq.utils import from_iso, to_iso, utcnow
from eventq.worker import Worker

NO_WAIT = Backoff(FIXED, 0)


class FlakyEmail(Processor):
    queue = EMAIL

    def __init__(self, fail_times=0, block=None):
        self.calls = 0
        self.fail_times = fail_times
        self.block = block
        super().__init__()

    def handlers(self):
        return {kind: self._handle for kind in EmailJob}

    def _handle(self, data):
        self.calls += 1
        if self.block is not None:
            self.block.wait(5)
        if self.calls <= self.fail_times:
            raise ConnectionError("smtp down")
        return {"success": True, "to": data.get("to")}


class CountingAnalytics(Processor):
    queue = ANALYTICS

    def handlers(self):
        return {kind: (lambda data: {"ok": True}) for kind in AnalyticsJob}


def email_worker(registry, processor):
    return Worker(registry, {EMAIL: processor}, name="test-worker", queues=[EMAIL])


def test_enqueue_returns_handle_and_waits(registry):
    handle = registry.enqueue(EMAIL, EmailJob.WELCOME, {"to": "a@example.com"})
    job = registry.get(EMAIL).require_job(handle.job_id)
    assert handle.to_dict() == {"jobId": job.id, "queue": EMAIL}
    assert job.state == WAITING
    assert job.type == "welcome"
    assert job.max_attempts == 5
    assert job.backoff == Backoff(EXPONENTIAL, 3000)


def test_unknown_queue_and_type(registry):
    with pytest.raises(QueueNotFound):
        registry.enqueue("fax", "welcome")
    with pytest.raises(ValueError):
        registry.enqueue(EMAIL, "not_a_type")


def test_successful_job_completes(registry):
    proc = FlakyEmail()
    handle = registry.enqueue(EMAIL, "welcome", {"to": "a@example.com"})

    job = email_worker(registry, proc).process_next(EMAIL)

    assert job.id == handle.job_id
    done = registry.get(EMAIL).require_job(handle.job_id)
    assert done.state == COMPLETED
    assert done.attempts_made == 1
    assert done.result == {"success": True, "to": "a@example.com"}
    assert done.finished_at is not None


def test_idle_queue_returns_none(registry):
    assert email_worker(registry, FlakyEmail()).process_next(EMAIL) is None


def test_transient_failures_retry_until_success(registry):
    proc = FlakyEmail(fail_times=2)
    handle = registry.enqueue(EMAIL, "welcome", {}, JobOptions(attempts=3, backoff=NO_WAIT))
    worker = email_worker(registry, proc)

    for _ in range(3):
        worker.process_next(EMAIL)

    job = registry.get(EMAIL).require_job(handle.job_id)
    assert proc.calls == 3
    assert job.state == COMPLETED
    assert job.attempts_made == 3


def test_always_failing_job_ends_failed(registry):
    proc = FlakyEmail(fail_times=99)
    handle = registry.enqueue(EMAIL, "welcome", {}, JobOptions(attempts=3, backoff=NO_WAIT))
    worker = email_worker(registry, proc)

    for _ in range(3):
        worker.process_next(EMAIL)
    assert worker.process_next(EMAIL) is None

    job = registry.get(EMAIL).require_job(handle.job_id)
    assert proc.calls == 3
    assert job.state == FAILED
    assert job.attempts_made == 3
    assert job.failed_reason == "smtp down"


def test_exponential_backoff_delays_retry(registry):
    proc = FlakyEmail(fail_times=99)
    handle = registry.enqueue(EMAIL, "welcome", {}, JobOptions(backoff=Backoff(EXPONENTIAL, 60_000)))
    worker = email_worker(registry, proc)

    worker.process_next(EMAIL)
    job = registry.get(EMAIL).require_job(handle.job_id)

    assert job.state == DELAYED
    assert from_iso(job.next_run_at) - from_iso(job.updated_at) == timedelta(seconds=60)
    assert worker.process_next(EMAIL) is None


def test_backoff_delays():
    assert [Backoff(EXPONENTIAL, 2000).delay_for(n) for n in (1, 2, 3)] == [2000, 4000, 8000]
    assert Backoff(FIXED, 500).delay_for(4) == 500


def test_timeout_fails_the_attempt(registry):
    release = threading.Event()
    proc = FlakyEmail(block=release)
    handle = registry.enqueue(EMAIL, "welcome", {}, JobOptions(attempts=1, timeout_ms=100))
    try:
        email_worker(registry, proc).process_next(EMAIL)
    finally:
        release.set()

    job = registry.get(EMAIL).require_job(handle.job_id)
    assert job.state == FAILED
    assert job.failed_reason == "job timed out after 100 ms"


def test_paused_queue_is_not_processed(registry):
    queue = registry.get(EMAIL)
    registry.enqueue(EMAIL, "welcome")
    queue.pause()

    assert email_worker(registry, FlakyEmail()).process_next(EMAIL) is None
    counts = queue.counts()
    assert counts["paused"] == 1
    assert counts["waiting"] == 0

    queue.resume()
    assert email_worker(registry, FlakyEmail()).process_next(EMAIL) is not None


def test_job_id_dedupes_enqueue(registry):
    first = registry.enqueue(EMAIL, "welcome", {"n": 1}, JobOptions(job_id="welcome:u1"))
    second = registry.enqueue(EMAIL, "welcome", {"n": 2}, JobOptions(job_id="welcome:u1"))

    assert first == second
    assert registry.get(EMAIL).counts()["waiting"] == 1
    assert registry.get(EMAIL).require_job("welcome:u1").data == {"n": 1}
    with pytest.raises(ValueError):
        registry.enqueue(ANALYTICS, "daily_report", {}, JobOptions(job_id="welcome:u1"))


def test_delayed_job_waits(registry):
    handle = registry.enqueue(EMAIL, "welcome", {}, JobOptions(delay_ms=60_000))
    assert registry.get(EMAIL).require_job(handle.job_id).state == DELAYED
    assert email_worker(registry, FlakyEmail()).process_next(EMAIL) is None


def test_only_one_claim_per_job(registry):
    registry.enqueue(EMAIL, "welcome")
    with registry.connect() as conn:
        assert repo.claim_one(conn, EMAIL, "a") is not None
        assert repo.claim_one(conn, EMAIL, "b") is None


def _age_heartbeat(registry, job_id):
    with registry.connect() as conn, conn:
        conn.execute("UPDATE jobs SET heartbeat_at=? WHERE id=?",
                     (to_iso(utcnow() - timedelta(minutes=5)), job_id))


def test_stalled_job_is_requeued_then_failed(registry):
    handle = registry.enqueue(EMAIL, "welcome")
    worker = email_worker(registry, FlakyEmail())
    queue = registry.get(EMAIL)

    for expected in (WAITING, WAITING, FAILED):
        with registry.connect() as conn:
            assert repo.claim_one(conn, EMAIL, "dead-worker") is not None
        _age_heartbeat(registry, handle.job_id)
        worker.recover_stalled()
        assert queue.require_job(handle.job_id).state == expected

    job = queue.require_job(handle.job_id)
    assert job.stalled_count == 3
    assert job.failed_reason == repo.STALLED_REASON


def test_fresh_heartbeat_is_not_stalled(registry):
    handle = registry.enqueue(EMAIL, "welcome")
    with registry.connect() as conn:
        repo.claim_one(conn, EMAIL, "live-worker")
    email_worker(registry, FlakyEmail()).recover_stalled()
    assert registry.get(EMAIL).require_job(handle.job_id).state == ACTIVE


def test_retention_true_drops_completed_jobs(registry):
    handle = registry.enqueue(ANALYTICS, "daily_report")
    Worker(registry, {ANALYTICS: CountingAnalytics()}, queues=[ANALYTICS]).process_next(ANALYTICS)
    assert registry.get(ANALYTICS).get_job(handle.job_id) is None


def test_retention_count_keeps_latest(registry):
    worker = email_worker(registry, FlakyEmail())
    ids = [registry.enqueue(EMAIL, "welcome", {}, JobOptions(remove_on_complete=2)).job_id for _ in range(3)]
    for _ in ids:
        worker.process_next(EMAIL)
    assert len(registry.get(EMAIL).jobs(COMPLETED)) == 2


def test_clean_removes_old_finished_jobs(registry):
    queue = registry.get(EMAIL)
    handle = registry.enqueue(EMAIL, "welcome")
    email_worker(registry, FlakyEmail()).process_next(EMAIL)

    assert queue.clean(60_000) == []
    assert queue.clean(0) == [handle.job_id]
    assert queue.get_job(handle.job_id) is None
    with pytest.raises(ValueError):
        queue.clean(0, WAITING)


def test_retry_and_remove(registry):
    queue = registry.get(EMAIL)
    handle = registry.enqueue(EMAIL, "welcome", {}, JobOptions(attempts=1))
    email_worker(registry, FlakyEmail(fail_times=1)).process_next(EMAIL)
    assert queue.require_job(handle.job_id).state == FAILED

    assert queue.retry(handle.job_id)
    job = queue.require_job(handle.job_id)
    assert job.state == WAITING
    assert job.attempts_made == 0
    assert not queue.retry(handle.job_id)

    assert queue.remove(handle.job_id)
    with pytest.raises(JobNotFound):
        queue.remove(handle.job_id)


def test_active_job_cannot_be_removed(registry):
    handle = registry.enqueue(EMAIL, "welcome")
    with registry.connect() as conn:
        repo.claim_one(conn, EMAIL, "w")
    assert not registry.get(EMAIL).remove(handle.job_id)


def test_config_validation(registry):
    with registry.connect() as conn:
        repo.set_config(conn, "poll_interval_seconds", "0.1")
        assert repo.get_config(conn)["poll_interval_seconds"] == "0.1"
        with pytest.raises(ValueError):
            repo.set_config(conn, "unknown", "1")
        with pytest.raises(ValueError):
            repo.set_config(conn, "max_stalled_count", "lots")


def test_bulk_certificates_get_longer_timeout(registry):
    from eventq.jobs import CERTIFICATE
    from eventq.queues import BULK_CERTIFICATE_TIMEOUT_MS, queue_bulk_certificates

    handle = queue_bulk_certificates(registry, "e1")
    job = registry.get(CERTIFICATE).require_job(handle.job_id)
    assert job.type == "generate_bulk"
    assert job.timeout_ms == BULK_CERTIFICATE_TIMEOUT_MS == 300_000
    single = registry.enqueue(CERTIFICATE, "generate_single", {"userId": "u1", "eventId": "e1"})
    assert registry.get(CERTIFICATE).require_job(single.job_id).timeout_ms == 60_000


def test_add_bulk(registry):
    handles = registry.get(EMAIL).add_bulk([
        {"type": "welcome", "data": {"to": "a@example.com"}},
        {"type": "password_reset", "data": {"to": "b@example.com"}},
    ])
    assert len(handles) == 2
    assert registry.get(EMAIL).counts()["waiting"] == 2
