import logging
from contextlib import closing
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional

from . import repository as repo
from .config import DB_FILE
from .db import connect_db, init_db
from .errors import JobNotFound, QueueNotFound
from .jobs import ANALYTICS, CERTIFICATE, EMAIL, NOTIFICATION, SCHEDULED, SMS, CertificateJob, parse_job_type
from .models import COMPLETED, EXPONENTIAL, Backoff, Job, JobHandle, JobOptions, Retention

logger = logging.getLogger(__name__)

SINGLE_CERTIFICATE_TIMEOUT_MS = 60_000
BULK_CERTIFICATE_TIMEOUT_MS = 300_000


@dataclass(frozen=True)
class QueuePolicy:
    attempts: int = 3
    backoff: Backoff = Backoff(EXPONENTIAL, 2000)
    timeout_ms: Optional[int] = None
    remove_on_complete: Retention = 100
    remove_on_fail: Retention = 200


QUEUE_POLICIES: Dict[str, QueuePolicy] = {
    EMAIL: QueuePolicy(attempts=5, backoff=Backoff(EXPONENTIAL, 3000), remove_on_complete=200),
    SMS: QueuePolicy(attempts=3, backoff=Backoff(EXPONENTIAL, 2000), remove_on_complete=100),
    NOTIFICATION: QueuePolicy(attempts=3, remove_on_complete=100),
    CERTIFICATE: QueuePolicy(attempts=3, timeout_ms=SINGLE_CERTIFICATE_TIMEOUT_MS, remove_on_complete=50),
    ANALYTICS: QueuePolicy(attempts=2, remove_on_complete=True),
    SCHEDULED: QueuePolicy(attempts=2, remove_on_complete=50),
}


class Queue:
    """A named channel over the shared job store."""

    def __init__(self, name: str, policy: QueuePolicy, db_path: Optional[str] = None):
        self.name = name
        self.policy = policy
        self.db_path = db_path or DB_FILE

    def __repr__(self):
        return f"Queue({self.name!r})"

    def connect(self):
        return closing(connect_db(self.db_path))

    def add(self, job_type, data: Optional[Mapping[str, Any]] = None,
            options: Optional[JobOptions] = None) -> JobHandle:
        kind = parse_job_type(self.name, job_type)
        opts = options or JobOptions()
        with self.connect() as conn:
            job_id = repo.enqueue_job(
                conn,
                queue=self.name,
                job_type=kind.value,
                data=dict(data or {}),
                max_attempts=opts.attempts or self.policy.attempts,
                backoff=opts.backoff or self.policy.backoff,
                timeout_ms=opts.timeout_ms or self.policy.timeout_ms,
                delay_ms=opts.delay_ms,
                job_id=opts.job_id,
                remove_on_complete=opts.remove_on_complete,
                remove_on_fail=opts.remove_on_fail,
            )
        logger.info("Queue [%s] - job queued [%s]: %s", self.name, job_id, kind.value)
        return JobHandle(self.name, job_id)

    def add_bulk(self, jobs: List[Mapping[str, Any]]) -> List[JobHandle]:
        """Enqueue several `{type, data}` envelopes."""
        handles = [self.add(j["type"], j.get("data")) for j in jobs]
        logger.info("Queue [%s] - queued %d bulk jobs", self.name, len(handles))
        return handles

    def counts(self) -> Dict[str, int]:
        with self.connect() as conn:
            return repo.counts(conn, self.name)

    def get_job(self, job_id: str) -> Optional[Job]:
        with self.connect() as conn:
            return repo.get_job(conn, self.name, job_id)

    def require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFound(self.name, job_id)
        return job

    def jobs(self, state: Optional[str] = None, limit: int = 50, offset: int = 0) -> List[Job]:
        with self.connect() as conn:
            return repo.list_jobs(conn, self.name, state=state, limit=limit, offset=offset)

    def pause(self):
        with self.connect() as conn:
            repo.set_paused(conn, self.name, True)
        logger.info("Queue [%s] paused", self.name)

    def resume(self):
        with self.connect() as conn:
            repo.set_paused(conn, self.name, False)
        logger.info("Queue [%s] resumed", self.name)

    def is_paused(self) -> bool:
        with self.connect() as conn:
            return repo.is_paused(conn, self.name)

    def clean(self, grace_ms: int, state: str = COMPLETED) -> List[str]:
        with self.connect() as conn:
            removed = repo.clean(conn, self.name, grace_ms, state)
        logger.info("Queue [%s] cleaned %d %s jobs", self.name, len(removed), state)
        return removed

    def retry(self, job_id: str) -> bool:
        self.require_job(job_id)
        with self.connect() as conn:
            return repo.retry_job(conn, self.name, job_id)

    def remove(self, job_id: str) -> bool:
        self.require_job(job_id)
        with self.connect() as conn:
            return repo.remove_job(conn, self.name, job_id)


class QueueRegistry:
    """The set of queues a process works with, built once at startup."""

    def __init__(self, db_path: Optional[str] = None,
                 policies: Optional[Mapping[str, QueuePolicy]] = None):
        self.db_path = db_path or DB_FILE
        init_db(self.db_path)
        self._queues: Dict[str, Queue] = {}
        for name, policy in (policies or QUEUE_POLICIES).items():
            self._queues[name] = Queue(name, policy, self.db_path)
        with closing(connect_db(self.db_path)) as conn:
            for name in self._queues:
                repo.ensure_queue(conn, name)
        logger.info("Queues initialized: %s", ", ".join(self._queues))

    def __iter__(self) -> Iterator[Queue]:
        return iter(self._queues.values())

    def __contains__(self, name: str) -> bool:
        return name in self._queues

    @property
    def names(self) -> List[str]:
        return list(self._queues)

    def get(self, name: str) -> Queue:
        try:
            return self._queues[name]
        except KeyError:
            raise QueueNotFound(name)

    def enqueue(self, queue_name: str, job_type, data: Optional[Mapping[str, Any]] = None,
                options: Optional[JobOptions] = None) -> JobHandle:
        return self.get(queue_name).add(job_type, data, options)

    def connect(self):
        return closing(connect_db(self.db_path))

    def config(self) -> Dict[str, str]:
        with self.connect() as conn:
            return repo.get_config(conn)


def queue_bulk_certificates(registry: QueueRegistry, event_id: str,
                            template_id: Optional[str] = None) -> JobHandle:
    handle = registry.enqueue(
        CERTIFICATE,
        CertificateJob.GENERATE_BULK,
        {"eventId": event_id, "templateId": template_id},
        JobOptions(timeout_ms=BULK_CERTIFICATE_TIMEOUT_MS),
    )
    logger.info("Bulk certificate generation queued for event %s", event_id)
    return handle
