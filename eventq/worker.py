import logging
import signal
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import timedelta
from typing import Any, Iterable, List, Mapping, Optional

from . import repository as repo
from .errors import JobTimeout
from .models import FAILED, Job
from .processors.base import Processor
from .queues import QueueRegistry
from .utils import utcnow

logger = logging.getLogger(__name__)

_stop = threading.Event()


def setup_signal_handlers(stop: threading.Event = _stop):
    def _handler(signum, frame):
        logger.info("Received signal %s. Stopping workers", signum)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not on the main thread
            logger.debug("Cannot install handler for signal %s", sig)


class Worker:
    """Claims jobs from one or more queues and runs them through their processor."""

    def __init__(self, registry: QueueRegistry, processors: Mapping[str, Processor],
                 name: str = "worker-1", queues: Optional[Iterable[str]] = None):
        self.registry = registry
        self.processors = processors
        self.name = name
        self.queues: List[str] = list(queues or processors)
        for q in self.queues:
            registry.get(q)

        cfg = registry.config()
        self.poll_interval = float(cfg["poll_interval_seconds"])
        self.stalled_interval = float(cfg["stalled_interval_seconds"])
        self.max_stalled_count = int(cfg["max_stalled_count"])
        # Heartbeats must land well inside the stalled window.
        self.heartbeat_interval = max(self.stalled_interval / 3, 0.05)
        self._last_recovery = 0.0

    def process_next(self, queue_name: str) -> Optional[Job]:
        """Claim and run one job. Returns the claimed job, or None when idle."""
        queue = self.registry.get(queue_name)
        processor = self.processors[queue_name]
        with queue.connect() as conn:
            job = repo.claim_one(conn, queue_name, self.name)
            if job is None:
                return None
            logger.info("[%s] Executing job %s (%s/%s)", self.name, job.id, queue_name, job.type)
            try:
                result = self._run(conn, job, processor)
            except Exception as e:
                error = str(e) or type(e).__name__
                state = repo.schedule_retry(conn, job, error, self.name, keep=queue.policy.remove_on_fail)
                if state == FAILED:
                    logger.error("[%s] Job %s failed after %d attempts: %s",
                                 self.name, job.id, job.attempts_made + 1, error)
                else:
                    logger.warning("[%s] Job %s failed (%s), scheduling retry", self.name, job.id, error)
            else:
                if repo.complete(conn, job, result, self.name, keep=queue.policy.remove_on_complete):
                    logger.info("[%s] Job %s completed successfully", self.name, job.id)
                else:
                    logger.warning("[%s] Job %s was taken over before it completed", self.name, job.id)
        return job

    def _run(self, conn, job: Job, processor: Processor) -> Any:
        # The handler runs on its own thread so this one can keep the heartbeat
        # fresh and give up once the job's timeout has passed.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.name}-job")
        try:
            future = executor.submit(processor.process, job)
            deadline = time.monotonic() + job.timeout_ms / 1000 if job.timeout_ms else None
            while True:
                wait = self.heartbeat_interval
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        future.cancel()
                        raise JobTimeout(job.timeout_ms)
                    wait = min(wait, remaining)
                try:
                    return future.result(timeout=wait)
                except FutureTimeout:
                    repo.heartbeat(conn, job.id, self.name)
        finally:
            executor.shutdown(wait=False)

    def recover_stalled(self):
        cutoff = utcnow() - timedelta(seconds=self.stalled_interval)
        with self.registry.connect() as conn:
            for q in self.queues:
                out = repo.recover_stalled(conn, q, cutoff, self.max_stalled_count)
                for job_id in out["requeued"]:
                    logger.warning("[%s] Job %s stalled, moved back to waiting", q, job_id)
                for job_id in out["failed"]:
                    logger.error("[%s] Job %s stalled too many times, marked failed", q, job_id)

    def run(self, stop_event: threading.Event = _stop):
        logger.info("[%s] Worker started on %s", self.name, ", ".join(self.queues))
        while not stop_event.is_set():
            if time.monotonic() - self._last_recovery >= self.stalled_interval:
                self._last_recovery = time.monotonic()
                try:
                    self.recover_stalled()
                except Exception:
                    logger.exception("[%s] Stalled job check failed", self.name)

            worked = False
            for q in self.queues:
                try:
                    if self.process_next(q) is not None:
                        worked = True
                except Exception:
                    logger.exception("[%s] Unexpected error on queue %s", self.name, q)
                    stop_event.wait(1)
            if not worked:
                stop_event.wait(self.poll_interval)
        logger.info("[%s] Worker stopped.", self.name)


def start_workers(registry: QueueRegistry, processors: Mapping[str, Processor],
                  concurrency: int = 1, stop_event: threading.Event = _stop):
    """Run `concurrency` worker threads per queue until a signal arrives."""
    setup_signal_handlers(stop_event)
    for name in registry.names:
        if name not in processors:
            logger.warning("No processor registered for queue %s", name)

    threads = []
    for queue_name in processors:
        for i in range(concurrency):
            worker = Worker(registry, processors, f"{queue_name}-worker-{i + 1}", [queue_name])
            t = threading.Thread(target=worker.run, args=(stop_event,), name=worker.name, daemon=True)
            t.start()
            threads.append(t)
            logger.info("Started %s", t.name)

    try:
        while any(t.is_alive() for t in threads):
            time.sleep(0.5)
    finally:
        stop_event.set()
        for t in threads:
            t.join()
        logger.info("All workers stopped gracefully.")
