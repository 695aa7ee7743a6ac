"""Queue management operations for operators.

Every call takes the acting `Principal` and is refused unless it holds the
admin role.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .errors import AdminRequired, JobNotFound
from .models import ACTIVE, COMPLETED, DELAYED, FAILED, WAITING
from .queues import Queue, QueueRegistry

logger = logging.getLogger(__name__)

ADMIN = "admin"
MAX_LIST_LIMIT = 100
RECENT_PER_STATE = 10


@dataclass(frozen=True)
class Principal:
    id: str
    role: str = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN


LOCAL_OPERATOR = Principal("local-operator", ADMIN)


def _require_admin(principal: Optional[Principal]):
    if principal is None or not principal.is_admin:
        raise AdminRequired("Admin role required")


class QueueAdmin:
    def __init__(self, registry: QueueRegistry):
        self.registry = registry

    def _targets(self, name: Optional[str]) -> List[Queue]:
        return [self.registry.get(name)] if name else list(self.registry)

    # ---------- reads ----------
    def stats(self, principal: Principal, name: str) -> Dict[str, Any]:
        _require_admin(principal)
        counts = self.registry.get(name).counts()
        return {"name": name, **counts, "total": sum(counts.values())}

    def all_stats(self, principal: Principal) -> List[Dict[str, Any]]:
        _require_admin(principal)
        return [self.stats(principal, q.name) for q in self.registry]

    def queue_detail(self, principal: Principal, name: str) -> Dict[str, Any]:
        _require_admin(principal)
        queue = self.registry.get(name)
        recent = {
            state: [j.summary() for j in queue.jobs(state, limit=RECENT_PER_STATE)]
            for state in (WAITING, ACTIVE, COMPLETED, FAILED, DELAYED)
        }
        return {
            "name": name,
            "paused": queue.is_paused(),
            "counts": self.stats(principal, name),
            "jobs": recent,
        }

    def list_jobs(self, principal: Principal, name: str, status: Optional[str] = None,
                  limit: int = 50) -> List[Dict[str, Any]]:
        _require_admin(principal)
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))
        return [j.summary() for j in self.registry.get(name).jobs(status, limit=limit)]

    def get_job(self, principal: Principal, name: str, job_id: str) -> Dict[str, Any]:
        _require_admin(principal)
        job = self.registry.get(name).require_job(job_id)
        out = job.summary()
        out.update({
            "attemptsMax": job.max_attempts,
            "backoff": {"type": job.backoff.type, "delay": job.backoff.delay_ms},
            "timeout": job.timeout_ms,
            "result": job.result,
            "stalledCount": job.stalled_count,
            "nextRunAt": job.next_run_at,
        })
        return out

    # ---------- mutations ----------
    def retry_job(self, principal: Principal, name: str, job_id: str) -> bool:
        _require_admin(principal)
        queue = self.registry.get(name)
        if not queue.retry(job_id):
            raise ValueError(f"Job '{job_id}' is not in the failed state")
        logger.info("Job %s in queue %s retried by %s", job_id, name, principal.id)
        return True

    def remove_job(self, principal: Principal, name: str, job_id: str) -> bool:
        _require_admin(principal)
        queue = self.registry.get(name)
        if not queue.remove(job_id):
            if queue.get_job(job_id) is None:
                raise JobNotFound(name, job_id)
            raise ValueError(f"Job '{job_id}' is active and cannot be removed")
        logger.info("Job %s removed from queue %s by %s", job_id, name, principal.id)
        return True

    def pause(self, principal: Principal, name: Optional[str] = None) -> List[str]:
        _require_admin(principal)
        targets = self._targets(name)
        for q in targets:
            q.pause()
        return [q.name for q in targets]

    def resume(self, principal: Principal, name: Optional[str] = None) -> List[str]:
        _require_admin(principal)
        targets = self._targets(name)
        for q in targets:
            q.resume()
        return [q.name for q in targets]

    def clean(self, principal: Principal, grace_ms: Optional[int] = None, status: Optional[str] = None,
              name: Optional[str] = None) -> Dict[str, int]:
        """Delete old finished jobs. Returns removed counts per queue.

        With no `status`, completed jobs older than `grace_ms` and failed jobs
        older than twice that are removed.
        """
        _require_admin(principal)
        if grace_ms is None:
            grace_ms = int(self.registry.config()["clean_grace_ms"])
        out = {}
        for q in self._targets(name):
            if status:
                removed = len(q.clean(grace_ms, status))
            else:
                removed = len(q.clean(grace_ms, COMPLETED)) + len(q.clean(grace_ms * 2, FAILED))
            out[q.name] = removed
        logger.info("Queues cleaned by %s: %s", principal.id, out)
        return out
