import json
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional, Union

# Job States
WAITING = "waiting"
DELAYED = "delayed"      # waiting for backoff / delay to elapse
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"
PAUSED = "paused"        # reported by counts only, never stored

JOB_STATES = (WAITING, DELAYED, ACTIVE, COMPLETED, FAILED)
FINISHED_STATES = (COMPLETED, FAILED)

FIXED = "fixed"
EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class Backoff:
    type: str = EXPONENTIAL
    delay_ms: int = 2000

    def __post_init__(self):
        if self.type not in (FIXED, EXPONENTIAL):
            raise ValueError(f"Unknown backoff type: {self.type}")
        if self.delay_ms < 0:
            raise ValueError("backoff delay must be >= 0")

    def delay_for(self, attempts_made: int) -> int:
        """Delay in ms before the next attempt, given attempts already made."""
        if self.type == FIXED:
            return self.delay_ms
        return self.delay_ms * 2 ** max(attempts_made - 1, 0)


# `True` removes the job as soon as it finishes, an int keeps that many,
# `None` keeps everything.
Retention = Union[bool, int, None]


@dataclass(frozen=True)
class JobOptions:
    attempts: Optional[int] = None
    backoff: Optional[Backoff] = None
    timeout_ms: Optional[int] = None
    delay_ms: int = 0
    job_id: Optional[str] = None
    remove_on_complete: Retention = None
    remove_on_fail: Retention = None


@dataclass
class Job:
    id: str
    queue: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)
    state: str = WAITING
    attempts_made: int = 0
    max_attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)
    timeout_ms: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""
    processed_at: Optional[str] = None
    finished_at: Optional[str] = None
    next_run_at: Optional[str] = None
    failed_reason: Optional[str] = None
    result: Any = None
    picked_by: Optional[str] = None
    heartbeat_at: Optional[str] = None
    stalled_count: int = 0

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"],
            queue=row["queue"],
            type=row["type"],
            data=json.loads(row["data"]) if row["data"] else {},
            state=row["state"],
            attempts_made=row["attempts_made"],
            max_attempts=row["max_attempts"],
            backoff=Backoff(row["backoff_type"], row["backoff_delay_ms"]),
            timeout_ms=row["timeout_ms"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            processed_at=row["processed_at"],
            finished_at=row["finished_at"],
            next_run_at=row["next_run_at"],
            failed_reason=row["failed_reason"],
            result=json.loads(row["result"]) if row["result"] is not None else None,
            picked_by=row["picked_by"],
            heartbeat_at=row["heartbeat_at"],
            stalled_count=row["stalled_count"],
        )

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["backoff"] = {"type": self.backoff.type, "delay": self.backoff.delay_ms}
        return out

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "data": self.data,
            "state": self.state,
            "attemptsMade": self.attempts_made,
            "createdAt": self.created_at,
            "processedAt": self.processed_at,
            "finishedAt": self.finished_at,
            "failedReason": self.failed_reason,
        }


@dataclass(frozen=True)
class JobHandle:
    queue: str
    job_id: str

    def to_dict(self) -> Dict[str, str]:
        return {"jobId": self.job_id, "queue": self.queue}
