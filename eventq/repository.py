import json
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from .config import ALLOWED_CONFIG_KEYS, DEFAULT_CONFIG
from .models import (
    ACTIVE, COMPLETED, DELAYED, FAILED, FINISHED_STATES, JOB_STATES, PAUSED, WAITING,
    Backoff, Job, Retention,
)
from .utils import iso_in_ms_from, now_iso, to_iso, utcnow

STALLED_REASON = "job stalled more than allowable limit"


# ---------- Config ----------
def get_config(conn) -> Dict[str, str]:
    cur = conn.execute("SELECT key, value FROM config")
    out = dict(DEFAULT_CONFIG)
    out.update({r["key"]: r["value"] for r in cur.fetchall()})
    return out


def set_config(conn, key: str, value: str):
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}")
    try:
        float(value)
    except ValueError:
        raise ValueError(f"{key} must be numeric.")
    with conn:
        conn.execute(
            "INSERT INTO config(key,value) VALUES(?,?) "
            "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, str(value)),
        )


# ---------- Queues ----------
def ensure_queue(conn, name: str):
    with conn:
        conn.execute("INSERT OR IGNORE INTO queues(name, paused) VALUES(?, 0)", (name,))


def set_paused(conn, name: str, paused: bool):
    with conn:
        conn.execute(
            "INSERT INTO queues(name, paused) VALUES(?,?) "
            "ON CONFLICT(name) DO UPDATE SET paused=excluded.paused",
            (name, 1 if paused else 0),
        )


def is_paused(conn, name: str) -> bool:
    row = conn.execute("SELECT paused FROM queues WHERE name=?", (name,)).fetchone()
    return bool(row and row["paused"])


# ---------- Jobs: enqueue / claim / complete / retry ----------
def _retention_to_text(value: Retention) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value)


def _retention_from_text(value: Optional[str]) -> Retention:
    if value is None:
        return None
    return json.loads(value)


def enqueue_job(
    conn,
    *,
    queue: str,
    job_type: str,
    data: Dict[str, Any],
    max_attempts: int,
    backoff: Backoff,
    timeout_ms: Optional[int] = None,
    delay_ms: int = 0,
    job_id: Optional[str] = None,
    remove_on_complete: Retention = None,
    remove_on_fail: Retention = None,
) -> str:
    """Record a job and return its id.

    A caller-supplied `job_id` that already exists is left untouched and its id
    returned, so repeated enqueues with the same key are no-ops.
    """
    if not queue or not job_type:
        raise ValueError("Queue and job type cannot be empty.")
    if max_attempts < 1:
        raise ValueError("attempts must be >= 1")
    if delay_ms < 0:
        raise ValueError("delay must be >= 0 ms")
    if timeout_ms is not None and timeout_ms <= 0:
        raise ValueError("timeout must be > 0 ms")
    try:
        payload = json.dumps(data or {})
    except (TypeError, ValueError) as e:
        raise ValueError(f"Job data must be JSON serializable ({e})")

    now = utcnow()
    ts = to_iso(now)
    jid = job_id or uuid.uuid4().hex
    state = DELAYED if delay_ms > 0 else WAITING
    next_at = iso_in_ms_from(now, delay_ms)

    try:
        with conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO jobs
                   (id, queue, type, data, state, attempts_made, max_attempts,
                    backoff_type, backoff_delay_ms, timeout_ms, created_at, updated_at,
                    next_run_at, remove_on_complete, remove_on_fail)
                   VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (jid, queue, job_type, payload, state, int(max_attempts),
                 backoff.type, int(backoff.delay_ms), timeout_ms, ts, ts, next_at,
                 _retention_to_text(remove_on_complete), _retention_to_text(remove_on_fail)),
            )
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error while inserting job: {e}")
    if cur.rowcount == 0:
        existing = conn.execute("SELECT queue FROM jobs WHERE id=?", (jid,)).fetchone()
        if existing and existing["queue"] != queue:
            raise ValueError(f"Job id '{jid}' already used in queue '{existing['queue']}'.")
    return jid


def claim_one(conn, queue: str, worker_name: str) -> Optional[Job]:
    now = now_iso()
    with conn:
        if is_paused(conn, queue):
            return None
        row = conn.execute(
            """SELECT id FROM jobs
               WHERE queue=? AND state IN (?, ?) AND next_run_at <= ?
               ORDER BY next_run_at ASC, created_at ASC
               LIMIT 1""",
            (queue, WAITING, DELAYED, now),
        ).fetchone()
        if not row:
            return None
        job_id = row["id"]
        # Conditional update: a competing worker that claimed first leaves rowcount 0.
        updated = conn.execute(
            """UPDATE jobs SET state=?, picked_by=?, updated_at=?, processed_at=?, heartbeat_at=?
               WHERE id=? AND state IN (?, ?)""",
            (ACTIVE, worker_name, now, now, now, job_id, WAITING, DELAYED),
        )
        if updated.rowcount != 1:
            return None
        return Job.from_row(conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone())


def heartbeat(conn, job_id: str, worker_name: str) -> bool:
    with conn:
        res = conn.execute(
            "UPDATE jobs SET heartbeat_at=? WHERE id=? AND state=? AND picked_by=?",
            (now_iso(), job_id, ACTIVE, worker_name),
        )
    return res.rowcount == 1


def _retention_for(conn, job_id: str, column: str) -> Retention:
    row = conn.execute(f"SELECT {column} FROM jobs WHERE id=?", (job_id,)).fetchone()
    return _retention_from_text(row[column]) if row else None


def complete(conn, job: Job, result: Any, worker_name: str,
             keep: Retention = None) -> bool:
    """Mark an active job completed. Returns False if the worker lost the job."""
    ts = now_iso()
    try:
        result_text = json.dumps(result, default=str)
    except (TypeError, ValueError):
        result_text = json.dumps(str(result))
    override = _retention_for(conn, job.id, "remove_on_complete")
    with conn:
        res = conn.execute(
            """UPDATE jobs
               SET state=?, attempts_made=attempts_made+1, updated_at=?, finished_at=?,
                   result=?, picked_by=NULL, heartbeat_at=NULL
               WHERE id=? AND state=? AND picked_by=?""",
            (COMPLETED, ts, ts, result_text, job.id, ACTIVE, worker_name),
        )
    if res.rowcount != 1:
        return False
    trim_finished(conn, job.queue, COMPLETED, override if override is not None else keep)
    return True


def schedule_retry(conn, job: Job, error: str, worker_name: str,
                   keep: Retention = None) -> str:
    """Record a failed attempt. Returns the resulting state (delayed or failed)."""
    attempts = job.attempts_made + 1
    now = utcnow()
    ts = to_iso(now)
    error = (error or "unknown error")[:1000]

    if attempts >= job.max_attempts:
        override = _retention_for(conn, job.id, "remove_on_fail")
        with conn:
            res = conn.execute(
                """UPDATE jobs
                   SET state=?, attempts_made=?, updated_at=?, finished_at=?, next_run_at=NULL,
                       failed_reason=?, picked_by=NULL, heartbeat_at=NULL
                   WHERE id=? AND state=? AND picked_by=?""",
                (FAILED, attempts, ts, ts, error, job.id, ACTIVE, worker_name),
            )
        if res.rowcount == 1:
            trim_finished(conn, job.queue, FAILED, override if override is not None else keep)
        return FAILED

    next_at = iso_in_ms_from(now, job.backoff.delay_for(attempts))
    with conn:
        conn.execute(
            """UPDATE jobs
               SET state=?, attempts_made=?, updated_at=?, next_run_at=?, failed_reason=?,
                   picked_by=NULL, heartbeat_at=NULL
               WHERE id=? AND state=? AND picked_by=?""",
            (DELAYED, attempts, ts, next_at, error, job.id, ACTIVE, worker_name),
        )
    return DELAYED


def recover_stalled(conn, queue: str, cutoff: datetime, max_stalled_count: int) -> Dict[str, List[str]]:
    """Requeue active jobs whose heartbeat is older than `cutoff`.

    Jobs that already stalled `max_stalled_count` times are failed instead.
    """
    out: Dict[str, List[str]] = {"requeued": [], "failed": []}
    ts = now_iso()
    with conn:
        rows = conn.execute(
            "SELECT id, stalled_count, attempts_made FROM jobs WHERE queue=? AND state=? AND heartbeat_at < ?",
            (queue, ACTIVE, to_iso(cutoff)),
        ).fetchall()
        for r in rows:
            stalled = r["stalled_count"] + 1
            if stalled > max_stalled_count:
                res = conn.execute(
                    """UPDATE jobs SET state=?, stalled_count=?, attempts_made=attempts_made+1,
                           updated_at=?, finished_at=?, failed_reason=?, picked_by=NULL, heartbeat_at=NULL
                       WHERE id=? AND state=?""",
                    (FAILED, stalled, ts, ts, STALLED_REASON, r["id"], ACTIVE),
                )
                if res.rowcount == 1:
                    out["failed"].append(r["id"])
            else:
                res = conn.execute(
                    """UPDATE jobs SET state=?, stalled_count=?, updated_at=?, next_run_at=?,
                           picked_by=NULL, heartbeat_at=NULL
                       WHERE id=? AND state=?""",
                    (WAITING, stalled, ts, ts, r["id"], ACTIVE),
                )
                if res.rowcount == 1:
                    out["requeued"].append(r["id"])
    return out


def trim_finished(conn, queue: str, state: str, keep: Retention) -> int:
    """Apply a retention policy to finished jobs of one state."""
    if keep is None or keep is False:
        return 0
    with conn:
        if keep is True:
            res = conn.execute("DELETE FROM jobs WHERE queue=? AND state=?", (queue, state))
        else:
            res = conn.execute(
                """DELETE FROM jobs WHERE queue=? AND state=? AND id NOT IN (
                       SELECT id FROM jobs WHERE queue=? AND state=?
                       ORDER BY finished_at DESC LIMIT ?)""",
                (queue, state, queue, state, int(keep)),
            )
    return res.rowcount


# ---------- Queries ----------
def get_job(conn, queue: str, job_id: str) -> Optional[Job]:
    row = conn.execute("SELECT * FROM jobs WHERE id=? AND queue=?", (job_id, queue)).fetchone()
    return Job.from_row(row) if row else None


def list_jobs(conn, queue: str, state: Optional[str] = None,
              limit: int = 50, offset: int = 0) -> List[Job]:
    if state and state not in JOB_STATES:
        raise ValueError(f"Unknown state: {state}")
    if state in FINISHED_STATES:
        order = "finished_at DESC"
    else:
        order = "created_at DESC"
    if state:
        rows = conn.execute(
            f"SELECT * FROM jobs WHERE queue=? AND state=? ORDER BY {order} LIMIT ? OFFSET ?",
            (queue, state, int(limit), int(offset)),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE queue=? ORDER BY created_at DESC LIMIT ? OFFSET ?",
            (queue, int(limit), int(offset)),
        ).fetchall()
    return [Job.from_row(r) for r in rows]


def counts(conn, queue: str) -> Dict[str, int]:
    out = {s: 0 for s in (WAITING, ACTIVE, COMPLETED, FAILED, DELAYED, PAUSED)}
    for r in conn.execute(
        "SELECT state, COUNT(1) AS c FROM jobs WHERE queue=? GROUP BY state", (queue,)
    ).fetchall():
        out[r["state"]] = r["c"]
    if is_paused(conn, queue):
        out[PAUSED] = out[WAITING]
        out[WAITING] = 0
    return out


def retry_job(conn, queue: str, job_id: str) -> bool:
    """Move a failed job back to waiting with a fresh attempt budget."""
    if not job_id or not job_id.strip():
        raise ValueError("Job id cannot be empty.")
    ts = now_iso()
    try:
        with conn:
            res = conn.execute(
                """UPDATE jobs
                   SET state=?, attempts_made=0, stalled_count=0, updated_at=?, next_run_at=?,
                       finished_at=NULL, failed_reason=NULL, picked_by=NULL
                   WHERE id=? AND queue=? AND state=?""",
                (WAITING, ts, ts, job_id, queue, FAILED),
            )
        return res.rowcount == 1
    except sqlite3.Error as e:
        raise RuntimeError(f"DB error during retry: {e}")


def remove_job(conn, queue: str, job_id: str) -> bool:
    """Delete a job unless a worker currently holds it."""
    with conn:
        res = conn.execute(
            "DELETE FROM jobs WHERE id=? AND queue=? AND state != ?", (job_id, queue, ACTIVE)
        )
    return res.rowcount == 1


def clean(conn, queue: str, grace_ms: int, state: str = COMPLETED) -> List[str]:
    """Delete finished jobs of `state` that finished more than `grace_ms` ago."""
    if state not in FINISHED_STATES:
        raise ValueError(f"Only {', '.join(FINISHED_STATES)} jobs can be cleaned")
    if grace_ms < 0:
        raise ValueError("grace must be >= 0 ms")
    cutoff = to_iso(utcnow() - timedelta(milliseconds=grace_ms))
    with conn:
        rows = conn.execute(
            "SELECT id FROM jobs WHERE queue=? AND state=? AND finished_at <= ?",
            (queue, state, cutoff),
        ).fetchall()
        ids = [r["id"] for r in rows]
        conn.executemany("DELETE FROM jobs WHERE id=?", [(i,) for i in ids])
    return ids


# ---------- Repeatables ----------
def upsert_repeatable(conn, *, key: str, queue: str, job_type: str, data: Dict[str, Any],
                      schedule: str, next_run_at: str) -> bool:
    """Register a recurring trigger. Returns True when the key was new.

    Re-registering keeps the pending `next_run_at` unless the schedule changed.
    """
    with conn:
        row = conn.execute("SELECT schedule FROM repeatables WHERE key=?", (key,)).fetchone()
        if row is None:
            conn.execute(
                """INSERT INTO repeatables(key, queue, type, data, schedule, next_run_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (key, queue, job_type, json.dumps(data or {}), schedule, next_run_at),
            )
            return True
        if row["schedule"] != schedule:
            conn.execute(
                "UPDATE repeatables SET queue=?, type=?, data=?, schedule=?, next_run_at=? WHERE key=?",
                (queue, job_type, json.dumps(data or {}), schedule, next_run_at, key),
            )
        else:
            conn.execute(
                "UPDATE repeatables SET queue=?, type=?, data=? WHERE key=?",
                (queue, job_type, json.dumps(data or {}), key),
            )
        return False


def list_repeatables(conn) -> Iterable[sqlite3.Row]:
    return conn.execute("SELECT * FROM repeatables ORDER BY key").fetchall()


def due_repeatables(conn, now: datetime) -> Iterable[sqlite3.Row]:
    return conn.execute(
        "SELECT * FROM repeatables WHERE next_run_at <= ? ORDER BY next_run_at", (to_iso(now),)
    ).fetchall()


def advance_repeatable(conn, key: str, expected_run_at: str, next_run_at: str) -> bool:
    """Move a trigger to its next run. False if another scheduler already did."""
    with conn:
        res = conn.execute(
            "UPDATE repeatables SET next_run_at=?, last_run_at=? WHERE key=? AND next_run_at=?",
            (next_run_at, expected_run_at, key, expected_run_at),
        )
    return res.rowcount == 1


def remove_repeatable(conn, key: str) -> bool:
    with conn:
        res = conn.execute("DELETE FROM repeatables WHERE key=?", (key,))
    return res.rowcount == 1
