from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from insider_ingest.db import dialect_of
from insider_ingest.jobs.queues import BackoffPolicy
from insider_ingest.util.time import to_iso


def _debug(msg: str) -> None:
    print(f"[jobs] {msg}")


def _ts(dt: datetime) -> str:
    # Every jobs/recurring_jobs timestamp uses the same fixed-width form so
    # run_after <= now compares correctly as text.
    return to_iso(dt, precise=True)


STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class Job:
    job_id: int
    queue_name: str
    job_type: str
    status: str
    priority: int
    dedupe_key: Optional[str]
    payload: Dict[str, Any]
    attempts: int
    max_attempts: int
    backoff: BackoffPolicy


def enqueue_job(
    conn: Any,
    *,
    queue_name: str,
    job_type: str,
    payload: Dict[str, Any],
    max_attempts: int,
    backoff: BackoffPolicy,
    now: datetime,
    dedupe_key: Optional[str] = None,
    priority: int = 0,
    delay_seconds: float = 0.0,
    requeue_if_exists: bool = False,
) -> Optional[int]:
    """Insert a pending job. Returns its job_id, or None on a dedupe hit.

    With requeue_if_exists=True a terminal (success/error) job with the same
    dedupe key is reset to pending instead, and its job_id is returned.
    """
    ts = _ts(now)
    run_after = _ts(now + timedelta(seconds=delay_seconds)) if delay_seconds > 0 else None
    payload_json = json.dumps(payload, ensure_ascii=False, sort_keys=True)

    inserted = conn.execute(
        """
        INSERT INTO jobs (queue_name, job_type, status, priority, dedupe_key, payload_json,
                          attempts, max_attempts, backoff_type, backoff_delay_seconds,
                          last_error, created_at, updated_at, run_after, finished_at)
        VALUES (?, ?, 'pending', ?, ?, ?, 0, ?, ?, ?, NULL, ?, ?, ?, NULL)
        ON CONFLICT(dedupe_key) DO NOTHING
        RETURNING job_id
        """,
        (
            queue_name,
            job_type,
            int(priority),
            dedupe_key,
            payload_json,
            int(max_attempts),
            backoff.kind,
            float(backoff.delay_seconds),
            ts,
            ts,
            run_after,
        ),
    ).fetchone()

    if inserted is not None:
        job_id = int(inserted["job_id"])
        _debug(f"Enqueued {queue_name}/{job_type} id={job_id} dedupe_key={dedupe_key}")
        return job_id

    if not requeue_if_exists:
        _debug(f"Skipped enqueue (dedupe exists) {queue_name}/{job_type} dedupe_key={dedupe_key}")
        return None

    # Only terminal jobs are reset; a pending/running job already covers this work.
    row = conn.execute(
        "SELECT job_id, status FROM jobs WHERE dedupe_key=?",
        (dedupe_key,),
    ).fetchone()
    if row is None:
        return None

    status = str(row["status"])
    if status in (STATUS_PENDING, STATUS_RUNNING):
        _debug(f"Skipped requeue (already {status}) {queue_name}/{job_type} dedupe_key={dedupe_key}")
        return None

    conn.execute(
        """
        UPDATE jobs
        SET status='pending',
            priority=?,
            payload_json=?,
            attempts=0,
            max_attempts=?,
            backoff_type=?,
            backoff_delay_seconds=?,
            last_error=NULL,
            updated_at=?,
            run_after=?,
            finished_at=NULL
        WHERE job_id=?
        """,
        (
            int(priority),
            payload_json,
            int(max_attempts),
            backoff.kind,
            float(backoff.delay_seconds),
            ts,
            run_after,
            int(row["job_id"]),
        ),
    )
    _debug(f"Requeued {queue_name}/{job_type} id={row['job_id']} dedupe_key={dedupe_key}")
    return int(row["job_id"])


def _job_from_row(row: Any, status: str) -> Job:
    payload_json = row["payload_json"]
    return Job(
        job_id=int(row["job_id"]),
        queue_name=str(row["queue_name"]),
        job_type=str(row["job_type"]),
        status=status,
        priority=int(row["priority"] or 0),
        dedupe_key=row["dedupe_key"],
        payload=json.loads(payload_json) if payload_json else {},
        attempts=int(row["attempts"] or 0),
        max_attempts=int(row["max_attempts"] or 1),
        backoff=BackoffPolicy(str(row["backoff_type"]), float(row["backoff_delay_seconds"] or 0)),
    )


def claim_next_job(conn: Any, *, queue_name: str, now: datetime) -> Optional[Job]:
    """Atomically move the next ready job of `queue_name` to running."""
    ts = _ts(now)
    lock_clause = " FOR UPDATE SKIP LOCKED" if dialect_of(conn).startswith("post") else ""

    row = conn.execute(
        f"""
        WITH next AS (
            SELECT job_id
            FROM jobs
            WHERE queue_name=?
              AND status='pending'
              AND (run_after IS NULL OR run_after <= ?)
            ORDER BY priority DESC, created_at ASC, job_id ASC
            LIMIT 1{lock_clause}
        )
        UPDATE jobs
        SET status='running',
            updated_at=?
        WHERE job_id = (SELECT job_id FROM next)
          AND status='pending'
        RETURNING job_id, queue_name, job_type, priority, dedupe_key, payload_json,
                  attempts, max_attempts, backoff_type, backoff_delay_seconds
        """,
        (queue_name, ts, ts),
    ).fetchone()

    if row is None:
        return None
    return _job_from_row(row, STATUS_RUNNING)


def mark_job_success(conn: Any, job_id: int, *, now: datetime) -> None:
    ts = _ts(now)
    conn.execute(
        """
        UPDATE jobs
        SET status='success', attempts=attempts + 1, last_error=NULL, updated_at=?, finished_at=?
        WHERE job_id=?
        """,
        (ts, ts, int(job_id)),
    )


def mark_job_error(conn: Any, job_id: int, err: str, *, now: datetime) -> bool:
    """Record a failed attempt. Returns True if the job was rescheduled.

    The retry delay follows the job's own backoff policy; once attempts reach
    max_attempts the job is terminally failed.
    """
    ts = _ts(now)
    row = conn.execute(
        "SELECT attempts, max_attempts, backoff_type, backoff_delay_seconds FROM jobs WHERE job_id=?",
        (int(job_id),),
    ).fetchone()
    if row is None:
        return False

    attempts = int(row["attempts"]) + 1
    max_attempts = int(row["max_attempts"])

    if attempts >= max_attempts:
        conn.execute(
            """
            UPDATE jobs
            SET status='error', attempts=?, last_error=?, updated_at=?, finished_at=?
            WHERE job_id=?
            """,
            (attempts, str(err)[:5000], ts, ts, int(job_id)),
        )
        return False

    backoff = BackoffPolicy(str(row["backoff_type"]), float(row["backoff_delay_seconds"] or 0))
    run_after = _ts(now + timedelta(seconds=backoff.delay_for(attempts)))
    conn.execute(
        """
        UPDATE jobs
        SET status='pending', attempts=?, last_error=?, updated_at=?, run_after=?
        WHERE job_id=?
        """,
        (attempts, str(err)[:5000], ts, run_after, int(job_id)),
    )
    return True


def get_job(conn: Any, job_id: int) -> Optional[Dict[str, Any]]:
    r = conn.execute("SELECT * FROM jobs WHERE job_id=?", (int(job_id),)).fetchone()
    return dict(r) if r is not None else None


def list_jobs(conn: Any, *, queue_name: str, job_type: Optional[str] = None) -> List[Dict[str, Any]]:
    if job_type:
        rows = conn.execute(
            "SELECT * FROM jobs WHERE queue_name=? AND job_type=? ORDER BY job_id",
            (queue_name, job_type),
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM jobs WHERE queue_name=? ORDER BY job_id", (queue_name,)).fetchall()
    return [dict(r) for r in rows]


def queue_counts(conn: Any, queue_name: str) -> Dict[str, int]:
    """waiting (incl. delayed retries) / active / completed / failed."""
    rows = conn.execute(
        "SELECT status, COUNT(*) AS n FROM jobs WHERE queue_name=? GROUP BY status",
        (queue_name,),
    ).fetchall()
    by_status = {str(r["status"]): int(r["n"]) for r in rows}
    return {
        "waiting": by_status.get(STATUS_PENDING, 0),
        "active": by_status.get(STATUS_RUNNING, 0),
        "completed": by_status.get(STATUS_SUCCESS, 0),
        "failed": by_status.get(STATUS_ERROR, 0),
    }


def prune_finished_jobs(conn: Any, queue_name: str, *, keep_completed: int, keep_failed: int) -> int:
    """Delete the oldest finished jobs beyond the per-status retention counts."""
    deleted = 0
    for status, keep in ((STATUS_SUCCESS, keep_completed), (STATUS_ERROR, keep_failed)):
        cur = conn.execute(
            """
            DELETE FROM jobs
            WHERE queue_name=? AND status=?
              AND job_id NOT IN (
                SELECT job_id FROM jobs
                WHERE queue_name=? AND status=?
                ORDER BY finished_at DESC, job_id DESC
                LIMIT ?
              )
            """,
            (queue_name, status, queue_name, status, max(0, int(keep))),
        )
        deleted += int(cur.rowcount or 0)
    if deleted:
        _debug(f"Pruned {deleted} finished jobs from {queue_name}")
    return deleted


# -----------------------------------------------------------------------------
# Recurring definitions
# -----------------------------------------------------------------------------


def upsert_recurring(
    conn: Any,
    *,
    dedup_key: str,
    queue_name: str,
    job_type: str,
    payload: Dict[str, Any],
    cron_pattern: str,
    next_run_at: datetime,
    now: datetime,
) -> None:
    """Register (or refresh) a recurring definition.

    Re-registering the same key keeps its schedule position unless the
    pattern changed.
    """
    ts = _ts(now)
    conn.execute(
        """
        INSERT INTO recurring_jobs (dedup_key, queue_name, job_type, payload_json, cron_pattern,
                                    next_run_at, last_enqueued_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, NULL, ?, ?)
        ON CONFLICT(dedup_key) DO UPDATE SET
            queue_name=excluded.queue_name,
            job_type=excluded.job_type,
            payload_json=excluded.payload_json,
            next_run_at=CASE
                WHEN recurring_jobs.cron_pattern=excluded.cron_pattern THEN recurring_jobs.next_run_at
                ELSE excluded.next_run_at
            END,
            cron_pattern=excluded.cron_pattern,
            updated_at=excluded.updated_at
        """,
        (
            dedup_key,
            queue_name,
            job_type,
            json.dumps(payload, ensure_ascii=False, sort_keys=True),
            cron_pattern,
            _ts(next_run_at),
            ts,
            ts,
        ),
    )


def list_recurring(conn: Any) -> List[Dict[str, Any]]:
    rows = conn.execute("SELECT * FROM recurring_jobs ORDER BY dedup_key").fetchall()
    out = []
    for r in rows:
        d = dict(r)
        d["payload"] = json.loads(d.pop("payload_json") or "{}")
        out.append(d)
    return out


def due_recurring(conn: Any, *, now: datetime) -> List[Dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM recurring_jobs WHERE next_run_at <= ? ORDER BY next_run_at, dedup_key",
        (_ts(now),),
    ).fetchall()
    out = []
    for r in rows:
        d = dict(r)
        d["payload"] = json.loads(d.pop("payload_json") or "{}")
        out.append(d)
    return out


def advance_recurring(conn: Any, dedup_key: str, *, expected_next: str, new_next: datetime, now: datetime) -> bool:
    """Compare-and-set the next firing time; True if this caller owns the slot."""
    cur = conn.execute(
        """
        UPDATE recurring_jobs
        SET next_run_at=?, last_enqueued_at=?, updated_at=?
        WHERE dedup_key=? AND next_run_at=?
        """,
        (_ts(new_next), _ts(now), _ts(now), dedup_key, expected_next),
    )
    return int(cur.rowcount or 0) == 1
