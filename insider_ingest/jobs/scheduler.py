"""Multi-queue job scheduler on top of the jobs table.

Each queue gets its own pool of worker threads (its concurrency ceiling) and
dispatches claimed jobs to the handler registered for (queue, job_type).
Handlers receive a JobContext whose `scheduler` is the only way they enqueue
follow-up work, so they can be tested against a recording fake.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from insider_ingest.config import Config
from insider_ingest.db import connect
from insider_ingest.jobs.cron import next_fire_time, parse_cron_expression
from insider_ingest.jobs.queue import (
    Job,
    advance_recurring,
    claim_next_job,
    due_recurring,
    enqueue_job,
    mark_job_error,
    mark_job_success,
    prune_finished_jobs,
    queue_counts,
    upsert_recurring,
)
from insider_ingest.jobs.queues import (
    JOB_SHAPES,
    BackoffPolicy,
    QueueConfig,
    default_queue_configs,
    validate_payload,
)
from insider_ingest.util.time import parse_iso_datetime, utcnow


def _debug(msg: str) -> None:
    print(f"[scheduler] {msg}")


class UnknownJobType(RuntimeError):
    pass


class SchedulerHandle(Protocol):
    def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        *,
        dedupe_key: Optional[str] = None,
        delay_seconds: float = 0.0,
        priority: int = 0,
        requeue_if_exists: bool = False,
    ) -> Optional[int]:
        ...


@dataclass(frozen=True)
class JobContext:
    job: Job
    scheduler: SchedulerHandle

    @property
    def payload(self) -> Dict[str, Any]:
        return self.job.payload


Handler = Callable[[JobContext], Any]


class Scheduler:
    def __init__(
        self,
        cfg: Config,
        *,
        db_dsn: str | None = None,
        queues: Optional[Dict[str, QueueConfig]] = None,
        clock: Callable[[], datetime] = utcnow,
        poll_seconds: float | None = None,
    ):
        self.cfg = cfg
        self.db_dsn = db_dsn or cfg.DB_DSN
        self.queues: Dict[str, QueueConfig] = dict(queues) if queues is not None else default_queue_configs(cfg)
        self.clock = clock
        self.poll_seconds = float(poll_seconds if poll_seconds is not None else cfg.WORKER_POLL_SECONDS)

        self._handlers: Dict[Tuple[str, str], Handler] = {}
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def _queue(self, queue_name: str) -> QueueConfig:
        qc = self.queues.get(queue_name)
        if qc is None:
            raise ValueError(f"Unknown queue: {queue_name!r}")
        return qc

    def register_handler(self, queue_name: str, job_type: str, handler: Handler) -> None:
        self._queue(queue_name)
        if (queue_name, job_type) not in JOB_SHAPES:
            raise ValueError(f"Unknown job type {job_type!r} for queue {queue_name!r}")
        self._handlers[(queue_name, job_type)] = handler

    def handled_queues(self) -> List[str]:
        return [q for q in self.queues if any(k[0] == q for k in self._handlers)]

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        *,
        dedupe_key: Optional[str] = None,
        delay_seconds: float = 0.0,
        priority: int = 0,
        requeue_if_exists: bool = False,
        max_attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> Optional[int]:
        """Add a one-shot job. Per-job attempts/backoff default to the queue's."""
        qc = self._queue(queue_name)
        validate_payload(queue_name, job_type, payload)
        with connect(self.db_dsn) as conn:
            return enqueue_job(
                conn,
                queue_name=queue_name,
                job_type=job_type,
                payload=dict(payload),
                max_attempts=int(max_attempts or qc.max_attempts),
                backoff=backoff or qc.backoff,
                now=self.clock(),
                dedupe_key=dedupe_key,
                priority=priority,
                delay_seconds=float(delay_seconds or 0.0),
                requeue_if_exists=requeue_if_exists,
            )

    def register_recurring(
        self,
        queue_name: str,
        job_type: str,
        payload: Dict[str, Any],
        cron_pattern: str,
        dedup_key: str,
    ) -> None:
        """Register a cron-scheduled job once under `dedup_key`; safe to repeat on restart."""
        self._queue(queue_name)
        validate_payload(queue_name, job_type, payload)
        sched = parse_cron_expression(cron_pattern)
        now = self.clock()
        with connect(self.db_dsn) as conn:
            upsert_recurring(
                conn,
                dedup_key=dedup_key,
                queue_name=queue_name,
                job_type=job_type,
                payload=dict(payload),
                cron_pattern=sched.pattern,
                next_run_at=next_fire_time(sched, now),
                now=now,
            )
        _debug(f"Registered recurring {queue_name}/{job_type} key={dedup_key} cron={sched.pattern!r}")

    def fire_due_recurring(self) -> int:
        """Enqueue one job per due recurring definition; returns how many fired.

        Missed slots (e.g. while no scheduler was running) collapse into a single
        firing. Each slot is claimed by compare-and-set and its job carries the
        dedupe key `<dedup_key>|<slot>`, so concurrent schedulers fire it once.
        """
        now = self.clock()
        fired = 0
        with connect(self.db_dsn) as conn:
            due = due_recurring(conn, now=now)

        for d in due:
            key = str(d["dedup_key"])
            slot = str(d["next_run_at"])
            qc = self.queues.get(str(d["queue_name"]))
            if qc is None:
                _debug(f"Recurring {key} targets unknown queue {d['queue_name']!r}; skipped")
                continue
            new_next = next_fire_time(str(d["cron_pattern"]), max(now, parse_iso_datetime(slot)))
            with connect(self.db_dsn) as conn:
                if not advance_recurring(conn, key, expected_next=slot, new_next=new_next, now=now):
                    continue
                enqueue_job(
                    conn,
                    queue_name=qc.name,
                    job_type=str(d["job_type"]),
                    payload=d["payload"],
                    max_attempts=qc.max_attempts,
                    backoff=qc.backoff,
                    now=now,
                    dedupe_key=f"{key}|{slot}",
                )
            fired += 1
            _debug(f"Recurring {key} fired for slot {slot}; next at {new_next.isoformat()}")
        return fired

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def _execute(self, job: Job) -> bool:
        """Run one claimed job and record the outcome. True on success."""
        _debug(
            f"Running job id={job.job_id} {job.queue_name}/{job.job_type} "
            f"attempt={job.attempts + 1}/{job.max_attempts}"
        )
        try:
            handler = self._handlers.get((job.queue_name, job.job_type))
            if handler is None:
                raise UnknownJobType(f"No handler for {job.queue_name}/{job.job_type}")
            handler(JobContext(job=job, scheduler=self))
        except Exception as e:
            with connect(self.db_dsn) as conn:
                retried = mark_job_error(conn, job.job_id, str(e) or e.__class__.__name__, now=self.clock())
            if retried:
                _debug(f"Job error id={job.job_id} {job.queue_name}/{job.job_type}: {e} (will retry)")
            else:
                _debug(f"Job failed id={job.job_id} {job.queue_name}/{job.job_type}: {e} (attempts exhausted)")
            return False

        with connect(self.db_dsn) as conn:
            mark_job_success(conn, job.job_id, now=self.clock())
        _debug(f"Job success id={job.job_id} {job.queue_name}/{job.job_type}")
        return True

    def _claim(self, queue_name: str) -> Optional[Job]:
        with connect(self.db_dsn) as conn:
            return claim_next_job(conn, queue_name=queue_name, now=self.clock())

    def run_pending(self, queue_name: str, limit: Optional[int] = None) -> int:
        """Synchronously run ready jobs of one queue until none are ready. Returns jobs run."""
        self._queue(queue_name)
        ran = 0
        while limit is None or ran < limit:
            job = self._claim(queue_name)
            if job is None:
                break
            self._execute(job)
            ran += 1
        return ran

    def drain(self, queue_names: Optional[List[str]] = None) -> int:
        """Run ready jobs across queues until a full pass finds nothing (follows job chains)."""
        names = list(queue_names or self.handled_queues())
        total = 0
        while True:
            ran = sum(self.run_pending(q) for q in names)
            total += ran
            if ran == 0:
                return total

    # -------------------------------------------------------------------------
    # Monitoring / housekeeping
    # -------------------------------------------------------------------------

    def get_queue_health(self) -> Dict[str, Dict[str, int]]:
        with connect(self.db_dsn) as conn:
            return {name: queue_counts(conn, name) for name in self.queues}

    def prune(self) -> int:
        deleted = 0
        with connect(self.db_dsn) as conn:
            for qc in self.queues.values():
                deleted += prune_finished_jobs(
                    conn,
                    qc.name,
                    keep_completed=qc.keep_completed,
                    keep_failed=qc.keep_failed,
                )
        return deleted

    # -------------------------------------------------------------------------
    # Worker pools
    # -------------------------------------------------------------------------

    def _worker_loop(self, queue_name: str) -> None:
        while not self._stop.is_set():
            try:
                job = self._claim(queue_name)
            except Exception as e:
                _debug(f"[{queue_name}] claim error: {e}")
                self._stop.wait(self.poll_seconds)
                continue
            if job is None:
                self._stop.wait(self.poll_seconds)
                continue
            try:
                self._execute(job)
            except Exception as e:
                # Recording the outcome failed (e.g. database unavailable); the job stays running.
                _debug(f"[{queue_name}] failed to record outcome of job id={job.job_id}: {e}")

    def _housekeeping_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.fire_due_recurring()
                self.prune()
            except Exception as e:
                _debug(f"housekeeping error: {e}")
            self._stop.wait(self.poll_seconds)

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("Scheduler already started")
        self._stop.clear()
        for name in self.handled_queues():
            qc = self.queues[name]
            for i in range(qc.concurrency):
                t = threading.Thread(target=self._worker_loop, args=(name,), name=f"{name}-worker-{i}", daemon=True)
                t.start()
                self._threads.append(t)
            _debug(f"Started {qc.concurrency} worker(s) for queue {name}")
        t = threading.Thread(target=self._housekeeping_loop, name="scheduler-housekeeping", daemon=True)
        t.start()
        self._threads.append(t)

    def stop(self, timeout: float | None = None) -> None:
        """Stop claiming new jobs and wait for in-flight jobs to finish."""
        _debug("Stopping: no new jobs will be claimed; draining in-flight jobs")
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        alive = [t.name for t in self._threads if t.is_alive()]
        self._threads = []
        if alive:
            _debug(f"Stop timed out; still running: {', '.join(alive)}")
        else:
            _debug("All workers stopped")
