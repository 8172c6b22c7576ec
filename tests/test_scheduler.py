import dataclasses
import threading
import time

import pytest

from conftest import FakeClock
from insider_ingest.db import connect
from insider_ingest.jobs.queue import list_jobs, list_recurring
from insider_ingest.jobs.queues import (
    ALL_QUEUES,
    JOB_CHECK_RULES,
    JOB_DISCOVER,
    JOB_PARSE,
    JOB_RESOLVE_PERSON,
    QUEUE_ALERTS,
    QUEUE_DISCOVERY,
    QUEUE_ENRICHMENT,
    QUEUE_FILING,
    BackoffPolicy,
    QueueConfig,
    default_queue_configs,
)
from insider_ingest.jobs.scheduler import Scheduler


def _jobs(db_dsn, queue_name):
    with connect(db_dsn) as conn:
        return list_jobs(conn, queue_name=queue_name)


def test_backoff_curves():
    exp = BackoffPolicy("exponential", 5)
    assert [exp.delay_for(n) for n in (1, 2, 3)] == [5, 10, 20]
    fixed = BackoffPolicy("fixed", 5)
    assert [fixed.delay_for(n) for n in (1, 2, 3)] == [5, 5, 5]
    with pytest.raises(ValueError):
        BackoffPolicy("linear", 1)


def test_default_queue_configs(cfg):
    queues = default_queue_configs(cfg)
    assert set(queues) == set(ALL_QUEUES)
    assert (queues[QUEUE_FILING].concurrency, queues[QUEUE_FILING].max_attempts) == (5, 3)
    assert queues[QUEUE_FILING].backoff == BackoffPolicy("exponential", 5)
    assert queues[QUEUE_ALERTS].backoff == BackoffPolicy("exponential", 2)
    assert queues[QUEUE_ENRICHMENT].backoff == BackoffPolicy("fixed", 5)
    assert queues[QUEUE_ENRICHMENT].max_attempts == 2
    assert (queues[QUEUE_FILING].keep_completed, queues[QUEUE_FILING].keep_failed) == (100, 50)
    assert (queues[QUEUE_ALERTS].keep_completed, queues[QUEUE_ALERTS].keep_failed) == (500, 100)
    assert (queues[QUEUE_ENRICHMENT].keep_completed, queues[QUEUE_ENRICHMENT].keep_failed) == (50, 25)


def test_failing_job_is_attempted_max_attempts_times_with_backoff(cfg, db_dsn, clock):
    scheduler = Scheduler(cfg, clock=clock)
    calls = []

    def always_fails(ctx):
        calls.append(clock())
        raise RuntimeError("boom")

    scheduler.register_handler(QUEUE_FILING, JOB_PARSE, always_fails)
    scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": 1})

    assert scheduler.run_pending(QUEUE_FILING) == 1
    assert scheduler.get_queue_health()[QUEUE_FILING]["waiting"] == 1

    # exponential 5s: retry 1 after 5s, retry 2 after 10s
    clock.advance(4.9)
    assert scheduler.run_pending(QUEUE_FILING) == 0
    clock.advance(0.1)
    assert scheduler.run_pending(QUEUE_FILING) == 1
    clock.advance(9.9)
    assert scheduler.run_pending(QUEUE_FILING) == 0
    clock.advance(0.1)
    assert scheduler.run_pending(QUEUE_FILING) == 1

    clock.advance(3600)
    assert scheduler.run_pending(QUEUE_FILING) == 0

    assert len(calls) == 3
    assert [(b - a).total_seconds() for a, b in zip(calls, calls[1:])] == [5, 10]

    health = scheduler.get_queue_health()[QUEUE_FILING]
    assert health == {"waiting": 0, "active": 0, "completed": 0, "failed": 1}
    job = _jobs(db_dsn, QUEUE_FILING)[0]
    assert job["attempts"] == 3
    assert job["last_error"] == "boom"


def test_fixed_backoff_queue(cfg, clock):
    scheduler = Scheduler(cfg, clock=clock)
    calls = []

    def fails(ctx):
        calls.append(clock())
        raise RuntimeError("nope")

    scheduler.register_handler(QUEUE_ENRICHMENT, JOB_RESOLVE_PERSON, fails)
    scheduler.enqueue(QUEUE_ENRICHMENT, JOB_RESOLVE_PERSON, {"person_id": 1})

    scheduler.run_pending(QUEUE_ENRICHMENT)
    clock.advance(5)
    scheduler.run_pending(QUEUE_ENRICHMENT)
    clock.advance(60)
    scheduler.run_pending(QUEUE_ENRICHMENT)

    assert len(calls) == 2
    assert scheduler.get_queue_health()[QUEUE_ENRICHMENT]["failed"] == 1


def test_job_that_recovers_completes(cfg, clock):
    scheduler = Scheduler(cfg, clock=clock)
    outcomes = iter([RuntimeError("transient"), None])

    def flaky(ctx):
        err = next(outcomes)
        if err:
            raise err

    scheduler.register_handler(QUEUE_FILING, JOB_PARSE, flaky)
    scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": 7})
    scheduler.run_pending(QUEUE_FILING)
    clock.advance(5)
    scheduler.run_pending(QUEUE_FILING)

    assert scheduler.get_queue_health()[QUEUE_FILING] == {"waiting": 0, "active": 0, "completed": 1, "failed": 0}


def test_handler_receives_payload(cfg, clock):
    scheduler = Scheduler(cfg, clock=clock)
    seen = []
    scheduler.register_handler(QUEUE_FILING, JOB_PARSE, lambda ctx: seen.append(ctx.payload))
    scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": 42})
    scheduler.run_pending(QUEUE_FILING)
    assert seen == [{"filing_id": 42}]


def test_job_without_handler_fails_visibly(cfg, db_dsn, clock):
    scheduler = Scheduler(cfg, clock=clock)
    scheduler.enqueue(QUEUE_ALERTS, JOB_CHECK_RULES, {})

    scheduler.run_pending(QUEUE_ALERTS)

    job = _jobs(db_dsn, QUEUE_ALERTS)[0]
    assert "No handler" in job["last_error"]
    assert job["attempts"] == 1


def test_invalid_payload_is_rejected_before_storing(cfg, db_dsn, clock):
    scheduler = Scheduler(cfg, clock=clock)
    with pytest.raises(ValueError):
        scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {})
    with pytest.raises(ValueError):
        scheduler.enqueue(QUEUE_FILING, "bogus", {"filing_id": 1})
    with pytest.raises(ValueError):
        scheduler.enqueue("nope", JOB_PARSE, {"filing_id": 1})
    assert _jobs(db_dsn, QUEUE_FILING) == []


def test_dedupe_key_prevents_duplicate_jobs(cfg, clock):
    scheduler = Scheduler(cfg, clock=clock)
    first = scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": 1}, dedupe_key="parse|1")
    second = scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": 1}, dedupe_key="parse|1")
    assert first is not None
    assert second is None
    assert scheduler.get_queue_health()[QUEUE_FILING]["waiting"] == 1


def test_requeue_resets_only_terminal_jobs(cfg, clock):
    scheduler = Scheduler(cfg, clock=clock)
    scheduler.register_handler(QUEUE_FILING, JOB_PARSE, lambda ctx: None)
    job_id = scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": 1}, dedupe_key="parse|1")

    # Still pending: nothing to reset.
    assert scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": 1}, dedupe_key="parse|1", requeue_if_exists=True) is None

    scheduler.run_pending(QUEUE_FILING)
    again = scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": 1}, dedupe_key="parse|1", requeue_if_exists=True)
    assert again == job_id
    assert scheduler.get_queue_health()[QUEUE_FILING]["waiting"] == 1


def test_delayed_job_waits(cfg, clock):
    scheduler = Scheduler(cfg, clock=clock)
    scheduler.register_handler(QUEUE_FILING, JOB_PARSE, lambda ctx: None)
    scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": 1}, delay_seconds=30)

    assert scheduler.run_pending(QUEUE_FILING) == 0
    clock.advance(30)
    assert scheduler.run_pending(QUEUE_FILING) == 1


def test_priority_orders_ready_jobs(cfg, clock):
    scheduler = Scheduler(cfg, clock=clock)
    order = []
    scheduler.register_handler(QUEUE_FILING, JOB_PARSE, lambda ctx: order.append(ctx.payload["filing_id"]))
    scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": 1})
    scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": 2}, priority=10)
    scheduler.run_pending(QUEUE_FILING)
    assert order == [2, 1]


def test_recurring_registration_is_deduplicated(cfg, db_dsn, clock):
    scheduler = Scheduler(cfg, clock=clock)
    scheduler.register_recurring(QUEUE_DISCOVERY, JOB_DISCOVER, {}, "*/15 * * * *", "discover-sec")
    scheduler.register_recurring(QUEUE_DISCOVERY, JOB_DISCOVER, {}, "*/15 * * * *", "discover-sec")

    with connect(db_dsn) as conn:
        defs = list_recurring(conn)
    assert len(defs) == 1
    assert defs[0]["next_run_at"].startswith("2025-01-20T12:15:00")


def test_recurring_fires_once_per_slot_across_schedulers(cfg, clock):
    a = Scheduler(cfg, clock=clock)
    b = Scheduler(cfg, clock=clock)
    a.register_recurring(QUEUE_DISCOVERY, JOB_DISCOVER, {"lookback_days": 1}, "*/15 * * * *", "discover-sec")
    b.register_recurring(QUEUE_DISCOVERY, JOB_DISCOVER, {"lookback_days": 1}, "*/15 * * * *", "discover-sec")

    assert a.fire_due_recurring() == 0
    clock.advance(15 * 60)
    assert a.fire_due_recurring() == 1
    assert b.fire_due_recurring() == 0
    assert a.get_queue_health()[QUEUE_DISCOVERY]["waiting"] == 1


def test_missed_recurring_slots_collapse_into_one_firing(cfg, db_dsn, clock):
    scheduler = Scheduler(cfg, clock=clock)
    scheduler.register_recurring(QUEUE_DISCOVERY, JOB_DISCOVER, {}, "*/15 * * * *", "discover-sec")

    clock.advance(3 * 3600 + 60)
    assert scheduler.fire_due_recurring() == 1
    assert scheduler.fire_due_recurring() == 0

    with connect(db_dsn) as conn:
        assert list_recurring(conn)[0]["next_run_at"].startswith("2025-01-20T15:15:00")


def test_recurring_rejects_bad_cron(cfg, clock):
    scheduler = Scheduler(cfg, clock=clock)
    with pytest.raises(ValueError):
        scheduler.register_recurring(QUEUE_DISCOVERY, JOB_DISCOVER, {}, "every minute", "bad")


def test_health_covers_every_queue(cfg, clock):
    health = Scheduler(cfg, clock=clock).get_queue_health()
    assert set(health) == set(ALL_QUEUES)
    for counts in health.values():
        assert counts == {"waiting": 0, "active": 0, "completed": 0, "failed": 0}


def test_prune_keeps_most_recent_finished_jobs(cfg, clock):
    queues = {
        QUEUE_FILING: QueueConfig(
            QUEUE_FILING, 1, 1, BackoffPolicy("fixed", 0), keep_completed=2, keep_failed=1
        )
    }
    scheduler = Scheduler(cfg, queues=queues, clock=clock)

    def handler(ctx):
        if ctx.payload["filing_id"] % 2:
            raise RuntimeError("odd")

    scheduler.register_handler(QUEUE_FILING, JOB_PARSE, handler)
    for i in range(6):
        scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": i})
        clock.advance(1)
    scheduler.run_pending(QUEUE_FILING)
    assert scheduler.get_queue_health()[QUEUE_FILING]["completed"] == 3
    assert scheduler.get_queue_health()[QUEUE_FILING]["failed"] == 3

    assert scheduler.prune() == 3
    assert scheduler.get_queue_health()[QUEUE_FILING] == {"waiting": 0, "active": 0, "completed": 2, "failed": 1}


def test_stop_drains_in_flight_jobs(cfg):
    scheduler = Scheduler(cfg, poll_seconds=0.01)
    started = threading.Event()
    finished = []

    def slow(ctx):
        started.set()
        time.sleep(0.2)
        finished.append(ctx.payload["filing_id"])

    scheduler.register_handler(QUEUE_FILING, JOB_PARSE, slow)
    scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": 1})

    scheduler.start()
    assert started.wait(5)
    scheduler.stop(timeout=5)

    assert finished == [1]
    assert scheduler.get_queue_health()[QUEUE_FILING]["completed"] == 1


def test_stopped_scheduler_claims_nothing_new(cfg):
    scheduler = Scheduler(cfg, poll_seconds=0.01)
    scheduler.register_handler(QUEUE_FILING, JOB_PARSE, lambda ctx: None)
    scheduler.start()
    scheduler.stop(timeout=5)

    scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": 1})
    time.sleep(0.05)
    assert scheduler.get_queue_health()[QUEUE_FILING]["waiting"] == 1


def test_prune_applies_each_queues_own_retention(cfg, clock):
    cfg = dataclasses.replace(cfg, ENRICHMENT_KEEP_COMPLETED=1, FILING_KEEP_COMPLETED=10)
    scheduler = Scheduler(cfg, clock=clock)
    scheduler.register_handler(QUEUE_FILING, JOB_PARSE, lambda ctx: None)
    scheduler.register_handler(QUEUE_ENRICHMENT, JOB_RESOLVE_PERSON, lambda ctx: None)
    for i in range(3):
        scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": i})
        scheduler.enqueue(QUEUE_ENRICHMENT, JOB_RESOLVE_PERSON, {"person_id": i})
    scheduler.drain()

    assert scheduler.prune() == 2
    health = scheduler.get_queue_health()
    assert health[QUEUE_ENRICHMENT]["completed"] == 1
    assert health[QUEUE_FILING]["completed"] == 3


def test_workers_run_in_parallel_up_to_queue_concurrency(cfg):
    queues = {QUEUE_FILING: QueueConfig(QUEUE_FILING, 2, 1, BackoffPolicy("fixed", 0))}
    scheduler = Scheduler(cfg, queues=queues, poll_seconds=0.01)
    lock = threading.Lock()
    running = {"now": 0, "peak": 0}
    two_running = threading.Event()

    def handler(ctx):
        with lock:
            running["now"] += 1
            running["peak"] = max(running["peak"], running["now"])
            if running["now"] >= 2:
                two_running.set()
        two_running.wait(2)
        time.sleep(0.05)
        with lock:
            running["now"] -= 1

    scheduler.register_handler(QUEUE_FILING, JOB_PARSE, handler)
    for i in range(6):
        scheduler.enqueue(QUEUE_FILING, JOB_PARSE, {"filing_id": i})

    scheduler.start()
    try:
        deadline = time.monotonic() + 10
        while scheduler.get_queue_health()[QUEUE_FILING]["completed"] < 6 and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        scheduler.stop(timeout=5)

    assert scheduler.get_queue_health()[QUEUE_FILING]["completed"] == 6
    assert running["peak"] == 2
