import asyncio
import threading
from datetime import timedelta

import pytest

from conftest import wait_for
from jobqueue import events as ev
from jobqueue.errors import (
    JobNotFoundError,
    JobNotPendingError,
    RegistryFrozenError,
    StoreError,
    UnknownQueueError,
)
from jobqueue.models import CANCELLED, COMPLETED, FAILED, PENDING


def run_tick(engine):
    dispatched = engine.tick()
    assert engine.wait_idle(5)
    return dispatched


def test_successful_job_records_result(engine):
    engine.register_handler("add", lambda payload, job: {"sum": payload["a"] + payload["b"]})
    job_id = engine.add_job("add", {"a": 2, "b": 3})

    assert run_tick(engine) == 1
    job = engine.get_job(job_id)
    assert job.status == COMPLETED
    assert job.result == {"sum": 5}
    assert job.attempts == 1
    assert job.completed_at is not None


def test_handler_receives_payload_and_job(engine):
    seen = {}

    def handler(payload, job):
        seen["payload"] = payload
        seen["job"] = (job.id, job.type, job.queue)

    engine.register_handler("echo", handler)
    job_id = engine.add_job("echo", {"x": 1})
    run_tick(engine)
    assert seen == {"payload": {"x": 1}, "job": (job_id, "echo", "default")}


def test_dispatch_order_is_priority_then_fifo(engine, clock):
    order = []
    engine.register_queue("serial", 1)
    engine.register_handler("rec", lambda payload, job: order.append(payload["name"]))

    for name, priority in [("a", 0), ("b", 5), ("c", 0), ("d", 5), ("e", -1)]:
        engine.add_job("rec", {"name": name}, queue="serial", priority=priority)
        clock.advance(milliseconds=10)

    for _ in range(5):
        run_tick(engine)
    assert order == ["b", "d", "a", "c", "e"]


def test_concurrency_bound_under_concurrent_producers(engine):
    engine.register_queue("narrow", 2)
    release = threading.Event()
    lock = threading.Lock()
    active = {"now": 0, "max": 0}

    def handler(payload, job):
        with lock:
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
        release.wait(5)
        with lock:
            active["now"] -= 1

    engine.register_handler("block", handler)
    producers = [
        threading.Thread(target=lambda: [engine.add_job("block", None, queue="narrow") for _ in range(5)])
        for _ in range(4)
    ]
    for t in producers:
        t.start()
    for t in producers:
        t.join()

    assert engine.tick() == 2
    assert engine.tick() == 0
    assert engine.get_queue_stats("narrow").processing == 2

    release.set()
    assert engine.wait_idle(5)
    while run_tick(engine):
        pass
    assert active["max"] <= 2
    assert engine.get_queue_stats("narrow").completed == 20


def test_backoff_schedule_then_success(engine, clock):
    calls = []

    def flaky(payload, job):
        calls.append(job.attempts)
        if job.attempts < 3:
            raise RuntimeError(f"fail {job.attempts}")
        return "ok"

    engine.register_handler("flaky", flaky)
    job_id = engine.add_job("flaky", {}, max_attempts=3)

    run_tick(engine)
    job = engine.get_job(job_id)
    assert job.status == PENDING
    assert job.error == "fail 1"
    assert job.scheduled_at - clock() == timedelta(milliseconds=1000)

    assert run_tick(engine) == 0
    clock.advance(seconds=1)
    run_tick(engine)
    job = engine.get_job(job_id)
    assert job.status == PENDING
    assert job.scheduled_at - clock() == timedelta(milliseconds=5000)

    clock.advance(seconds=5)
    run_tick(engine)
    job = engine.get_job(job_id)
    assert job.status == COMPLETED
    assert job.attempts == 3
    assert job.result == "ok"
    assert calls == [1, 2, 3]


def test_terminal_failure_stops_scheduling(engine, clock):
    def broken(payload, job):
        raise ValueError("always")

    engine.register_handler("broken", broken)
    job_id = engine.add_job("broken", {}, max_attempts=2)

    run_tick(engine)
    clock.advance(seconds=1)
    run_tick(engine)

    job = engine.get_job(job_id)
    assert job.status == FAILED
    assert job.attempts == 2
    assert job.error == "always"
    assert job.failed_at is not None

    clock.advance(minutes=10)
    assert run_tick(engine) == 0
    assert engine.get_job(job_id).attempts == 2


def test_missing_handler_fails_without_retry(engine):
    job_id = engine.add_job("unregistered-type", {})
    run_tick(engine)
    job = engine.get_job(job_id)
    assert job.status == FAILED
    assert job.attempts == 1
    assert "No handler" in job.error


def test_timeout_counts_as_failure_and_signals_handler(engine):
    engine.register_queue("slow", 1, timeout_ms=50)
    saw_cancel = threading.Event()

    def sleepy(payload, job):
        if wait_for(lambda: job.cancelled, timeout=5):
            saw_cancel.set()

    engine.register_handler("sleepy", sleepy)
    job_id = engine.add_job("sleepy", {}, queue="slow", max_attempts=1)
    run_tick(engine)

    job = engine.get_job(job_id)
    assert job.status == FAILED
    assert "timed out" in job.error
    assert engine.get_queue_stats("slow").processing == 0
    assert saw_cancel.wait(5)


def test_async_handler(engine):
    async def handler(payload, job):
        await asyncio.sleep(0)
        return payload["v"] * 2

    engine.register_handler("async", handler)
    job_id = engine.add_job("async", {"v": 21})
    run_tick(engine)
    assert engine.get_job(job_id).result == 42


def test_unique_jobs_deduplicate_while_in_flight(engine):
    first = engine.add_job("report", {"org": 1}, unique=True)
    second = engine.add_job("report", {"org": 1}, unique=True)
    other = engine.add_job("report", {"org": 2}, unique=True)

    assert first == second
    assert other != first
    assert len(engine.list_jobs()) == 2


def test_unique_job_can_be_resubmitted_after_terminal(engine):
    engine.register_handler("report", lambda payload, job: "done")
    first = engine.add_job("report", {"org": 1}, unique=True)
    run_tick(engine)
    assert engine.get_job(first).status == COMPLETED

    again = engine.add_job("report", {"org": 1}, unique=True)
    assert again == first
    assert engine.get_job(again).status == PENDING
    assert engine.get_job(again).attempts == 0


def test_pause_lets_running_jobs_finish_but_dispatches_nothing_new(engine):
    release = threading.Event()
    engine.register_handler("block", lambda payload, job: release.wait(5))
    ids = [engine.add_job("block", {"n": i}) for i in range(2)]

    assert engine.tick() == 2
    engine.pause_queue("default")
    later = [engine.add_job("block", {"n": i}) for i in range(2, 4)]
    assert engine.tick() == 0

    release.set()
    assert engine.wait_idle(5)
    assert [engine.get_job(i).status for i in ids] == [COMPLETED, COMPLETED]
    assert [engine.get_job(i).status for i in later] == [PENDING, PENDING]
    assert engine.get_queue_stats("default").paused

    engine.resume_queue("default")
    assert run_tick(engine) == 2
    assert [engine.get_job(i).status for i in later] == [COMPLETED, COMPLETED]


def test_pause_unknown_queue(engine):
    with pytest.raises(UnknownQueueError):
        engine.pause_queue("nope")


def test_cancel_job(engine):
    job_id = engine.add_job("anything", {}, delay_ms=60000)
    engine.cancel_job(job_id)
    assert engine.get_job(job_id).status == CANCELLED

    with pytest.raises(JobNotPendingError):
        engine.cancel_job(job_id)
    with pytest.raises(JobNotFoundError):
        engine.cancel_job("missing")


def test_delayed_job_waits_for_schedule(engine, clock):
    engine.register_handler("later", lambda payload, job: None)
    job_id = engine.add_job("later", {}, delay_ms=2000)
    assert run_tick(engine) == 0
    clock.advance(seconds=2)
    assert run_tick(engine) == 1
    assert engine.get_job(job_id).status == COMPLETED


def test_add_job_validation(engine):
    with pytest.raises(ValueError):
        engine.add_job("", {})
    with pytest.raises(ValueError):
        engine.add_job("t", {}, max_attempts=0)
    with pytest.raises(ValueError):
        engine.add_job("t", {}, delay_ms=-1)
    with pytest.raises(ValueError):
        engine.add_job("t", {"bad": object()})


def test_handler_registration_rules(engine):
    with pytest.raises(TypeError):
        engine.register_handler("x", "not callable")

    engine.register_handler("x", lambda p, j: 1)
    engine.register_handler("x", lambda p, j: 2)
    job_id = engine.add_job("x", {})
    run_tick(engine)
    assert engine.get_job(job_id).result == 2


def test_handlers_frozen_while_running(engine):
    engine.start()
    with pytest.raises(RegistryFrozenError):
        engine.register_handler("late", lambda p, j: None)
    engine.stop()
    engine.register_handler("late", lambda p, j: None)


def test_events_emitted_for_lifecycle(engine, clock):
    seen = []
    engine.events.subscribe(lambda e: seen.append(e))

    def flaky(payload, job):
        if job.attempts == 1:
            raise RuntimeError("first")
        return "ok"

    engine.register_handler("flaky", flaky)
    job_id = engine.add_job("flaky", {})
    run_tick(engine)
    clock.advance(seconds=1)
    run_tick(engine)
    engine.events.drain()

    names = [e.name for e in seen]
    assert names == [ev.JOB_CREATED, ev.JOB_STARTED, ev.JOB_RETRY, ev.JOB_STARTED, ev.JOB_COMPLETED]
    retry = seen[2]
    assert retry.data["id"] == job_id
    assert retry.data["attempt"] == 1
    assert seen[-1].data["result"] == "ok"


def test_failing_subscriber_does_not_break_delivery(engine):
    got = []
    engine.events.subscribe(lambda e: 1 / 0)
    engine.events.subscribe(got.append, ev.QUEUE_PAUSED)
    engine.pause_queue("default")
    engine.events.drain()
    assert [e.name for e in got] == [ev.QUEUE_PAUSED]


def test_store_error_skips_tick(engine, monkeypatch):
    def unavailable(*args, **kwargs):
        raise StoreError("database is locked")

    monkeypatch.setattr(engine.store, "list_eligible", unavailable)
    engine.add_job("t", {})
    assert engine.tick() == 0
    assert engine.get_queue_stats("default").processing == 0


def test_stats_merge_live_state(engine, clock):
    engine.register_queue("work", 4)

    def timed(payload, job):
        clock.advance(milliseconds=250)
        return True

    engine.register_handler("timed", timed)
    engine.add_job("timed", {}, queue="work")
    engine.add_job("later", {}, queue="work", delay_ms=60000)
    run_tick(engine)

    stats = engine.get_queue_stats("work")
    assert stats.completed == 1
    assert stats.pending == 1
    assert stats.concurrency == 4
    assert stats.processing == 0
    assert stats.paused is False
    assert stats.avg_processing_time_ms == pytest.approx(250)

    summary = engine.get_all_stats()
    assert set(summary["queues"]) == {"default", "work"}
    assert summary["overall"]["total"] == 2
    assert summary["is_running"] is False


def test_cleanup_jobs_keeps_non_terminal(engine, clock):
    engine.register_handler("ok", lambda p, j: 1)
    engine.register_handler("bad", lambda p, j: 1 / 0)
    done = engine.add_job("ok", {})
    failed = engine.add_job("bad", {}, max_attempts=1)
    run_tick(engine)
    pending = engine.add_job("ok", {}, delay_ms=10 ** 9)

    clock.advance(days=40)
    assert engine.cleanup_jobs(30) == 2
    assert engine.get_job(done) is None
    assert engine.get_job(failed) is None
    assert engine.get_job(pending).status == PENDING


def test_recover_stale_skips_jobs_running_here(engine, clock):
    release = threading.Event()
    engine.register_handler("block", lambda p, j: release.wait(5))
    running = engine.add_job("block", {})
    engine.tick()

    clock.advance(hours=2)
    assert engine.recover_stale(grace_seconds=60) == (0, 0)
    release.set()
    assert engine.wait_idle(5)
    assert engine.get_job(running).status == COMPLETED


def test_loop_runs_jobs_end_to_end(store, settings):
    from jobqueue.engine import JobQueue

    engine = JobQueue(store, settings=settings)
    done = threading.Event()
    engine.register_handler("ping", lambda p, j: done.set() or "pong")
    with engine:
        job_id = engine.add_job("ping", {})
        assert done.wait(5)
        assert wait_for(lambda: engine.get_job(job_id).status == COMPLETED)
    assert not engine.is_running


def test_producer_without_scheduler_does_not_overflow_events(store, clock, caplog):
    from jobqueue.config import Settings
    from jobqueue.engine import JobQueue

    engine = JobQueue(store, settings=Settings(event_buffer=5), clock=clock)
    created = []
    engine.events.subscribe(created.append, ev.JOB_CREATED)
    with caplog.at_level("WARNING", logger="jobqueue"):
        for n in range(10):
            engine.add_job("email", {"n": n}, delay_ms=60000)
    assert not [r for r in caplog.records if r.levelname == "WARNING"]
    assert len(created) == 10


def test_events_without_subscribers_are_not_buffered(store, clock, caplog):
    from jobqueue.config import Settings
    from jobqueue.engine import JobQueue

    engine = JobQueue(store, settings=Settings(event_buffer=2), clock=clock)
    with caplog.at_level("WARNING", logger="jobqueue"):
        for n in range(5):
            engine.add_job("email", {"n": n})
    assert engine.events.drain() == 0
    assert not [r for r in caplog.records if "buffer full" in r.getMessage()]


def test_unserializable_result_fails_the_job(engine):
    def circular(payload, job):
        result = {}
        result["self"] = result
        return result

    engine.register_handler("circular", circular)
    job_id = engine.add_job("circular", {}, max_attempts=1)
    run_tick(engine)

    job = engine.get_job(job_id)
    assert job.status == FAILED
    assert "Circular reference" in job.error
    assert engine.queues.get("default").processing == 0


def test_unserializable_result_is_retried_like_any_failure(engine):
    engine.register_handler("tuple_keys", lambda p, j: {(1, 2): "pair"})
    job_id = engine.add_job("tuple_keys", {}, max_attempts=2)
    run_tick(engine)

    job = engine.get_job(job_id)
    assert job.status == PENDING
    assert job.attempts == 1
    assert job.error


def test_register_queue_rejects_zero_concurrency(engine):
    with pytest.raises(ValueError):
        engine.register_queue("q", 0)
    assert "q" not in engine.queues
    engine.register_queue("q")
    assert engine.queues.get("q").concurrency == engine.settings.default_concurrency
