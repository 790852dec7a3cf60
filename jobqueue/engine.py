"""The job queue engine: producer, consumer and operations API plus the scheduler loop.

A single scheduler thread ticks every `tick_interval` seconds (and is woken
early by `add_job` with no delay and by `resume_queue`). Each tick walks the
registered queues, claims up to the free capacity of every unpaused queue and
hands each claimed job to a supervisor thread without waiting for it.
"""

import json
import logging
import threading
import uuid
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from . import events as ev
from .config import Settings, load_settings
from .errors import JobNotFoundError, JobNotPendingError, StoreError
from .events import EventBus
from .executor import Supervisor
from .models import Job, QueueStats
from .registry import Handler, HandlerRegistry, QueueRegistry
from .storage import JobStore
from .utils import dedup_key, utcnow

logger = logging.getLogger(__name__)


class JobQueue:
    def __init__(
        self,
        store: Optional[JobStore] = None,
        settings: Optional[Settings] = None,
        clock: Callable = utcnow,
        events: Optional[EventBus] = None,
    ):
        self.store = store or JobStore()
        self.settings = settings or load_settings(self.store)
        self.clock = clock
        self.queues = QueueRegistry()
        self.handlers = HandlerRegistry()
        self.events = events or EventBus(self.settings.event_buffer)
        self.supervisor = Supervisor(
            self.store, self.queues, self.handlers, self.events, clock,
            default_timeout_ms=self.settings.default_timeout_ms,
            on_finish=self._forget,
        )

        self._inflight: Set[str] = set()
        self._inflight_lock = threading.Lock()
        self._dispatch_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_reap = None

        self.register_queue("default")

    # ---------- Consumer API ----------
    def register_queue(self, name: str, concurrency: Optional[int] = None, timeout_ms: Optional[int] = None) -> None:
        self.queues.register(
            name, concurrency if concurrency is not None else self.settings.default_concurrency, timeout_ms
        )

    def register_handler(self, job_type: str, fn: Handler) -> None:
        self.handlers.register(job_type, fn)

    # ---------- Producer API ----------
    def add_job(
        self,
        job_type: str,
        payload: Any = None,
        *,
        queue: str = "default",
        priority: int = 0,
        delay_ms: int = 0,
        max_attempts: Optional[int] = None,
        unique: bool = False,
    ) -> str:
        """Persist a job and return its id.

        With unique=True the id is derived from (job_type, payload) and an
        existing pending/processing job with that id is returned instead of
        inserting a duplicate.
        """
        if not job_type or not job_type.strip():
            raise ValueError("Job type cannot be empty.")
        if delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")
        attempts = max_attempts if max_attempts is not None else self.settings.default_max_attempts
        if attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        payload = {} if payload is None else payload
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Payload is not JSON serializable: {e}") from e

        now = self.clock()
        job = Job(
            id=dedup_key(job_type, payload) if unique else str(uuid.uuid4()),
            queue=queue,
            type=job_type,
            payload=payload,
            priority=int(priority),
            max_attempts=attempts,
            scheduled_at=now + timedelta(milliseconds=delay_ms),
            created_at=now,
            updated_at=now,
        )
        if unique:
            job_id, inserted = self.store.insert_unique(job)
            if not inserted:
                logger.debug("Unique job %s already in flight", job_id)
                return job_id
        else:
            self.store.insert_job(job)
        if self.is_running and queue not in self.queues:
            logger.warning("Job %s added to unregistered queue %s", job.id, queue)

        logger.info("Job %s (%s) created on %s", job.id, job_type, queue)
        self.events.emit(ev.JOB_CREATED, id=job.id, type=job_type, queue=queue)
        if delay_ms == 0 and self.is_running:
            self._wake.set()
        return job.id

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.store.get_job(job_id)

    def cancel_job(self, job_id: str) -> None:
        """Cancel a pending job. Jobs already processing cannot be cancelled."""
        if not self.store.cancel(job_id, self.clock()):
            job = self.store.get_job(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            raise JobNotPendingError(job_id, job.status)
        logger.info("Job %s cancelled", job_id)
        self.events.emit(ev.JOB_CANCELLED, id=job_id)

    def list_jobs(self, queue: Optional[str] = None, status: Optional[str] = None, limit: int = 50) -> List[Job]:
        return self.store.list_jobs(queue=queue, status=status, limit=limit)

    # ---------- Operations API ----------
    def pause_queue(self, name: str) -> None:
        """Stop dispatching from `name` from the next tick on. Running jobs finish."""
        self.queues.set_paused(name, True)
        logger.info("Queue %s paused", name)
        self.events.emit(ev.QUEUE_PAUSED, queue=name)

    def resume_queue(self, name: str) -> None:
        self.queues.set_paused(name, False)
        logger.info("Queue %s resumed", name)
        self.events.emit(ev.QUEUE_RESUMED, queue=name)
        if self.is_running:
            try:
                self.process_queue(name)
            except StoreError:
                logger.exception("Immediate dispatch after resuming %s failed", name)

    def get_queue_stats(self, name: str) -> QueueStats:
        since = self.clock() - timedelta(hours=self.settings.stats_window_hours)
        counts = self.store.counts_by_status(since, queue=name)
        stats = QueueStats(queue=name, avg_processing_time_ms=self.store.avg_processing_ms(name, since), **counts)
        if name in self.queues:
            live = self.queues.get(name)
            stats.concurrency = live.concurrency
            stats.processing = live.processing
            stats.paused = live.paused
        return stats

    def get_all_stats(self) -> Dict[str, Any]:
        since = self.clock() - timedelta(hours=self.settings.stats_window_hours)
        overall = self.store.counts_by_status(since)
        return {
            "queues": {name: self.get_queue_stats(name) for name in self.queues.names()},
            "overall": dict(overall, total=sum(overall.values())),
            "is_running": self.is_running,
        }

    def cleanup_jobs(self, older_than_days: Optional[float] = None) -> int:
        """Delete completed/failed jobs created more than `older_than_days` ago."""
        days = older_than_days if older_than_days is not None else self.settings.cleanup_days
        deleted = self.store.delete_terminal_older_than(days, self.clock())
        logger.info("Cleaned up %d old jobs", deleted)
        return deleted

    def recover_stale(self, grace_seconds: Optional[float] = None) -> Tuple[int, int]:
        """Requeue (or fail, on a final attempt) processing rows this engine is not running."""
        grace = grace_seconds if grace_seconds is not None else self.settings.reaper_grace_seconds
        now = self.clock()
        with self._inflight_lock:
            running = set(self._inflight)
        requeued, failed = self.store.recover_processing(now - timedelta(seconds=grace), now, exclude=running)
        self._last_reap = now
        if requeued or failed:
            logger.warning("Recovered stale jobs: %d requeued, %d failed", requeued, failed)
        return requeued, failed

    # ---------- Scheduler loop ----------
    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self.handlers.freeze()
        self.events.start()
        self._stop.clear()
        try:
            self.recover_stale()
        except StoreError:
            logger.exception("Startup recovery pass failed")
        self._thread = threading.Thread(target=self._run, name="jobqueue-scheduler", daemon=True)
        self._thread.start()
        logger.info("Scheduler started (tick=%ss, queues=%s)", self.settings.tick_interval, ", ".join(self.queues.names()))

    def stop(self, wait: bool = True, timeout: Optional[float] = None) -> bool:
        """Stop ticking. With wait=True, block until in-flight jobs finish; returns False on timeout."""
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        idle = self.wait_idle(timeout) if wait else self.queues.total_in_flight() == 0
        self.events.stop()
        self.handlers.unfreeze()
        logger.info("Scheduler stopped")
        return idle

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        return self.queues.wait_idle(timeout)

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()

    def _run(self) -> None:
        self.tick()
        while not self._stop.is_set():
            self._wake.wait(self.settings.tick_interval)
            self._wake.clear()
            if self._stop.is_set():
                break
            self.tick()
        self.store.close_thread_conn()

    def tick(self) -> int:
        """One pass over every queue. Store errors skip the affected queue for this tick."""
        dispatched = 0
        for name in self.queues.names():
            try:
                dispatched += self.process_queue(name)
            except StoreError:
                logger.exception("Skipping queue %s this tick", name)
            except Exception:
                logger.exception("Unexpected error while dispatching %s", name)
        if self._reap_due():
            try:
                self.recover_stale()
            except StoreError:
                logger.exception("Recovery pass failed")
        return dispatched

    def process_queue(self, name: str) -> int:
        """Claim and start up to the free capacity of `name`; returns the number dispatched."""
        with self._dispatch_lock:
            slots = self.queues.available_slots(name)
            if slots <= 0:
                return 0
            state = self.queues.get(name)
            dispatched = 0
            for candidate in self.store.list_eligible(name, slots, self.clock()):
                if not self.queues.acquire(name):
                    break
                try:
                    job = self.store.claim(candidate.id, self.clock())
                except StoreError:
                    self.queues.release(name)
                    raise
                if job is None:
                    self.queues.release(name)
                    continue
                with self._inflight_lock:
                    self._inflight.add(job.id)
                threading.Thread(
                    target=self.supervisor.run,
                    args=(job, state.timeout_ms),
                    name=f"jobqueue-{name}-{job.id[:8]}",
                    daemon=True,
                ).start()
                dispatched += 1
            return dispatched

    def _forget(self, job: Job) -> None:
        with self._inflight_lock:
            self._inflight.discard(job.id)

    def _reap_due(self) -> bool:
        if self._last_reap is None:
            return True
        return self.clock() - self._last_reap >= timedelta(seconds=self.settings.reaper_grace_seconds)
