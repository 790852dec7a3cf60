import asyncio
import inspect
import logging
import threading
from typing import Any, Callable, Optional

from . import events as ev
from .errors import HandlerTimeoutError, NoHandlerError, StoreError
from .events import EventBus
from .models import Job
from .registry import Handler, HandlerRegistry, QueueRegistry
from .retry import next_run_at
from .storage import JobStore
from .utils import dumps

logger = logging.getLogger(__name__)


async def _await(awaitable):
    return await awaitable


def run_handler(fn: Handler, payload: Any, job: Job, timeout_ms: int) -> Any:
    """
    Runs fn(payload, job) on its own thread and waits up to timeout_ms.
    Returns the handler's result, re-raises its exception, or raises
    HandlerTimeoutError. A timed-out handler is flagged via job.request_cancel()
    and left to finish in the background.
    """
    outcome: dict = {}

    def target():
        try:
            value = fn(payload, job)
            if inspect.isawaitable(value):
                value = asyncio.run(_await(value))
            outcome["result"] = value
        except Exception as e:
            outcome["error"] = e
        except BaseException as e:  # SystemExit and friends still count as a failed run
            outcome["error"] = RuntimeError(f"Handler aborted: {e!r}")

    t = threading.Thread(target=target, name=f"job-{job.id[:12]}", daemon=True)
    t.start()
    t.join(timeout_ms / 1000.0)
    if t.is_alive():
        job.request_cancel()
        raise HandlerTimeoutError(timeout_ms)
    if "error" in outcome:
        raise outcome["error"]
    return outcome.get("result")


def error_message(e: BaseException) -> str:
    return str(e) or e.__class__.__name__


class Supervisor:
    """Drives one claimed job to completed, pending (retry) or failed."""

    def __init__(
        self,
        store: JobStore,
        queues: QueueRegistry,
        handlers: HandlerRegistry,
        events: EventBus,
        clock: Callable,
        default_timeout_ms: int = 30000,
        on_finish: Optional[Callable[[Job], None]] = None,
    ):
        self.store = store
        self.queues = queues
        self.handlers = handlers
        self.events = events
        self.clock = clock
        self.default_timeout_ms = default_timeout_ms
        self.on_finish = on_finish

    def run(self, job: Job, timeout_ms: Optional[int] = None) -> None:
        """Execute a job already claimed (status=processing) holding one slot of its queue."""
        try:
            logger.info("Job %s (%s) started on %s, attempt %d/%d",
                        job.id, job.type, job.queue, job.attempts, job.max_attempts)
            self.events.emit(ev.JOB_STARTED, id=job.id, type=job.type, queue=job.queue, attempt=job.attempts)

            handler = self.handlers.get(job.type)
            if handler is None:
                # configuration defect: never retried
                self._fail(job, error_message(NoHandlerError(job.type)))
                return

            try:
                result = run_handler(handler, job.payload, job, timeout_ms or self.default_timeout_ms)
                encoded = dumps(result)
            except Exception as e:
                self._retry_or_fail(job, error_message(e))
            else:
                self._complete(job, result, encoded)
        except StoreError:
            logger.exception("Could not record outcome of job %s", job.id)
        finally:
            self.queues.release(job.queue)
            if self.on_finish is not None:
                self.on_finish(job)
            self.store.close_thread_conn()

    def _complete(self, job: Job, result: Any, encoded: str) -> None:
        self.store.mark_completed(job.id, encoded, self.clock())
        logger.info("Job %s completed", job.id)
        self.events.emit(ev.JOB_COMPLETED, id=job.id, type=job.type, queue=job.queue, result=result)

    def _retry_or_fail(self, job: Job, message: str) -> None:
        if job.attempts < job.max_attempts:
            now = self.clock()
            next_run = next_run_at(now, job.attempts)
            self.store.mark_retry(job.id, message, next_run, now)
            logger.warning("Job %s failed (attempt %d/%d): %s; retrying at %s",
                           job.id, job.attempts, job.max_attempts, message, next_run.isoformat())
            self.events.emit(ev.JOB_RETRY, id=job.id, type=job.type, queue=job.queue,
                             attempt=job.attempts, nextRun=next_run, error=message)
        else:
            self._fail(job, message)

    def _fail(self, job: Job, message: str) -> None:
        self.store.mark_failed(job.id, message, self.clock())
        logger.error("Job %s failed permanently after %d attempt(s): %s", job.id, job.attempts, message)
        self.events.emit(ev.JOB_FAILED, id=job.id, type=job.type, queue=job.queue, error=message)
