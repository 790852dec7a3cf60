import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from .errors import RegistryFrozenError, UnknownQueueError
from .models import Job, QueueState

logger = logging.getLogger(__name__)

Handler = Callable[[Any, Job], Any]


class QueueRegistry:
    """Named queues with their concurrency limit and live in-flight counter.

    The counters are guarded by one lock; `acquire` and `release` are the only
    ways the in-flight count changes.
    """

    def __init__(self):
        self._queues: Dict[str, QueueState] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)

    def register(self, name: str, concurrency: int = 5, timeout_ms: Optional[int] = None) -> QueueState:
        if not name:
            raise ValueError("Queue name cannot be empty.")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        with self._lock:
            state = QueueState(name=name, concurrency=concurrency, timeout_ms=timeout_ms)
            self._queues[name] = state
        logger.debug("Registered queue %s (concurrency=%d)", name, concurrency)
        return state

    def get(self, name: str) -> QueueState:
        with self._lock:
            state = self._queues.get(name)
            if state is None:
                raise UnknownQueueError(name)
            return state.model_copy()

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._queues

    def names(self) -> List[str]:
        with self._lock:
            return list(self._queues)

    def set_paused(self, name: str, paused: bool) -> None:
        with self._lock:
            state = self._queues.get(name)
            if state is None:
                raise UnknownQueueError(name)
            state.paused = paused

    def available_slots(self, name: str) -> int:
        """Free slots, or 0 for a paused queue."""
        with self._lock:
            state = self._queues[name]
            if state.paused:
                return 0
            return state.concurrency - state.processing

    def acquire(self, name: str) -> bool:
        with self._lock:
            state = self._queues[name]
            if state.paused or state.processing >= state.concurrency:
                return False
            state.processing += 1
            return True

    def release(self, name: str) -> None:
        with self._lock:
            state = self._queues[name]
            state.processing = max(0, state.processing - 1)
            self._idle.notify_all()

    def total_in_flight(self) -> int:
        with self._lock:
            return sum(q.processing for q in self._queues.values())

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        with self._idle:
            return self._idle.wait_for(
                lambda: all(q.processing == 0 for q in self._queues.values()), timeout
            )


class HandlerRegistry:
    """job type -> handler. Frozen once the scheduler starts."""

    def __init__(self):
        self._handlers: Dict[str, Handler] = {}
        self._frozen = False

    def register(self, job_type: str, fn: Handler) -> None:
        if not callable(fn):
            raise TypeError(f"Handler for {job_type} must be callable")
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register handler for {job_type!r} while the scheduler is running")
        if job_type in self._handlers:
            logger.warning("Replacing handler for job type %s", job_type)
        self._handlers[job_type] = fn

    def get(self, job_type: str) -> Optional[Handler]:
        return self._handlers.get(job_type)

    def freeze(self) -> None:
        self._frozen = True

    def unfreeze(self) -> None:
        self._frozen = False

    def types(self) -> List[str]:
        return sorted(self._handlers)
