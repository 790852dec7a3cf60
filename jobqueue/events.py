"""Observability events.

While the dispatcher thread runs, emitters never block: events go into a
bounded buffer and a full buffer drops the event with a warning. Without a
dispatcher (a producer-only process) events go straight to subscribers on the
emitting thread, and nothing is buffered when nobody subscribes.
Subscriber exceptions are logged and otherwise ignored.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

JOB_CREATED = "job:created"
JOB_STARTED = "job:started"
JOB_COMPLETED = "job:completed"
JOB_RETRY = "job:retry"
JOB_FAILED = "job:failed"
JOB_CANCELLED = "job:cancelled"
QUEUE_PAUSED = "queue:paused"
QUEUE_RESUMED = "queue:resumed"


@dataclass
class Event:
    name: str
    data: Dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[Event], None]

_STOP = object()


class EventBus:
    def __init__(self, maxsize: int = 1000):
        self._buffer: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._subscribers: List[tuple] = []
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def subscribe(self, fn: Subscriber, *names: str) -> Callable[[], None]:
        """Call `fn` for the given event names (all events if none). Returns an unsubscribe function."""
        entry = (fn, frozenset(names))
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe():
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)
        return unsubscribe

    def emit(self, name: str, **data: Any) -> None:
        with self._lock:
            if not self._subscribers:
                return
        event = Event(name, data)
        thread = self._thread
        if thread is None or not thread.is_alive():
            self._deliver(event)
            return
        try:
            self._buffer.put_nowait(event)
        except queue.Full:
            logger.warning("Event buffer full, dropping %s for %s", name, data.get("id", ""))

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="jobqueue-events", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Deliver what is buffered, then stop the dispatcher."""
        if self._thread is None:
            return
        self._buffer.put(_STOP)
        self._thread.join(timeout)
        self._thread = None

    def drain(self) -> int:
        """Deliver buffered events on the calling thread. Used when no dispatcher runs."""
        delivered = 0
        while True:
            try:
                event = self._buffer.get_nowait()
            except queue.Empty:
                return delivered
            if event is not _STOP:
                self._deliver(event)
                delivered += 1

    def _run(self) -> None:
        while True:
            event = self._buffer.get()
            if event is _STOP:
                return
            self._deliver(event)

    def _deliver(self, event: Event) -> None:
        with self._lock:
            targets = [fn for fn, names in self._subscribers if not names or event.name in names]
        for fn in targets:
            try:
                fn(event)
            except Exception:
                logger.exception("Event subscriber failed on %s", event.name)
