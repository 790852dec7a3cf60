import importlib
import logging
import signal
import threading
import time
from typing import Callable, Dict, Optional

from .engine import JobQueue
from .handlers import register_builtin_handlers, schedule_maintenance
from .models import DEFAULT_QUEUES
from .storage import JobStore

logger = logging.getLogger(__name__)

MAINTENANCE_EVERY = 3600.0


def load_app(target: str) -> Callable[[JobQueue], None]:
    """Resolve 'package.module:function'. The function receives the engine and registers handlers."""
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Expected 'module:function', got {target!r}")
    fn = getattr(importlib.import_module(module_name), attr)
    if not callable(fn):
        raise TypeError(f"{target} is not callable")
    return fn


def setup_signal_handlers(stop: threading.Event):
    def _handler(signum, frame):
        logger.info("Received signal %s, stopping", signum)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not on the main thread
            pass


def build_engine(store: JobStore, queues: Optional[Dict[str, int]] = None, app: Optional[str] = None) -> JobQueue:
    engine = JobQueue(store)
    for name, concurrency in (queues or DEFAULT_QUEUES).items():
        engine.register_queue(name, concurrency)
    register_builtin_handlers(engine)
    if app:
        load_app(app)(engine)
    return engine


def run_engine(
    store: JobStore,
    queues: Optional[Dict[str, int]] = None,
    app: Optional[str] = None,
    poll_interval: float = 1.0,
    stop: Optional[threading.Event] = None,
) -> None:
    """
    Long-running engine process:
      - registers queues (DEFAULT_QUEUES when none given) and handlers
      - runs the scheduler until SIGINT/SIGTERM or the 'shutdown' config flag
      - keeps one maintenance cleanup job scheduled
      - waits for in-flight jobs before returning
    """
    stop = stop or threading.Event()
    setup_signal_handlers(stop)
    engine = build_engine(store, queues, app)
    store.config_set("shutdown", "false")
    engine.start()
    last_maintenance: Optional[float] = None
    try:
        while not stop.is_set():
            if store.config_get("shutdown", "false") == "true":
                logger.info("Shutdown flag set, stopping")
                break
            if last_maintenance is None or time.monotonic() - last_maintenance >= MAINTENANCE_EVERY:
                schedule_maintenance(engine)
                last_maintenance = time.monotonic()
            stop.wait(poll_interval)
    finally:
        engine.stop(wait=True)
