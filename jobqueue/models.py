import json
import threading
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, PrivateAttr

# Job statuses
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"

STATUSES = (PENDING, PROCESSING, COMPLETED, FAILED, CANCELLED)
TERMINAL = (COMPLETED, FAILED, CANCELLED)
IN_FLIGHT = (PENDING, PROCESSING)


class Job(BaseModel):
    id: str
    queue: str = "default"
    type: str
    payload: Any = None
    priority: int = 0
    status: str = Field(default=PENDING)  # pending | processing | completed | failed | cancelled
    attempts: int = 0
    max_attempts: int = 3
    error: Optional[str] = None
    result: Any = None
    scheduled_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    _cancel: threading.Event = PrivateAttr(default_factory=threading.Event)

    @classmethod
    def from_row(cls, row) -> "Job":
        data = dict(row)
        for key in ("payload", "result"):
            raw = data.get(key)
            data[key] = json.loads(raw) if raw is not None else None
        return cls(**data)

    @property
    def cancelled(self) -> bool:
        """Set once the supervisor has stopped waiting on this run (timeout)."""
        return self._cancel.is_set()

    def request_cancel(self) -> None:
        self._cancel.set()


class QueueState(BaseModel):
    """Live, process-local state of one queue. Never persisted."""

    name: str
    concurrency: int = 5
    processing: int = 0
    paused: bool = False
    timeout_ms: Optional[int] = None


class QueueStats(BaseModel):
    queue: str
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    concurrency: int = 0
    avg_processing_time_ms: Optional[float] = None
    paused: bool = False


DEFAULTS: Dict[str, Any] = {
    "tick_interval": 1.0,
    "default_timeout_ms": 30000,
    "default_concurrency": 5,
    "default_max_attempts": 3,
    "stats_window_hours": 24,
    "reaper_grace_seconds": 60,
    "cleanup_days": 30,
    "event_buffer": 1000,
}

DEFAULT_QUEUES: Dict[str, int] = {
    "default": 5,
    "analysis": 3,
    "email": 10,
    "reports": 2,
    "cleanup": 1,
}
