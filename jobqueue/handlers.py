from typing import Optional

from .engine import JobQueue

CLEANUP = "cleanup"


def register_builtin_handlers(engine: JobQueue) -> None:
    """Handlers the engine needs for its own upkeep."""

    def cleanup(payload, job):
        kind = payload.get("type", "jobs")
        if kind != "jobs":
            raise ValueError(f"Unknown cleanup type: {kind}")
        days = payload.get("olderThanDays", engine.settings.cleanup_days)
        return {"success": True, "type": kind, "cleaned": engine.cleanup_jobs(days)}

    engine.register_handler(CLEANUP, cleanup)


def schedule_maintenance(engine: JobQueue, older_than_days: Optional[float] = None, every_hours: float = 24) -> str:
    """Queue the next job-table cleanup `every_hours` from now.

    Unique, so calling this while one is already pending returns that job.
    """
    days = older_than_days if older_than_days is not None else engine.settings.cleanup_days
    queue = CLEANUP if CLEANUP in engine.queues else "default"
    return engine.add_job(
        CLEANUP,
        {"type": "jobs", "olderThanDays": days},
        queue=queue,
        delay_ms=int(every_hours * 3600 * 1000),
        unique=True,
    )
