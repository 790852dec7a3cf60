import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp, e.g. '2025-11-06T09:12:34.000000Z'.

    Every stored timestamp goes through here so that plain string comparison
    in SQL orders them correctly.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime(ISO_FORMAT)


def dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def dedup_key(job_type: str, payload: Any) -> str:
    """Deterministic job id for a unique (type, payload) pair."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    digest = hashlib.sha256(f"{job_type}\0{canonical}".encode("utf-8")).hexdigest()
    return f"{job_type}-{digest[:32]}"


def configure_logging(level: str = "INFO") -> None:
    from rich.logging import RichHandler

    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
