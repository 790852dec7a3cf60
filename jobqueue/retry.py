from datetime import datetime, timedelta
from typing import Sequence

# 1s, 5s, 15s, 1m, 5m
RETRY_DELAYS_MS: Sequence[int] = (1000, 5000, 15000, 60000, 300000)


def backoff_delay_ms(attempt: int, table: Sequence[int] = RETRY_DELAYS_MS) -> int:
    """Delay before retrying after failed attempt `attempt` (1-indexed).

    Attempts past the end of the table reuse its last entry.
    """
    if attempt < 1:
        raise ValueError("attempt is 1-indexed")
    return table[min(attempt, len(table)) - 1]


def next_run_at(now: datetime, attempt: int, table: Sequence[int] = RETRY_DELAYS_MS) -> datetime:
    return now + timedelta(milliseconds=backoff_delay_ms(attempt, table))
