from __future__ import annotations

import math
from datetime import datetime, timedelta

RETENTION_YEARS = 10

_SECONDS_PER_DAY = 24 * 60 * 60


def expiry_of(ingested_at: datetime, years: int = RETENTION_YEARS) -> datetime:
    """
    Calendar-year arithmetic: same month/day/time `years` later.

    A Feb 29 ingestion whose target year is not a leap year rolls over to Mar 1,
    so the retention period is never shorter than the mandate.
    """
    try:
        return ingested_at.replace(year=ingested_at.year + years)
    except ValueError:
        # Feb 29 -> Feb 28 of the target year, plus one day.
        return ingested_at.replace(year=ingested_at.year + years, day=28) + timedelta(days=1)


def days_remaining(expiry: datetime, now: datetime) -> int:
    """Whole days until `expiry`, rounded up; negative once expired."""
    return math.ceil((expiry - now).total_seconds() / _SECONDS_PER_DAY)


def is_expired(expiry: datetime, now: datetime) -> bool:
    return now >= expiry
