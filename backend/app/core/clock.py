"""
Timezone helpers.

All timestamps are stored and compared in UTC. Some drivers (SQLite) hand
back naive datetimes even for timezone-aware columns, so anything read
from the store goes through `ensure_utc` before arithmetic.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
