"""UTC timezone enforcement and date-partition helpers.

Importing this module sets the TZ environment variable to UTC so that batch ids
and durable log partitions are derived from the same clock on every host.
"""

import os
from datetime import datetime, timezone

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


def date_partition(moment: datetime | None = None) -> str:
    """Durable log partition key (YYYY-MM-DD, UTC) for a moment in time."""
    moment = moment or utcnow()
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%d")
