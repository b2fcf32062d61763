"""UTC timezone enforcement.

Sets the TZ environment variable to UTC and provides the single clock used
for every persisted timestamp. Timestamps are stored as naive UTC values.
"""

import os
from datetime import datetime, timezone

os.environ["TZ"] = "UTC"


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
