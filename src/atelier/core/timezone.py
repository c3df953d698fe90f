"""UTC timezone enforcement.

This module sets the TZ environment variable to UTC to ensure
consistent datetime behavior across all environments.
"""

import os
from datetime import UTC, datetime

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (the storage convention for all timestamps)."""
    return datetime.now(UTC).replace(tzinfo=None)
