"""Wall-clock access for billing code.

Services call ``clock.utcnow()`` instead of ``datetime.now`` directly so
tests can move time forward by patching this module.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)
