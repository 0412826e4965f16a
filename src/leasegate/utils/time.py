"""Time utilities."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and normalize aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Clock:
    """Wall clock used by stores, detectors and renewers.

    Components take a clock instead of calling ``utc_now`` directly so that
    lease ages and heartbeat staleness can be driven deterministically.
    """

    def now(self) -> datetime:
        return utc_now()


class SystemClock(Clock):
    """Clock backed by the host's UTC time."""


system_clock = SystemClock()
