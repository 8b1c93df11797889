"""24-hour diary window anchored at 04:00 local time.

A nightly run collects the entries written during the previous "day", where a
day runs from 04:00 to 04:00 at a fixed local offset (UTC+9 by default). Entries
written just after midnight therefore still belong to the evening before.
"""

from datetime import UTC, datetime, timedelta, timezone

from pydantic import BaseModel, ConfigDict

WINDOW_LENGTH = timedelta(hours=24)
DURATION_TOLERANCE_HOURS = 0.1
MAX_WINDOW_AGE = timedelta(days=7)


class TimeWindow(BaseModel):
    """Half-open interval [start, end) in UTC, plus its local-time view."""

    start: datetime
    end: datetime
    start_local: datetime
    end_local: datetime

    model_config = ConfigDict(frozen=True)

    def contains(self, instant: datetime) -> bool:
        return self.start <= _as_utc(instant) < self.end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def _as_utc(instant: datetime) -> datetime:
    # Naive datetimes are treated as UTC
    if instant.tzinfo is None:
        return instant.replace(tzinfo=UTC)
    return instant.astimezone(UTC)


def resolve_window(
    reference: datetime,
    offset_hours: int = 9,
    anchor_hour: int = 4,
) -> TimeWindow:
    """
    Compute the window a run at ``reference`` should cover.

    The anchor is ``anchor_hour`` o'clock local time on the reference's local
    calendar day, moved back one day when the reference falls before that hour.
    The window is [anchor - 24h, anchor).

    Args:
        reference: Instant the run is anchored to (naive values are UTC)
        offset_hours: Fixed local offset from UTC
        anchor_hour: Local hour the day boundary falls on

    Returns:
        TimeWindow with UTC and local endpoints
    """
    local_tz = timezone(timedelta(hours=offset_hours))
    local_reference = _as_utc(reference).astimezone(local_tz)

    anchor_local = local_reference.replace(hour=anchor_hour, minute=0, second=0, microsecond=0)
    if local_reference.hour < anchor_hour:
        anchor_local -= timedelta(days=1)
    start_local = anchor_local - WINDOW_LENGTH

    return TimeWindow(
        start=start_local.astimezone(UTC),
        end=anchor_local.astimezone(UTC),
        start_local=start_local,
        end_local=anchor_local,
    )


def validate_window(window: TimeWindow, now: datetime | None = None) -> list[str]:
    """
    Sanity-check a window.

    Returns:
        Human-readable violations; empty when the window looks right
    """
    issues: list[str] = []
    now = _as_utc(now) if now else datetime.now(UTC)

    duration_hours = (window.end - window.start).total_seconds() / 3600
    if abs(duration_hours - 24) > DURATION_TOLERANCE_HOURS:
        issues.append(f"Time window is not 24 hours: {duration_hours:.2f} hours")

    if window.start >= window.end:
        issues.append("Start time is not before end time")

    if window.end > now:
        issues.append("End time is in the future")

    if window.start < now - MAX_WINDOW_AGE:
        issues.append("Time window is more than one week old")

    return issues
