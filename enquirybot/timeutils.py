from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_timezone(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def seconds_between(earlier: datetime | None, later: datetime) -> float | None:
    """Seconds elapsed from ``earlier`` to ``later``; None when ``earlier`` is unset."""
    earlier = ensure_timezone(earlier)
    if earlier is None:
        return None
    return (ensure_timezone(later) - earlier).total_seconds()
