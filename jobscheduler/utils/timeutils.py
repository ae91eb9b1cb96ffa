from datetime import datetime, timezone

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def ensure_utc(value: datetime) -> datetime:
    # Naive values are taken to be UTC already
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def duration_ms(start: datetime, end: datetime) -> int:
    return max(0, round((ensure_utc(end) - ensure_utc(start)).total_seconds() * 1000))
