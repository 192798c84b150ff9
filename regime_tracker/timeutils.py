"""
Time helpers shared by ingestion, replay and labeling.

All stored timestamps are naive datetimes in UTC.
"""

from datetime import datetime, timedelta, timezone

# Timeframe to minutes mapping
TIMEFRAME_MINUTES = {
    '1m': 1,
    '5m': 5,
    '15m': 15,
    '30m': 30,
    '1h': 60,
    '4h': 240,
    '1d': 1440,
    '1w': 10080,
}

EPOCH = datetime(1970, 1, 1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(timestamp: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC"""
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc).replace(tzinfo=None)
    return timestamp


def timeframe_delta(timeframe: str) -> timedelta:
    if timeframe not in TIMEFRAME_MINUTES:
        raise ValueError(f"Invalid timeframe: {timeframe}")
    return timedelta(minutes=TIMEFRAME_MINUTES[timeframe])


def floor_timestamp(timestamp: datetime, minutes: int) -> datetime:
    """
    Floor timestamp to the start of a candle period.

    Args:
        timestamp: The timestamp to floor
        minutes: Candle period in minutes

    Returns:
        Floored naive UTC timestamp
    """
    timestamp = to_naive_utc(timestamp)
    total_minutes = int((timestamp - EPOCH).total_seconds() // 60)
    floored_minutes = (total_minutes // minutes) * minutes
    return EPOCH + timedelta(minutes=floored_minutes)


def last_closed_open_time(as_of: datetime, timeframe: str) -> datetime:
    """
    Open time of the most recent candle that has fully closed at ``as_of``.

    A candle opening at T closes at T + interval, so it counts as closed
    once ``as_of`` reaches T + interval.
    """
    delta = timeframe_delta(timeframe)
    current_open = floor_timestamp(as_of, TIMEFRAME_MINUTES[timeframe])
    return current_open - delta


def to_millis(timestamp: datetime) -> int:
    return int((to_naive_utc(timestamp) - EPOCH).total_seconds() * 1000)


def from_millis(value) -> datetime:
    return EPOCH + timedelta(milliseconds=int(value))


def parse_step(step: str) -> timedelta:
    """
    Parse a step size such as '30m', '4h' or '1d'.

    Raises:
        ValueError: if the unit or amount is not recognised
    """
    units = {'m': 'minutes', 'h': 'hours', 'd': 'days', 'w': 'weeks'}
    step = (step or '').strip().lower()
    if len(step) < 2 or step[-1] not in units or not step[:-1].isdigit():
        raise ValueError(f"Invalid step size: {step!r}")
    amount = int(step[:-1])
    if amount <= 0:
        raise ValueError(f"Invalid step size: {step!r}")
    return timedelta(**{units[step[-1]]: amount})


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp (optionally 'Z'-suffixed) to naive UTC"""
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    return to_naive_utc(datetime.fromisoformat(value))
