from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Optional

from src.core.errors import ValidationError


@dataclass(frozen=True)
class ResolvedPeriod:
    start: date
    end: date
    days: int
    rolling: bool = False


def _today_utc() -> date:
    return datetime.now(timezone.utc).date()


# PUBLIC_INTERFACE
def parse_iso_date(value: str, field_name: str) -> date:
    """Parse a strict YYYY-MM-DD date or raise ValidationError."""
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field_name} must be a date in YYYY-MM-DD format", details={field_name: value}) from exc


# PUBLIC_INTERFACE
def resolve_period(
    start: Optional[str] = None,
    end: Optional[str] = None,
    days: Optional[int] = None,
    today: Optional[date] = None,
    lag_days: int = 2,
    default_days: int = 30,
    max_range_days: int = 540,
    rolling_window_days: int = 90,
) -> ResolvedPeriod:
    """Turn request parameters into an inclusive period.

    Provider data lags, so the latest usable day is ``today - lag_days``. Without explicit
    dates the period is the last ``days`` days up to that day; a period of exactly
    ``rolling_window_days`` is the rolling window. An explicit end is clipped to the latest
    usable day.
    """
    latest = (today or _today_utc()) - timedelta(days=lag_days)

    if start is None and end is None:
        length = default_days if days is None else days
        if length < 1 or length > max_range_days:
            raise ValidationError(f"days must be between 1 and {max_range_days}", details={"days": length})
        return ResolvedPeriod(
            start=latest - timedelta(days=length - 1),
            end=latest,
            days=length,
            rolling=length == rolling_window_days,
        )

    if start is None:
        raise ValidationError("start is required when end is given")
    start_date = parse_iso_date(start, "start")
    end_date = parse_iso_date(end, "end") if end is not None else latest
    if end_date > latest:
        end_date = latest
    if start_date > end_date:
        raise ValidationError(
            "Start date must be before or equal to end date",
            details={"start": start_date.isoformat(), "end": end_date.isoformat()},
        )
    length = (end_date - start_date).days + 1
    if length > max_range_days:
        raise ValidationError(f"Date range cannot exceed {max_range_days} days", details={"days": length})
    return ResolvedPeriod(start=start_date, end=end_date, days=length)


# PUBLIC_INTERFACE
def previous_period(period: ResolvedPeriod) -> ResolvedPeriod:
    """The period of equal length ending the day before ``period.start``."""
    end = period.start - timedelta(days=1)
    return ResolvedPeriod(start=end - timedelta(days=period.days - 1), end=end, days=period.days)
