from __future__ import annotations

from datetime import date, timedelta
from typing import List

from src.core.errors import ValidationError
from src.sync.models import FetchWindow


# PUBLIC_INTERFACE
def split(start: date, end: date, max_window_days: int = 45, single_request_threshold_days: int = 60) -> List[FetchWindow]:
    """Split the inclusive range [start, end] into provider-safe windows.

    Ranges spanning at most ``single_request_threshold_days`` go out as one request.
    Longer ranges are walked forward in steps of ``max_window_days``; the last window is
    clipped to ``end``. Windows never overlap and together cover the whole range.
    """
    if max_window_days < 1:
        raise ValidationError("max_window_days must be at least 1", details={"max_window_days": max_window_days})
    if start > end:
        raise ValidationError("Start date must be before or equal to end date", details={"start": start.isoformat(), "end": end.isoformat()})

    if (end - start).days <= single_request_threshold_days:
        return [FetchWindow(start=start, end=end, sequence_index=0)]

    windows: List[FetchWindow] = []
    cursor = start
    while cursor <= end:
        window_end = min(cursor + timedelta(days=max_window_days - 1), end)
        windows.append(FetchWindow(start=cursor, end=window_end, sequence_index=len(windows)))
        cursor = window_end + timedelta(days=1)
    return windows
