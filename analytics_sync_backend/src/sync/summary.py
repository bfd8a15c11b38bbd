from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from src.sync.models import MetricSeries, Number


def as_number(value: float) -> Number:
    """Integral totals stay ints; amounts are rounded to cents."""
    if float(value).is_integer():
        return int(value)
    return round(value, 2)


@dataclass(frozen=True)
class Bucket:
    """A named summary value: the sum of the listed raw metrics."""
    name: str
    metrics: Tuple[str, ...]


class SummaryTable:
    """Declarative mapping from raw metric series to summary buckets."""

    def __init__(self, buckets: Sequence[Bucket]):
        names = [b.name for b in buckets]
        if len(set(names)) != len(names):
            raise ValueError("Bucket names must be unique")
        self.buckets: Tuple[Bucket, ...] = tuple(buckets)

    @property
    def names(self) -> List[str]:
        return [b.name for b in self.buckets]

    @property
    def metrics(self) -> List[str]:
        """Every raw metric referenced by the table, in first-seen order."""
        seen: Dict[str, None] = {}
        for bucket in self.buckets:
            for metric in bucket.metrics:
                seen.setdefault(metric, None)
        return list(seen)


class MetricSummarizer:
    """Summary and daily breakdown derived through the same bucket table.

    Because both views come from one table, each bucket's summary equals the sum of that
    bucket over the daily rows.
    """

    def __init__(self, table: SummaryTable):
        self.table = table

    # PUBLIC_INTERFACE
    def summarize(self, series: MetricSeries) -> Dict[str, Number]:
        totals: Dict[str, Number] = {}
        for bucket in self.table.buckets:
            values = [p.value for metric in bucket.metrics for p in series.get(metric, [])]
            totals[bucket.name] = as_number(math.fsum(values))
        return totals

    # PUBLIC_INTERFACE
    def daily_breakdown(self, series: MetricSeries) -> List[Dict[str, Any]]:
        """One row per date seen in any referenced metric, every bucket present (zero-filled)."""
        per_day: Dict[date, Dict[str, List[float]]] = {}
        for bucket in self.table.buckets:
            for metric in bucket.metrics:
                for point in series.get(metric, []):
                    row = per_day.setdefault(point.date, {name: [] for name in self.table.names})
                    row[bucket.name].append(point.value)
        rows: List[Dict[str, Any]] = []
        for day in sorted(per_day):
            row: Dict[str, Any] = {"date": day.isoformat()}
            for name, values in per_day[day].items():
                row[name] = as_number(math.fsum(values))
            rows.append(row)
        return rows

    # PUBLIC_INTERFACE
    def summarize_rows(self, rows: Iterable[Dict[str, Any]]) -> Dict[str, Number]:
        """Recompute the summary from daily rows, e.g. after slicing a rolling record."""
        materialized = list(rows)
        return {name: as_number(math.fsum(float(r.get(name, 0) or 0) for r in materialized)) for name in self.table.names}
