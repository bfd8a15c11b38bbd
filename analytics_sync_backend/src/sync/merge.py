from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Dict, Iterable

from src.core.logging import get_logger
from src.sync.models import MetricPoint, MetricSeries, PartialSeries

logger = get_logger(__name__)


class DedupePolicy(str, Enum):
    """How to reconcile two points for the same (metric, date)."""
    FIRST_WINS = "first_wins"
    LAST_WINS = "last_wins"
    SUM = "sum"


@dataclass
class MergeResult:
    series: MetricSeries = field(default_factory=dict)
    duplicates: int = 0


class ResultMerger:
    """Flattens partial results into one ascending series per metric with unique dates."""

    def __init__(self, policy: DedupePolicy = DedupePolicy.FIRST_WINS):
        self.policy = DedupePolicy(policy)

    # PUBLIC_INTERFACE
    def merge(self, partials: Iterable[PartialSeries]) -> MergeResult:
        """Merge partials in the order given, which callers keep equal to planned sequence order."""
        values: Dict[str, Dict[date, float]] = {}
        duplicates = 0
        for partial in partials:
            for group in partial.groups:
                by_date = values.setdefault(group.metric, {})
                for point in group.points:
                    if point.date not in by_date:
                        by_date[point.date] = point.value
                        continue
                    duplicates += 1
                    if self.policy is DedupePolicy.LAST_WINS:
                        by_date[point.date] = point.value
                    elif self.policy is DedupePolicy.SUM:
                        by_date[point.date] += point.value

        if duplicates:
            logger.info("duplicate metric points reconciled", extra={"duplicates": duplicates, "policy": self.policy.value})
        series = {
            metric: [MetricPoint(date=d, value=v) for d, v in sorted(by_date.items())]
            for metric, by_date in values.items()
        }
        return MergeResult(series=series, duplicates=duplicates)
