from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

Number = Union[int, float]


@dataclass(frozen=True)
class FetchWindow:
    """Inclusive date sub-range sized to a provider's per-request limit."""
    start: date
    end: date
    sequence_index: int

    @property
    def days(self) -> int:
        return (self.end - self.start).days + 1


@dataclass(frozen=True)
class MetricPoint:
    date: date
    value: float


@dataclass
class SeriesGroup:
    """One metric's points as a provider returned them for a single fetch unit."""
    metric: str
    points: List[MetricPoint] = field(default_factory=list)


@dataclass
class PartialSeries:
    """Parsed response of one fetch unit. A metric may repeat across groups."""
    groups: List[SeriesGroup] = field(default_factory=list)

    def metrics(self) -> List[str]:
        return [g.metric for g in self.groups]


MetricSeries = Dict[str, List[MetricPoint]]


class Period(BaseModel):
    start: date = Field(..., description="First day, inclusive")
    end: date = Field(..., description="Last day, inclusive")
    days: int = Field(..., description="Number of days in the period")


class UnitFailure(BaseModel):
    """A fetch unit that failed while the run continued."""
    sequence_index: int
    start: Optional[date] = None
    end: Optional[date] = None
    error_code: str
    message: str


class ComparisonEntry(BaseModel):
    current: Number
    previous: Number
    change: Number
    change_percent: float


class AggregateResult(BaseModel):
    """Merged and summarized outcome of one pipeline run for a tenant and period."""
    tenant_id: str
    provider: str
    entity_id: str
    period: Period
    rolling: bool = Field(default=False, description="True when this is the rolling-window record")
    summary: Dict[str, Number] = Field(default_factory=dict)
    daily_breakdown: List[Dict[str, Any]] = Field(default_factory=list)
    last_updated: datetime
    source: Literal["live", "cached"] = "live"
    complete: bool = True
    failures: List[UnitFailure] = Field(default_factory=list)
    comparison: Optional[Dict[str, ComparisonEntry]] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
