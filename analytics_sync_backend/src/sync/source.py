from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

from src.sync.models import FetchWindow, PartialSeries
from src.sync.summary import SummaryTable


# PUBLIC_INTERFACE
class MetricsSource(ABC):
    """Provider adapter the pipeline fetches windows through."""

    provider: str
    table: SummaryTable
    entity_label: str = "entity"
    max_window_days: int = 45
    single_request_threshold_days: int = 60
    supports_probe: bool = False

    # PUBLIC_INTERFACE
    @abstractmethod
    async def fetch_window(self, token: str, entity_id: str, window: FetchWindow) -> PartialSeries:
        """Fetch and parse one window for the entity (location or company realm)."""
        raise NotImplementedError

    # PUBLIC_INTERFACE
    async def probe(self, token: str, entity_id: str, window: FetchWindow) -> Optional[PartialSeries]:
        """Optional diagnostic single-metric fetch; sources without one return None."""
        return None
