from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Generic, Iterable, List, Optional, Tuple, Type, TypeVar

from src.core.errors import error_code_of
from src.core.logging import get_logger
from src.core.observability import increment_metric

logger = get_logger(__name__)

U = TypeVar("U")
R = TypeVar("R")


@dataclass
class UnitOutcome(Generic[U, R]):
    unit: U
    index: int
    result: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class FetchReport(Generic[U, R]):
    """Per-unit outcomes in planned order, independent of completion order."""
    outcomes: List[UnitOutcome[U, R]] = field(default_factory=list)

    @property
    def successes(self) -> List[UnitOutcome[U, R]]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failures(self) -> List[UnitOutcome[U, R]]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def complete(self) -> bool:
        return not self.failures


class ConcurrencyLimitedFetcher:
    """Runs fetch units through a fixed-size worker pool.

    A failing unit is recorded and its siblings carry on. Each worker waits ``delay`` seconds
    before taking its next unit to stay under provider rate limits. Exceptions listed in
    ``fatal`` stop the whole run and propagate; the remaining workers are cancelled.
    """

    def __init__(
        self,
        concurrency: int = 2,
        delay: float = 0.5,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        fatal: Tuple[Type[BaseException], ...] = (),
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.delay = delay
        self._sleep = sleep or asyncio.sleep
        self.fatal = fatal

    # PUBLIC_INTERFACE
    async def fetch_all(self, units: Iterable[U], fetch: Callable[[U], Awaitable[R]]) -> FetchReport[U, R]:
        items = list(units)
        outcomes: List[Optional[UnitOutcome[U, R]]] = [None] * len(items)
        if not items:
            return FetchReport([])

        queue: asyncio.Queue = asyncio.Queue()
        for index, unit in enumerate(items):
            queue.put_nowait((index, unit))

        async def worker() -> None:
            first = True
            while True:
                try:
                    index, unit = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if not first and self.delay > 0:
                    await self._sleep(self.delay)
                first = False
                increment_metric("fetch_units_total", 1.0)
                try:
                    result = await fetch(unit)
                except self.fatal:
                    raise
                except Exception as exc:
                    increment_metric("fetch_unit_failures_total", 1.0)
                    logger.warning("fetch unit failed", extra={"unit_index": index, "error_code": error_code_of(exc), "error": str(exc)})
                    outcomes[index] = UnitOutcome(unit=unit, index=index, error=exc)
                else:
                    outcomes[index] = UnitOutcome(unit=unit, index=index, result=result)

        workers = [asyncio.create_task(worker()) for _ in range(min(self.concurrency, len(items)))]
        try:
            await asyncio.gather(*workers)
        finally:
            for task in workers:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
        return FetchReport([o for o in outcomes if o is not None])
