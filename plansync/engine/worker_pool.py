"""
Bounded, paced worker pools.

Creation work is executed by a fixed number of workers pulling units from a
queue. Each worker enforces a minimum spacing between the remote calls it
makes (units call ``pace()`` before each one, and the worker waits for a
slot before starting a unit), so the tracker sees a steady call rate even
when nothing fails. Log events emitted by a worker carry its pool name as
``partition``. Outcomes are pushed onto a shared results channel (an
``asyncio.Queue``) that a single collector drains; the pools share nothing
else.

Stopping:
    - A cancel event (user abort) and an abort event (systemic failure)
      stop workers from *starting* new units. Units already running are
      allowed to finish and their outcome is still delivered.
    - Units never started are returned to the caller so they can be reported.

Partitioning:
    ``partition_by_sprint`` splits work into contiguous sprint ranges and
    ``run_partitioned`` runs one pool per range, dividing the concurrency
    budget between them.

Example:
    >>> channel: asyncio.Queue[UnitResult] = asyncio.Queue()
    >>> pool = WorkerPool(max_workers=3, pacing_interval=0.5)
    >>> not_started = await pool.run(units, channel)
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any

import structlog

log = structlog.get_logger(__name__)


@dataclass
class WorkUnit:
    """One independent piece of work.

    Attributes:
        id: Identifier used in logs and results
        func: Zero-argument async callable doing the work
        sprint: Sprint the unit belongs to, used for partitioning
    """

    id: str
    func: Callable[[], Awaitable[Any]]
    sprint: int | None = None


@dataclass
class UnitResult:
    """Outcome of one work unit.

    Attributes:
        unit: The unit that ran
        success: True if the callable returned without raising
        result: Return value of the callable
        error: Exception raised by the callable
        execution_time: Wall-clock seconds spent in the callable
    """

    unit: WorkUnit
    success: bool
    result: Any = None
    error: Exception | None = None
    execution_time: float = 0.0


class Pacer:
    """Minimum spacing between the remote calls of one worker.

    The worker waits for a slot before starting each unit; the unit's first
    paced call uses that slot and every further call waits its own turn.
    """

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._last: float | None = None
        self._granted = False

    async def acquire(self) -> None:
        """Wait until the next remote call may start."""
        if self._granted:
            self._granted = False
            return
        await self._wait_for_slot()

    async def grant(self) -> None:
        """Wait for a slot on behalf of the unit about to start."""
        self._granted = False
        await self._wait_for_slot()
        self._granted = True

    async def _wait_for_slot(self) -> None:
        loop = asyncio.get_running_loop()
        if self._last is not None and self.interval > 0:
            wait = self.interval - (loop.time() - self._last)
            if wait > 0:
                await asyncio.sleep(wait)
        self._last = loop.time()


_current_pacer: ContextVar[Pacer | None] = ContextVar("plansync_pacer", default=None)


async def pace() -> None:
    """Wait for the current worker's pacing slot. Outside a worker this returns at once."""
    pacer = _current_pacer.get()
    if pacer is not None:
        await pacer.acquire()


class WorkerPool:
    """Run work units with at most ``max_workers`` in flight.

    Attributes:
        max_workers: Number of concurrent workers
        pacing_interval: Minimum seconds between two remote calls on one worker
        name: Pool name bound to log events
    """

    def __init__(
        self,
        max_workers: int = 3,
        pacing_interval: float = 0.0,
        name: str = "pool",
        cancel_event: asyncio.Event | None = None,
        abort_event: asyncio.Event | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self.pacing_interval = pacing_interval
        self.name = name
        self.cancel_event = cancel_event
        self.abort_event = abort_event

    @property
    def stopping(self) -> bool:
        return any(event is not None and event.is_set() for event in (self.cancel_event, self.abort_event))

    async def run(self, units: Sequence[WorkUnit], channel: "asyncio.Queue[UnitResult]") -> list[WorkUnit]:
        """Execute units in queue order and publish each outcome to ``channel``.

        Args:
            units: Work in the order it should be started
            channel: Results channel shared with other pools

        Returns:
            Units that were never started because the pool was stopped
        """
        queue: asyncio.Queue[WorkUnit] = asyncio.Queue()
        for unit in units:
            queue.put_nowait(unit)

        workers = min(self.max_workers, len(units))
        log.info("worker_pool_started", pool=self.name, units=len(units), workers=workers)

        await asyncio.gather(*(self._worker(index, queue, channel) for index in range(workers)))

        not_started = []
        while not queue.empty():
            not_started.append(queue.get_nowait())

        log.info(
            "worker_pool_finished",
            pool=self.name,
            started=len(units) - len(not_started),
            not_started=len(not_started),
        )
        return not_started

    async def _worker(
        self,
        index: int,
        queue: "asyncio.Queue[WorkUnit]",
        channel: "asyncio.Queue[UnitResult]",
    ) -> None:
        # Each worker runs in its own task, so the pacer is private to it
        pacer = Pacer(self.pacing_interval)
        _current_pacer.set(pacer)
        structlog.contextvars.bind_contextvars(partition=self.name)

        while not self.stopping:
            if queue.empty():
                break
            await pacer.grant()
            if self.stopping:
                break

            try:
                unit = queue.get_nowait()
            except asyncio.QueueEmpty:
                break

            await channel.put(await self._execute(unit, index))

    async def _execute(self, unit: WorkUnit, worker: int) -> UnitResult:
        start_time = time.time()
        log.debug("executing_unit", pool=self.name, worker=worker, unit=unit.id)

        try:
            result = await unit.func()
        except Exception as e:
            log.error("unit_exception", pool=self.name, unit=unit.id, error=str(e), exc_info=True)
            return UnitResult(unit=unit, success=False, error=e, execution_time=time.time() - start_time)

        return UnitResult(unit=unit, success=True, result=result, execution_time=time.time() - start_time)


def partition_by_sprint(units: Sequence[WorkUnit], partitions: int) -> list[list[WorkUnit]]:
    """Split units into at most ``partitions`` contiguous sprint ranges.

    Units without a sprint go to the first range. Relative order of units is
    preserved inside each range, and empty ranges are dropped.
    """
    if partitions < 1:
        raise ValueError("partitions must be at least 1")

    sprints = sorted({unit.sprint for unit in units if unit.sprint is not None})
    if partitions == 1 or len(sprints) <= 1:
        return [list(units)] if units else []

    partitions = min(partitions, len(sprints))
    size, extra = divmod(len(sprints), partitions)
    range_of: dict[int, int] = {}
    position = 0
    for index in range(partitions):
        width = size + (1 if index < extra else 0)
        for sprint in sprints[position : position + width]:
            range_of[sprint] = index
        position += width

    ranges: list[list[WorkUnit]] = [[] for _ in range(partitions)]
    for unit in units:
        ranges[0 if unit.sprint is None else range_of[unit.sprint]].append(unit)
    return [chunk for chunk in ranges if chunk]


def split_budget(concurrency: int, pools: int) -> list[int]:
    """Divide a concurrency budget between pools, at least one worker each."""
    if pools < 1:
        return []
    size, extra = divmod(max(concurrency, pools), pools)
    return [size + (1 if index < extra else 0) for index in range(pools)]


async def run_partitioned(
    units: Sequence[WorkUnit],
    channel: "asyncio.Queue[UnitResult]",
    concurrency: int,
    partitions: int = 1,
    pacing_interval: float = 0.0,
    cancel_event: asyncio.Event | None = None,
    abort_event: asyncio.Event | None = None,
    name: str = "pool",
) -> list[WorkUnit]:
    """Run one pool per sprint range concurrently.

    The number of pools never exceeds ``concurrency``, so the total number of
    workers stays within the budget.

    Returns:
        Units never started, across all pools
    """
    ranges = partition_by_sprint(units, min(partitions, max(concurrency, 1)))
    if not ranges:
        return []

    budgets = split_budget(concurrency, len(ranges))
    pools = [
        WorkerPool(
            max_workers=budget,
            pacing_interval=pacing_interval,
            name=f"{name}-{index}" if len(ranges) > 1 else name,
            cancel_event=cancel_event,
            abort_event=abort_event,
        )
        for index, budget in enumerate(budgets)
    ]

    leftovers = await asyncio.gather(*(pool.run(chunk, channel) for pool, chunk in zip(pools, ranges, strict=True)))
    return [unit for chunk in leftovers for unit in chunk]
