"""Serialized FIFO operation queue.

Every storage call runs through one queue per database handle: at most one
operation is in flight, callers wait in submission order, admission fails fast
when the queue is full, and each caller gives up after a fixed deadline.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Optional, Set

from heliactyl_db.core.exceptions import OperationTimeoutError, QueueFullError
from heliactyl_db.core.logging import get_logger, log_execution_time

logger = get_logger(__name__)

Operation = Callable[[], Awaitable[Any]]

STATS_RESET_THRESHOLD = 1_000_000


async def _invoke(operation: Operation) -> Any:
    return await operation()


@dataclass
class QueueStats:
    """Cumulative operation timing.

    Once the count passes the reset threshold only the latest sample is kept,
    so the average drifts toward recent behaviour instead of overflowing.
    """

    total_operation_time: float = 0.0  # milliseconds
    operation_count: int = 0

    def record(self, operation_time: float) -> None:
        self.total_operation_time += operation_time
        self.operation_count += 1
        if self.operation_count > STATS_RESET_THRESHOLD:
            self.total_operation_time = operation_time
            self.operation_count = 1

    @property
    def average_operation_time(self) -> float:
        if self.operation_count == 0:
            return 0.0
        return self.total_operation_time / self.operation_count


@dataclass
class QueuedOperation:
    operation: Operation
    future: asyncio.Future
    label: str
    deadline: float
    timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)


class OperationQueue:
    """Runs submitted operations one at a time in FIFO order."""

    def __init__(self, max_size: int = 10000, timeout: float = 30.0):
        self.max_size = max_size
        self.timeout = timeout
        self.stats = QueueStats()
        self._pending: Deque[QueuedOperation] = deque()
        self._processing = False
        self._worker: Optional[asyncio.Task] = None
        self._abandoned: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    def __len__(self) -> int:
        return len(self._pending)

    @property
    def is_processing(self) -> bool:
        return self._processing

    def submit(self, operation: Operation, label: str = "operation") -> asyncio.Future:
        """Admit an operation and return the future its caller awaits.

        Raises QueueFullError immediately, without running anything, when the
        queue already holds ``max_size`` waiting operations.
        """
        if len(self._pending) >= self.max_size:
            logger.warning("Database queue is full", queue_length=len(self._pending), label=label)
            raise QueueFullError(self.max_size)

        loop = asyncio.get_running_loop()
        item = QueuedOperation(
            operation=operation,
            future=loop.create_future(),
            label=label,
            deadline=loop.time() + self.timeout,
        )
        item.timer = loop.call_later(self.timeout, self._expire, item)
        self._pending.append(item)
        self._idle.clear()
        self._schedule()
        return item.future

    async def run(self, operation: Operation, label: str = "operation") -> Any:
        return await self.submit(operation, label)

    async def join(self) -> None:
        """Wait until every admitted operation has settled."""
        await self._idle.wait()

    def _expire(self, item: QueuedOperation) -> None:
        if item.future.done():
            return
        item.future.set_exception(OperationTimeoutError(item.label, self.timeout))
        logger.warning(
            "Database operation timed out",
            label=item.label,
            timeout=self.timeout,
            queue_length=len(self._pending)
        )

    def _schedule(self) -> None:
        if self._processing or not self._pending:
            return
        self._processing = True
        self._worker = asyncio.get_running_loop().create_task(self._process_next())

    async def _process_next(self) -> None:
        loop = asyncio.get_running_loop()
        item = self._pending.popleft()
        try:
            if item.future.done():
                # Caller timed out or was cancelled before the call started
                logger.debug("Skipping abandoned operation", label=item.label)
                return

            start = time.perf_counter()
            task = loop.create_task(_invoke(item.operation))
            done, _ = await asyncio.wait({task}, timeout=max(item.deadline - loop.time(), 0))

            if task not in done:
                # The backend call cannot be aborted; let it finish unobserved
                self._expire(item)
                self._abandoned.add(task)
                task.add_done_callback(lambda t, s=start, i=item: self._finish_abandoned(t, s, i))
                return

            end = time.perf_counter()
            self.stats.record((end - start) * 1000)
            self._settle(item, task, start, end)
        finally:
            if item.timer is not None:
                item.timer.cancel()
            self._processing = False
            if self._pending:
                loop.call_soon(self._schedule)
            else:
                self._idle.set()

    def _settle(self, item: QueuedOperation, task: asyncio.Task, start: float, end: float) -> None:
        if task.cancelled():
            if not item.future.done():
                item.future.cancel()
            return

        error = task.exception()
        if error is not None:
            logger.error(
                "Database operation failed",
                label=item.label,
                error=str(error),
                queue_length=len(self._pending)
            )
            if not item.future.done():
                item.future.set_exception(error)
            return

        log_execution_time(logger, item.label, start, end, queue_length=len(self._pending))
        if not item.future.done():
            item.future.set_result(task.result())

    def _finish_abandoned(self, task: asyncio.Task, start: float, item: QueuedOperation) -> None:
        self._abandoned.discard(task)
        self.stats.record((time.perf_counter() - start) * 1000)
        if task.cancelled():
            return
        error = task.exception()
        logger.warning(
            "Timed out operation finished in background",
            label=item.label,
            succeeded=error is None,
            error=str(error) if error else None
        )
