"""
Batch Aggregator - groups pending tasks of one capability into a single
executor call.

A window opens when the first task for a capability arrives and closes when
either the current batch size is reached or the time window elapses,
whichever comes first. The batch is dispatched as one ``execute_batch`` call
and results are fanned back out to the individual callers by position.

Batch size adapts per capability: halved when a batch's error rate or latency
exceeds its target, grown by one while both stay within target, and always
kept within ``[min_size, max_size]``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from .cancellation import CancellationToken
from .engine_logging import get_logger
from .models import Task
from .registry import ExecutorRegistry

logger = get_logger(__name__)


@dataclass(frozen=True)
class BatchConfig:
    """Configuration for the batch aggregator"""
    min_size: int = 1
    max_size: int = 32
    initial_size: int = 8
    window_s: float = 0.05
    target_error_rate: float = 0.2
    target_latency_s: float = 2.0

    def __post_init__(self):
        if not 1 <= self.min_size <= self.max_size:
            raise ValueError("batch sizes must satisfy 1 <= min_size <= max_size")
        if self.window_s < 0:
            raise ValueError("window_s must be >= 0")


@dataclass(eq=False)
class BatchRequest:
    task: Task
    view: Any
    future: asyncio.Future


@dataclass
class BatchMetrics:
    """Per-capability counters for observability"""
    total_submitted: int = 0
    total_batches: int = 0
    total_errors: int = 0
    peak_batch_size: int = 0
    last_latency_s: float = 0.0
    size_history: List[int] = field(default_factory=list)


@dataclass
class _CapabilityQueue:
    batch_size: int
    pending: List[BatchRequest] = field(default_factory=list)
    timer: Optional[asyncio.TimerHandle] = None
    metrics: BatchMetrics = field(default_factory=BatchMetrics)


class BatchAggregator:
    """Collects homogeneous tasks and dispatches them in adaptive batches."""

    def __init__(
        self,
        registry: ExecutorRegistry,
        config: Optional[BatchConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.config = config or BatchConfig()
        self._clock = clock
        self._queues: Dict[str, _CapabilityQueue] = {}
        self._inflight: Set[asyncio.Task] = set()

    def _queue(self, capability: str) -> _CapabilityQueue:
        queue = self._queues.get(capability)
        if queue is None:
            initial = min(max(self.config.initial_size, self.config.min_size), self.config.max_size)
            queue = _CapabilityQueue(batch_size=initial)
            self._queues[capability] = queue
        return queue

    def batch_size(self, capability: str) -> int:
        return self._queue(capability).batch_size

    def metrics(self, capability: str) -> BatchMetrics:
        return self._queue(capability).metrics

    async def submit(self, task: Task, view: Any = None, token: Optional[CancellationToken] = None) -> Any:
        """
        Queue a task and wait for its individual result.

        Raises whatever the executor reported for this task's position, or the
        batch-level error if the whole call failed.
        """
        if token is not None:
            token.raise_if_cancelled()

        loop = asyncio.get_running_loop()
        queue = self._queue(task.capability)
        future = loop.create_future()
        request = BatchRequest(task=task, view=view, future=future)
        queue.pending.append(request)
        queue.metrics.total_submitted += 1

        if len(queue.pending) >= queue.batch_size:
            self._flush(task.capability)
        elif queue.timer is None:
            queue.timer = loop.call_later(self.config.window_s, self._flush, task.capability)

        if token is None:
            return await future

        cancel_wait = asyncio.ensure_future(token.wait())
        try:
            await asyncio.wait({future, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()

        if not future.done() and request in queue.pending:
            # still waiting for its window: withdraw it
            queue.pending.remove(request)
            if not queue.pending and queue.timer is not None:
                queue.timer.cancel()
                queue.timer = None
            future.cancel()
            logger.debug(f"Withdrew queued {task.capability} task {task.step_id}: run cancelled")
            token.raise_if_cancelled()

        # already dispatched: an executor call in flight runs to completion
        return await future

    def _flush(self, capability: str) -> None:
        queue = self._queue(capability)
        if queue.timer is not None:
            queue.timer.cancel()
            queue.timer = None

        while queue.pending:
            requests = queue.pending[:queue.batch_size]
            del queue.pending[:queue.batch_size]
            dispatch = asyncio.get_running_loop().create_task(self._dispatch(capability, requests))
            self._inflight.add(dispatch)
            dispatch.add_done_callback(self._inflight.discard)

    async def flush(self, capability: Optional[str] = None) -> None:
        """Dispatch pending tasks immediately and wait for the batches to finish."""
        capabilities = [capability] if capability else list(self._queues)
        for name in capabilities:
            if self._queue(name).pending:
                self._flush(name)
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def close(self) -> None:
        await self.flush()

    async def _dispatch(self, capability: str, requests: List[BatchRequest]) -> None:
        queue = self._queue(capability)
        size = len(requests)
        started = self._clock()
        errors = 0

        logger.debug(f"Dispatching batch of {size} {capability} tasks")
        try:
            results = await self.registry.dispatch_batch(
                capability,
                [request.task for request in requests],
                [request.view for request in requests],
            )
        except Exception as batch_error:
            errors = size
            for request in requests:
                if not request.future.done():
                    request.future.set_exception(batch_error)
        else:
            for request, result in zip(requests, results):
                if request.future.done():
                    continue
                if isinstance(result, BaseException):
                    errors += 1
                    request.future.set_exception(result)
                else:
                    request.future.set_result(result)

        latency = self._clock() - started
        metrics = queue.metrics
        metrics.total_batches += 1
        metrics.total_errors += errors
        metrics.peak_batch_size = max(metrics.peak_batch_size, size)
        metrics.last_latency_s = latency

        self._adapt(capability, queue, errors / size, latency)

    def _adapt(self, capability: str, queue: _CapabilityQueue, error_rate: float, latency: float) -> None:
        previous = queue.batch_size
        if error_rate > self.config.target_error_rate or latency > self.config.target_latency_s:
            queue.batch_size = max(self.config.min_size, previous // 2)
        else:
            queue.batch_size = min(self.config.max_size, previous + 1)

        queue.metrics.size_history.append(queue.batch_size)
        if queue.batch_size != previous:
            logger.debug(
                f"Batch size for {capability} {previous} -> {queue.batch_size} "
                f"(error_rate={error_rate:.2f}, latency={latency:.3f}s)"
            )
