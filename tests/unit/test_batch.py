# tests/unit/test_batch.py
"""
Unit tests for the adaptive batch aggregator
"""

import asyncio

import pytest

from workflow_engine.batch import BatchAggregator, BatchConfig
from workflow_engine.cancellation import CancellationToken
from workflow_engine.errors import RunCancelledError, TransientError
from workflow_engine.models import Task
from workflow_engine.registry import ExecutorRegistry
from workflow_engine.runtime.context import ContextView


class EmbeddingExecutor:
    """Batch executor that records the size of every call"""

    def __init__(self, fail_on=(), raise_batch=False):
        self.batch_sizes = []
        self.fail_on = set(fail_on)
        self.raise_batch = raise_batch

    async def execute(self, task, view):
        return f"vec:{task.input['text']}"

    async def execute_batch(self, tasks, views):
        self.batch_sizes.append(len(tasks))
        if self.raise_batch:
            raise TransientError("embedding service unavailable")
        results = []
        for task in tasks:
            if task.input["text"] in self.fail_on:
                results.append(ValueError(f"cannot embed {task.input['text']}"))
            else:
                results.append(f"vec:{task.input['text']}")
        return results


def make_tasks(*texts):
    return [Task.create("embed", {"text": text}) for text in texts]


class TestBatchAggregator:
    """Test batching triggers, fan-out and size adaptation"""

    @pytest.fixture
    def executor(self):
        return EmbeddingExecutor(fail_on={"bad"})

    @pytest.fixture
    def registry(self, executor):
        registry = ExecutorRegistry()
        registry.register("embed", executor)
        return registry

    @pytest.mark.asyncio
    async def test_full_batch_dispatches_immediately(self, registry, executor):
        aggregator = BatchAggregator(registry, BatchConfig(initial_size=3, window_s=10.0))

        results = await asyncio.wait_for(
            asyncio.gather(*[aggregator.submit(task, ContextView({})) for task in make_tasks("a", "b", "c")]),
            timeout=1.0,
        )

        assert results == ["vec:a", "vec:b", "vec:c"]
        assert executor.batch_sizes == [3]

    @pytest.mark.asyncio
    async def test_window_flushes_partial_batch(self, registry, executor):
        aggregator = BatchAggregator(registry, BatchConfig(initial_size=8, window_s=0.01))

        results = await asyncio.gather(*[aggregator.submit(task) for task in make_tasks("a", "b")])

        assert results == ["vec:a", "vec:b"]
        assert executor.batch_sizes == [2]
        assert aggregator.metrics("embed").total_batches == 1

    @pytest.mark.asyncio
    async def test_per_task_errors_fan_out_by_position(self, registry):
        aggregator = BatchAggregator(registry, BatchConfig(initial_size=3, window_s=10.0))

        results = await asyncio.gather(
            *[aggregator.submit(task) for task in make_tasks("a", "bad", "c")],
            return_exceptions=True,
        )

        assert results[0] == "vec:a"
        assert isinstance(results[1], ValueError)
        assert results[2] == "vec:c"

    @pytest.mark.asyncio
    async def test_batch_error_reaches_every_caller(self):
        registry = ExecutorRegistry()
        registry.register("embed", EmbeddingExecutor(raise_batch=True))
        aggregator = BatchAggregator(registry, BatchConfig(initial_size=2, window_s=10.0))

        results = await asyncio.gather(
            *[aggregator.submit(task) for task in make_tasks("a", "b")],
            return_exceptions=True,
        )

        assert all(isinstance(result, TransientError) for result in results)
        assert aggregator.metrics("embed").total_errors == 2

    @pytest.mark.asyncio
    async def test_size_grows_while_healthy(self, registry):
        aggregator = BatchAggregator(registry, BatchConfig(initial_size=2, max_size=3, window_s=10.0))

        await asyncio.gather(*[aggregator.submit(task) for task in make_tasks("a", "b")])
        assert aggregator.batch_size("embed") == 3

        await asyncio.gather(*[aggregator.submit(task) for task in make_tasks("c", "d", "e")])
        assert aggregator.batch_size("embed") == 3
        assert aggregator.metrics("embed").size_history == [3, 3]

    @pytest.mark.asyncio
    async def test_size_halves_on_errors(self, registry):
        aggregator = BatchAggregator(registry, BatchConfig(initial_size=4, min_size=1, window_s=10.0))

        await asyncio.gather(
            *[aggregator.submit(task) for task in make_tasks("a", "bad", "bad", "d")],
            return_exceptions=True,
        )

        assert aggregator.batch_size("embed") == 2

    @pytest.mark.asyncio
    async def test_size_halves_on_latency(self, registry):
        ticks = iter([0.0, 5.0])
        aggregator = BatchAggregator(
            registry,
            BatchConfig(initial_size=2, target_latency_s=1.0, window_s=10.0),
            clock=lambda: next(ticks),
        )

        await asyncio.gather(*[aggregator.submit(task) for task in make_tasks("a", "b")])

        assert aggregator.batch_size("embed") == 1

    @pytest.mark.asyncio
    async def test_flush_dispatches_pending(self, registry, executor):
        aggregator = BatchAggregator(registry, BatchConfig(initial_size=8, window_s=10.0))

        pending = asyncio.ensure_future(aggregator.submit(make_tasks("a")[0]))
        await asyncio.sleep(0)
        await aggregator.flush()

        assert await pending == "vec:a"
        assert executor.batch_sizes == [1]

    @pytest.mark.asyncio
    async def test_cancelled_token_rejects_submit(self, registry):
        aggregator = BatchAggregator(registry)
        token = CancellationToken()
        token.cancel()

        with pytest.raises(RunCancelledError):
            await aggregator.submit(make_tasks("a")[0], token=token)

    @pytest.mark.asyncio
    async def test_cancel_while_queued_withdraws_task(self, registry, executor):
        aggregator = BatchAggregator(registry, BatchConfig(initial_size=8, window_s=10.0))
        token = CancellationToken()

        pending = asyncio.ensure_future(aggregator.submit(make_tasks("a")[0], token=token))
        await asyncio.sleep(0)
        token.cancel("operator abort")

        with pytest.raises(RunCancelledError):
            await pending
        await aggregator.flush()
        assert executor.batch_sizes == []

    @pytest.mark.asyncio
    async def test_cancel_after_dispatch_keeps_result(self):
        started = asyncio.Event()
        release = asyncio.Event()

        class SlowEmbedding(EmbeddingExecutor):
            async def execute_batch(self, tasks, views):
                started.set()
                await release.wait()
                return await super().execute_batch(tasks, views)

        slow = SlowEmbedding()
        registry = ExecutorRegistry()
        registry.register("embed", slow)
        aggregator = BatchAggregator(registry, BatchConfig(initial_size=1, window_s=10.0))
        token = CancellationToken()

        pending = asyncio.ensure_future(aggregator.submit(make_tasks("a")[0], token=token))
        await started.wait()
        token.cancel("operator abort")
        release.set()

        assert await pending == "vec:a"
        assert slow.batch_sizes == [1]

    def test_invalid_config(self):
        with pytest.raises(ValueError):
            BatchConfig(min_size=4, max_size=2)
