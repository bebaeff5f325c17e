"""Unit tests for the batch coordinator."""

import asyncio

import pytest

from kyc_secure.services.batch import BatchCoordinator, BatchReport, BatchResult
from kyc_secure.services.crypto.errors import BatchPartialFailure, EncryptionError


async def double(value: int) -> int:
    await asyncio.sleep(0)
    return value * 2


class TestBatchCoordinator:
    """Per-item results and partial failure."""

    @pytest.mark.asyncio
    async def test_results_in_input_order(self):
        report = await BatchCoordinator(3).run([1, 2, 3, 4, 5], double)

        assert [r.value for r in report] == [2, 4, 6, 8, 10]
        assert [r.index for r in report] == [0, 1, 2, 3, 4]
        assert report.all_succeeded

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self):
        async def worker(value: int) -> int:
            if value == 3:
                raise EncryptionError("item 3 broke")
            return value

        report = await BatchCoordinator().run([1, 2, 3, 4, 5], worker)

        assert len(report) == 5
        assert len(report.succeeded) == 4
        assert [r.item for r in report.failed] == [3]
        assert isinstance(report[2].error, EncryptionError)
        assert report[2].value is None

    @pytest.mark.asyncio
    async def test_concurrency_cap(self):
        running = 0
        peak = 0

        async def worker(value: int) -> int:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            return value

        await BatchCoordinator(max_concurrency=3).run(list(range(12)), worker)
        assert peak == 3

    @pytest.mark.asyncio
    async def test_on_result_sees_every_item(self):
        seen = []
        await BatchCoordinator().run([1, 2, 3], double, on_result=seen.append)
        assert sorted(r.value for r in seen) == [2, 4, 6]

    @pytest.mark.asyncio
    async def test_on_result_failure_keeps_batch(self):
        seen = []

        def observer(result: BatchResult) -> None:
            if result.index == 0:
                raise RuntimeError("observer broke")
            seen.append(result.index)

        report = await BatchCoordinator(max_concurrency=2).run(
            [1, 2, 3, 4, 5], double, on_result=observer
        )

        assert len(report) == 5
        assert report.all_succeeded
        assert [r.value for r in report] == [2, 4, 6, 8, 10]
        assert sorted(seen) == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_empty_batch(self):
        report = await BatchCoordinator().run([], double)
        assert len(report) == 0
        assert report.all_succeeded

    @pytest.mark.asyncio
    async def test_cancellation_keeps_completed_results(self):
        gate = asyncio.Event()
        seen = []

        async def worker(value: int) -> int:
            if value >= 2:
                await gate.wait()
            return value

        task = asyncio.create_task(
            BatchCoordinator(max_concurrency=8).run([0, 1, 2, 3], worker, on_result=seen.append)
        )
        while len(seen) < 2:
            await asyncio.sleep(0)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert sorted(r.value for r in seen) == [0, 1]

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            BatchCoordinator(max_concurrency=0)


class TestBatchReport:
    def test_raise_for_failures(self):
        error = EncryptionError("bad")
        report = BatchReport(
            results=[
                BatchResult(index=0, item="a", value=1),
                BatchResult(index=1, item="b", error=error),
            ]
        )

        with pytest.raises(BatchPartialFailure) as exc_info:
            report.raise_for_failures()

        assert exc_info.value.total == 2
        assert [r.item for r in exc_info.value.failed] == ["b"]
        assert "1 of 2" in str(exc_info.value)

    def test_no_failures_does_not_raise(self):
        report = BatchReport(results=[BatchResult(index=0, item="a", value=1)])
        report.raise_for_failures()
