"""Bounded-concurrency batch execution with per-item results.

Items are independent: they run concurrently up to ``max_concurrency`` and
complete in any order, but the report lists results in input order. A failing
item becomes an error result; it never discards the other items' results.

Cancellation cancels the in-flight items and propagates CancelledError.
Results already delivered through ``on_result`` stay with the caller.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Iterator, List, Optional, Sequence, TypeVar

from kyc_secure.schemas.encrypted_record import FieldType
from kyc_secure.services.crypto.errors import BatchPartialFailure

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 8

T = TypeVar("T")


@dataclass(frozen=True)
class FieldItem:
    """A PII string to encrypt."""

    field_type: FieldType
    value: str


@dataclass(frozen=True)
class DocumentItem:
    """A document to encrypt."""

    field_type: FieldType
    data: bytes
    file_name: str = ""


@dataclass
class BatchResult(Generic[T]):
    """Outcome of one batch item: either ``value`` or ``error`` is set."""

    index: int
    item: Any
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchReport(Generic[T]):
    """Per-item results of a batch, in input order."""

    results: List[BatchResult[T]] = field(default_factory=list)

    def __iter__(self) -> Iterator[BatchResult[T]]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, index: int) -> BatchResult[T]:
        return self.results[index]

    @property
    def succeeded(self) -> List[BatchResult[T]]:
        return [r for r in self.results if r.ok]

    @property
    def failed(self) -> List[BatchResult[T]]:
        return [r for r in self.results if not r.ok]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed

    def raise_for_failures(self) -> None:
        """Raise BatchPartialFailure if any item failed."""
        failed = self.failed
        if failed:
            raise BatchPartialFailure(failed, len(self.results))


ResultCallback = Callable[[BatchResult], None]


class BatchCoordinator:
    """Runs an async worker over many items with a concurrency cap."""

    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
        self.max_concurrency = max_concurrency

    async def run(
        self,
        items: Sequence[Any],
        worker: Callable[[Any], Awaitable[T]],
        on_result: Optional[ResultCallback] = None,
    ) -> BatchReport[T]:
        """Run ``worker`` on every item.

        Args:
            items: Independent inputs.
            worker: Coroutine function applied to each item.
            on_result: Called with each BatchResult as soon as it completes.

        Returns:
            BatchReport with one result per item, in input order.
        """
        items = list(items)
        if not items:
            return BatchReport()

        semaphore = asyncio.Semaphore(self.max_concurrency)
        results: List[Optional[BatchResult[T]]] = [None] * len(items)

        async def run_one(index: int, item: Any) -> None:
            async with semaphore:
                try:
                    result = BatchResult(index=index, item=item, value=await worker(item))
                except Exception as e:
                    logger.warning(f"Batch item {index} failed: {type(e).__name__}")
                    result = BatchResult(index=index, item=item, error=e)
            results[index] = result
            if on_result is not None:
                try:
                    on_result(result)
                except Exception as e:
                    # Result is already recorded in the report
                    logger.warning(f"on_result callback failed for item {index}: {type(e).__name__}: {e}")

        logger.debug(
            f"Batch starting: {len(items)} items, concurrency {min(self.max_concurrency, len(items))}"
        )
        tasks = [asyncio.ensure_future(run_one(i, item)) for i, item in enumerate(items)]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            done = sum(1 for r in results if r is not None)
            logger.info(f"Batch cancelled after {done}/{len(items)} items")
            raise

        report = BatchReport(results=[r for r in results if r is not None])
        logger.info(
            f"Batch finished: {len(report.succeeded)} succeeded, {len(report.failed)} failed"
        )
        return report
