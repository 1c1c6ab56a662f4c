"""
Bounded fan-out/fan-in used by the RESEARCH phase.

Every item runs through the handler under a shared semaphore. The call
returns only once all items have settled, with one result per item in
the order the items were given. A handler exception marks that item
failed and nothing else; cancelling the awaiting task cancels every
item still running and re-raises.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

ItemHandler = Callable[["BatchItem[T]"], Awaitable[R]]
CompletionCallback = Callable[["BatchResult[R]"], Awaitable[None]]


class BatchStatus(str, Enum):
	COMPLETED = "completed"
	PARTIAL_FAILURE = "partial_failure"
	FAILED = "failed"


@dataclass
class BatchItem(Generic[T]):
	id: str
	data: T


@dataclass
class BatchResult(Generic[R]):
	"""Outcome of one item. `error` is the exception text, or its type name when the text is empty."""
	item_id: str
	success: bool
	result: Optional[R] = None
	error: Optional[str] = None
	exception: Optional[BaseException] = field(default=None, repr=False)

	@classmethod
	def failure(cls, item_id: str, exc: BaseException) -> "BatchResult[R]":
		return cls(item_id=item_id, success=False, error=str(exc) or type(exc).__name__, exception=exc)


@dataclass
class BatchSummary(Generic[R]):
	status: BatchStatus
	total: int
	succeeded: int
	failed: int
	results: list[BatchResult[R]] = field(default_factory=list)

	@classmethod
	def from_results(cls, results: list[BatchResult[R]]) -> "BatchSummary[R]":
		ok = sum(1 for r in results if r.success)
		bad = len(results) - ok
		if bad == 0:
			status = BatchStatus.COMPLETED
		elif ok == 0:
			status = BatchStatus.FAILED
		else:
			status = BatchStatus.PARTIAL_FAILURE
		return cls(status=status, total=len(results), succeeded=ok, failed=bad, results=results)

	@property
	def success_rate(self) -> float:
		return self.succeeded / self.total if self.total else 0.0


class BatchProcessor(Generic[T, R]):
	"""
	Runs a handler over a list of items with at most `max_concurrency` in flight.

	Usage:
		processor = BatchProcessor(max_concurrency=4)
		summary = await processor.execute(items, research_one)
		packages = [r.result for r in summary.results if r.success]
	"""

	def __init__(self, max_concurrency: int = 5):
		if max_concurrency < 1:
			raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")
		self.max_concurrency = max_concurrency

	async def execute(
		self,
		items: list[BatchItem[T]],
		handler: ItemHandler,
		on_item_complete: Optional[CompletionCallback] = None,
	) -> BatchSummary[R]:
		"""
		Process all items and wait for every one of them.

		Args:
			items: Work items; result order follows this list
			handler: Coroutine run once per item
			on_item_complete: Awaited after each item settles; its errors are logged only

		Returns:
			BatchSummary with one BatchResult per item
		"""
		if not items:
			return BatchSummary.from_results([])

		slots = asyncio.Semaphore(self.max_concurrency)
		tasks = [
			asyncio.create_task(self._run_one(slots, item, handler, on_item_complete))
			for item in items
		]
		try:
			settled = await asyncio.gather(*tasks)
		except asyncio.CancelledError:
			for task in tasks:
				task.cancel()
			await asyncio.gather(*tasks, return_exceptions=True)
			raise

		summary = BatchSummary.from_results(list(settled))
		logger.debug(f"Batch of {summary.total} settled: {summary.succeeded} ok, {summary.failed} failed")
		return summary

	async def _run_one(
		self,
		slots: asyncio.Semaphore,
		item: BatchItem[T],
		handler: ItemHandler,
		on_item_complete: Optional[CompletionCallback],
	) -> BatchResult[R]:
		async with slots:
			try:
				outcome: BatchResult[R] = BatchResult(item_id=item.id, success=True, result=await handler(item))
			except Exception as e:
				logger.warning(f"Item {item.id} failed: {e}")
				outcome = BatchResult.failure(item.id, e)

		if on_item_complete is not None:
			try:
				await on_item_complete(outcome)
			except Exception as e:
				logger.error(f"Completion callback for {item.id} raised: {e}")
		return outcome
