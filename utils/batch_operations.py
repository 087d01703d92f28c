"""
Chunked bulk operations with bounded concurrency and partial-failure tolerance.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Iterable, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 50
DEFAULT_CONCURRENCY = 1


@dataclass
class BatchItemFailure(Generic[T]):
    """An item that could not be processed, with the error it raised."""
    item: T
    error: BaseException

    @property
    def error_type(self) -> str:
        return type(self.error).__name__

    def to_dict(self) -> dict:
        return {"error": str(self.error), "error_type": self.error_type}


@dataclass
class BatchResult(Generic[T]):
    """Outcome of a batch run. Both lists keep input order."""
    succeeded: List[T] = field(default_factory=list)
    failed: List[BatchItemFailure] = field(default_factory=list)
    results: List[Any] = field(default_factory=list)

    @property
    def partial_failure(self) -> bool:
        return bool(self.failed) and bool(self.succeeded)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    def summary(self) -> dict:
        return {
            "total": self.total,
            "succeeded": len(self.succeeded),
            "failed": len(self.failed),
            "partial_failure": self.partial_failure,
        }


def isolate_always(error: BaseException) -> bool:
    return True


def chunked(items: Iterable[T], size: int) -> List[List[T]]:
    """Split items into consecutive lists of at most `size`."""
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    items = list(items)
    return [items[i:i + size] for i in range(0, len(items), size)]


async def _gather_bounded(
    chunks: Sequence[List[T]],
    worker: Callable[[List[T]], Awaitable[BatchResult]],
    concurrency: int,
) -> BatchResult:
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def guarded(chunk: List[T]) -> BatchResult:
        async with semaphore:
            return await worker(chunk)

    partials = await asyncio.gather(*(guarded(chunk) for chunk in chunks))

    merged: BatchResult = BatchResult()
    for partial in partials:
        merged.succeeded.extend(partial.succeeded)
        merged.failed.extend(partial.failed)
        merged.results.extend(partial.results)
    return merged


async def run_batch(
    items: Iterable[T],
    operation: Callable[[List[T]], Awaitable[Any]],
    batch_size: Optional[int] = None,
    concurrency: Optional[int] = None,
    isolate_on: Callable[[BaseException], bool] = isolate_always,
) -> BatchResult:
    """Run `operation` once per chunk.

    A failing chunk is retried item by item so only the bad records end up in
    `failed`. When `isolate_on` rejects the chunk's error (for example a write
    that may already have committed) the whole chunk is reported failed instead.
    Partial failure is reported, never raised.
    """
    chunks = chunked(items, batch_size or DEFAULT_BATCH_SIZE)
    total_chunks = len(chunks)

    async def run_chunk(chunk: List[T]) -> BatchResult:
        result: BatchResult = BatchResult()
        try:
            result.results.append(await operation(chunk))
            result.succeeded.extend(chunk)
            return result
        except Exception as e:
            if len(chunk) == 1 or not isolate_on(e):
                result.failed.extend(BatchItemFailure(item, e) for item in chunk)
                return result
            logger.warning(
                f"⚠️ [BATCH] Chunk of {len(chunk)} failed ({type(e).__name__}: {e}), isolating items"
            )

        for item in chunk:
            try:
                result.results.append(await operation([item]))
                result.succeeded.append(item)
            except Exception as e:
                result.failed.append(BatchItemFailure(item, e))
        return result

    merged = await _gather_bounded(chunks, run_chunk, concurrency or DEFAULT_CONCURRENCY)
    _log_outcome(merged, total_chunks)
    return merged


async def run_batch_items(
    items: Iterable[T],
    operation: Callable[[T], Awaitable[Any]],
    batch_size: Optional[int] = None,
    concurrency: Optional[int] = None,
) -> BatchResult:
    """Run `operation` per item; each chunk's items run concurrently."""
    chunks = chunked(items, batch_size or DEFAULT_BATCH_SIZE)

    async def run_chunk(chunk: List[T]) -> BatchResult:
        outcomes = await asyncio.gather(*(operation(item) for item in chunk), return_exceptions=True)
        result: BatchResult = BatchResult()
        for item, outcome in zip(chunk, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                result.failed.append(BatchItemFailure(item, outcome))
            else:
                result.succeeded.append(item)
                result.results.append(outcome)
        return result

    merged = await _gather_bounded(chunks, run_chunk, concurrency or DEFAULT_CONCURRENCY)
    _log_outcome(merged, len(chunks))
    return merged


def _log_outcome(result: BatchResult, total_chunks: int) -> None:
    if result.failed:
        logger.warning(
            f"📊 [BATCH] {len(result.succeeded)} succeeded, {len(result.failed)} failed "
            f"across {total_chunks} chunks"
        )
    else:
        logger.info(f"✅ [BATCH] {len(result.succeeded)} items processed in {total_chunks} chunks")
