"""Drive a per-file review function across a list of files.

Two modes:

- ``review_with_timeout`` — sequential, in input order, with a soft
  wall-clock budget checked *between* files.  Once the budget is spent the
  remaining files are returned as unprocessed without being attempted.
- ``review_in_batches`` — fixed-size concurrent groups with a pause between
  groups, for callers without a hard ceiling.

In both modes one file's failure is captured in its ``ReviewResult`` and
never stops the other files.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from diffwarden.core.diff_parser import FileChange

logger = logging.getLogger(__name__)

ReviewFn = Callable[[FileChange], Awaitable[str]]

DEFAULT_TIME_BUDGET_SECONDS = 280.0
DEFAULT_BATCH_SIZE = 3
DEFAULT_BATCH_DELAY_SECONDS = 1.0


@dataclass(frozen=True)
class ReviewResult:
    path: str
    index: int                  # 1-based among files submitted for review
    elapsed: float              # seconds
    review: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchOutcome:
    processed: list[ReviewResult] = field(default_factory=list)
    unprocessed: list[FileChange] = field(default_factory=list)
    total_time: float = 0.0


async def _review_one(
    change: FileChange,
    index: int,
    review_fn: ReviewFn,
    clock: Callable[[], float],
) -> ReviewResult:
    started = clock()
    try:
        review = await review_fn(change)
    except Exception as exc:
        logger.error(
            "File review failed",
            extra={"file": change.path, "index": index, "error": str(exc)},
        )
        return ReviewResult(
            path=change.path, index=index, elapsed=clock() - started, error=str(exc)
        )
    elapsed = clock() - started
    logger.info("File reviewed in %.1fs", elapsed, extra={"file": change.path, "index": index})
    return ReviewResult(path=change.path, index=index, elapsed=elapsed, review=review)


async def review_with_timeout(
    files: Sequence[FileChange],
    review_fn: ReviewFn,
    time_budget: float = DEFAULT_TIME_BUDGET_SECONDS,
    clock: Callable[[], float] = time.monotonic,
) -> BatchOutcome:
    """Review files one at a time until done or the budget is spent.

    Invariant: ``len(processed) + len(unprocessed) == len(files)``.
    A call already in progress is never interrupted, so a single slow file
    can overrun the budget.
    """
    start = clock()
    outcome = BatchOutcome()

    for i, change in enumerate(files):
        elapsed = clock() - start
        if elapsed >= time_budget:
            logger.warning(
                "Approaching timeout, stopping at file %d/%d",
                i,
                len(files),
                extra={
                    "elapsed": round(elapsed, 3),
                    "budget": time_budget,
                    "files_processed": i,
                    "files_remaining": len(files) - i,
                },
            )
            outcome.unprocessed.extend(files[i:])
            break
        outcome.processed.append(await _review_one(change, i + 1, review_fn, clock))

    outcome.total_time = clock() - start
    return outcome


async def review_in_batches(
    files: Sequence[FileChange],
    review_fn: ReviewFn,
    batch_size: int = DEFAULT_BATCH_SIZE,
    delay: float = DEFAULT_BATCH_DELAY_SECONDS,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> BatchOutcome:
    """Review files in concurrent groups of ``batch_size``; results keep input order."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")

    start = clock()
    outcome = BatchOutcome()
    total_batches = (len(files) + batch_size - 1) // batch_size

    for offset in range(0, len(files), batch_size):
        batch = files[offset:offset + batch_size]
        batch_number = offset // batch_size + 1
        logger.info(
            "Processing batch %d/%d",
            batch_number,
            total_batches,
            extra={"batch_size": len(batch), "total_files": len(files)},
        )
        results = await asyncio.gather(
            *(
                _review_one(change, offset + i + 1, review_fn, clock)
                for i, change in enumerate(batch)
            )
        )
        outcome.processed.extend(results)

        if offset + batch_size < len(files):
            await sleep(delay)

    outcome.total_time = clock() - start
    return outcome
