"""Bounded-concurrency batch execution for AI and provider fan-out.

Steps use this to run many independent calls (summarising + embedding each new
message, modifying labels on many threads) without flooding the upstream API.
Every item runs to completion; failures are collected rather than aborting the
batch, and the caller decides whether partial failure is fatal.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class ItemStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class BatchItem(Generic[T, R]):
    """Outcome of one item: ``value`` on success, ``reason`` on failure."""

    key: str
    item: T
    status: ItemStatus
    value: R | None = None
    reason: BaseException | None = None


class BatchError(Exception):
    """Raised when at least one batch item failed.

    Attributes:
        key:      identifying key of the first failed item
        reason:   exception raised by the first failed item
        failures: every failed item, in input order
    """

    def __init__(self, key: str, reason: BaseException, failures: list[BatchItem[Any, Any]]):
        super().__init__(
            f"{len(failures)} batch item(s) failed; first failure for {key!r}: {reason}"
        )
        self.key = key
        self.reason = reason
        self.failures = failures


@dataclass(frozen=True)
class BatchReport(Generic[T, R]):
    """All item outcomes of a batch, in input order."""

    items: list[BatchItem[T, R]]

    @property
    def succeeded(self) -> list[BatchItem[T, R]]:
        return [i for i in self.items if i.status is ItemStatus.SUCCESS]

    @property
    def failed(self) -> list[BatchItem[T, R]]:
        return [i for i in self.items if i.status is ItemStatus.FAILURE]

    def values(self) -> list[R]:
        """Values of the successful items, skipping ``None`` results."""
        return [i.value for i in self.succeeded if i.value is not None]

    def raise_for_failures(self) -> None:
        """Raise BatchError naming the first failure, if any item failed."""
        failures = self.failed
        if failures:
            first = failures[0]
            reason = first.reason
            if reason is None:
                reason = RuntimeError(f"batch item {first.key!r} failed without an exception")
            raise BatchError(first.key, reason, failures)


async def run_bounded(
    items: Sequence[T],
    operation: Callable[[T], Awaitable[R]],
    *,
    concurrency: int,
    key: Callable[[T], str] = str,
    chunk_size: int | None = None,
    chunk_delay: float = 0.0,
) -> BatchReport[T, R]:
    """Run ``operation`` on every item with at most ``concurrency`` in flight.

    With ``chunk_size`` set, items are processed one chunk at a time and
    ``chunk_delay`` seconds are slept between chunks (not after the last one)
    to stay under upstream rate limits.

    Cancellation of the surrounding task still propagates; only ordinary
    exceptions are captured as item failures.
    """
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1, got {concurrency}")

    semaphore = asyncio.Semaphore(concurrency)

    async def _run_one(item: T) -> BatchItem[T, R]:
        item_key = key(item)
        async with semaphore:
            try:
                value = await operation(item)
            except Exception as exc:  # noqa: BLE001
                logger.debug("Batch item %s failed: %s", item_key, exc)
                return BatchItem(item_key, item, ItemStatus.FAILURE, reason=exc)
        return BatchItem(item_key, item, ItemStatus.SUCCESS, value=value)

    size = chunk_size or len(items) or 1
    results: list[BatchItem[T, R]] = []
    for start in range(0, len(items), size):
        chunk = items[start : start + size]
        results.extend(await asyncio.gather(*(_run_one(i) for i in chunk)))
        if chunk_delay and start + size < len(items):
            await asyncio.sleep(chunk_delay)

    report = BatchReport(results)
    if report.failed:
        logger.warning(
            "Batch finished with failures: %d/%d succeeded",
            len(report.succeeded),
            len(results),
        )
    return report
