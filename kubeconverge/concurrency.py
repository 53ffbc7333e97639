"""Bounded-parallelism work distribution.

:func:`distribute` splits its input into at most ``max_workers`` contiguous
chunks of ``ceil(n / max_workers)`` items and runs one thread per non-empty
chunk. Exceptions are collected per input index instead of aborting sibling
workers; once every worker has joined, the exception raised by the item
with the lowest index is re-raised.
"""

from __future__ import annotations

import math
import threading
from collections.abc import Callable, Sequence
from typing import TypeVar

from kubeconverge.observability.logging import get_logger

_logger = get_logger("concurrency")

MAX_WORKERS: int = 8

T = TypeVar("T")


def chunk(items: Sequence[T], max_workers: int = MAX_WORKERS) -> list[list[T]]:
    """Partition *items* into contiguous chunks, at most *max_workers* of them."""
    if max_workers < 1:
        raise ValueError("max_workers must be at least 1")
    if not items:
        return []
    size = math.ceil(len(items) / max_workers)
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def distribute(
    items: Sequence[T],
    fn: Callable[[T], object] | None,
    max_workers: int = MAX_WORKERS,
) -> None:
    """Call *fn* once per item across at most *max_workers* threads.

    Blocks until every worker finishes.

    Raises:
        ValueError: if *fn* is None or *max_workers* is below 1.
        Exception: the first error (by input index) raised by *fn*, after
            all items have been attempted.
    """
    if fn is None:
        raise ValueError("distribute requires a callable")
    if max_workers < 1:
        raise ValueError("max_workers must be at least 1")
    if not items:
        return

    errors: dict[int, BaseException] = {}
    errors_lock = threading.Lock()
    size = math.ceil(len(items) / max_workers)

    def _work(start: int, batch: list[T]) -> None:
        for offset, item in enumerate(batch):
            try:
                fn(item)
            except Exception as exc:  # noqa: BLE001
                with errors_lock:
                    errors[start + offset] = exc

    threads = [
        threading.Thread(target=_work, args=(start, batch), daemon=True)
        for start, batch in zip(range(0, len(items), size), chunk(items, max_workers), strict=True)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    if errors:
        first = min(errors)
        if len(errors) > 1:
            _logger.debug("distribute_multiple_errors", count=len(errors), first_index=first)
        raise errors[first]


def with_delayed_exceptions(
    items: Sequence[T],
    fn: Callable[[T], object],
    *catch: type[Exception],
) -> None:
    """Call *fn* on every item sequentially, then re-raise the first error.

    Only exceptions matching *catch* are delayed (all exceptions when none
    are given); anything else propagates immediately.
    """
    kinds: tuple[type[Exception], ...] = catch or (Exception,)
    first: Exception | None = None
    for item in items:
        try:
            fn(item)
        except kinds as exc:
            if first is None:
                first = exc
    if first is not None:
        raise first
