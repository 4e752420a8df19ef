"""Bounded worker pools.

Three entry points, all built on ThreadPoolExecutor:

  - ``run_bounded(fn, items, ...)``  — run *fn* over every item with at most
    ``max_workers`` in flight.  Per-item exceptions go to ``on_error`` and
    never stop the sibling items.
  - ``call_with_timeout(fn, ...)``   — run one blocking call with a deadline;
    a stalled call raises ``TimeoutError`` and frees the caller.
  - ``BackgroundWorker``             — fire-and-forget queue for the watch
    loop (one per application, owned by the AppContext).
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def _log_error(item, exc: BaseException) -> None:
    logger.error(f"Unit {item!r} failed: {exc}")


def run_bounded(
    fn: Callable[[T], R],
    items: Iterable[T],
    *,
    max_workers: int = 20,
    on_error: Optional[Callable[[T, BaseException], None]] = None,
    thread_name_prefix: str = "pipeline",
) -> list[Optional[R]]:
    """Apply *fn* to every item with bounded parallelism.

    Returns results in input order; a failed item yields ``None``.
    """
    on_error = on_error or _log_error
    items = list(items)
    if not items:
        return []

    def _safe(item: T) -> Optional[R]:
        try:
            return fn(item)
        except Exception as e:
            try:
                on_error(item, e)
            except Exception as cb_err:
                logger.error(f"Error callback raised for {item!r}: {cb_err}")
            return None

    with ThreadPoolExecutor(
        max_workers=max(1, min(max_workers, len(items))),
        thread_name_prefix=thread_name_prefix,
    ) as pool:
        return list(pool.map(_safe, items))


def call_with_timeout(fn: Callable[..., R], *args, timeout: Optional[float] = None, **kwargs) -> R:
    """Run ``fn(*args, **kwargs)``; raise ``TimeoutError`` after *timeout* seconds.

    The stalled call keeps its own thread until it returns, but the
    caller (and its pool slot) is released immediately.
    """
    if not timeout or timeout <= 0:
        return fn(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="timed-call")
    try:
        future = executor.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            name = getattr(fn, "__name__", repr(fn))
            raise TimeoutError(f"{name} timed out after {timeout:.0f}s") from None
    finally:
        executor.shutdown(wait=False)


class BackgroundWorker:
    """Fire-and-forget task runner with a bounded pool."""

    def __init__(self, max_workers: int = 4):
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="bg-worker")

    def submit(self, fn: Callable, *args, **kwargs) -> None:
        """Queue *fn*; exceptions are logged, never raised to the caller."""
        def _safe():
            try:
                fn(*args, **kwargs)
            except Exception as e:
                logger.error(f"Background task error: {e}")

        self._pool.submit(_safe)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=not wait)
        logger.info("Background worker pool shut down")
