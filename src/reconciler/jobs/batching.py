"""Settle-all batch execution."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Generic, Iterable, Iterator, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class Settled(Generic[T, R]):
    """Outcome of one item in a settle-all batch."""

    item: T
    value: Optional[R] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def settle_all(
    items: Iterable[T],
    func: Callable[[T], R],
    max_workers: Optional[int] = None,
) -> list[Settled[T, R]]:
    """Run ``func`` on every item concurrently and wait for all of them.

    A failing item never cancels its siblings; its exception is captured in
    the returned Settled entry. Results keep the input order.

    Args:
        items: Items to process
        func: Callable applied to each item
        max_workers: Thread count, defaults to one per item

    Returns:
        list[Settled]: One entry per input item
    """
    items = list(items)
    if not items:
        return []

    with ThreadPoolExecutor(max_workers=max_workers or len(items)) as executor:
        futures = [executor.submit(func, item) for item in items]
        settled = []
        for item, future in zip(items, futures):
            try:
                settled.append(Settled(item=item, value=future.result()))
            except Exception as e:
                settled.append(Settled(item=item, error=e))
    return settled
