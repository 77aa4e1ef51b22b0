from __future__ import annotations
from collections import deque
from typing import Callable, Deque, Generic, Iterator, List, Optional, TypeVar

T = TypeVar("T")

CHART_CAPACITY = 60
MAX_CAPACITY = 10_000


class HistoryBuffer(Generic[T]):
    """
    Fixed-capacity FIFO of samples, oldest first.
    Not synchronized: the owning component serializes access.
    """

    def __init__(self, capacity: int = CHART_CAPACITY):
        if capacity < 1:
            raise ValueError(f"history capacity must be >= 1, got {capacity}")
        self._items: Deque[T] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._items.maxlen or 0

    @property
    def is_empty(self) -> bool:
        return not self._items

    @property
    def latest(self) -> Optional[T]:
        return self._items[-1] if self._items else None

    def push(self, sample: T) -> None:
        self._items.append(sample)

    def snapshot_slice(self, n: Optional[int] = None) -> List[T]:
        """The `n` most recent samples (all when n is None), in chronological order."""
        items = list(self._items)
        if n is None:
            return items
        if n <= 0:
            return []
        return items[-n:]

    def max(self, key: Optional[Callable[[T], float]] = None) -> Optional[T]:
        if not self._items:
            return None
        if key is None:
            return max(self._items)
        return max(self._items, key=key)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._items))
