from __future__ import annotations

import numpy as np
from dataclasses import dataclass

WINDOW_CAPACITY = 121

@dataclass(frozen=True, slots=True)
class WindowPoint:
    price: float
    observed_at: int  # epoch ms

class RecentWindow:
    """
    Fixed-size circular buffer of recent prices for one (asset, currency) key.
    Arrays:
      observed_at[int64], price[float64]
    Appends overwrite the oldest slot once full; reads are most-recent-first.
    """
    __slots__ = ("capacity", "size", "head", "observed_at", "price")
    def __init__(self, capacity: int = WINDOW_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be >= 1")
        self.capacity = int(capacity)
        self.size = 0
        self.head = 0  # next write index
        self.observed_at = np.empty(self.capacity, dtype=np.int64)
        self.price = np.empty(self.capacity, dtype=np.float64)

    def __len__(self) -> int:
        return self.size

    def append(self, price: float, observed_at: int) -> None:
        i = self.head
        self.observed_at[i] = observed_at
        self.price[i] = price
        self.head = (i + 1) % self.capacity
        if self.size < self.capacity:
            self.size += 1

    def latest(self) -> WindowPoint | None:
        if self.size == 0:
            return None
        idx = (self.head - 1) % self.capacity
        return WindowPoint(float(self.price[idx]), int(self.observed_at[idx]))

    def view(self, n: int | None = None) -> list[WindowPoint]:
        """
        Up to n most recent points, newest first. n=None -> everything retained.
        """
        if self.size == 0:
            return []
        n = self.size if n is None else min(int(n), self.size)
        if n <= 0:
            return []
        idx = (self.head - 1 - np.arange(n)) % self.capacity
        return [WindowPoint(float(p), int(t)) for p, t in zip(self.price[idx], self.observed_at[idx])]
