from collections import deque
from typing import List

DEFAULT_CAPACITY = 300  # 5 min at 1s intervals


class History:
    """Rolling series of samples for sparklines. Oldest values fall off first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        self.capacity = max(1, int(capacity))
        self._data: deque = deque(maxlen=self.capacity)

    def push(self, value: float) -> None:
        self._data.append(float(value))

    def __len__(self) -> int:
        return len(self._data)

    def values(self) -> List[float]:
        return list(self._data)

    def recent(self, count: int) -> List[float]:
        if count <= 0:
            return []
        if count >= len(self._data):
            return list(self._data)
        return list(self._data)[-count:]

    def last(self) -> float:
        return self._data[-1] if self._data else 0.0

    def max(self) -> float:
        return max(self._data, default=0.0)

    def as_int_list(self, count: int) -> List[int]:
        return [int(v) for v in self.recent(count)]
