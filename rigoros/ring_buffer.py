"""Fixed-capacity circular buffer."""

from __future__ import annotations

from typing import Generic, TypeVar

T = TypeVar("T")

_OUT_OF_BOUND = "Out of bound access"


class RingBuffer(Generic[T]):
    """Circular buffer of fixed capacity, pre-filled with an initial value."""

    def __init__(self, capacity: int, initial: T) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._buffer: list[T] = [initial] * capacity
        self._first = 0
        self._last = 0
        self._empty = True

    def __len__(self) -> int:
        if self._empty:
            return 0
        if self._first < self._last:
            return self._last - self._first
        return self._last + len(self._buffer) - self._first

    def capacity(self) -> int:
        return len(self._buffer)

    def _wrap_index(self, index: int) -> int | None:
        if index < 0 or index >= len(self):
            return None
        position = self._first + index
        if position >= len(self._buffer):
            position -= len(self._buffer)
        return position

    def _advance(self, position: int) -> int:
        position += 1
        return 0 if position >= len(self._buffer) else position

    def get(self, index: int) -> T | None:
        position = self._wrap_index(index)
        return None if position is None else self._buffer[position]

    def __getitem__(self, index: int) -> T:
        position = self._wrap_index(index)
        if position is None:
            raise IndexError(_OUT_OF_BOUND)
        return self._buffer[position]

    def __setitem__(self, index: int, value: T) -> None:
        position = self._wrap_index(index)
        if position is None:
            raise IndexError(_OUT_OF_BOUND)
        self._buffer[position] = value

    def try_peek(self) -> T | None:
        return None if self._empty else self._buffer[self._first]

    def peek(self) -> T:
        if self._empty:
            raise IndexError(_OUT_OF_BOUND)
        return self._buffer[self._first]

    def try_push(self, data: T) -> bool:
        """Append data; return False if the buffer is full."""
        if not self._empty and self._first == self._last:
            return False
        self._buffer[self._last] = data
        self._last = self._advance(self._last)
        self._empty = False
        return True

    def push(self, data: T) -> None:
        if not self.try_push(data):
            raise IndexError(_OUT_OF_BOUND)

    def push_force(self, data: T) -> bool:
        """Append data, dropping the oldest item if full; return whether one was dropped."""
        forced = False
        self._buffer[self._last] = data
        if not self._empty and self._first == self._last:
            forced = True
            self._first = self._advance(self._first)
        self._last = self._advance(self._last)
        self._empty = False
        return forced

    def insert_force(self, pos: int, data: T) -> bool:
        """Insert data at pos, dropping the oldest item if full; return whether one was dropped."""
        length = len(self)
        if pos < 0 or pos > length:
            raise IndexError(_OUT_OF_BOUND)

        if self._empty or pos == length:
            return self.push_force(data)

        if self._first != self._last:
            self.push(data)
            for i in range(length - 1, pos - 1, -1):
                self[i + 1] = self[i]
            self[pos] = data
            return False

        for i in range(pos):
            self[i] = self[i + 1]
        self[pos] = data
        return True

    def try_pop(self) -> T | None:
        if self._empty:
            return None
        value = self._buffer[self._first]
        self._first = self._advance(self._first)
        if self._first == self._last:
            self._empty = True
        return value

    def pop(self) -> T:
        if self._empty:
            raise IndexError(_OUT_OF_BOUND)
        return self.try_pop()