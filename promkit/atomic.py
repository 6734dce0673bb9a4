"""Atomic numeric cells.

AtomicLong and AtomicDouble hold a single 64-bit value that many threads
may update concurrently. Every mutation is expressed as a compare-and-swap
on the raw value: doubles are stored as their IEEE-754 bit pattern, so the
exchange compares bits rather than floats and NaN values swap correctly.

CPython offers no hardware CAS, so each cell guards its exchange with a
private lock held only for the compare and the store. Arithmetic happens
outside the lock in a retry loop.

Example:
    >>> cell = AtomicDouble()
    >>> cell.add(1.5)
    1.5
    >>> cell.get()
    1.5
"""

from __future__ import annotations

import struct
import threading


_DOUBLE = struct.Struct("<d")
_LONG = struct.Struct("<q")


def double_to_bits(value: float) -> int:
    """Reinterpret a double as a signed 64-bit integer."""
    return _LONG.unpack(_DOUBLE.pack(value))[0]


def bits_to_double(bits: int) -> float:
    """Reinterpret a signed 64-bit integer as a double."""
    return _DOUBLE.unpack(_LONG.pack(bits))[0]


class AtomicLong:
    """A 64-bit integer cell with atomic add and compare-and-swap."""

    __slots__ = ("_value", "_lock")

    def __init__(self, value: int = 0) -> None:
        self._value = int(value)
        self._lock = threading.Lock()

    def get(self) -> int:
        """Read the current value."""
        return self._value

    def set(self, value: int) -> None:
        """Overwrite the current value."""
        with self._lock:
            self._value = int(value)

    def compare_exchange(self, expected: int, value: int) -> int:
        """Store ``value`` if the cell still holds ``expected``.

        Returns:
            The value held before the call. The exchange succeeded when it
            equals ``expected``.
        """
        with self._lock:
            current = self._value
            if current == expected:
                self._value = value
            return current

    def add(self, delta: int) -> int:
        """Add ``delta`` and return the new value."""
        while True:
            current = self._value
            updated = current + delta
            if self.compare_exchange(current, updated) == current:
                return updated

    def __repr__(self) -> str:
        return f"AtomicLong({self._value})"


class AtomicDouble:
    """A double cell with atomic add, compare-and-swap and monotonic moves."""

    __slots__ = ("_bits", "_lock")

    def __init__(self, value: float = 0.0) -> None:
        self._bits = double_to_bits(float(value))
        self._lock = threading.Lock()

    def get(self) -> float:
        """Read the current value."""
        return bits_to_double(self._bits)

    def set(self, value: float) -> None:
        """Overwrite the current value."""
        bits = double_to_bits(float(value))
        with self._lock:
            self._bits = bits

    def _compare_exchange_bits(self, expected: int, bits: int) -> int:
        with self._lock:
            current = self._bits
            if current == expected:
                self._bits = bits
            return current

    def compare_exchange(self, expected: float, value: float) -> float:
        """Store ``value`` if the cell still holds exactly ``expected``.

        The comparison is on bit patterns, so ``-0.0`` and ``0.0`` differ
        and a stored NaN matches the same NaN.

        Returns:
            The value held before the call.
        """
        previous = self._compare_exchange_bits(
            double_to_bits(float(expected)),
            double_to_bits(float(value)),
        )
        return bits_to_double(previous)

    def add(self, delta: float) -> float:
        """Add ``delta`` and return the new value."""
        while True:
            current = self._bits
            updated = double_to_bits(bits_to_double(current) + delta)
            if self._compare_exchange_bits(current, updated) == current:
                return bits_to_double(updated)

    def inc_to(self, target: float) -> float:
        """Raise the value to ``target`` unless it is already at or above it.

        Returns:
            The value after the call.
        """
        target_bits = double_to_bits(float(target))
        while True:
            current = self._bits
            if bits_to_double(current) >= target:
                return bits_to_double(current)
            if self._compare_exchange_bits(current, target_bits) == current:
                return float(target)

    def dec_to(self, target: float) -> float:
        """Lower the value to ``target`` unless it is already at or below it.

        Returns:
            The value after the call.
        """
        target_bits = double_to_bits(float(target))
        while True:
            current = self._bits
            if bits_to_double(current) <= target:
                return bits_to_double(current)
            if self._compare_exchange_bits(current, target_bits) == current:
                return float(target)

    def __repr__(self) -> str:
        return f"AtomicDouble({self.get()!r})"
