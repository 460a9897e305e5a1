"""
CNC Utilities Module - Core utility functions for CNC operations.

This module provides numeric conversion helpers, serial port discovery,
version comparison and the fixed-capacity ring buffer used for telemetry
and console retention.
"""

import math
import threading
from typing import Any, Generic, Iterable, List, Optional, TypeVar

import serial.tools.list_ports

T = TypeVar("T")


def digitize_version(version: str) -> int:
    """
    Convert version string to integer for comparison.

    Trailing letters in a component are ignored, so "1.1h" compares as 1.1.

    Args:
        version: Version string like "1.2.3"

    Returns:
        Integer representation of version
    """
    if not version:
        return 0

    parts = []
    for component in version.split(".")[:3]:
        digits = ""
        for char in component:
            if not char.isdigit():
                break
            digits += char
        parts.append(int(digits) if digits else 0)

    while len(parts) < 3:
        parts.append(0)
    return parts[0] * 1000000 + parts[1] * 1000 + parts[2]


def safe_float(value: Any, default: Optional[float] = 0.0) -> Optional[float]:
    """
    Safely convert a value to a finite float.

    Args:
        value: Value to convert
        default: Default value if conversion fails

    Returns:
        Float value or default
    """
    try:
        result = float(value)
    except (ValueError, TypeError):
        return default
    if math.isnan(result) or math.isinf(result):
        return default
    return result


def safe_int(value: Any, default: Optional[int] = 0) -> Optional[int]:
    """
    Safely convert a value to integer.

    Args:
        value: Value to convert
        default: Default value if conversion fails

    Returns:
        Integer value or default
    """
    try:
        return int(value)
    except (ValueError, TypeError, OverflowError):
        return default


def clamp(value: float, min_val: float, max_val: float) -> float:
    """
    Clamp value between minimum and maximum.

    Args:
        value: Value to clamp
        min_val: Minimum value
        max_val: Maximum value

    Returns:
        Clamped value
    """
    return max(min_val, min(value, max_val))


def find_serial_ports() -> List[str]:
    """
    Find available serial ports.

    Returns:
        List of available serial port names
    """
    return sorted(port.device for port in serial.tools.list_ports.comports())


def format_number(value: float) -> str:
    """Format a float so that float(result) == value."""
    return repr(float(value))


class RingBuffer(Generic[T]):
    """
    Fixed-capacity circular buffer.

    Storage is preallocated; once full, each append overwrites the oldest
    slot. Reads return copies in arrival order, so callers on other threads
    never see the internal storage.
    """

    def __init__(self, capacity: int):
        """
        Initialize ring buffer.

        Args:
            capacity: Maximum number of retained items

        Raises:
            ValueError: If capacity is not positive
        """
        if capacity <= 0:
            raise ValueError(f"Ring buffer capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._items: List[Optional[T]] = [None] * capacity
        self._start = 0
        self._count = 0
        self._appended = 0
        self._lock = threading.Lock()

    def append(self, item: T) -> None:
        """Append an item, evicting the oldest one when full."""
        with self._lock:
            end = (self._start + self._count) % self.capacity
            self._items[end] = item
            if self._count < self.capacity:
                self._count += 1
            else:
                self._start = (self._start + 1) % self.capacity
            self._appended += 1

    def extend(self, items: Iterable[T]) -> None:
        for item in items:
            self.append(item)

    def snapshot(self) -> List[T]:
        """
        Copy out the retained items.

        Returns:
            Items from oldest to newest
        """
        with self._lock:
            return [self._items[(self._start + i) % self.capacity] for i in range(self._count)]

    def tail(self, count: int) -> List[T]:
        """
        Copy out the most recent items.

        Args:
            count: Maximum number of items to return

        Returns:
            Up to count items from oldest to newest
        """
        if count <= 0:
            return []
        items = self.snapshot()
        return items[-count:]

    def latest(self) -> Optional[T]:
        """Return the newest item or None when empty."""
        with self._lock:
            if self._count == 0:
                return None
            return self._items[(self._start + self._count - 1) % self.capacity]

    def clear(self) -> None:
        with self._lock:
            self._items = [None] * self.capacity
            self._start = 0
            self._count = 0

    @property
    def total_appended(self) -> int:
        """Number of items appended since creation, evicted ones included."""
        return self._appended

    def is_full(self) -> bool:
        return self._count == self.capacity

    def __len__(self) -> int:
        return self._count

    def __iter__(self):
        return iter(self.snapshot())
