"""The atomic module provides thread-safe atomic operations for integer values.

It implements an atomic integer counter class similar to Go's atomic.Int64
and a count-down latch built on top of the same locking discipline. The
backward visitor uses the latter to decide when a node has received all the
gradient contributions it is waiting for.
"""

# SPDX-License-Identifier: Apache-2.0

import threading


class Int:
    """
    A thread-safe integer class supporting atomic operations.

    This class provides atomic operations on integer values by using
    a lock to ensure thread-safety. It allows incrementing, adding,
    and reading values without race conditions in multithreaded environments.
    """

    def __init__(self, value: int = 0):
        """Initialize an atomic integer with the given value."""
        self.__value = value
        self.__lock = threading.Lock()

    def add(self, value: int) -> int:
        """
        Atomically add a value to the current value.

        Args:
            value (int): The value to add.

        Returns
        -------
            int: The new value after addition.
        """
        with self.__lock:
            self.__value += value
            return self.__value

    def load(self) -> int:
        """
        Atomically load and return the current value.

        Returns
        -------
            int: The current value.
        """
        with self.__lock:
            return self.__value

    def store(self, value: int) -> None:
        """Atomically replace the current value."""
        with self.__lock:
            self.__value = value


class Countdown:
    """
    A count-down latch that reports when it reaches zero.

    The latch starts at `count`. Each call to `arrive` atomically increments
    the number of arrivals and returns True for exactly one caller: the one
    whose arrival makes the arrivals equal to `count`. Arriving after that
    raises `ValueError`, which lets callers detect duplicate deliveries.

    Calling `reset` zeroes the arrivals without touching `count`, so the
    same latch can be reused across many rounds.
    """

    def __init__(self, count: int) -> None:
        if count < 0:
            raise ValueError(f"atomic: negative countdown: {count}")
        self.count = count
        self.__arrived = 0
        self.__lock = threading.Lock()

    def arrive(self) -> bool:
        """Register one arrival and return whether the latch just opened."""
        with self.__lock:
            if self.__arrived >= self.count:
                raise ValueError(f"atomic: countdown overflow: {self.__arrived + 1} > {self.count}")
            self.__arrived += 1
            return self.__arrived == self.count

    def arrived(self) -> int:
        """Return the number of arrivals in the current round."""
        with self.__lock:
            return self.__arrived

    def reset(self) -> None:
        """Zero the arrivals, keeping the expected count."""
        with self.__lock:
            self.__arrived = 0
