"""Exception types raised by leaklab.

Errors produced by caller-supplied factories are never wrapped; they reach
the caller unchanged.
"""


class LeakLabError(Exception):
    """Base class for leaklab errors."""


class InvalidCapacityError(LeakLabError, ValueError):
    """A cache was constructed with a capacity below one."""

    def __init__(self, capacity):
        super().__init__(f"capacity must be an integer >= 1 or UNBOUNDED, got {capacity!r}")
        self.capacity = capacity


class UnknownDemoError(LeakLabError, KeyError):
    """No demonstration is registered under the requested name."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"unknown demo: {self.name}"
