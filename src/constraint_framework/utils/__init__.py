"""Utility exports for concurrency helpers."""

from constraint_framework.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    KeyedLocks,
    run_with_timeout,
)

__all__ = [
    "BoundedSemaphore",
    "CancellationToken",
    "KeyedLocks",
    "run_with_timeout",
]
