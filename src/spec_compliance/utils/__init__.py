"""Utility exports for concurrency helpers."""

from spec_compliance.utils.concurrency import (
    CancellationError,
    CancellationToken,
    WorkerPool,
    run_with_timeout,
)

__all__ = [
    "CancellationError",
    "CancellationToken",
    "WorkerPool",
    "run_with_timeout",
]
