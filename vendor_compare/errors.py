from __future__ import annotations


class ComparisonError(Exception):
    """Base error for the comparison engine."""


class StoreError(ComparisonError):
    """The persistent store could not read or write a snapshot."""

    def __init__(self, operation: str, key: str, cause: Exception | None = None):
        self.operation = operation
        self.key = key
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Store {operation} failed for {key!r}{detail}")


class RetryLimitExceeded(ComparisonError):
    """A cell or battlecard row has used up its retry budget."""

    def __init__(self, target: str, retry_count: int, max_retries: int):
        self.target = target
        self.retry_count = retry_count
        self.max_retries = max_retries
        super().__init__(
            f"{target} already retried {retry_count} times (max {max_retries}); reset to retry again"
        )


class UnknownTargetError(ComparisonError):
    """A criterion, vendor or battlecard row id is not part of the run."""
