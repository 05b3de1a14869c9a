"""Table store exception types.

Raised by every TableStore implementation so callers can branch on the
failure kind instead of inspecting status codes.
"""

from typing import Optional


class StoreError(Exception):
    """Base exception for all table store errors."""

    def __init__(self, message: str, table: str = ""):
        self.table = table
        super().__init__(message)


class NotFoundError(StoreError):
    """Entity does not exist (404)."""

    pass


class AlreadyExistsError(StoreError):
    """Entity with the same partition and row key already exists (409 on add)."""

    pass


class ConflictError(StoreError):
    """Version token is stale (412). Another writer got there first."""

    def __init__(
        self,
        message: str,
        table: str = "",
        expected_etag: Optional[str] = None,
        actual_etag: Optional[str] = None,
    ):
        self.expected_etag = expected_etag
        self.actual_etag = actual_etag
        super().__init__(message, table)


class InvalidBatchError(StoreError):
    """Batch rejected before submission (mixed partitions, too many actions)."""

    pass


class TransactionError(StoreError):
    """One action of a batch failed. The whole batch was rolled back."""

    def __init__(
        self,
        message: str,
        table: str = "",
        failed_index: int = -1,
        cause: Optional[StoreError] = None,
    ):
        self.failed_index = failed_index
        self.cause = cause
        super().__init__(message, table)


class StoreUnavailableError(StoreError):
    """The backing database failed (locked, disconnected, bad statement)."""

    pass
