"""
Exception taxonomy for offline capture and reconciliation.

PersistenceError is fatal to the operation that triggered it (the cashier must
retry). SubmissionError and PartialSubmissionError are retryable on the next
drain and never cause a queued sale to be dropped.
"""
from typing import Any, List, Optional


class TillError(Exception):
    """Base class for till errors."""


class PersistenceError(TillError):
    """Local queue storage could not be read or written."""


class RemoteError(TillError):
    """A request against the remote data API did not succeed."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RemoteUnavailable(RemoteError):
    """Timeout or connection failure; the request may not have reached the remote."""


class RemoteRejected(RemoteError):
    """The remote answered with an error status."""


class SubmissionError(TillError):
    """A sale could not be applied to the remote system of record."""

    def __init__(self, message: str, step: str = "sale_insert", retryable: bool = True,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.step = step
        self.retryable = retryable
        self.cause = cause


class PartialSubmissionError(SubmissionError):
    """The sale rows were inserted but not every stock decrement was applied.

    Nothing already applied is rolled back; replaying the whole sale may insert
    the sale rows a second time.
    """

    def __init__(self, message: str, applied_lines: List[Any], pending_lines: List[Any],
                 cause: Optional[BaseException] = None):
        super().__init__(message, step="stock_decrement", retryable=True, cause=cause)
        self.applied_lines = list(applied_lines)
        self.pending_lines = list(pending_lines)


class EmptyCartError(ValueError):
    """Raised when completing a sale with nothing in the cart."""


class UnknownProductError(ValueError):
    """No catalog product matches the given id or barcode."""


class StockUnavailableError(ValueError):
    """Requested quantity exceeds the projected on-hand stock."""

    def __init__(self, message: str, product_id: Optional[str] = None, available: int = 0):
        super().__init__(message)
        self.product_id = product_id
        self.available = available
