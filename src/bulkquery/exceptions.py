"""
Bulkquery-specific runtime exceptions.
"""

from __future__ import annotations


class BulkQueryError(Exception):
    """
    Base class for every error raised by bulkquery.
    """


class TransportError(BulkQueryError):
    """
    A call to the remote service failed.

    Notes
    -----
    Covers network failures, authentication errors and malformed responses.
    Raised immediately when submitting jobs and batches; during polling it is
    logged and the affected job or batch is treated as not ready yet.
    """


class NotReady(BulkQueryError):
    """
    A batch result was requested before the batch reported completion.
    """

    def __init__(self, *, batch_id: str | None, state: str) -> None:
        super().__init__(f"Batch {batch_id} is not completed (state: {state})")
        self.batch_id = batch_id
        self.state = state
