from __future__ import annotations

import typing as t
from pathlib import Path

import structlog

from bulkquery.connection import Connection
from bulkquery.exceptions import NotReady
from bulkquery.models import BatchStatus
from bulkquery.status import BatchState
from bulkquery.utils.files import write_chunks

log = structlog.get_logger(__name__)


class Batch:
    """
    One sub-query submitted as an independent unit of work within a job.

    Parameters
    ----------
    connection : Connection
        Transport used for every remote call.
    job_id : str
        Remote identifier of the owning job.
    target : str
        Queried object name, e.g. ``Opportunity``.
    query_text : str
        Sub-query, already restricted to ``[start, stop)``.
    start, stop : typing.Any
        Half-open range covered by this batch.
    filename_prefix : str, optional
        Prefix prepended to the result filename.
    """

    def __init__(
        self,
        *,
        connection: Connection,
        job_id: str,
        target: str,
        query_text: str,
        start: t.Any,
        stop: t.Any,
        filename_prefix: str = "",
    ) -> None:
        self._connection = connection
        self.job_id = job_id
        self.target = target
        self.query_text = query_text
        self.start = start
        self.stop = stop
        self.filename_prefix = filename_prefix
        self.batch_id: str | None = None
        self.state = BatchState.CREATED
        self.filename: str | None = None

    @property
    def downloaded(self) -> bool:
        return self.filename is not None

    def create(self) -> str:
        """Submit the sub-query and store the remote batch id."""
        self.batch_id = self._connection.submit_batch(self.job_id, self.query_text)
        self.state = BatchState.QUEUED
        log.debug(event="Batch created", job_id=self.job_id, batch_id=self.batch_id)
        return self.batch_id

    def check_status(self) -> BatchStatus:
        if self.downloaded:
            return BatchStatus(finished=True, failed=False)
        self.state = self._connection.get_batch_status(self.job_id, t.cast(str, self.batch_id))
        return BatchStatus(
            finished=self.state == BatchState.COMPLETED,
            failed=self.state.is_failed,
        )

    def get_filename(self) -> str:
        return f"{self.filename_prefix}{self.target}_{self.job_id}_{self.batch_id}.csv"

    def get_result(self, directory: str | Path) -> str:
        """
        Download the batch payload.

        Parameters
        ----------
        directory : str | Path
            Directory the result file is written into.

        Returns
        -------
        str
            Path of the written file. Repeated calls return the same path
            without downloading again.

        Raises
        ------
        NotReady
            If the batch did not report completion on its last status check.
        """
        if self.filename is not None:
            return self.filename
        if self.state != BatchState.COMPLETED:
            raise NotReady(batch_id=self.batch_id, state=self.state.value)

        path = write_chunks(
            Path(directory) / self.get_filename(),
            self._connection.fetch_batch_payload(self.job_id, t.cast(str, self.batch_id)),
        )
        self.filename = path.as_posix()
        log.info(event="Batch result downloaded", batch_id=self.batch_id, filename=self.filename)
        return self.filename

    def to_log(self) -> dict[str, t.Any]:
        return {
            "batch_id": self.batch_id,
            "job_id": self.job_id,
            "state": self.state.value,
            "start": str(self.start),
            "stop": str(self.stop),
            "filename": self.filename,
        }

    def __repr__(self) -> str:
        return f"<Batch {self.batch_id} [{self.start}, {self.stop}) {self.state.value}>"
