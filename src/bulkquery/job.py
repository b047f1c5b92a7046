"""
Remote job holding the batches of one query target.

A job splits a query over a time range into contiguous sub-ranges, submits
each as a batch, and tracks how many of them the remote side completed.
"""

from __future__ import annotations

import re
import time
import typing as t
from datetime import datetime, timedelta, timezone
from pathlib import Path

import structlog

from bulkquery.batch import Batch
from bulkquery.connection import Connection
from bulkquery.exceptions import TransportError
from bulkquery.models import (
    DEFAULT_BATCH_COUNT,
    DEFAULT_DATE_FIELD,
    DEFAULT_JOB_TIME_LIMIT,
    JobStatus,
    QueryResults,
)
from bulkquery.status import JobState

log = structlog.get_logger(__name__)

_WHERE_PATTERN = re.compile(r"\bWHERE\b", flags=re.IGNORECASE)


def split_range(start: t.Any, stop: t.Any, count: int) -> list[tuple[t.Any, t.Any]]:
    """
    Split ``[start, stop)`` into ``count`` contiguous, equal-width intervals.

    Parameters
    ----------
    start, stop : typing.Any
        Range bounds. Datetimes, integers and floats are supported.
    count : int
        Number of intervals.

    Returns
    -------
    list[tuple[typing.Any, typing.Any]]
        ``count`` half-open intervals in ascending order. Each interval starts
        where the previous one stops and the last one stops at ``stop``
        exactly, absorbing any rounding remainder.
    """
    if count < 1:
        raise ValueError("count must be at least 1")
    if stop < start:
        raise ValueError("stop must not be earlier than start")

    span = stop - start
    step = span // count if isinstance(span, (int, timedelta)) else span / count
    bounds = [start + step * i for i in range(count)] + [stop]
    return list(zip(bounds[:-1], bounds[1:]))


def format_literal(value: t.Any) -> str:
    """Render a range bound as a query literal."""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        return f"{value:%Y-%m-%dT%H:%M:%S}.{value.microsecond // 1000:03d}Z"
    return str(value)


def extend_query(query_text: str, date_field: str, start: t.Any, stop: t.Any) -> str:
    """
    Restrict a query to the half-open range ``[start, stop)`` of ``date_field``.
    """
    range_filter = (
        f"{date_field} >= {format_literal(start)} AND {date_field} < {format_literal(stop)}"
    )
    keyword = "AND" if _WHERE_PATTERN.search(query_text) else "WHERE"
    return f"{query_text} {keyword} {range_filter}"


class Job:
    """
    Remote job owning an ordered list of batches for one target.

    Parameters
    ----------
    target : str
        Queried object name.
    connection : Connection
        Transport used for every remote call.
    batch_count : int, optional
        Number of batches a range is split into.
    job_time_limit : float, optional
        Grace period in seconds after closing before the job can be judged
        stalled.
    date_field : str, optional
        Timestamp column the range filter applies to.
    filename_prefix : str, optional
        Prefix for the batch result filenames.
    clock : typing.Callable[[], float], optional
        Monotonic clock timing the grace period.
    """

    def __init__(
        self,
        *,
        target: str,
        connection: Connection,
        batch_count: int = DEFAULT_BATCH_COUNT,
        job_time_limit: float = DEFAULT_JOB_TIME_LIMIT,
        date_field: str = DEFAULT_DATE_FIELD,
        filename_prefix: str = "",
        clock: t.Callable[[], float] = time.monotonic,
    ) -> None:
        self.target = target
        self._connection = connection
        self.batch_count = batch_count
        self.job_time_limit = job_time_limit
        self.date_field = date_field
        self.filename_prefix = filename_prefix
        self._clock = clock

        self.job_id: str | None = None
        self.batches: list[Batch] = []
        self.completed_count = 0
        self.total_count = 0
        self.closed_at: float | None = None
        self.finished = False
        self.state = JobState.ACTIVE

    def create(self) -> str:
        """
        Create the remote job.

        Raises
        ------
        TransportError
            If the request fails or the response carries no id.
        """
        job_id = self._connection.submit_job(self.target)
        if not job_id:
            raise TransportError(f"Job creation for {self.target} returned no id")
        self.job_id = job_id
        log.info(event="Job created", target=self.target, job_id=job_id)
        return job_id

    def generate_batches(
        self,
        query_text: str,
        start: t.Any,
        stop: t.Any,
        single_batch: bool = False,
    ) -> list[Batch]:
        """
        Partition ``[start, stop)`` and submit one batch per interval.

        Parameters
        ----------
        query_text : str
            Query without range restriction.
        start, stop : typing.Any
            Half-open range to cover.
        single_batch : bool, optional
            If ``True``, submit the whole range as one batch.

        Returns
        -------
        list[Batch]
            Submitted batches, in ascending interval order.
        """
        intervals = [(start, stop)] if single_batch else split_range(start, stop, self.batch_count)
        return [
            self.add_query(extend_query(query_text, self.date_field, lower, upper), lower, upper)
            for lower, upper in intervals
        ]

    def add_query(self, query_text: str, start: t.Any, stop: t.Any) -> Batch:
        if self.job_id is None:
            raise ValueError("Job must be created before adding batches")
        log.info(event="Adding batch to job", job_id=self.job_id, query=query_text)
        batch = Batch(
            connection=self._connection,
            job_id=self.job_id,
            target=self.target,
            query_text=query_text,
            start=start,
            stop=stop,
            filename_prefix=self.filename_prefix,
        )
        batch.create()
        self.batches.append(batch)
        return batch

    def close(self) -> None:
        """
        Close the remote job once all batches are submitted.

        A failure is logged only: closing affects the remote accounting, not
        whether results can be downloaded.
        """
        try:
            self._connection.close_job(t.cast(str, self.job_id))
        except TransportError as error:
            log.warning(event="Failed to close job", job_id=self.job_id, error=str(error))
        self.closed_at = self._clock()
        self.state = JobState.CLOSED

    def check_status(self) -> JobStatus:
        info = self._connection.get_job_status(t.cast(str, self.job_id))
        self.completed_count = info.completed_count
        self.total_count = info.total_count
        self.finished = info.completed_count == info.total_count
        some_failed = info.failed_record_count > 0
        if some_failed:
            log.warning(
                event="Job reports failed records",
                job_id=self.job_id,
                failed_record_count=info.failed_record_count,
            )
        self.evaluate_state()
        return JobStatus(finished=self.finished, some_failed=some_failed, info=info)

    def evaluate_state(self, now: float | None = None) -> JobState:
        """
        Derive the job state from the latest status and the clock.

        ``ACTIVE`` until closed, ``FINISHED`` when the last status response
        reported every batch completed, ``STALLED`` when closed for longer than
        the grace period with some but not all batches completed, ``CLOSED``
        otherwise.

        Parameters
        ----------
        now : float | None, optional
            Monotonic timestamp to evaluate against. Defaults to the job clock.

        Returns
        -------
        JobState
            The new state, also stored on ``self.state``.
        """
        now = self._clock() if now is None else now
        if self.finished:
            state = JobState.FINISHED
        elif self.closed_at is None:
            state = JobState.ACTIVE
        elif now - self.closed_at >= self.job_time_limit and self.completed_count > 0:
            state = JobState.STALLED
        else:
            state = JobState.CLOSED
        if state != self.state:
            log.debug(event="Job state changed", job_id=self.job_id, old=self.state, new=state)
        self.state = state
        return state

    def get_results(self, directory: str | Path) -> QueryResults:
        """
        Download every completed batch; report the others as unfinished.

        Already downloaded batches are not fetched again, so the call is safe to
        repeat. A batch whose status check or download fails is reported as
        unfinished.
        """
        filenames: list[str] = []
        unfinished: list[Batch] = []

        for batch in self.batches:
            try:
                batch_status = batch.check_status()
                if batch_status.finished:
                    filenames.append(batch.get_result(directory))
                    continue
                if batch_status.failed:
                    log.warning(event="Batch failed", job_id=self.job_id, batch_id=batch.batch_id)
            except TransportError as error:
                log.warning(
                    event="Batch not available",
                    job_id=self.job_id,
                    batch_id=batch.batch_id,
                    error=str(error),
                )
            unfinished.append(batch)

        return QueryResults(
            filenames=tuple(filenames),
            unfinished_batches=tuple(unfinished),
            done_jobs=() if unfinished else (self,),
        )

    def get_available_results(
        self, directory: str | Path, now: float | None = None
    ) -> QueryResults | None:
        """
        Download what is available from a stalled job.

        Returns ``None`` while the job is inside its grace period, already
        finished, or has no completed batch.
        """
        if self.evaluate_state(now=now) != JobState.STALLED:
            return None
        return self.get_results(directory)

    def to_log(self) -> dict[str, t.Any]:
        return {
            "job_id": self.job_id,
            "target": self.target,
            "state": self.state.value,
            "completed_count": self.completed_count,
            "total_count": self.total_count,
            "batches": [batch.to_log() for batch in self.batches],
        }

    def __repr__(self) -> str:
        return f"<Job {self.job_id} {self.target} {self.state.value}>"
