"""
Client-side orchestration of one user-level query.

A query starts with a single job covering the whole time range. When a job
stalls, the unfinished part of its range is resubmitted as a replacement job,
so a query may own several jobs over its lifetime.
"""

from __future__ import annotations

import time
import typing as t
from datetime import datetime, timezone
from pathlib import Path

import structlog

from bulkquery.batch import Batch
from bulkquery.connection import Connection
from bulkquery.exceptions import TransportError
from bulkquery.job import Job
from bulkquery.models import JobStatus, QueryOptions, QueryResults
from bulkquery.utils.files import default_results_directory

log = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Query:
    """
    Orchestrate the jobs of a single query call.

    Parameters
    ----------
    target : str
        Queried object name, e.g. ``Opportunity``.
    query_text : str | None
        Query to run. ``None`` when the query is generated from the target
        fields with ``start_with_fields``.
    connection : Connection
        Transport used for every remote call.
    options : QueryOptions | None, optional
        Partitioning and restart settings.
    filename_prefix : str, optional
        Prefix for the batch result filenames.
    clock : typing.Callable[[], float], optional
        Monotonic clock shared with the owned jobs.
    """

    def __init__(
        self,
        *,
        target: str,
        query_text: str | None,
        connection: Connection,
        options: QueryOptions | None = None,
        filename_prefix: str = "",
        clock: t.Callable[[], float] = time.monotonic,
    ) -> None:
        self.target = target
        self.query_text = query_text
        self._connection = connection
        self.options = options or QueryOptions()
        self.filename_prefix = filename_prefix
        self._clock = clock

        self.jobs: list[Job] = []
        self.restart_count = 0
        self.date_from: datetime | None = None
        self.date_to: datetime | None = None

    @property
    def directory(self) -> Path:
        if self.options.directory_path:
            return Path(self.options.directory_path)
        return default_results_directory()

    def _new_job(self) -> Job:
        job = Job(
            target=self.target,
            connection=self._connection,
            batch_count=self.options.batch_count,
            job_time_limit=self.options.job_time_limit,
            date_field=self.options.date_field,
            filename_prefix=self.filename_prefix,
            clock=self._clock,
        )
        job.create()
        return job

    def _resolve_range(self) -> tuple[datetime, datetime, bool]:
        """
        Resolve the time range and whether it goes into a single batch.

        Returns
        -------
        tuple[datetime, datetime, bool]
            ``(start, stop, single_batch)``. A target without any record is
            queried as one empty-range batch.
        """
        date_to = _as_utc(self.options.date_to or datetime.now(tz=timezone.utc))
        date_from = self.options.date_from
        if date_from is None:
            date_from = self._connection.find_earliest(self.target, self.options.date_field)
            if date_from is None:
                log.info(event="Target has no records", target=self.target)
                return date_to, date_to, True
        date_from = _as_utc(date_from)
        if date_from > date_to:
            date_from = date_to
        return date_from, date_to, self.options.single_batch

    def start(self, query_text: str | None = None) -> Job:
        """
        Create the first job and submit its batches.

        Raises
        ------
        TransportError
            If any submission request fails.
        ValueError
            If no query text is available.
        """
        if query_text is not None:
            self.query_text = query_text
        if not self.query_text:
            raise ValueError("A query text is required, use start_with_fields to generate one")

        self.date_from, self.date_to, single_batch = self._resolve_range()
        job = self._new_job()
        try:
            job.generate_batches(self.query_text, self.date_from, self.date_to, single_batch)
        finally:
            job.close()
        self.jobs.append(job)
        log.info(
            event="Query started",
            target=self.target,
            job_id=job.job_id,
            batch_count=len(job.batches),
            date_from=str(self.date_from),
            date_to=str(self.date_to),
        )
        return job

    def start_with_fields(self) -> Job:
        fields = self._connection.describe_fields(self.target)
        if not fields:
            raise ValueError(f"No fields reported for {self.target}")
        return self.start(query_text=f"SELECT {', '.join(fields)} FROM {self.target}")

    def check_status(self) -> JobStatus:
        """
        Aggregate the status of every owned job.

        A job whose status cannot be fetched counts as not finished.
        """
        finished = True
        some_failed = False
        for job in self.jobs:
            try:
                job_status = job.check_status()
            except TransportError as error:
                log.warning(event="Job status unavailable", job_id=job.job_id, error=str(error))
                finished = False
                continue
            finished = finished and job_status.finished
            some_failed = some_failed or job_status.some_failed
        return JobStatus(finished=finished, some_failed=some_failed)

    def get_results(self, directory: str | Path | None = None) -> QueryResults:
        """Download what every owned job has ready and aggregate the envelopes."""
        directory = directory or self.directory
        results = QueryResults()
        for job in self.jobs:
            results = results.merge(job.get_results(directory))
        return results

    def _can_restart(self) -> bool:
        if not self.options.restart:
            return False
        return self.options.max_restarts is None or self.restart_count < self.options.max_restarts

    def _restart(self, *, unfinished_batches: t.Sequence[Batch]) -> Job:
        job = self._new_job()
        try:
            for batch in unfinished_batches:
                job.generate_batches(t.cast(str, self.query_text), batch.start, batch.stop)
        finally:
            job.close()
        self.restart_count += 1
        return job

    def get_result_or_restart(
        self, directory: str | Path | None = None, now: float | None = None
    ) -> QueryResults:
        """
        Harvest stalled jobs and resubmit their unfinished part.

        Jobs that are not stalled are left alone. For a stalled job, the ready
        batches are downloaded, the job is retired, and a replacement job
        re-partitions the range of every unfinished batch.

        Parameters
        ----------
        directory : str | Path | None, optional
            Result directory. Defaults to ``self.directory``.
        now : float | None, optional
            Monotonic timestamp the stall decision is evaluated against.

        Returns
        -------
        QueryResults
            Filenames downloaded from retired jobs and the retired jobs. The
            caller carries this fragment until the query completes.
        """
        directory = directory or self.directory
        now = self._clock() if now is None else now
        harvested = QueryResults()

        for job in list(self.jobs):
            results = job.get_available_results(directory, now=now)
            if results is None:
                continue

            harvested = harvested.merge(QueryResults(filenames=results.filenames))
            if not results.unfinished_batches:
                self.jobs.remove(job)
                harvested = harvested.merge(QueryResults(done_jobs=(job,)))
                continue

            if not self._can_restart():
                log.warning(
                    event="Job stalled, restart not allowed",
                    job_id=job.job_id,
                    restart_count=self.restart_count,
                )
                continue

            log.warning(
                event="Job stalled, restarting unfinished batches",
                job_id=job.job_id,
                unfinished_batch_count=len(results.unfinished_batches),
            )
            try:
                replacement = self._restart(unfinished_batches=results.unfinished_batches)
            except TransportError as error:
                log.error(event="Failed to restart job", job_id=job.job_id, error=str(error))
                continue
            self.jobs[self.jobs.index(job)] = replacement
            harvested = harvested.merge(QueryResults(done_jobs=(job,)))
            log.info(
                event="Job restarted",
                old_job_id=job.job_id,
                new_job_id=replacement.job_id,
                batch_count=len(replacement.batches),
            )

        return harvested

    def to_log(self) -> dict[str, t.Any]:
        return {
            "target": self.target,
            "query_text": self.query_text,
            "restart_count": self.restart_count,
            "jobs": [job.to_log() for job in self.jobs],
        }
