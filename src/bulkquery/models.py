from __future__ import annotations

import os
import typing as t
from dataclasses import dataclass
from datetime import datetime, timezone

from dotenv import load_dotenv
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

if t.TYPE_CHECKING:
    from bulkquery.batch import Batch
    from bulkquery.job import Job


DEFAULT_CHECK_INTERVAL = 10.0
DEFAULT_TIME_LIMIT = 60 * 60 * 2
DEFAULT_BATCH_COUNT = 15
DEFAULT_JOB_TIME_LIMIT = 10 * 60
DEFAULT_DATE_FIELD = "CreatedDate"
DEFAULT_API_VERSION = "29.0"


class JobInfo(BaseModel):
    """Job status as reported by the remote service."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str | None = None
    state: str | None = None
    completed_count: int = Field(
        default=0, validation_alias=AliasChoices("completed_count", "numberBatchesCompleted")
    )
    total_count: int = Field(
        default=0, validation_alias=AliasChoices("total_count", "numberBatchesTotal")
    )
    failed_record_count: int = Field(
        default=0, validation_alias=AliasChoices("failed_record_count", "numberRecordsFailed")
    )


class JobStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    finished: bool
    some_failed: bool
    info: JobInfo | None = None


class BatchStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    finished: bool
    failed: bool


class QueryOptions(BaseModel):
    """
    Settings for a single blocking query call.

    Every field has a documented default, so ``QueryOptions()`` is a valid
    configuration.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    check_interval: float = Field(
        default=DEFAULT_CHECK_INTERVAL, ge=0, description="seconds to sleep between two polls"
    )
    time_limit: float = Field(
        default=DEFAULT_TIME_LIMIT,
        ge=0,
        description="seconds after which whatever is available is downloaded and the call returns",
    )
    directory_path: str | None = Field(
        default=None,
        description=(
            "optional, directory where batch results are written. "
            "Defaults to the user cache directory"
        ),
    )
    batch_count: int = Field(
        default=DEFAULT_BATCH_COUNT,
        ge=1,
        description="number of sub-ranges the time range is split into",
    )
    job_time_limit: float = Field(
        default=DEFAULT_JOB_TIME_LIMIT,
        ge=0,
        description="grace period after closing a job before it can be judged stalled",
    )
    date_field: str = Field(
        default=DEFAULT_DATE_FIELD, description="timestamp column used to split the query"
    )
    date_from: datetime | None = Field(
        default=None,
        description=(
            "optional, inclusive range start. Defaults to the earliest record of the target"
        ),
    )
    date_to: datetime | None = Field(
        default=None, description="optional, exclusive range end. Defaults to now"
    )
    single_batch: bool = Field(
        default=False, description="submit the whole range as a single batch"
    )
    restart: bool = Field(default=True, description="resubmit the unfinished part of stalled jobs")
    max_restarts: int | None = Field(
        default=None,
        ge=0,
        description="optional, maximum number of replacement jobs. Unlimited when unset",
    )

    @field_validator("date_from", "date_to", mode="after")
    @classmethod
    def assume_utc(cls, value: datetime | None) -> datetime | None:
        if value is None or value.tzinfo is not None:
            return value
        return value.replace(tzinfo=timezone.utc)

    @model_validator(mode="after")
    def validate_date_range(self) -> "QueryOptions":
        if self.date_from is None or self.date_to is None:
            return self
        if self.date_from > self.date_to:
            raise ValueError("date_from must not be later than date_to")
        return self


class ConnectionSettings(BaseModel):
    instance_url: str = Field(description="remote instance URL, e.g. https://na1.salesforce.com")
    session_id: str = Field(description="session id used to authenticate", repr=False)
    api_version: str = Field(default=DEFAULT_API_VERSION, description="remote API version")
    filename_prefix: str = Field(default="", description="prefix prepended to result filenames")

    @classmethod
    def from_env(cls, **overrides: t.Any) -> "ConnectionSettings":
        """
        Build settings from ``BULKQUERY_*`` environment variables.

        A ``.env`` file in the working directory is loaded first. Explicit
        ``overrides`` that are not ``None`` take precedence.
        """
        load_dotenv(override=False)
        values: dict[str, t.Any] = {
            "instance_url": os.getenv("BULKQUERY_INSTANCE_URL"),
            "session_id": os.getenv("BULKQUERY_SESSION_ID"),
            "api_version": os.getenv("BULKQUERY_API_VERSION"),
            "filename_prefix": os.getenv("BULKQUERY_FILENAME_PREFIX"),
        }
        values.update(overrides)
        return cls.model_validate({k: v for k, v in values.items() if v is not None})


@dataclass(frozen=True)
class QueryResults:
    """
    Result envelope of a query call.

    Parameters
    ----------
    filenames : tuple[str, ...]
        Downloaded result files, in download order.
    unfinished_batches : tuple[Batch, ...]
        Batches that were not downloaded. Callers must inspect them rather
        than assume full completion.
    done_jobs : tuple[Job, ...]
        Jobs whose results have been collected.
    timed_out : bool
        ``True`` when the time limit cut the query short.
    some_failed : bool
        ``True`` when any job reported failed records.
    """

    filenames: tuple[str, ...] = ()
    unfinished_batches: tuple[Batch, ...] = ()
    done_jobs: tuple[Job, ...] = ()
    timed_out: bool = False
    some_failed: bool = False

    def merge(self, other: QueryResults) -> QueryResults:
        """
        Combine two envelopes, keeping order and dropping duplicates.

        Parameters
        ----------
        other : QueryResults
            Envelope appended after this one.

        Returns
        -------
        QueryResults
            New envelope. A batch that ``other`` reports as downloaded is
            removed from the unfinished set.
        """
        filenames = tuple(dict.fromkeys(self.filenames + other.filenames))
        downloaded = set(filenames)
        unfinished = tuple(
            batch
            for batch in dict.fromkeys(self.unfinished_batches + other.unfinished_batches)
            if batch.filename not in downloaded
        )
        return QueryResults(
            filenames=filenames,
            unfinished_batches=unfinished,
            done_jobs=tuple(dict.fromkeys(self.done_jobs + other.done_jobs)),
            timed_out=self.timed_out or other.timed_out,
            some_failed=self.some_failed or other.some_failed,
        )

    def to_log(self) -> dict[str, t.Any]:
        return {
            "filenames": list(self.filenames),
            "unfinished_batches": [batch.to_log() for batch in self.unfinished_batches],
            "done_jobs": [job.job_id for job in self.done_jobs],
            "timed_out": self.timed_out,
            "some_failed": self.some_failed,
        }
