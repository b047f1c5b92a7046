"""
Tests for the blocking poll loop in bulkquery.api.
"""

from datetime import datetime, timezone
from pathlib import Path

import pytest
from pydantic import ValidationError

from bulkquery.api import Api
from bulkquery.exceptions import TransportError
from bulkquery.models import QueryOptions
from tests.mocks.connection import FakeBulkConnection, FakeClock

EARLIEST = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def api(connection: FakeBulkConnection, clock: FakeClock) -> Api:
    """
    Create an Api whose clock only moves when it sleeps.

    Returns
    -------
    Api
        Api over the fake connection.
    """
    api = Api(connection)
    api._clock = clock
    api._sleep = clock.sleep
    return api


def test_query_times_out_when_nothing_finishes(
    api: Api, connection: FakeBulkConnection, clock: FakeClock, tmp_path: Path
):
    """A query that never finishes returns after the time limit with every batch unfinished."""
    started_at = clock.now

    results = api.query(
        "Account",
        "SELECT Id FROM Account",
        {"check_interval": 1, "time_limit": 3, "directory_path": tmp_path.as_posix()},
    )

    assert results.timed_out is True
    assert results.filenames == ()
    assert len(results.unfinished_batches) == 15
    assert 3 <= clock.now - started_at <= 3 + 1
    assert clock.sleeps == [1, 1, 1, 1]


def test_query_returns_immediately_when_complete(clock: FakeClock, tmp_path: Path):
    """A query reported complete on the first check downloads everything without sleeping."""
    connection = FakeBulkConnection(complete_on_submit=True, earliest=EARLIEST)
    api = Api(connection)
    api._clock = clock
    api._sleep = clock.sleep

    results = api.query(
        "Account", "SELECT Id FROM Account", QueryOptions(directory_path=tmp_path.as_posix())
    )

    assert clock.sleeps == []
    assert results.timed_out is False
    assert len(results.filenames) == 15
    assert results.unfinished_batches == ()
    assert len(results.done_jobs) == 1
    assert all(Path(filename).exists() for filename in results.filenames)


def test_query_polls_until_complete(
    api: Api, connection: FakeBulkConnection, clock: FakeClock, tmp_path: Path
):
    def sleep(seconds: float) -> None:
        clock.sleep(seconds)
        if len(clock.sleeps) == 2:
            connection.complete_all()

    api._sleep = sleep
    results = api.query(
        "Account",
        "SELECT Id FROM Account",
        {"check_interval": 5, "batch_count": 4, "directory_path": tmp_path.as_posix()},
    )

    assert clock.sleeps == [5, 5]
    assert len(results.filenames) == 4
    assert results.unfinished_batches == ()
    assert results.timed_out is False


def test_query_restarts_stalled_job(
    api: Api, connection: FakeBulkConnection, clock: FakeClock, tmp_path: Path
):
    """Files harvested from a restarted job are part of the final envelope."""

    def sleep(seconds: float) -> None:
        clock.sleep(seconds)
        first_job_id = next(iter(connection.jobs))
        if len(clock.sleeps) == 1:
            connection.complete(connection.batch_ids_of(first_job_id)[0])
        if len(connection.jobs) > 1:
            connection.complete_all()

    api._sleep = sleep
    results = api.query(
        "Account",
        "SELECT Id FROM Account",
        {
            "check_interval": 1,
            "time_limit": 100,
            "batch_count": 2,
            "job_time_limit": 5,
            "directory_path": tmp_path.as_posix(),
        },
    )

    old_job_id, new_job_id = list(connection.jobs)
    assert results.timed_out is False
    assert results.unfinished_batches == ()
    assert len(results.filenames) == 3
    assert results.filenames[0].endswith(f"{connection.batch_ids_of(old_job_id)[0]}.csv")
    assert [job.job_id for job in results.done_jobs] == [old_job_id, new_job_id]
    assert len(connection.batch_ids_of(new_job_id)) == 2
    replaced_batch_id = connection.batch_ids_of(old_job_id)[1]
    assert replaced_batch_id not in connection.downloads
    assert set(connection.downloads.values()) == {1}


def test_status_failures_do_not_strand_the_query(
    clock: FakeClock, tmp_path: Path, monkeypatch
):
    """Completed batches are still collected when job status checks keep failing."""
    connection = FakeBulkConnection(complete_on_submit=True, earliest=EARLIEST)
    original_submit_job = connection.submit_job

    def submit_job(target: str) -> str:
        job_id = original_submit_job(target)
        connection.failing_job_status.add(job_id)
        return job_id

    monkeypatch.setattr(connection, "submit_job", submit_job)
    api = Api(connection)
    api._clock = clock
    api._sleep = clock.sleep

    results = api.query(
        "Account",
        "SELECT Id FROM Account",
        {"check_interval": 10, "time_limit": 30, "directory_path": tmp_path.as_posix()},
    )

    assert results.timed_out is True
    assert len(results.filenames) == 15
    assert results.unfinished_batches == ()


def test_query_fields(clock: FakeClock, tmp_path: Path):
    connection = FakeBulkConnection(complete_on_submit=True, earliest=EARLIEST)
    api = Api(connection, filename_prefix="acct_")
    api._clock = clock
    api._sleep = clock.sleep

    results = api.query_fields(
        "Account", {"single_batch": True, "directory_path": tmp_path.as_posix()}
    )

    assert len(results.filenames) == 1
    assert Path(results.filenames[0]).name.startswith("acct_Account_")
    (query_text,) = connection.batch_queries.values()
    assert query_text.startswith("SELECT Id, Name FROM Account WHERE CreatedDate >= ")


def test_submission_failure_propagates(api: Api, connection: FakeBulkConnection):
    connection.fail_submit_job = True
    with pytest.raises(TransportError):
        api.query("Account", "SELECT Id FROM Account")


def test_invalid_options_are_rejected(api: Api):
    with pytest.raises(ValidationError):
        api.query("Account", "SELECT Id FROM Account", {"check_interval": -1})


def test_start_query_does_not_poll(api: Api, connection: FakeBulkConnection, clock: FakeClock):
    query = api.start_query("Account", "SELECT Id FROM Account", {"batch_count": 2})

    assert len(query.jobs[0].batches) == 2
    assert connection.count_calls("get_job_status") == 0
    assert clock.sleeps == []


def test_instance_url_ends_with_slash(api: Api):
    assert api.instance_url == "https://fake.my.salesforce.com/"


def test_failed_records_are_flagged_on_the_results(clock: FakeClock, tmp_path: Path):
    connection = FakeBulkConnection(complete_on_submit=True, earliest=EARLIEST)
    connection.failed_record_count = 2
    api = Api(connection)
    api._clock = clock
    api._sleep = clock.sleep

    results = api.query(
        "Account", "SELECT Id FROM Account", {"directory_path": tmp_path.as_posix()}
    )

    assert results.some_failed is True
    assert len(results.filenames) == 15


def test_misspelled_options_are_rejected(api: Api, connection: FakeBulkConnection):
    with pytest.raises(ValidationError, match="time_limt"):
        api.query("Account", "SELECT Id FROM Account", {"time_limt": 3})
    assert connection.calls == []
