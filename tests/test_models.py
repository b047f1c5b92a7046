from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from bulkquery.batch import Batch
from bulkquery.models import ConnectionSettings, JobInfo, QueryOptions, QueryResults
from tests.mocks.connection import FakeBulkConnection


def test_query_options_defaults():
    options = QueryOptions()
    assert options.check_interval == 10
    assert options.time_limit == 7200
    assert options.batch_count == 15
    assert options.job_time_limit == 600
    assert options.date_field == "CreatedDate"
    assert options.restart is True


def test_query_options_validation():
    with pytest.raises(ValidationError):
        QueryOptions(batch_count=0)
    with pytest.raises(ValidationError, match="date_from must not be later than date_to"):
        QueryOptions(date_from=datetime(2024, 2, 1), date_to=datetime(2024, 1, 1))


def test_query_options_assume_utc_for_naive_dates():
    options = QueryOptions(date_from=datetime(2024, 1, 1))
    assert options.date_from == datetime(2024, 1, 1, tzinfo=timezone.utc)


def test_job_info_accepts_remote_field_names():
    info = JobInfo.model_validate(
        {"numberBatchesCompleted": "4", "numberBatchesTotal": "5", "numberRecordsFailed": "0"}
    )
    assert (info.completed_count, info.total_count, info.failed_record_count) == (4, 5, 0)


def test_connection_settings_from_env(monkeypatch):
    monkeypatch.setenv("BULKQUERY_API_VERSION", "58.0")
    settings = ConnectionSettings.from_env(session_id="override", instance_url=None)

    assert settings.instance_url == "https://fake.my.salesforce.com"
    assert settings.session_id == "override"
    assert settings.api_version == "58.0"
    assert "override" not in repr(settings)


def test_results_merge_keeps_order_and_drops_duplicates():
    connection = FakeBulkConnection()
    batches = [
        Batch(connection=connection, job_id="750", target="Account", query_text="", start=i, stop=i + 1)
        for i in range(2)
    ]
    batches[1].filename = "b.csv"

    first = QueryResults(filenames=("a.csv",), unfinished_batches=(batches[0], batches[1]))
    second = QueryResults(filenames=("a.csv", "b.csv"), unfinished_batches=(batches[0],))
    merged = first.merge(second)

    assert merged.filenames == ("a.csv", "b.csv")
    assert merged.unfinished_batches == (batches[0],)
    assert merged.timed_out is False
    assert first.merge(QueryResults(timed_out=True)).timed_out is True
    assert first.merge(QueryResults(some_failed=True)).some_failed is True
