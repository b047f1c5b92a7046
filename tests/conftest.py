from datetime import datetime, timezone

import pytest

from tests.mocks.connection import FakeBulkConnection, FakeClock


@pytest.fixture(autouse=True)
def test_set_env(monkeypatch):
    monkeypatch.setenv("BULKQUERY_INSTANCE_URL", "https://fake.my.salesforce.com")
    monkeypatch.setenv("BULKQUERY_SESSION_ID", "test-session")
    monkeypatch.delenv("BULKQUERY_API_VERSION", raising=False)
    monkeypatch.delenv("BULKQUERY_FILENAME_PREFIX", raising=False)


@pytest.fixture
def connection() -> FakeBulkConnection:
    return FakeBulkConnection(earliest=datetime(2024, 1, 1, tzinfo=timezone.utc))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def day_range() -> tuple[datetime, datetime]:
    return (
        datetime(2024, 1, 1, tzinfo=timezone.utc),
        datetime(2024, 1, 2, tzinfo=timezone.utc),
    )
