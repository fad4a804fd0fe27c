"""Unit test fixtures using an in-memory table client."""

import pytest

from dynamo_migrator.retry import RetryPolicy
from dynamo_migrator.writer import BatchWriter
from tests.fixtures.tables import FakeTableClient


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Default attempt count without the backoff delays."""
    return RetryPolicy(retries=7, min_delay=0)


@pytest.fixture
def fake_client() -> FakeTableClient:
    """Empty on-demand table named 'tableA'."""
    return FakeTableClient({"tableA": []})


@pytest.fixture
def writer(fake_client, fast_retry) -> BatchWriter:
    return BatchWriter(fake_client, retry_policy=fast_retry)
