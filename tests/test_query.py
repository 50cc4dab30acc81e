"""
Tests for streaming query results with bulkpipe.query.
"""

import asyncio

import pytest

from bulkpipe.exceptions import ConfigError, PollingError, RemoteError
from bulkpipe.status import MonitorState
from bulkpipe.query import QueryResultReader, extract_object_name
from tests.mocks.bulk import FakeBulkAPI


@pytest.mark.parametrize(
    ("soql", "expected"),
    [
        ("SELECT Id FROM Account", "Account"),
        ("select Id, Name from Contact where Name = 'FROM x'", "Contact"),
        ("SELECT Id, (SELECT Id FROM Contacts) FROM Account LIMIT 5", "Account"),
        ("SELECT Id\nFROM\n  My_Object__c", "My_Object__c"),
    ],
)
def test_extract_object_name(soql, expected):
    assert extract_object_name(soql) == expected


def test_extract_object_name_without_from():
    with pytest.raises(ConfigError):
        extract_object_name("SELECT Id")


@pytest.mark.asyncio
async def test_reader_streams_rows_without_attributes(make_client):
    rows = [
        {"attributes": {"type": "Account", "url": "/x/001"}, "Id": "001", "Name": "Acme"},
        {"attributes": {"type": "Account", "url": "/x/002"}, "Id": "002", "Name": "Globex"},
    ]
    api = FakeBulkAPI(query_result_sets=[rows])
    client = make_client(api=api, operation="query")

    async with QueryResultReader(client, "SELECT Id, Name FROM Account") as reader:
        result = [row async for row in reader]

    assert result == [{"Id": "001", "Name": "Acme"}, {"Id": "002", "Name": "Globex"}]
    assert reader.row_count == 2
    batch_posts = [path for path in api.paths(method="POST") if path.endswith("/batch")]
    assert len(batch_posts) == 1
    assert list(api.batch_requests.values()) == ["SELECT Id, Name FROM Account"]


@pytest.mark.asyncio
async def test_reader_reads_every_result_set(make_client):
    api = FakeBulkAPI(query_result_sets=[[{"Id": "001"}], [], [{"Id": "003"}]])
    reader = QueryResultReader(make_client(api=api, operation="query"), "SELECT Id FROM Account")
    assert [row async for row in reader] == [{"Id": "001"}, {"Id": "003"}]


@pytest.mark.asyncio
async def test_open_is_idempotent(make_client):
    api = FakeBulkAPI(query_result_sets=[[]])
    reader = QueryResultReader(make_client(api=api, operation="query"), "SELECT Id FROM Account")
    await reader.open()
    await reader.open()
    assert [row async for row in reader] == []
    assert len(api.jobs) == 1
    assert api.batch_submissions == 1


@pytest.mark.asyncio
async def test_failed_query_raises_single_error(make_client):
    api = FakeBulkAPI(batch_outcome="Failed")
    reader = QueryResultReader(make_client(api=api, operation="query"), "SELECT Bad FROM Account")
    with pytest.raises(RemoteError) as excinfo:
        async for _ in reader:
            pass
    assert excinfo.value.operation == "query"
    assert excinfo.value.payload["is_error"] is True


@pytest.mark.asyncio
async def test_submission_error_is_raised(make_client):
    api = FakeBulkAPI(reject_batch_number=1)
    reader = QueryResultReader(make_client(api=api, operation="query"), "SELECT Id FROM Account")
    with pytest.raises(RemoteError):
        async for _ in reader:
            pass


@pytest.mark.asyncio
async def test_unavailable_result_set_raises_single_error(make_client):
    api = FakeBulkAPI(query_result_sets=[[{"Id": "001"}]], query_result_error="InvalidBatch")
    client = make_client(api=api, operation="query")
    reader = QueryResultReader(client, "SELECT Id FROM Account")

    async def drain() -> list[dict]:
        return [row async for row in reader]

    with pytest.raises(PollingError) as excinfo:
        await asyncio.wait_for(drain(), timeout=1.0)

    assert isinstance(excinfo.value.__cause__, RemoteError)
    assert excinfo.value.__cause__.exception_code == "InvalidBatch"
    assert client.monitor.state == MonitorState.IDLE
    reads = api.query_result_reads
    await asyncio.sleep(0.05)
    assert reads >= 1
    assert api.query_result_reads == reads


@pytest.mark.asyncio
async def test_refresh_errors_before_final_are_retried(make_client):
    api = FakeBulkAPI(query_result_sets=[[{"Id": "001"}]], batch_polls_until_done=3)
    client = make_client(api=api, operation="query")
    reader = QueryResultReader(client, "SELECT Id FROM Account")
    await reader.open()
    session = client._session
    client._session = session.model_copy(update={"session_id": "expired"})
    await asyncio.sleep(0.05)
    client._session = session

    assert [row async for row in reader] == [{"Id": "001"}]
