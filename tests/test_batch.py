import json
import uuid

import pytest
from entity_bridge.core.batch import (
    Batch,
    decode_graph_batch,
    decode_rest_batch,
    encode_graph_batch,
    encode_rest_batch,
    outcome,
)
from entity_bridge.core.errors import BatchError, ClientError, TerminalHTTPError
from entity_bridge.core.metadata import ApiType
from entity_bridge.core.paging import PagingPhase
from entity_bridge.core.query import field
from entity_bridge.core.requests import RequestDescriptor

from testing import LIST_ID, WEB_ID, FakeTransport, make_context, page

GRAPH_BASE = "https://graph.microsoft.com/v1.0"
SITE = "https://contoso.sharepoint.com/sites/dev"


def _req(method="GET", uri="teams/t1", api=ApiType.GRAPH, body=None):
    return RequestDescriptor(method=method, uri=uri, api=api, body=body)


def test_graph_envelope_uses_sequential_ids_and_relative_urls():
    envelope = encode_graph_batch(
        [
            _req(uri=f"{GRAPH_BASE}/teams/t1/channels?$top=5"),
            _req("POST", "teams/t1/channels", body={"displayName": "Ops"}),
        ],
        GRAPH_BASE,
    )
    first, second = envelope["requests"]
    assert first["id"] == "1"
    assert first["url"] == "/teams/t1/channels?$top=5"
    assert "body" not in first
    assert second["id"] == "2"
    assert second["method"] == "POST"
    assert second["body"] == {"displayName": "Ops"}


def test_graph_responses_correlated_by_id():
    payload = {
        "responses": [
            {"id": "2", "status": 404, "body": {"error": {"message": "gone"}}},
            {"id": "1", "status": 200, "body": {"id": "t1"}},
        ]
    }
    assert decode_graph_batch(payload, 2) == [
        (200, {"id": "t1"}),
        (404, {"error": {"message": "gone"}}),
    ]


def test_graph_response_missing_item_raises():
    with pytest.raises(BatchError):
        decode_graph_batch({"responses": [{"id": "1", "status": 200}]}, 2)
    with pytest.raises(BatchError):
        decode_graph_batch({}, 1)


def test_rest_envelope_wraps_writes_in_changesets():
    content_type, body = encode_rest_batch(
        [
            _req(uri="_api/web/lists", api=ApiType.REST),
            _req("PATCH", "_api/web/lists(1)", ApiType.REST, body={"Title": "x"}),
        ],
        SITE,
        boundary="batch_1",
    )
    assert content_type == "multipart/mixed; boundary=batch_1"
    assert body.startswith("--batch_1\r\n")
    assert body.endswith("--batch_1--\r\n")
    assert f"GET {SITE}/_api/web/lists HTTP/1.1" in body
    assert f"PATCH {SITE}/_api/web/lists(1) HTTP/1.1" in body
    assert body.count("changeset_") == 3  # header boundary, opener, closer
    assert json.dumps({"Title": "x"}) in body


def test_rest_response_parsed_in_order():
    text = "\r\n".join(
        [
            "--batchresponse_1",
            "Content-Type: application/http",
            "Content-Transfer-Encoding: binary",
            "",
            "HTTP/1.1 200 OK",
            "Content-Type: application/json;odata=nometadata",
            "",
            '{"Title": "Docs"}',
            "--batchresponse_1",
            "Content-Type: application/http",
            "Content-Transfer-Encoding: binary",
            "",
            "HTTP/1.1 204 No Content",
            "",
            "",
            "--batchresponse_1",
            "Content-Type: application/http",
            "",
            "HTTP/1.1 400 Bad Request",
            "Content-Type: application/json",
            "",
            '{"odata.error": {"message": {"value": "bad"}}}',
            "--batchresponse_1--",
        ]
    )
    assert decode_rest_batch(text) == [
        (200, {"Title": "Docs"}),
        (204, {}),
        (400, {"odata.error": {"message": {"value": "bad"}}}),
    ]


def test_outcome_classifies_item_status():
    ok = outcome(0, _req(), 201, {"id": "x"})
    assert ok.ok and ok.body == {"id": "x"}
    failed = outcome(1, _req(), 403, {"error": {"message": "denied"}})
    assert isinstance(failed.error, TerminalHTTPError)
    assert failed.error.status_code == 403
    assert "denied" in str(failed.error)


def test_groups_split_per_api_and_chunk_to_limit():
    batch = Batch()
    for _ in range(25):
        batch.add(_req())
    for _ in range(3):
        batch.add(_req(api=ApiType.REST, uri="_api/web"))
    groups = batch.groups()
    assert [(api, len(items)) for api, items in groups] == [
        (ApiType.GRAPH, 20),
        (ApiType.GRAPH, 5),
        (ApiType.REST, 3),
    ]
    assert [i.index for i in groups[1][1]] == [20, 21, 22, 23, 24]


@pytest.mark.asyncio
async def test_execute_applies_results_in_submission_order():
    rest = FakeTransport()
    graph = FakeTransport()
    ctx = make_context(rest=rest, graph=graph)
    web = ctx.root("Web", Id=uuid.UUID(WEB_ID))
    team = ctx.root("Team", Id="t1")
    lists = web.children("Lists")
    channels = team.children("Channels")

    batch = ctx.new_batch()
    assert await lists.load(batch=batch) == []
    new_channel = channels.new(DisplayName="Ops")
    await new_channel.add(batch=batch)
    assert rest.sent == [] and graph.sent == []

    rest.queue_batch((200, page({"Id": LIST_ID, "Title": "Docs"})))
    graph.queue_batch((201, {"id": "c9", "displayName": "Ops"}))
    results = await ctx.execute(batch)

    assert [r.status for r in results] == [200, 201]
    assert len(rest.batches) == 1 and len(graph.batches) == 1
    assert graph.batches[0][0].body == {"displayName": "Ops"}
    assert lists.state.phase == PagingPhase.EXHAUSTED
    assert lists[0]["Title"] == "Docs"
    assert new_channel.key == "c9"
    assert new_channel in channels


@pytest.mark.asyncio
async def test_execute_reports_failures_after_applying_successes():
    rest = FakeTransport()
    ctx = make_context(rest=rest)
    web = ctx.root("Web", Id=uuid.UUID(WEB_ID))
    lists = web.children("Lists")
    first = lists.new(Title="A")
    second = lists.new(Title="B")

    batch = ctx.new_batch()
    await first.add(batch=batch)
    await second.add(batch=batch)
    rest.queue_batch(
        (201, {"Id": LIST_ID, "Title": "A"}),
        (400, {"odata.error": {"message": {"value": "duplicate"}}}),
    )
    with pytest.raises(TerminalHTTPError) as exc:
        await ctx.execute(batch)

    assert exc.value.status_code == 400
    assert "duplicate" in str(exc.value)
    assert first.key == uuid.UUID(LIST_ID)
    assert second.key is None
    assert second.has_changes
    assert list(lists) == [first]


@pytest.mark.asyncio
async def test_execute_without_raising_returns_item_errors():
    rest = FakeTransport()
    ctx = make_context(rest=rest)
    web = ctx.root("Web", Id=uuid.UUID(WEB_ID))
    batch = ctx.new_batch()
    await web.children("Lists").new(Title="A").add(batch=batch)
    rest.queue_batch((500, {}))
    results = await ctx.execute(batch, raise_on_error=False)
    assert results[0].status == 500
    assert not results[0].ok


@pytest.mark.asyncio
async def test_batch_is_single_use():
    rest = FakeTransport()
    ctx = make_context(rest=rest)
    web = ctx.root("Web", Id=uuid.UUID(WEB_ID))
    lists = web.children("Lists")
    batch = ctx.new_batch()
    await lists.load(batch=batch)
    rest.queue_batch((200, page()))
    await ctx.execute(batch)

    with pytest.raises(BatchError):
        await ctx.execute(batch)
    with pytest.raises(BatchError):
        await lists.load(batch=batch)


@pytest.mark.asyncio
async def test_empty_batch_executes_without_exchanges():
    rest = FakeTransport()
    ctx = make_context(rest=rest)
    assert await ctx.execute(ctx.new_batch()) == []
    assert rest.batches == []


@pytest.mark.asyncio
async def test_filtered_ordered_read_keeps_a_valid_request_line():
    rest = FakeTransport()
    ctx = make_context(rest=rest)
    web = ctx.root("Web", Id=uuid.UUID(WEB_ID))
    lists = web.children("Lists")

    batch = ctx.new_batch()
    query = lists.where(field("Title") == "Team Docs").order_by_desc("Title")
    await query.load(batch=batch)
    rest.queue_batch((200, page({"Id": LIST_ID, "Title": "Team Docs"})))
    await ctx.execute(batch)

    _, body = encode_rest_batch(rest.batches[0], SITE, boundary="batch_1")
    request_lines = [line for line in body.split("\r\n") if line.startswith("GET ")]
    assert len(request_lines) == 1
    method, url, version = request_lines[0].split(" ")
    assert method == "GET" and version == "HTTP/1.1"
    assert url == (
        f"{SITE}/_api/web/lists"
        "?$filter=Title%20eq%20'Team%20Docs'&$orderby=Title%20desc"
    )
    assert lists[0]["Title"] == "Team Docs"


@pytest.mark.asyncio
async def test_failed_exchange_still_applies_completed_exchanges():
    rest = FakeTransport()
    graph = FakeTransport()
    ctx = make_context(rest=rest, graph=graph)
    web = ctx.root("Web", Id=uuid.UUID(WEB_ID))
    team = ctx.root("Team", Id="t1")
    lists = web.children("Lists")
    channels = team.children("Channels")

    batch = ctx.new_batch()
    new_list = lists.new(Title="A")
    await new_list.add(batch=batch)
    new_channel = channels.new(DisplayName="Ops")
    await new_channel.add(batch=batch)

    rest.queue_batch((201, {"Id": LIST_ID, "Title": "A"}))
    graph.queue_batch(ClientError("connection reset"))
    with pytest.raises(ClientError):
        await ctx.execute(batch)

    assert batch.executed
    assert new_list.key == uuid.UUID(LIST_ID)
    assert new_list in lists
    assert not new_list.has_changes
    assert new_channel.key is None
    assert new_channel not in channels
    assert batch.results[0].status == 201
    assert batch.results[1] is None
