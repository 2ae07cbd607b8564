import uuid

import pytest
from entity_bridge.core.context import DataContext, Transport
from entity_bridge.core.errors import (
    EmptyUpdateError,
    MetadataError,
    MutationError,
    TerminalHTTPError,
)
from entity_bridge.core.metadata import ApiType
from entity_bridge.core.model import Instance, Property

from testing import (
    LIST_ID,
    WEB_ID,
    FakeTransport,
    load_fixture,
    load_registry,
    make_context,
)


def _denied():
    return TerminalHTTPError(
        status_code=403, method="PATCH", url="x", message="denied"
    )


@pytest.fixture
def rest():
    return FakeTransport()


@pytest.fixture
def ctx(rest):
    return make_context(rest=rest)


@pytest.fixture
def lst(ctx):
    web = ctx.root("Web", Id=uuid.UUID(WEB_ID))
    return ctx.identity.merge(
        "List",
        {"Id": LIST_ID, "Title": "Docs"},
        collection=web.children("Lists"),
        parent=web,
    )


def test_context_freezes_registry():
    registry = load_registry()
    DataContext(registry, {ApiType.REST: FakeTransport()})
    assert registry.frozen


def test_fake_transport_satisfies_protocol():
    assert isinstance(FakeTransport(), Transport)


def test_root_is_a_singleton_per_tag(ctx):
    web = ctx.root("Web", Id=uuid.UUID(WEB_ID))
    again = ctx.root("Web", Title="Dev site")
    assert again is web
    assert web["Title"] == "Dev site"
    assert not web.has_changes


def test_missing_transport_raises():
    ctx = DataContext(load_registry(), {ApiType.REST: FakeTransport()})
    with pytest.raises(MetadataError):
        ctx.transport(ApiType.GRAPH)


@pytest.mark.asyncio
async def test_get_merges_into_instance(ctx, rest):
    web = ctx.root("Web", Id=uuid.UUID(WEB_ID))
    target = web.children("Lists").new(Id=uuid.UUID(LIST_ID))
    rest.queue({"Id": LIST_ID, "Title": "Docs", "ItemCount": 4})
    loaded = await target.load(select=["Title"])
    assert loaded is target
    assert target["Title"] == "Docs"
    assert target["ItemCount"] == 4
    assert not target.has_changes
    assert rest.sent[0].uri == f"_api/web/lists(guid'{LIST_ID}')?$select=Title,Id"
    assert ctx.identity.lookup("List", uuid.UUID(LIST_ID)) is target


@pytest.mark.asyncio
async def test_add_merges_server_response(ctx, rest, lst):
    items = lst.children("Items")
    item = items.new(Title="hello")
    rest.queue({"Id": 7, "Title": "hello", "Author": {"Title": "Ann"}})
    await item.add()

    sent = rest.sent[0]
    assert sent.method == "POST"
    assert sent.uri == f"_api/web/lists(guid'{LIST_ID}')/items"
    assert sent.json_body() == {"Title": "hello"}
    assert item.key == 7
    assert item["AuthorName"] == "Ann"
    assert not item.has_changes
    assert list(items) == [item]
    assert ctx.identity.lookup("ListItem", 7) is item


@pytest.mark.asyncio
async def test_add_with_empty_response_still_appends():
    graph = FakeTransport({})
    ctx = make_context(graph=graph)
    team = ctx.root("Team", Id="t1")
    channel = ctx.identity.merge("TeamChannel", {"id": "c1"}, parent=team)
    messages = ctx.collection("TeamChatMessage", parent=channel)
    message = messages.new(Content="hi")
    await message.add()
    assert graph.sent[0].uri == "teams/t1/channels/c1/messages"
    assert graph.sent[0].json_body() == {"body": {"content": "hi"}}
    assert message in messages
    assert not message.has_changes


@pytest.mark.asyncio
async def test_update_sends_changes_and_clears_them(ctx, rest, lst):
    lst["Title"] = "Documents"
    lst["Description"] = "All docs"
    rest.queue({})
    await lst.update()
    sent = rest.sent[0]
    assert sent.method == "PATCH"
    assert sent.headers["IF-MATCH"] == "*"
    assert sent.json_body() == {"Title": "Documents", "Description": "All docs"}
    assert not lst.has_changes


@pytest.mark.asyncio
async def test_failed_update_keeps_changes(ctx, rest, lst):
    lst["Title"] = "Documents"
    rest.queue(_denied())
    with pytest.raises(TerminalHTTPError):
        await lst.update()
    assert lst.changed == ("Title",)


@pytest.mark.asyncio
async def test_update_without_changes_sends_nothing(ctx, rest, lst):
    with pytest.raises(EmptyUpdateError):
        await lst.update()
    assert rest.sent == []


@pytest.mark.asyncio
async def test_delete_removes_from_collection_and_identity(ctx, rest, lst):
    lists = lst.collection
    rest.queue({})
    await lst.delete()
    assert rest.sent[0].method == "DELETE"
    assert lst.deleted
    assert lst not in lists
    assert ctx.identity.lookup("List", uuid.UUID(LIST_ID)) is None


@pytest.mark.asyncio
async def test_delete_of_unsaved_instance_sends_nothing(ctx, rest, lst):
    draft = lst.collection.new(Title="draft")
    with pytest.raises(MutationError):
        await draft.delete()
    assert rest.sent == []
    assert not draft.deleted


@pytest.mark.asyncio
async def test_unbound_instance_cannot_reach_server():
    registry = load_registry()
    orphan = Instance(registry.get("List"))
    with pytest.raises(MetadataError):
        await orphan.load()


class ListModel(Instance):
    title = Property("Title")
    description = Property("Description")


@pytest.mark.asyncio
async def test_model_class_used_for_new_and_merged_instances(rest):
    ctx = make_context(rest=rest, registry=load_registry(List={"model": ListModel}))
    web = ctx.root("Web", Id=uuid.UUID(WEB_ID))
    lists = web.children("Lists")
    rest.queue({"value": [{"Id": LIST_ID, "Title": "Docs"}]})
    await lists.load()
    assert isinstance(lists[0], ListModel)
    assert lists[0].title == "Docs"

    draft = lists.new()
    assert isinstance(draft, ListModel)
    draft.description = "notes"
    assert draft.changed == ("Description",)
    assert ListModel.title.name == "Title"


@pytest.mark.asyncio
async def test_expanded_load_makes_child_collection_pageable():
    graph = FakeTransport(load_fixture("channel_with_messages.json"))
    ctx = make_context(graph=graph)
    team = ctx.root("Team", Id="t1")
    channel = ctx.identity.merge("TeamChannel", {"id": "c1"}, parent=team)
    messages = channel.children("Messages")
    assert not messages.can_page

    await channel.load(expand=["Messages"])
    assert graph.sent[0].uri == "teams/t1/channels/c1?$expand=messages"
    assert channel["DisplayName"] == "General"
    assert [m["Content"] for m in messages] == ["hello", "<p>hi</p>"]
    assert messages[1]["ChannelId"] == "c1"
    assert messages.can_page
    assert messages.state.cursor.endswith("$skiptoken=abc")
