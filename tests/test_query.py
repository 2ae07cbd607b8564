import uuid
from datetime import datetime, timezone

import pytest
from entity_bridge.core.errors import NotExpandableError, UnsupportedQueryError
from entity_bridge.core.metadata import (
    ApiType,
    EntityDescriptor,
    MetadataRegistry,
    Operation,
    PropertyDescriptor,
    UriTemplate,
)
from entity_bridge.core.query import QueryTranslator, field, format_literal

from testing import LIST_ID, make_context


@pytest.fixture
def ctx():
    return make_context()


@pytest.fixture
def lists(ctx):
    web = ctx.root("Web", Id=uuid.uuid4())
    return ctx.collection("List", parent=web)


@pytest.fixture
def channels(ctx):
    team = ctx.root("Team", Id="team-1")
    return ctx.collection("TeamChannel", parent=team)


def test_filter_orderby_take_serializes_in_fixed_order(lists):
    query = lists.where(field("Title").startswith("A")).order_by_desc("Title").take(10)
    assert str(query) == "$filter=startswith(Title,'A')&$orderby=Title desc&$top=10"


def test_operator_application_order_does_not_change_output(lists):
    a = lists.take(5).order_by("Title").select("Title").where(field("Title") == "x")
    b = lists.where(field("Title") == "x").select("Title").order_by("Title").take(5)
    assert str(a) == str(b)
    assert str(a) == "$filter=Title eq 'x'&$select=Title,Id&$orderby=Title asc&$top=5"


def test_comparisons_and_combinators(lists):
    pred = (field("TemplateType") >= 100) & (
        (field("Title") == "Docs") | (field("Title") != "Tasks")
    )
    query = lists.where(pred)
    assert query.translate()["$filter"] == (
        "TemplateType ge 100 and (Title eq 'Docs' or Title ne 'Tasks')"
    )


def test_where_calls_conjoin_and_keyword_equals(lists):
    query = lists.where(field("TemplateType") < 3).where(Title="Docs")
    assert query.translate()["$filter"] == "TemplateType lt 3 and Title eq 'Docs'"


def test_contains_differs_per_api(lists, channels):
    assert lists.where(field("Title").contains("a")).translate()["$filter"] == (
        "substringof('a',Title)"
    )
    assert channels.where(
        field("DisplayName").contains("a")
    ).translate()["$filter"] == "contains(displayName,'a')"


def test_remote_names_and_paths_used_in_filter(channels, ctx):
    assert channels.order_by("DisplayName").translate() == {
        "$orderby": "displayName asc"
    }
    team = ctx.root("Team")
    channel = ctx.collection("TeamChannel", parent=team).new(Id="c")
    messages = ctx.collection("TeamChatMessage", parent=channel)
    assert messages.where(field("Content") == "hi").translate()["$filter"] == (
        "body/content eq 'hi'"
    )


def test_guid_property_compared_to_string(lists):
    assert lists.where(field("Id") == LIST_ID).translate()["$filter"] == (
        f"Id eq guid'{LIST_ID}'"
    )
    assert lists.where(Id=LIST_ID.upper()).translate()["$filter"] == (
        f"Id eq guid'{LIST_ID}'"
    )
    with pytest.raises(UnsupportedQueryError):
        lists.where(field("Id") == "nope").translate()


def test_datetime_property_compared_to_string(lists):
    query = lists.where(field("Created") > "2024-05-01T12:00:00Z")
    assert query.translate()["$filter"] == (
        "Created gt datetime'2024-05-01T12:00:00Z'"
    )


def test_literals():
    guid = uuid.UUID(LIST_ID)
    assert format_literal(guid, ApiType.REST) == f"guid'{LIST_ID}'"
    assert format_literal(guid, ApiType.GRAPH) == LIST_ID
    assert format_literal("O'Neil", ApiType.GRAPH) == "'O''Neil'"
    assert format_literal(True, ApiType.REST) == "true"
    assert format_literal(None, ApiType.REST) == "null"
    assert format_literal(1.5, ApiType.REST) == "1.5"
    stamp = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert format_literal(stamp, ApiType.GRAPH) == "2024-05-01T12:00:00Z"
    assert format_literal(stamp, ApiType.REST) == "datetime'2024-05-01T12:00:00Z'"


def test_unsupported_literal_rejected():
    with pytest.raises(UnsupportedQueryError):
        format_literal(object(), ApiType.REST)
    with pytest.raises(UnsupportedQueryError):
        format_literal(float("nan"), ApiType.REST)


def test_field_to_field_comparison_rejected(lists):
    query = lists.where(field("Title") == field("Description"))
    with pytest.raises(UnsupportedQueryError):
        query.translate()


def test_negation_rejected_at_translation(lists):
    query = lists.where(~(field("Title") == "x"))
    with pytest.raises(UnsupportedQueryError):
        str(query)


def test_string_function_needs_string(lists):
    with pytest.raises(UnsupportedQueryError):
        lists.where(field("Title").startswith(5)).translate()


def test_null_order_comparison_rejected(lists):
    with pytest.raises(UnsupportedQueryError):
        lists.where(field("Title") > None).translate()


def test_predicate_used_as_bool_is_rejected():
    with pytest.raises(UnsupportedQueryError):
        bool(field("A") == 1)
    with pytest.raises(UnsupportedQueryError):
        (field("A") == 1) and (field("B") == 2)  # noqa: B015


def test_foreign_predicate_rejected(lists):
    with pytest.raises(UnsupportedQueryError):
        QueryTranslator(lists.descriptor).filter("Title eq 'x'")


def test_expand_requires_expandable_property(lists):
    assert lists.expand("Items").translate() == {"$expand": "Items"}
    with pytest.raises(NotExpandableError):
        lists.expand("Title").translate()
    with pytest.raises(NotExpandableError):
        lists.expand("Unknown").translate()


def test_rest_select_includes_key_and_expanded_fields(lists):
    query = lists.select("Title").expand("Fields")
    assert str(query) == "$select=Title,Id,Fields&$expand=Fields"


def test_graph_select_uses_remote_names_without_expand_copy(channels):
    query = channels.select("DisplayName").expand("Messages")
    assert str(query) == "$select=displayName,id&$expand=messages"


def test_path_property_selects_its_root(ctx):
    team = ctx.root("Team")
    channel = ctx.collection("TeamChannel", parent=team).new(Id="c")
    messages = ctx.collection("TeamChatMessage", parent=channel)
    query = messages.select("Content", "ContentType", "ChannelId")
    assert query.translate()["$select"] == "body,channelIdentity,id"


def test_skip_requests_skip_plus_take(lists):
    assert lists.skip(20).take(10).translate()["$top"] == "30"
    assert "$top" not in lists.skip(3).translate()
    with pytest.raises(UnsupportedQueryError):
        lists.skip(-1)
    with pytest.raises(UnsupportedQueryError):
        lists.take(-1)


def test_default_page_size_becomes_top():
    ctx = make_context(default_page_size=50)
    lists = ctx.collection("List", parent=ctx.root("Web", Id=uuid.uuid4()))
    assert str(lists.query()) == "$top=50"
    assert str(lists.take(5)) == "$top=5"


def test_then_by_appends_tie_breakers(lists):
    query = lists.order_by("Title").then_by_desc("TemplateType").then_by("Id")
    assert query.translate()["$orderby"] == "Title asc,TemplateType desc,Id asc"
    assert lists.order_by("Title").order_by("Id").translate()["$orderby"] == "Id asc"


def test_expand_by_default_applies_without_explicit_shape():
    descriptor = EntityDescriptor(
        tag="Doc",
        api=ApiType.GRAPH,
        key="Id",
        templates=(UriTemplate(operation=Operation.GET, template="docs"),),
        properties=(
            PropertyDescriptor(name="Id", field="id"),
            PropertyDescriptor(
                name="Owner", field="owner", expandable=True, expand_by_default=True
            ),
        ),
    )
    ctx = make_context(registry=MetadataRegistry([descriptor]))
    docs = ctx.collection("Doc")
    assert str(docs.query()) == "$expand=owner"
    assert str(docs.select("Id")) == "$select=id"


def test_query_is_immutable(lists):
    base = lists.where(Title="a")
    narrowed = base.take(1)
    assert "$top" not in base.translate()
    assert narrowed.translate()["$top"] == "1"
