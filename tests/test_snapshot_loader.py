import httpx
import pytest

from product_options.app import create_storefront_app
from product_options.db import DEMO_PRODUCT_GID
from product_options.snapshot import (
    ExpressionRule,
    StructuredRule,
    TemplateLoadError,
    TemplateSnapshotLoader,
    normalize_product_gid,
    parse_snapshot,
)
from product_options.storefront import HostContainer, StorefrontSession

TEMPLATE_PAYLOAD = {
    "template": {
        "id": "12",
        "name": "Custom Apparel",
        "fields": [
            {"id": "2", "name": "brand", "label": "Brand", "type": "select", "options": "Acme, Globex", "sort": 2},
            {"id": "1", "name": "shirt_type", "label": "Shirt Type", "type": "select", "options": ["T-Shirt", "Hoodie"], "sort": 1},
        ],
        "rules": [
            {"id": "r2", "expression": 'shirt_type == "Hoodie"', "target_field_id": "2", "action": "REQUIRE", "sort": 2},
            {"id": "r1", "parent_field_id": "1", "parent_value": "Hoodie", "child_field_id": "2", "child_options": [], "sort": 1},
            {"id": "r3", "parent_field_id": "1", "parent_value": "Hoodie", "child_field_id": "1"},
            {"id": "r4", "expression": "x", "target_field_id": "1", "action": "explode"},
        ],
    },
    "product_gid": "gid://shopify/Product/1001",
}


def mock_loader(handler) -> TemplateSnapshotLoader:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return TemplateSnapshotLoader("https://options.example.com/", client=client)


def test_normalize_product_gid() -> None:
    assert normalize_product_gid("1001") == "gid://shopify/Product/1001"
    assert normalize_product_gid(" gid://shopify/Product/5 ") == "gid://shopify/Product/5"
    assert normalize_product_gid("") == ""


def test_parse_snapshot_orders_and_skips_bad_rules() -> None:
    snapshot = parse_snapshot(TEMPLATE_PAYLOAD)

    assert [field.name for field in snapshot.fields] == ["shirt_type", "brand"]
    assert snapshot.field_by_name("brand").options == ("Acme", "Globex")
    assert [rule.id for rule in snapshot.rules] == ["r1", "r2"]
    assert isinstance(snapshot.rules[0], StructuredRule)
    assert snapshot.rules[0].child_options is None
    assert isinstance(snapshot.rules[1], ExpressionRule)
    assert snapshot.rules[1].action == "require"
    assert [field.id for field in snapshot.root_fields] == ["1"]
    assert parse_snapshot({"template": None}) is None


def test_loader_requests_encoded_gid_and_parses() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.raw_path.decode())
        return httpx.Response(200, json=TEMPLATE_PAYLOAD)

    snapshot = mock_loader(handler).load("1001")

    assert seen == ["/api/template/gid%3A%2F%2Fshopify%2FProduct%2F1001"]
    assert snapshot.name == "Custom Apparel"
    assert snapshot.product_gid == "gid://shopify/Product/1001"


def test_loader_treats_404_and_empty_template_as_absent() -> None:
    assert mock_loader(lambda request: httpx.Response(404, json={"template": None})).load("1") is None
    assert mock_loader(lambda request: httpx.Response(200, json={"template": None})).load("1") is None

    empty = {"template": {"id": "1", "name": "Empty", "fields": [], "rules": []}}
    assert mock_loader(lambda request: httpx.Response(200, json=empty)).load("1") is None


def test_loader_raises_on_failures() -> None:
    with pytest.raises(TemplateLoadError):
        mock_loader(lambda request: httpx.Response(500)).load("1")
    with pytest.raises(TemplateLoadError):
        mock_loader(lambda request: httpx.Response(200, content=b"not json")).load("1")

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TemplateLoadError):
        mock_loader(refuse).load("1")


def test_session_fetches_exactly_once() -> None:
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        return httpx.Response(200, json=TEMPLATE_PAYLOAD)

    container = HostContainer(
        attributes={"data-product-id": "1001", "data-api-url": "https://options.example.com"}
    )
    session = StorefrontSession(container, loader=mock_loader(handler))
    session.initialize()
    session.initialize()

    assert len(calls) == 1
    assert session.active is True
    assert 'id="custom-options-form-1001"' in str(container.content)


def test_session_shows_error_when_load_fails() -> None:
    container = HostContainer(attributes={"data-product-id": "1001", "data-api-url": "https://x"})
    session = StorefrontSession(container, loader=mock_loader(lambda request: httpx.Response(503)))
    session.initialize()

    assert session.load_failed is True
    assert session.active is False
    assert "Failed to load custom options" in str(container.content)


def test_loader_against_storefront_app(tmp_path) -> None:
    app = create_storefront_app(str(tmp_path / "app.db"))
    client = httpx.Client(transport=httpx.WSGITransport(app=app), base_url="http://storefront")
    loader = TemplateSnapshotLoader("http://storefront", client=client)

    snapshot = loader.load(DEMO_PRODUCT_GID.rsplit("/", 1)[1])
    assert snapshot is not None
    assert snapshot.name == "Custom Apparel"
    assert [field.name for field in snapshot.root_fields] == ["shirt_type", "engraving"]

    assert loader.load("999999") is None
    loader.close()


@pytest.mark.parametrize(
    "payload",
    [
        {"template": {"id": "1", "name": "Broken", "fields": [{"id": "1", "name": "note", "sort": "first"}]}},
        {"template": "oops"},
        {"template": {"id": "1", "name": "Broken", "fields": [{"id": "1", "name": "note"}], "rules": ["bad"]}},
        {"template": {"id": "1", "name": "Broken", "fields": ["note"]}},
        {"template": {"id": "1", "name": "Broken", "fields": {"id": "1"}}},
        ["not", "an", "object"],
    ],
)
def test_wrongly_shaped_payload_renders_load_error(payload) -> None:
    container = HostContainer(attributes={"data-product-id": "1001", "data-api-url": "https://x"})
    session = StorefrontSession(container, loader=mock_loader(lambda request: httpx.Response(200, json=payload)))
    session.initialize()

    assert session.load_failed is True
    assert session.active is False
    assert "Failed to load custom options" in str(container.content)


def test_rule_with_bad_sort_is_skipped_not_fatal() -> None:
    payload = {
        "template": {
            "id": "1",
            "name": "Notes",
            "fields": [{"id": "1", "name": "note", "type": "text"}, {"id": "2", "name": "gift", "type": "text"}],
            "rules": [{"id": "r1", "expression": "note", "target_field_id": "2", "action": "show", "sort": "late"}],
        }
    }
    snapshot = parse_snapshot(payload)
    assert snapshot.rules == ()
    assert len(snapshot.fields) == 2


def test_session_closes_the_loader_it_creates() -> None:
    container = HostContainer(attributes={"data-product-id": "1001", "data-api-url": ""})
    session = StorefrontSession(container)
    session.initialize()

    assert session.load_failed is True
    assert session.loader.is_closed is True


def test_session_leaves_a_supplied_loader_open() -> None:
    loader = mock_loader(lambda request: httpx.Response(200, json=TEMPLATE_PAYLOAD))
    session = StorefrontSession(HostContainer(attributes={"data-product-id": "1001"}), loader=loader)
    session.initialize()

    assert session.active is True
    assert loader.is_closed is False
    with loader:
        assert loader.load("1001") is not None
    assert loader.is_closed is True
