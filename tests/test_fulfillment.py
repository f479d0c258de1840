from __future__ import annotations

import json

import httpx
import pytest

from fulfillment import (
    DEMO_RECIPIENT,
    CrossmintClient,
    DownstreamTransportError,
    DownstreamValidationError,
    InvalidShipping,
    build_order_request,
    parse_order_response,
    require_order,
    to_amazon_locator,
    validate_shipping,
)

BASE_URL = "https://crossmint.example/api/2022-06-09"


def _client(handler) -> tuple[CrossmintClient, httpx.AsyncClient]:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CrossmintClient("sk_test", BASE_URL + "/", http), http


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ({"orderId": "o-1"}, "o-1"),
        ({"id": "o-2"}, "o-2"),
        ({"order_id": "o-3"}, "o-3"),
        ({"orderId": "", "id": "o-4"}, "o-4"),
        ({"orderId": "first", "id": "second", "order_id": "third"}, "first"),
        ({"id": 12345}, "12345"),
    ],
)
def test_order_id_is_taken_from_first_populated_field(body, expected) -> None:
    validation = parse_order_response(body)

    assert validation.valid
    assert validation.order_id == expected
    assert validation.raw is body


@pytest.mark.parametrize("body", [{}, {"status": "ok"}, {"orderId": None}, {"orderId": True}, [], "x", None])
def test_responses_without_order_id_are_invalid(body) -> None:
    validation = parse_order_response(body)

    assert not validation.valid
    assert validation.error.startswith("Invalid Crossmint response")
    with pytest.raises(DownstreamValidationError):
        require_order(body)


def test_locator_prefers_asin_over_url() -> None:
    assert to_amazon_locator({"asin": "B1", "url": "https://a"}) == "amazon:B1"
    assert to_amazon_locator({"url": "https://a"}) == "amazon:https://a"
    with pytest.raises(ValueError):
        to_amazon_locator({})


def test_order_request_defaults_to_demo_recipient() -> None:
    request = build_order_request("B08C7KG5LP")

    assert request["recipient"]["email"] == DEMO_RECIPIENT["email"]
    assert request["recipient"]["physicalAddress"]["country"] == "US"
    assert request["payment"] == {"method": "solana", "currency": "usdc"}
    assert request["lineItems"] == [{"productLocator": "amazon:B08C7KG5LP"}]


def test_order_request_uses_supplied_shipping() -> None:
    shipping = {
        "name": "Ada",
        "email": "ada@example.com",
        "address": {"line1": "1 Main", "city": "Austin", "state": "TX", "postalCode": "73301"},
    }

    address = build_order_request("B1", shipping=shipping)["recipient"]["physicalAddress"]

    assert address["name"] == "Ada"
    assert address["line2"] == ""
    assert address["country"] == "US"


@pytest.mark.parametrize(
    "shipping",
    [
        "1 Main St",
        ["Ada"],
        {"address": "x"},
        {"email": 42},
        {"name": "Ada", "address": {"city": 7}},
        {"address": {"postalCode": None, "country": {"code": "US"}}},
    ],
)
def test_malformed_shipping_is_rejected(shipping) -> None:
    with pytest.raises(InvalidShipping):
        validate_shipping(shipping)
    with pytest.raises(InvalidShipping):
        build_order_request("B1", shipping=shipping)


def test_partial_shipping_is_accepted() -> None:
    assert validate_shipping(None) is None
    assert validate_shipping({"name": "Ada"}) == {"name": "Ada"}
    assert validate_shipping({"address": {"line2": None}}) == {"address": {"line2": None}}


@pytest.mark.asyncio
async def test_create_order_posts_to_orders_endpoint() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["url"] = str(request.url)
        seen["api_key"] = request.headers.get("X-API-KEY")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"orderId": "ord_9"})

    client, http = _client(handler)
    async with http:
        data = await client.create_order(build_order_request("B1"))

    assert data == {"orderId": "ord_9"}
    assert seen["method"] == "POST"
    assert seen["url"] == BASE_URL + "/orders"
    assert seen["api_key"] == "sk_test"
    assert seen["body"]["lineItems"][0]["productLocator"] == "amazon:B1"


@pytest.mark.asyncio
async def test_error_status_raises_transport_error_with_truncated_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="x" * 5000)

    client, http = _client(handler)
    async with http:
        with pytest.raises(DownstreamTransportError) as excinfo:
            await client.create_order({})

    assert excinfo.value.status_code == 503
    assert len(excinfo.value.body) == 2048
    assert str(excinfo.value).startswith("Crossmint API error: 503")


@pytest.mark.asyncio
async def test_network_failure_raises_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client, http = _client(handler)
    async with http:
        with pytest.raises(DownstreamTransportError, match="ConnectError"):
            await client.create_order({})


@pytest.mark.asyncio
async def test_non_json_body_raises_validation_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    client, http = _client(handler)
    async with http:
        with pytest.raises(DownstreamValidationError, match="not valid JSON"):
            await client.create_order({})
