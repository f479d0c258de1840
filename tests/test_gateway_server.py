from __future__ import annotations

import base64
import json

import pytest
from fastapi.testclient import TestClient

from fulfillment import DownstreamTransportError
from gateway_server import create_app
from offer_auth import verify
from tests.conftest import SECRET, FakeFulfillment, FakeSearch, flip_last_hex, make_offer, signed


@pytest.fixture
def search() -> FakeSearch:
    return FakeSearch(offers=[make_offer(), make_offer(asin="B0BDHWDR12", amount="249.00", title="AirPods Pro")])


@pytest.fixture
def client(settings, catalog, fulfillment, search):
    app = create_app(settings, search=search, fulfillment=fulfillment, catalog=catalog)
    with TestClient(app) as test_client:
        yield test_client


def _purchase_body(**extra) -> dict:
    return {**signed().to_dict(), **extra}


def test_health(client) -> None:
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_root_lists_endpoints(client) -> None:
    body = client.get("/").json()

    assert body["version"] == "2.0.0"
    assert "POST /purchase" in body["endpoints"]


def test_search_health_reports_configuration(client) -> None:
    assert client.get("/health/search").json()["serpConfigured"] is True


def test_config_exposes_exact_scheme(client) -> None:
    body = client.get("/config").json()

    assert body["scheme"] == "exact"
    assert body["asset"] == "USDC"
    assert body["defaultAsin"] == "B08C7KG5LP"


def test_products_requires_query(client) -> None:
    resp = client.get("/products")

    assert resp.status_code == 400
    assert "Search query required" in resp.json()["error"]


def test_products_returns_signed_offers(client, search) -> None:
    resp = client.get("/products", params={"search": "airpods", "limit": 1})

    assert resp.status_code == 200
    body = resp.json()
    assert body["count"] == 1
    assert search.queries == [("airpods", 1)]
    item = body["products"][0]
    assert item["product"]["asin"] == "B08C7KG5LP"
    assert verify(item["productBlob"], item["signature"], SECRET)


def test_purchase_confirms_order(client, fulfillment) -> None:
    resp = client.post("/purchase", json=_purchase_body(quantity=2))

    assert resp.status_code == 200
    body = resp.json()
    assert body["ok"] is True
    assert body["orderId"] == "ord_1"
    assert body["order"]["totalPrice"] == 339.98
    assert len(fulfillment.calls) == 1


def test_purchase_replays_by_body_key(client, fulfillment) -> None:
    body = _purchase_body(idempotencyKey="abc-123")

    first = client.post("/purchase", json=body)
    second = client.post("/purchase", json=body)

    assert first.status_code == second.status_code == 200
    assert first.content == second.content
    assert len(fulfillment.calls) == 1


def test_purchase_replays_by_header_key(client, fulfillment) -> None:
    body = _purchase_body()

    first = client.post("/purchase", json=body, headers={"Idempotency-Key": "hdr-1"})
    second = client.post("/purchase", json=body, headers={"Idempotency-Key": "hdr-1"})

    assert first.content == second.content
    assert len(fulfillment.calls) == 1
    assert client.get("/diagnostics").json()["idempotencyRecords"] == 1


def test_purchase_with_bad_signature(client, fulfillment) -> None:
    body = _purchase_body()
    body["signature"] = flip_last_hex(body["signature"])

    resp = client.post("/purchase", json=body)

    assert resp.status_code == 400
    assert resp.json()["stage"] == "auth"
    assert resp.json()["code"] == "INVALID_SIGNATURE"
    assert fulfillment.calls == []


def test_purchase_with_unknown_asin(client) -> None:
    body = signed(make_offer(asin="ZZZ_UNKNOWN")).to_dict()

    resp = client.post("/purchase", json=body)

    assert resp.status_code == 400
    details = resp.json()["details"]
    assert details["providedAsin"] == "ZZZ_UNKNOWN"
    assert len(details["suggestions"]) <= 3


def test_purchase_price_expectation(client, fulfillment) -> None:
    resp = client.post("/purchase", json=_purchase_body(priceExpectation={"amount": 100}))

    assert resp.status_code == 400
    assert resp.json()["code"] == "PRICE_EXCEEDED"
    assert fulfillment.calls == []


@pytest.mark.parametrize("expectation", [{"amount": "lots"}, {"amount": None}, {"amount": -5}, True])
def test_purchase_rejects_malformed_price_expectation(client, expectation) -> None:
    resp = client.post("/purchase", json=_purchase_body(priceExpectation=expectation))

    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_PRICE_EXPECTATION"


def test_purchase_missing_fields(client) -> None:
    resp = client.post("/purchase", json={"quantity": 1})

    assert resp.status_code == 400
    assert resp.json()["code"] == "MISSING_REQUIRED_FIELDS"


def test_purchase_invalid_json(client) -> None:
    resp = client.post("/purchase", content=b"{not json", headers={"Content-Type": "application/json"})

    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid JSON payload"}


def test_purchase_downstream_failure_maps_to_502(settings, catalog, search) -> None:
    fulfillment = FakeFulfillment(error=DownstreamTransportError("Crossmint API error: 500 Internal Server Error"))
    app = create_app(settings, search=search, fulfillment=fulfillment, catalog=catalog)

    with TestClient(app) as client:
        resp = client.post("/purchase", json=_purchase_body())

    assert resp.status_code == 502
    assert resp.json()["stage"] == "crossmint.createOrder"


def test_quote_issues_exact_challenge(client, fulfillment) -> None:
    resp = client.post("/purchase/quote", json=_purchase_body(quantity=2))

    assert resp.status_code == 402
    body = resp.json()
    assert body["accepts"][0]["scheme"] == "exact"
    assert body["accepts"][0]["amount"] == "339.98"
    assert resp.headers["X-Payment-Amount"] == "339.98"
    assert resp.headers["X-Payment-Id"] == body["paymentId"]
    decoded = json.loads(base64.b64decode(resp.headers["Payment-Required"]))
    assert decoded == body
    assert fulfillment.calls == []


def test_quote_rejects_bad_signature(client) -> None:
    body = _purchase_body()
    body["signature"] = flip_last_hex(body["signature"])

    resp = client.post("/purchase/quote", json=body)

    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_SIGNATURE"


@pytest.mark.parametrize("path", ["/purchase", "/purchase/quote"])
def test_lone_surrogate_blob_is_invalid_signature(client, fulfillment, path) -> None:
    raw = b'{"productBlob":"\\ud800abc","signature":"' + b"0" * 64 + b'"}'

    resp = client.post(path, content=raw, headers={"Content-Type": "application/json"})

    assert resp.status_code == 400
    assert (resp.json()["stage"], resp.json()["code"]) == ("auth", "INVALID_SIGNATURE")
    assert fulfillment.calls == []


@pytest.mark.parametrize("path", ["/purchase", "/purchase/quote"])
@pytest.mark.parametrize("shipping", ["1 Main St", {"address": "x"}, {"email": ["a@b.c"]}])
def test_malformed_shipping_is_rejected(client, fulfillment, path, shipping) -> None:
    resp = client.post(path, json=_purchase_body(shipping=shipping))

    assert resp.status_code == 400
    assert (resp.json()["stage"], resp.json()["code"]) == ("validation", "INVALID_SHIPPING")
    assert fulfillment.calls == []


@pytest.mark.parametrize("path", ["/purchase", "/purchase/quote"])
def test_huge_quantity_is_rejected(client, fulfillment, path) -> None:
    resp = client.post(path, json=_purchase_body(quantity=10**30))

    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_QUANTITY"
    assert fulfillment.calls == []


@pytest.mark.parametrize("path", ["/purchase", "/purchase/quote"])
def test_out_of_range_total_is_invalid_amount(client, path) -> None:
    resp = client.post(path, json=signed(make_offer(amount="1E+70")).to_dict())

    assert resp.status_code == 400
    assert (resp.json()["stage"], resp.json()["code"]) == ("validation", "INVALID_AMOUNT")


def test_quote_for_zero_total_is_invalid_amount(client) -> None:
    resp = client.post("/purchase/quote", json=signed(make_offer(amount="0")).to_dict())

    assert resp.status_code == 400
    assert (resp.json()["stage"], resp.json()["code"]) == ("validation", "INVALID_AMOUNT")
    assert client.get("/diagnostics").json()["activePayments"] == 0


def test_quote_rejects_malformed_price_expectation(client) -> None:
    resp = client.post("/purchase/quote", json=_purchase_body(priceExpectation={"amount": "lots"}))

    assert resp.status_code == 400
    assert resp.json()["code"] == "INVALID_PRICE_EXPECTATION"


def test_webhook_settles_quoted_payment(client, fulfillment) -> None:
    payment_id = client.post("/purchase/quote", json=_purchase_body()).json()["paymentId"]
    assert client.get(f"/payment/{payment_id}").json()["status"] == "pending"

    resp = client.post("/payment-webhook", json={"payment_id": payment_id})

    assert resp.status_code == 200
    body = resp.json()
    assert body["paymentStatus"] == "completed"
    assert body["completed_orders"] == 1
    assert body["orders"][0]["orderId"] == "ord_1"
    status = client.get(f"/payment/{payment_id}").json()
    assert status["status"] == "completed"
    assert status["orderId"] == "ord_1"

    client.post("/payment-webhook", json={"payment_id": payment_id})
    assert len(fulfillment.calls) == 1


def test_webhook_validation(client) -> None:
    assert client.post("/payment-webhook", json={}).status_code == 400
    assert client.post("/payment-webhook", json={"payment_id": "payment_nope"}).status_code == 404


def test_unknown_payment_status(client) -> None:
    assert client.get("/payment/payment_nope").status_code == 404


def test_diagnostics(client) -> None:
    client.post("/purchase", json=_purchase_body())

    body = client.get("/diagnostics").json()

    assert body["serpConfigured"] is True
    assert body["productCatalogCount"] == 4
    assert body["lastPurchaseASIN"] == "B08C7KG5LP"
    assert body["crossmintReachable"] is True
    assert body["activePayments"] == 1
    assert "B09JQMJHXY" in body["availableASINs"]
