from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import Any

import pytest

from catalog import Catalog
from offer_auth import SignedOffer, sign_offer
from offer_codec import OfferMeta, Price, ProductOffer
from settings import GatewaySettings

SECRET = b"test-signing-secret"

CATALOG_DATA = {
    "defaultASIN": "B08C7KG5LP",
    "products": [
        {"asin": "B08C7KG5LP", "name": "Apple AirPods (3rd Generation)", "price": 169.99},
        {"asin": "B01MTB55WH", "name": "Apple AirPods (3rd Gen - Alt Listing)", "price": 169.99},
        {"asin": "B0BDHWDR12", "name": "Apple AirPods Pro (2nd Generation)", "price": 249.0},
        {"asin": "B09JQMJHXY", "name": "Apple AirPods (2nd Generation)", "price": 99.0},
    ],
}


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeFulfillment:
    """Stands in for ``CrossmintClient``; records every order it is asked to create."""

    def __init__(
        self,
        response: Any = None,
        error: Exception | None = None,
        delay: float = 0.0,
    ) -> None:
        self.response = response if response is not None else {"orderId": "ord_1", "status": "created"}
        self.error = error
        self.delay = delay
        self.calls: list[dict[str, Any]] = []

    async def create_order(self, order_request: dict[str, Any]) -> Any:
        self.calls.append(order_request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.response


class FakeSearch:
    def __init__(self, offers: list[ProductOffer] | None = None, configured: bool = True) -> None:
        self.offers = offers or []
        self.configured = configured
        self.queries: list[tuple[str, int]] = []

    async def search(self, query: str, limit: int = 10) -> list[ProductOffer]:
        self.queries.append((query, limit))
        return self.offers[:limit]


def make_offer(
    asin: str | None = "B08C7KG5LP",
    amount: str = "169.99",
    title: str = "Apple AirPods (3rd Generation)",
) -> ProductOffer:
    return ProductOffer(
        asin=asin,
        title=title,
        url=f"https://amazon.com/dp/{asin}" if asin else "https://amazon.com/",
        image="https://images.example/airpods.jpg",
        price=Price(amount=Decimal(amount), currency="USD"),
        offer_id="offer-1",
        meta=OfferMeta(source="serpapi", fetched_at="2024-01-01T00:00:00Z"),
    )


def signed(offer: ProductOffer | None = None, secret: bytes = SECRET) -> SignedOffer:
    return sign_offer(offer or make_offer(), secret)


def flip_last_hex(signature: str) -> str:
    return signature[:-1] + ("0" if signature[-1] != "0" else "1")


@pytest.fixture
def catalog() -> Catalog:
    return Catalog.from_dict(CATALOG_DATA)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fulfillment() -> FakeFulfillment:
    return FakeFulfillment()


@pytest.fixture
def settings(tmp_path) -> GatewaySettings:
    return GatewaySettings(
        signing_secret=SECRET,
        serp_api_key="serp-test-key",
        crossmint_api_key="sk_test_crossmint",
        exact_recipient="So1anaRecipientAddress111111111111111111111",
        facilitator_url="https://facilitator.example",
        crossmint_base_url="https://crossmint.example/api/2022-06-09",
        catalog_path=tmp_path / "missing-catalog.json",
    )
