"""Amazon product search through SerpAPI."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from logging_utils import get_logger
from offer_codec import OfferMeta, Price, ProductOffer

logger = get_logger("product_search")


class SearchError(RuntimeError):
    """The search API could not be reached or returned garbage."""


def _to_amount(raw: Any) -> Decimal:
    if isinstance(raw, bool) or raw is None:
        return Decimal(0)
    try:
        amount = Decimal(str(raw))
    except InvalidOperation:
        return Decimal(0)
    if not amount.is_finite() or amount < 0:
        return Decimal(0)
    return amount


def offer_from_result(item: dict[str, Any], fetched_at: str) -> ProductOffer:
    asin = item.get("asin") or None
    return ProductOffer(
        asin=asin,
        title=str(item.get("title") or ""),
        url=item.get("link_clean") or (f"https://amazon.com/dp/{asin}" if asin else item.get("link") or ""),
        image=item.get("thumbnail") or "",
        price=Price(amount=_to_amount(item.get("extracted_price")), currency="USD"),
        offer_id=item.get("offer_id") or None,
        meta=OfferMeta(source="serpapi", fetched_at=fetched_at),
    )


class SerpApiSearch:
    def __init__(
        self,
        api_key: str | None,
        http_client: httpx.AsyncClient,
        base_url: str = "https://serpapi.com/search",
    ) -> None:
        self._api_key = api_key
        self._http = http_client
        self.base_url = base_url

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def search(self, query: str, limit: int = 10) -> list[ProductOffer]:
        if not self._api_key:
            raise SearchError("SERP_API_KEY is required for Amazon search")

        logger.info('Searching for "%s" via SerpAPI', query)
        params = {
            "engine": "amazon",
            "k": query,
            "amazon_domain": "amazon.com",
            "api_key": self._api_key,
        }
        # Keep exception text out of messages: request URLs carry the API key.
        try:
            resp = await self._http.get(self.base_url, params=params)
        except httpx.HTTPError as exc:
            raise SearchError(f"Amazon search failed: {type(exc).__name__}") from exc
        if resp.is_error:
            raise SearchError(f"Amazon search failed: HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise SearchError("Amazon search failed: response is not valid JSON") from exc

        if not isinstance(data, dict):
            raise SearchError("Amazon search failed: unexpected response shape")

        results = data.get("organic_results")
        if not results:
            logger.info("No organic results from SerpAPI for: %s", query)
            return []

        fetched_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        offers = [
            offer_from_result(item, fetched_at)
            for item in results
            if isinstance(item, dict)
        ][: max(limit, 0)]
        logger.info("Found %d Amazon products via SerpAPI", len(offers))
        return offers
