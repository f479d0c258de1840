"""Order creation against the Crossmint headless checkout API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from logging_utils import get_logger, log_json

logger = get_logger("fulfillment")

# Checked in order; the first truthy value wins.
ORDER_ID_FIELDS = ("orderId", "id", "order_id")

MAX_ERROR_BODY_CHARS = 2048

DEMO_RECIPIENT: dict[str, Any] = {
    "name": "Demo Customer",
    "email": "customer@example.com",
    "address": {
        "line1": "123 Test Street",
        "city": "San Francisco",
        "state": "CA",
        "postalCode": "94105",
        "country": "US",
    },
}


class DownstreamTransportError(RuntimeError):
    """The order API could not be reached or answered with an error status."""

    def __init__(self, message: str, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class DownstreamValidationError(RuntimeError):
    """The order API answered, but not with a usable order."""


class InvalidShipping(ValueError):
    """Client-supplied shipping details cannot be turned into a recipient."""


_RECIPIENT_FIELDS = ("name", "email")
_ADDRESS_FIELDS = ("line1", "line2", "city", "state", "postalCode", "country")


def validate_shipping(shipping: Any) -> dict[str, Any] | None:
    """Return *shipping* unchanged if it has the recipient shape, else raise."""
    if shipping is None:
        return None
    if not isinstance(shipping, dict):
        raise InvalidShipping("shipping must be an object")
    for name in _RECIPIENT_FIELDS:
        if shipping.get(name) is not None and not isinstance(shipping[name], str):
            raise InvalidShipping(f"shipping.{name} must be a string")

    address = shipping.get("address")
    if address is None:
        return shipping
    if not isinstance(address, dict):
        raise InvalidShipping("shipping.address must be an object")
    for name in _ADDRESS_FIELDS:
        if address.get(name) is not None and not isinstance(address[name], str):
            raise InvalidShipping(f"shipping.address.{name} must be a string")
    return shipping


@dataclass(frozen=True)
class OrderValidation:
    valid: bool
    order_id: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


def parse_order_response(data: Any) -> OrderValidation:
    if not isinstance(data, dict):
        return OrderValidation(valid=False, error="Invalid Crossmint response: not an object")

    for name in ORDER_ID_FIELDS:
        value = data.get(name)
        if isinstance(value, bool) or not isinstance(value, (str, int)):
            continue
        order_id = str(value).strip()
        if order_id:
            return OrderValidation(valid=True, order_id=order_id, raw=data)

    return OrderValidation(
        valid=False,
        raw=data,
        error=(
            "Invalid Crossmint response: missing order identifier. "
            f"Response structure: {sorted(data.keys())}"
        ),
    )


def require_order(data: Any) -> OrderValidation:
    validation = parse_order_response(data)
    if not validation.valid:
        raise DownstreamValidationError(validation.error or "Invalid Crossmint response")
    return validation


def to_amazon_locator(locator: dict[str, Any]) -> str:
    if locator.get("asin"):
        return f"amazon:{locator['asin']}"
    if locator.get("url"):
        return f"amazon:{locator['url']}"
    raise ValueError("No ASIN or URL for productLocator")


def build_order_request(
    asin: str,
    *,
    shipping: dict[str, Any] | None = None,
    payment_method: str = "solana",
    payment_currency: str = "usdc",
) -> dict[str, Any]:
    """Physical-product order payload for a single catalog item.

    Raises ``InvalidShipping`` when *shipping* is not a recipient object.
    """
    recipient = validate_shipping(shipping) or DEMO_RECIPIENT
    address = recipient.get("address") or {}
    return {
        "recipient": {
            "email": recipient.get("email"),
            "physicalAddress": {
                "name": recipient.get("name"),
                "line1": address.get("line1"),
                "line2": address.get("line2") or "",
                "city": address.get("city"),
                "state": address.get("state"),
                "postalCode": address.get("postalCode"),
                "country": address.get("country") or "US",
            },
        },
        "payment": {
            "method": payment_method,
            "currency": payment_currency,
        },
        "lineItems": [
            {"productLocator": to_amazon_locator({"asin": asin})},
        ],
    }


class CrossmintClient:
    def __init__(
        self,
        api_key: str,
        base_url: str,
        http_client: httpx.AsyncClient,
    ) -> None:
        self._api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._http = http_client

    async def request(self, method: str, endpoint: str, body: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{endpoint}"
        logger.info("[Crossmint API] -> %s %s", method, endpoint)
        if body is not None:
            log_json(logger, logging.DEBUG, "[Crossmint API] Request body", body)

        try:
            resp = await self._http.request(
                method,
                url,
                json=body,
                headers={"X-API-KEY": self._api_key, "Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise DownstreamTransportError(f"Crossmint API error: {type(exc).__name__}: {exc}") from exc

        logger.info("[Crossmint API] <- %s %s", resp.status_code, resp.reason_phrase)
        if resp.is_error:
            error_body = resp.text[:MAX_ERROR_BODY_CHARS]
            logger.warning("[Crossmint API] Error body: %s", error_body)
            raise DownstreamTransportError(
                f"Crossmint API error: {resp.status_code} {resp.reason_phrase} - {error_body}",
                status_code=resp.status_code,
                body=error_body,
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise DownstreamValidationError(
                "Invalid Crossmint response: body is not valid JSON"
            ) from exc
        log_json(logger, logging.DEBUG, "[Crossmint API] Response", data)
        return data

    async def create_order(self, order_request: dict[str, Any]) -> Any:
        return await self.request("POST", "/orders", order_request)
