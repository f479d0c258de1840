"""Stateless product-offer tokens.

An offer is serialized to compact JSON and wrapped in unpadded URL-safe
base64 so it can travel through query strings and JSON bodies untouched.
Nothing about an offer is stored server-side; the token is the offer.
"""

from __future__ import annotations

import base64
import binascii
import json
import re
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

_TOKEN_ALPHABET = re.compile(r"[A-Za-z0-9_-]+")


class MalformedToken(ValueError):
    """Raised when a token does not decode to a structurally valid offer."""


@dataclass(frozen=True)
class Price:
    amount: Decimal
    currency: str = "USD"

    def __post_init__(self) -> None:
        if isinstance(self.amount, bool) or not isinstance(self.amount, (Decimal, int, float)):
            raise ValueError(f"price amount must be numeric, got {self.amount!r}")
        amount = self.amount if isinstance(self.amount, Decimal) else Decimal(str(self.amount))
        if not amount.is_finite() or amount < 0:
            raise ValueError(f"price amount must be a finite non-negative number, got {amount}")
        object.__setattr__(self, "amount", amount)
        if not isinstance(self.currency, str) or not self.currency:
            raise ValueError("price currency must be a non-empty string")


@dataclass(frozen=True)
class OfferMeta:
    source: str
    fetched_at: str


@dataclass(frozen=True)
class ProductOffer:
    """A priced product snapshot taken at quote time."""

    title: str
    url: str
    price: Price
    asin: str | None = None
    image: str = ""
    offer_id: str | None = None
    meta: OfferMeta | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "asin": self.asin,
            "title": self.title,
            "url": self.url,
            "image": self.image,
            "price": {
                "amount": _json_amount(self.price.amount),
                "currency": self.price.currency,
            },
            "offerId": self.offer_id,
            "meta": (
                {"source": self.meta.source, "fetchedAt": self.meta.fetched_at}
                if self.meta is not None
                else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ProductOffer":
        if not isinstance(data, dict):
            raise MalformedToken("offer payload must be a JSON object")

        title = _required_str(data, "title")
        url = _required_str(data, "url")
        asin = _optional_str(data, "asin")
        offer_id = _optional_str(data, "offerId")
        image = _optional_str(data, "image") or ""

        price_raw = data.get("price")
        if not isinstance(price_raw, dict):
            raise MalformedToken("missing required field: price")
        amount = price_raw.get("amount")
        if isinstance(amount, bool) or not isinstance(amount, (Decimal, int, float)):
            raise MalformedToken("price.amount must be a number")
        currency = price_raw.get("currency")
        if not isinstance(currency, str) or not currency:
            raise MalformedToken("missing required field: price.currency")
        try:
            price = Price(amount=amount, currency=currency)
        except (ValueError, InvalidOperation) as exc:
            raise MalformedToken(str(exc)) from exc

        meta = None
        meta_raw = data.get("meta")
        if meta_raw is not None:
            if not isinstance(meta_raw, dict):
                raise MalformedToken("meta must be a JSON object")
            meta = OfferMeta(
                source=_required_str(meta_raw, "source", prefix="meta."),
                fetched_at=_required_str(meta_raw, "fetchedAt", prefix="meta."),
            )

        return cls(
            title=title,
            url=url,
            price=price,
            asin=asin,
            image=image,
            offer_id=offer_id,
            meta=meta,
        )


def _required_str(data: dict, key: str, prefix: str = "") -> str:
    value = data.get(key)
    if not isinstance(value, str):
        raise MalformedToken(f"missing required field: {prefix}{key}")
    return value


def _optional_str(data: dict, key: str) -> str | None:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise MalformedToken(f"{key} must be a string")
    return value


def _json_amount(amount: Decimal) -> int | float:
    if amount == amount.to_integral_value() and abs(amount) < 2**53:
        return int(amount)
    return float(amount)


def _dump_compact(value: Any) -> str:
    """Compact JSON that writes ``Decimal`` values as their exact number text."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        items = (f"{_dump_compact(str(key))}:{_dump_compact(item)}" for key, item in value.items())
        return "{" + ",".join(items) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_dump_compact(item) for item in value) + "]"
    return json.dumps(value, ensure_ascii=False)


def _reject_constant(name: str) -> Any:
    raise MalformedToken(f"non-finite number in offer payload: {name}")


def encode_offer(offer: ProductOffer) -> str:
    """Return the URL-safe, padding-free token for *offer*."""
    payload = offer.to_dict()
    payload["price"]["amount"] = offer.price.amount
    raw = _dump_compact(payload)
    return base64.urlsafe_b64encode(raw.encode("utf-8")).rstrip(b"=").decode("ascii")


def decode_offer(token: str | bytes) -> ProductOffer:
    """Inverse of :func:`encode_offer`.

    Raises ``MalformedToken`` for padding, foreign characters, non-canonical
    base64, invalid JSON or a payload missing required fields.
    """
    if isinstance(token, (bytes, bytearray)):
        try:
            token = bytes(token).decode("ascii")
        except UnicodeDecodeError as exc:
            raise MalformedToken("token is not ASCII") from exc
    if not isinstance(token, str) or not token:
        raise MalformedToken("token must be a non-empty string")
    if not _TOKEN_ALPHABET.fullmatch(token):
        raise MalformedToken("token contains characters outside the URL-safe alphabet")
    if len(token) % 4 == 1:
        raise MalformedToken("token has an impossible length")

    padded = token + "=" * (-len(token) % 4)
    try:
        raw = base64.urlsafe_b64decode(padded)
        # Unused trailing bits must be zero, so each payload has exactly one token.
        if base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii") != token:
            raise MalformedToken("token is not canonical base64")
        text = raw.decode("utf-8")
        payload = json.loads(
            text,
            parse_float=Decimal,
            parse_int=Decimal,
            parse_constant=_reject_constant,
        )
    except MalformedToken:
        raise
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedToken(f"Invalid product blob format: {exc}") from exc

    return ProductOffer.from_dict(payload)
