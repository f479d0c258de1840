"""Purchase orchestration for signed product offers.

A purchase runs, in order and stopping at the first failure: idempotency
replay, signature check, token decode, catalog validation, optional price
ceiling, order total, then order submission. Every outcome is a
``Confirmed`` or a ``Rejected``; per-request errors never escape
:meth:`PurchaseOrchestrator.purchase`.

Requests that share an idempotency key are serialized on a per-key lock, so
the order API sees at most one call per key within the retention window.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Context, Decimal, InvalidOperation, localcontext
from typing import Any, Union

from catalog import Catalog, CatalogEntry, CatalogMiss, ValidationReason
from fulfillment import (
    CrossmintClient,
    DownstreamTransportError,
    DownstreamValidationError,
    InvalidShipping,
    build_order_request,
    require_order,
    validate_shipping,
)
from idempotency import IdempotencyLedger, KeyedLocks
from logging_utils import get_logger, log_asin_flow
from offer_auth import SignatureMismatch, require_valid
from offer_codec import MalformedToken, ProductOffer, decode_offer
from payments import COMPLETED, PaymentRecord, PaymentRegistry, new_payment_id

logger = get_logger("purchase")

MAX_QUANTITY = 1000

_CENT = Decimal("0.01")
# Totals beyond this many significant digits are rejected rather than rounded.
_TOTAL_CONTEXT = Context(prec=40, rounding=ROUND_HALF_UP)

STAGE_STATUS = {
    "validation": 400,
    "auth": 400,
    "catalog.validate": 400,
    "sku.validate": 400,
    "crossmint.createOrder": 502,
    "crossmint.validation": 502,
    "unknown": 500,
}


class PriceExceeded(ValueError):
    def __init__(self, current: Decimal, expected: Decimal) -> None:
        super().__init__(f"Current price ${current} exceeds expected price ${expected}")
        self.current = current
        self.expected = expected


class InvalidAmount(ValueError):
    """The order total cannot be charged."""


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:12]}"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def valid_quantity(quantity: Any) -> bool:
    return (
        isinstance(quantity, int)
        and not isinstance(quantity, bool)
        and 1 <= quantity <= MAX_QUANTITY
    )


def order_total(unit_price: Decimal, quantity: int) -> Decimal:
    """Unit price times quantity, rounded half-up to cents.

    Raises ``InvalidAmount`` when the total does not fit the money context.
    """
    with localcontext(_TOTAL_CONTEXT):
        try:
            total = (unit_price * quantity).quantize(_CENT)
        except InvalidOperation as exc:
            raise InvalidAmount(f"Order total for {quantity} x ${unit_price} is out of range") from exc
    return total


@dataclass(frozen=True)
class PurchaseRequest:
    product_blob: str | None
    signature: str | None
    quantity: int = 1
    shipping: Any = None
    idempotency_key: str | None = None
    price_ceiling: Decimal | None = None


@dataclass(frozen=True)
class Confirmed:
    order_id: str
    payment_id: str
    resolved_asin: str
    original_asin: str | None
    title: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    tracking: Any
    raw: dict[str, Any] = field(default_factory=dict)
    request_id: str | None = None

    ok = True
    status_code = 200

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "orderId": self.order_id,
            "status": "confirmed",
            "message": "Purchase completed successfully!",
            "order": {
                "orderId": self.order_id,
                "paymentId": self.payment_id,
                "asin": self.resolved_asin,
                "originalAsin": self.original_asin,
                "product": self.title,
                "quantity": self.quantity,
                "unitPrice": float(self.unit_price),
                "totalPrice": float(self.total_price),
                "estimatedDelivery": "3-5 business days",
                "tracking": self.tracking,
            },
            "raw": self.raw,
        }


@dataclass(frozen=True)
class Rejected:
    stage: str
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    ok = False

    @property
    def status_code(self) -> int:
        return STAGE_STATUS.get(self.stage, 500)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": False,
            "stage": self.stage,
            "code": self.code,
            "message": self.message,
            "details": dict(self.details),
        }


PurchaseResult = Union[Confirmed, Rejected]


def reject(stage: str, code: str, message: str, request_id: str, **details: Any) -> Rejected:
    return Rejected(
        stage=stage,
        code=code,
        message=message,
        details={**details, "requestId": request_id, "timestamp": _timestamp()},
    )


@dataclass(frozen=True)
class ValidatedOffer:
    offer: ProductOffer
    entry: CatalogEntry
    reason: ValidationReason

    @property
    def asin(self) -> str:
        return self.entry.asin


class PurchaseOrchestrator:
    def __init__(
        self,
        signing_secret: bytes,
        catalog: Catalog,
        fulfillment: CrossmintClient,
        ledger: IdempotencyLedger | None = None,
        payments: PaymentRegistry | None = None,
    ) -> None:
        if not signing_secret:
            raise ValueError("signing_secret must be provided")
        self._secret = signing_secret
        self.catalog = catalog
        self._fulfillment = fulfillment
        self.ledger = ledger if ledger is not None else IdempotencyLedger()
        self.payments = payments if payments is not None else PaymentRegistry()
        self._locks = KeyedLocks()

    def verify_offer(
        self,
        product_blob: str,
        signature: str,
        price_ceiling: Decimal | None = None,
        request_id: str = "-",
    ) -> ValidatedOffer:
        """Authenticate, decode and validate an offer.

        Raises ``SignatureMismatch``, ``MalformedToken``, ``CatalogMiss`` or
        ``PriceExceeded``.
        """
        require_valid(product_blob, signature, self._secret)
        offer = decode_offer(product_blob)
        log_asin_flow(logger, request_id, "incoming", logging.DEBUG, asin=offer.asin, title=offer.title)

        validation = self.catalog.require(offer.asin)
        entry = validation.entry
        if entry is None:
            raise CatalogMiss(str(offer.asin), validation.suggestions)
        log_asin_flow(
            logger,
            request_id,
            "validated",
            original=offer.asin,
            validated=entry.asin,
            catalog=entry.name,
            reason=validation.reason.value,
        )

        if price_ceiling is not None and offer.price.amount > price_ceiling:
            raise PriceExceeded(offer.price.amount, price_ceiling)
        return ValidatedOffer(offer=offer, entry=entry, reason=validation.reason)

    def rejection_for(self, exc: Exception, request_id: str) -> Rejected:
        if isinstance(exc, SignatureMismatch):
            return reject("auth", "INVALID_SIGNATURE", str(exc), request_id)
        if isinstance(exc, MalformedToken):
            return reject(
                "validation",
                "INVALID_PRODUCT_BLOB",
                f"Failed to decode product data: {exc}",
                request_id,
            )
        if isinstance(exc, InvalidShipping):
            return reject("validation", "INVALID_SHIPPING", str(exc), request_id)
        if isinstance(exc, InvalidAmount):
            return reject("validation", "INVALID_AMOUNT", str(exc), request_id)
        if isinstance(exc, CatalogMiss):
            return reject(
                "catalog.validate",
                "ASIN_NOT_IN_CATALOG",
                str(exc),
                request_id,
                providedAsin=exc.asin,
                suggestions=list(exc.suggestions),
                availableAsins=self.catalog.asins,
            )
        if isinstance(exc, PriceExceeded):
            return reject(
                "sku.validate",
                "PRICE_EXCEEDED",
                str(exc),
                request_id,
                currentPrice=float(exc.current),
                expectedPrice=float(exc.expected),
            )
        if isinstance(exc, DownstreamTransportError):
            return reject(
                "crossmint.createOrder",
                "CROSSMINT_API_ERROR",
                str(exc),
                request_id,
                originalError=str(exc),
            )
        if isinstance(exc, DownstreamValidationError):
            return reject(
                "crossmint.validation",
                "CROSSMINT_INVALID_RESPONSE",
                str(exc),
                request_id,
                originalError=str(exc),
            )
        return reject("unknown", "INTERNAL_ERROR", str(exc), request_id, originalError=str(exc))

    async def purchase(self, request: PurchaseRequest) -> PurchaseResult:
        request_id = new_request_id()
        logger.info(
            "Purchase request received (%s): %s",
            request_id,
            {
                "hasProductBlob": bool(request.product_blob),
                "hasSignature": bool(request.signature),
                "quantity": request.quantity,
                "hasShipping": request.shipping is not None,
                "idempotencyKey": request.idempotency_key,
                "hasPriceExpectation": request.price_ceiling is not None,
            },
        )

        if not request.product_blob or not request.signature:
            missing = [
                name
                for name, value in (("productBlob", request.product_blob), ("signature", request.signature))
                if not value
            ]
            return reject(
                "validation",
                "MISSING_REQUIRED_FIELDS",
                "productBlob and signature are required",
                request_id,
                missing=missing,
            )
        if not valid_quantity(request.quantity):
            return reject(
                "validation",
                "INVALID_QUANTITY",
                f"quantity must be an integer between 1 and {MAX_QUANTITY}",
                request_id,
                quantity=request.quantity if isinstance(request.quantity, (int, float, str)) else None,
            )
        try:
            validate_shipping(request.shipping)
        except InvalidShipping as exc:
            return self.rejection_for(exc, request_id)

        # Shielded: once an order is in flight its outcome is recorded even if
        # the caller goes away.
        return await asyncio.shield(self._run(request, request_id))

    async def _run(self, request: PurchaseRequest, request_id: str) -> PurchaseResult:
        key = request.idempotency_key
        if not key:
            return await self._process(request, request_id)

        async with self._locks.hold(key):
            cached = self.ledger.check(key)
            if cached is not None:
                logger.info("Returning cached result for idempotency key: %s", key)
                return cached
            return await self._process(request, request_id)

    async def _process(self, request: PurchaseRequest, request_id: str) -> PurchaseResult:
        try:
            validated = self.verify_offer(
                request.product_blob or "",
                request.signature or "",
                request.price_ceiling,
                request_id,
            )
            total_price = order_total(validated.offer.price.amount, request.quantity)
        except (SignatureMismatch, MalformedToken, CatalogMiss, PriceExceeded, InvalidAmount) as exc:
            logger.warning("Purchase rejected (%s): %s", request_id, exc)
            return self.rejection_for(exc, request_id)

        result = await self._submit(request, validated, total_price, request_id)
        self.ledger.store(request.idempotency_key, result)
        return result

    async def _submit(
        self,
        request: PurchaseRequest,
        validated: ValidatedOffer,
        total_price: Decimal,
        request_id: str,
    ) -> PurchaseResult:
        offer = validated.offer
        payment_id = new_payment_id()

        try:
            order_request = build_order_request(validated.asin, shipping=request.shipping)
            log_asin_flow(
                logger,
                request_id,
                "locator",
                locator=order_request["lineItems"][0]["productLocator"],
                payment=payment_id,
                total=str(total_price),
            )
            raw = await self._fulfillment.create_order(order_request)
            order = require_order(raw)
        except (DownstreamTransportError, DownstreamValidationError, InvalidShipping) as exc:
            logger.error("Purchase failed (%s): %s", request_id, exc)
            return self.rejection_for(exc, request_id)
        except Exception as exc:
            logger.exception("Purchase failed unexpectedly (%s)", request_id)
            return self.rejection_for(exc, request_id)

        tracking = order.raw.get("tracking") or f"TK{int(time.time() * 1000)}"
        self.payments.add(
            PaymentRecord(
                payment_id=payment_id,
                asin=validated.asin,
                original_asin=offer.asin,
                quantity=request.quantity,
                product=validated.entry,
                title=offer.title,
                total_price=total_price,
                status=COMPLETED,
                completed_at=datetime.now(timezone.utc),
                order_id=order.order_id,
                tracking=tracking,
                shipping=request.shipping,
                raw_response=order.raw,
            )
        )
        logger.info("Purchase completed: %s (Request: %s)", order.order_id, request_id)

        return Confirmed(
            order_id=order.order_id or "",
            payment_id=payment_id,
            resolved_asin=validated.asin,
            original_asin=offer.asin,
            title=offer.title,
            quantity=request.quantity,
            unit_price=offer.price.amount,
            total_price=total_price,
            tracking=tracking,
            raw=order.raw,
            request_id=request_id,
        )
