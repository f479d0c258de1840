#!/usr/bin/env python3
"""HTTP gateway: product search, x402 purchase quotes and order commits."""

import asyncio
import base64
import json
import platform
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from catalog import Catalog, CatalogMiss, load_catalog
from exact_payments import (
    ExactPaymentConfig,
    assert_exact_scheme_only,
    create_exact_payment_response,
    exact_headers,
)
from fulfillment import CrossmintClient, InvalidShipping, validate_shipping
from idempotency import IdempotencyLedger
from logging_utils import get_logger
from offer_auth import SignatureMismatch, sign_offer
from offer_codec import MalformedToken
from payments import COMPLETED, PENDING, PaymentRecord, PaymentRegistry, new_payment_id
from product_search import SearchError, SerpApiSearch
from purchase import (
    MAX_QUANTITY,
    InvalidAmount,
    PriceExceeded,
    PurchaseOrchestrator,
    PurchaseRequest,
    new_request_id,
    order_total,
    reject,
    valid_quantity,
)
from settings import ConfigurationMissing, GatewaySettings, load_settings

SERVICE_NAME = "Amazon Crossmint Proxy"
VERSION = "2.0.0"
DEFAULT_SEARCH_LIMIT = 10
MAX_SEARCH_LIMIT = 50

logger = get_logger("gateway_server")


def _json_response(
    payload: Any,
    status_code: int = 200,
    headers: dict[str, str] | None = None,
) -> Response:
    return Response(
        content=json.dumps(payload),
        status_code=status_code,
        headers=headers,
        media_type="application/json",
    )


async def _read_json_object(request: Request) -> dict[str, Any] | Response:
    try:
        payload = await request.json()
    except Exception:
        return _json_response({"error": "Invalid JSON payload"}, 400)
    if not isinstance(payload, dict):
        return _json_response({"error": "Invalid payload format"}, 400)
    return payload


def _parse_price_ceiling(raw: Any) -> Decimal | None:
    if raw is None:
        return None
    amount = raw.get("amount") if isinstance(raw, dict) else raw
    if isinstance(amount, bool) or amount is None:
        raise ValueError("priceExpectation.amount must be a number")
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError("priceExpectation.amount must be a number") from exc
    if not value.is_finite() or value < 0:
        raise ValueError("priceExpectation.amount must be a non-negative number")
    return value


def _parse_quantity(raw: Any) -> Any:
    # Pass anything unusual through; the orchestrator rejects it with a stage tag.
    if raw is None:
        return 1
    if isinstance(raw, str) and raw.strip().isdigit():
        return int(raw.strip())
    return raw


def create_app(
    settings: GatewaySettings,
    *,
    search: SerpApiSearch | None = None,
    fulfillment: CrossmintClient | None = None,
    catalog: Catalog | None = None,
    ledger: IdempotencyLedger | None = None,
) -> FastAPI:
    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    if catalog is None:
        catalog = load_catalog(settings.catalog_path)
    if search is None:
        search = SerpApiSearch(settings.serp_api_key, http_client, settings.serp_api_url)
    if fulfillment is None:
        fulfillment = CrossmintClient(
            settings.crossmint_api_key,
            settings.crossmint_base_url,
            http_client,
        )
    if ledger is None:
        ledger = IdempotencyLedger(ttl_seconds=settings.idempotency_ttl_seconds)
    orchestrator = PurchaseOrchestrator(
        settings.signing_secret,
        catalog,
        fulfillment,
        ledger=ledger,
        payments=PaymentRegistry(pending_ttl_seconds=settings.payment_pending_ttl_seconds),
    )
    payments = orchestrator.payments
    exact_config = ExactPaymentConfig.from_settings(settings)
    started_at = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        interval = settings.idempotency_reap_interval_seconds
        reapers = [
            asyncio.create_task(ledger.run_reaper(interval)),
            asyncio.create_task(payments.run_reaper(interval)),
        ]
        try:
            yield
        finally:
            for reaper in reapers:
                reaper.cancel()
            for reaper in reapers:
                try:
                    await reaper
                except asyncio.CancelledError:
                    pass
            await http_client.aclose()

    app = FastAPI(title=SERVICE_NAME, version=VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_allow_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.orchestrator = orchestrator
    app.state.ledger = ledger
    app.state.payments = payments

    def _uptime() -> float:
        return round(time.monotonic() - started_at, 3)

    @app.get("/")
    async def root():
        return {
            "name": SERVICE_NAME,
            "version": VERSION,
            "mode": "PRODUCTION - Real Amazon Integration",
            "endpoints": {
                "GET /": "This endpoint",
                "GET /products?search=query": "Search Amazon products via SerpAPI",
                "POST /purchase/quote": "x402 payment challenge for a signed offer",
                "POST /purchase": "Purchase a signed offer (idempotent per key)",
                "POST /payment-webhook": "Payment settlement webhook - creates orders",
                "GET /payment/{paymentId}": "Check payment status",
            },
            "integration": {
                "crossmint": settings.crossmint_base_url,
                "payment": f"x402 exact with {exact_config.asset} on {exact_config.chain}",
            },
        }

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": _uptime(),
            "service": SERVICE_NAME,
            "version": VERSION,
        }

    @app.get("/health/search")
    async def health_search():
        configured = search.configured
        return {
            "serpConfigured": configured,
            "note": "SERP API key configured" if configured else "SERP API key missing",
        }

    @app.get("/config")
    async def config():
        return {
            "x402Version": 1,
            "scheme": exact_config.scheme,
            "asset": exact_config.asset,
            "chain": exact_config.chain,
            "recipient": exact_config.recipient,
            "facilitatorUrl": exact_config.facilitator_url,
            "defaultAsin": catalog.default_asin,
        }

    @app.get("/products")
    async def products(request: Request):
        query = (request.query_params.get("search") or "").strip()
        if not query:
            return _json_response(
                {
                    "error": "Search query required. No demo products available in production mode.",
                    "required": "Add ?search=your_query to search Amazon products",
                },
                400,
            )
        try:
            limit = int(request.query_params.get("limit", DEFAULT_SEARCH_LIMIT))
        except ValueError:
            return _json_response({"error": "limit must be an integer"}, 400)
        limit = max(1, min(limit, MAX_SEARCH_LIMIT))

        try:
            offers = await search.search(query, limit)
        except SearchError as exc:
            logger.error("Search error: %s", exc)
            return _json_response(
                {
                    "error": "Product search failed",
                    "message": str(exc),
                    "note": "Ensure SERP_API_KEY is configured for Amazon search",
                },
                500,
            )

        signed = []
        for offer in offers:
            token = sign_offer(offer, settings.signing_secret)
            signed.append({"product": offer.to_dict(), **token.to_dict()})
        return {
            "products": signed,
            "count": len(signed),
            "searchMethod": "SerpAPI",
            "query": query,
            "note": "Products carry HMAC signatures for the stateless purchase flow",
        }

    @app.post("/purchase/quote")
    async def purchase_quote(request: Request):
        payload = await _read_json_object(request)
        if isinstance(payload, Response):
            return payload

        request_id = new_request_id()
        product_blob = payload.get("productBlob")
        signature = payload.get("signature")
        quantity = _parse_quantity(payload.get("quantity"))
        if not product_blob or not signature:
            rejected = reject(
                "validation",
                "MISSING_REQUIRED_FIELDS",
                "productBlob and signature are required",
                request_id,
            )
            return _json_response(rejected.to_dict(), rejected.status_code)
        if not valid_quantity(quantity):
            rejected = reject(
                "validation",
                "INVALID_QUANTITY",
                f"quantity must be an integer between 1 and {MAX_QUANTITY}",
                request_id,
            )
            return _json_response(rejected.to_dict(), rejected.status_code)
        try:
            ceiling = _parse_price_ceiling(payload.get("priceExpectation"))
        except ValueError as exc:
            rejected = reject("validation", "INVALID_PRICE_EXPECTATION", str(exc), request_id)
            return _json_response(rejected.to_dict(), rejected.status_code)

        try:
            shipping = validate_shipping(payload.get("shipping"))
            validated = orchestrator.verify_offer(product_blob, signature, ceiling, request_id)
            total = order_total(validated.offer.price.amount, quantity)
            if total <= 0:
                raise InvalidAmount(f"Order total must be positive, got ${total}")
        except (
            SignatureMismatch,
            MalformedToken,
            CatalogMiss,
            PriceExceeded,
            InvalidAmount,
            InvalidShipping,
        ) as exc:
            rejected = orchestrator.rejection_for(exc, request_id)
            return _json_response(rejected.to_dict(), rejected.status_code)

        offer = validated.offer
        payment_id = new_payment_id()
        payments.add(
            PaymentRecord(
                payment_id=payment_id,
                asin=validated.asin,
                original_asin=offer.asin,
                quantity=quantity,
                product=validated.entry,
                title=offer.title,
                total_price=total,
                status=PENDING,
                shipping=shipping,
            )
        )

        body = create_exact_payment_response(
            exact_config,
            total,
            payment_id,
            product=offer.to_dict(),
        )
        headers = exact_headers(total, payment_id)
        headers["Payment-Required"] = base64.b64encode(json.dumps(body).encode()).decode()
        logger.info("Issued x402 challenge %s for %s ($%s)", payment_id, validated.asin, total)
        return _json_response(body, 402, headers)

    @app.post("/purchase")
    async def purchase(request: Request):
        payload = await _read_json_object(request)
        if isinstance(payload, Response):
            return payload

        try:
            ceiling = _parse_price_ceiling(payload.get("priceExpectation"))
        except ValueError as exc:
            rejected = reject("validation", "INVALID_PRICE_EXPECTATION", str(exc), new_request_id())
            return _json_response(rejected.to_dict(), rejected.status_code)

        idempotency_key = payload.get("idempotencyKey") or request.headers.get("Idempotency-Key")
        if idempotency_key is not None:
            idempotency_key = str(idempotency_key).strip() or None
        result = await orchestrator.purchase(
            PurchaseRequest(
                product_blob=payload.get("productBlob"),
                signature=payload.get("signature"),
                quantity=_parse_quantity(payload.get("quantity")),
                shipping=payload.get("shipping"),
                idempotency_key=idempotency_key,
                price_ceiling=ceiling,
            )
        )
        return _json_response(result.to_dict(), result.status_code)

    @app.post("/payment-webhook")
    async def payment_webhook(request: Request):
        payload = await _read_json_object(request)
        if isinstance(payload, Response):
            return payload
        payment_id = payload.get("payment_id")
        if not payment_id or not isinstance(payment_id, str):
            logger.warning("Invalid webhook request - missing payment verification")
            return _json_response({"error": "Invalid webhook request"}, 400)

        record = await payments.settle(payment_id, fulfillment)
        if record is None:
            logger.info("Payment %s not found", payment_id)
            return _json_response({"error": "Payment not found"}, 404)

        completed = [record] if record.status == COMPLETED else []
        return {
            "status": "success",
            "message": "Payment processed",
            "paymentStatus": record.status,
            "completed_orders": len(completed),
            "orders": [
                {
                    "paymentId": item.payment_id,
                    "orderId": item.order_id,
                    "product": item.title,
                    "total": float(item.total_price),
                }
                for item in completed
            ],
        }

    @app.get("/payment/{payment_id}")
    async def payment_status(payment_id: str):
        record = payments.get(payment_id)
        if record is None:
            return _json_response({"error": "Payment not found"}, 404)
        return record.to_dict()

    @app.get("/diagnostics")
    async def diagnostics():
        latest = payments.latest()
        try:
            crossmint_reachable = bool(httpx.URL(settings.crossmint_base_url).host)
        except httpx.InvalidURL:
            crossmint_reachable = False
        return {
            "serpConfigured": search.configured,
            "productCatalogCount": len(catalog),
            "lastPurchaseASIN": latest.asin if latest else None,
            "crossmintReachable": crossmint_reachable,
            "activePayments": len(payments),
            "idempotencyRecords": len(ledger),
            "environment": {
                "pythonVersion": platform.python_version(),
                "platform": platform.platform(),
                "uptime": _uptime(),
            },
            "availableASINs": catalog.asins,
        }

    return app


def main() -> None:
    import uvicorn

    try:
        settings = load_settings()
    except ConfigurationMissing as exc:
        logger.error("%s", exc)
        logger.error("Please check your .env file and ensure all required variables are set.")
        raise SystemExit(1) from exc

    logger.info("Configuration summary: %s", settings.summary())
    assert_exact_scheme_only(ExactPaymentConfig.from_settings(settings))

    app = create_app(settings)
    logger.info("%s running on http://0.0.0.0:%d", SERVICE_NAME, settings.port)
    uvicorn.run(app, host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
