"""x402 "exact" payment requirements.

Only the ``exact`` scheme is ever offered; there is no fallback to legacy
settlement schemes.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from logging_utils import get_logger
from settings import GatewaySettings

logger = get_logger("exact_payments")

EXACT_SCHEME = "exact"
X402_VERSION = 1
REQUIRED_ACCEPT_FIELDS = ("amount", "asset", "chain", "recipient")
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class ExactPaymentConfig:
    recipient: str
    facilitator_url: str
    asset: str = "USDC"
    chain: str = "solana"
    scheme: str = EXACT_SCHEME

    @classmethod
    def from_settings(cls, settings: GatewaySettings) -> "ExactPaymentConfig":
        return cls(
            recipient=settings.exact_recipient,
            facilitator_url=settings.facilitator_url,
            asset=settings.exact_asset,
            chain=settings.exact_chain,
        )


def normalize_amount(amount: Any) -> str:
    if isinstance(amount, bool) or amount is None or amount == "":
        raise ValueError("Amount is required for exact payment accepts")
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount for exact payment: {amount}") from exc
    if not value.is_finite() or value <= 0:
        raise ValueError(f"Invalid amount for exact payment: {amount}")
    if isinstance(amount, str):
        return amount.strip()
    return str(value.quantize(_CENT, rounding=ROUND_HALF_UP))


def build_exact_accepts(
    config: ExactPaymentConfig,
    amount: Any,
    *,
    asset: str | None = None,
    chain: str | None = None,
    recipient: str | None = None,
    reference: str | None = None,
    payment_id: str | None = None,
    message: str | None = None,
) -> dict[str, Any]:
    entry: dict[str, Any] = {
        "scheme": EXACT_SCHEME,
        "amount": normalize_amount(amount),
        "asset": asset or config.asset,
        "chain": chain or config.chain,
        "recipient": recipient or config.recipient,
    }
    if reference:
        entry["reference"] = reference

    response: dict[str, Any] = {"x402Version": X402_VERSION, "accepts": [entry]}
    if payment_id:
        response["paymentId"] = payment_id
    if message:
        response["message"] = message
    return response


def validate_exact_accepts(accepts: Any) -> None:
    if not isinstance(accepts, list) or not accepts:
        raise ValueError("Accepts array must be non-empty for exact scheme validation")

    for entry in accepts:
        if not isinstance(entry, dict):
            raise ValueError("Invalid accepts entry: must be an object")
        if entry.get("scheme") != EXACT_SCHEME:
            raise ValueError(
                f'Invalid scheme in accepts: expected "exact", got "{entry.get("scheme")}"'
            )
        for name in REQUIRED_ACCEPT_FIELDS:
            if not entry.get(name):
                raise ValueError(f'Missing required field "{name}" in exact accepts entry')


def create_exact_payment_response(
    config: ExactPaymentConfig,
    amount: Any,
    payment_id: str,
    *,
    product: dict[str, Any] | None = None,
    reference: str | None = None,
) -> dict[str, Any]:
    """Full 402 body for a purchase challenge."""
    normalized = normalize_amount(amount)
    if product:
        message = f"Payment of ${normalized} USDC required for {product.get('title')}"
    else:
        message = f"Payment of ${normalized} USDC required"

    response = build_exact_accepts(
        config,
        normalized,
        reference=reference or payment_id,
        payment_id=payment_id,
        message=message,
    )
    validate_exact_accepts(response["accepts"])
    response.update(
        {
            "error": "Payment Required",
            "amount": float(normalized),
            "currency": "USDC",
        }
    )
    if product:
        response["product"] = product
    return response


def exact_headers(amount: Any, payment_id: str) -> dict[str, str]:
    return {
        "Accept": EXACT_SCHEME,
        "X-Payment-Amount": normalize_amount(amount),
        "X-Payment-Currency": "USDC",
        "X-Payment-Id": payment_id,
        "X-Payment-Schemes": EXACT_SCHEME,
    }


def assert_exact_scheme_only(config: ExactPaymentConfig) -> None:
    logger.info('Runtime validation: active payment scheme is "%s"', config.scheme)
    logger.info(
        "Configuration: %s on %s to %s...",
        config.asset,
        config.chain,
        config.recipient[:8],
    )
    if config.scheme != EXACT_SCHEME:
        raise RuntimeError(
            f'Invalid payment scheme configuration: expected "exact", got "{config.scheme}"'
        )
