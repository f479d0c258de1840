"""In-memory registry of purchase payments.

Backs ``GET /payment/{id}``, the payment webhook and diagnostics. Records
live for the lifetime of the process only.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from catalog import CatalogEntry
from fulfillment import CrossmintClient, build_order_request, require_order
from logging_utils import get_logger

logger = get_logger("payments")

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

DEFAULT_PENDING_TTL_SECONDS = 3600
DEFAULT_REAP_INTERVAL_SECONDS = 1800


def new_payment_id() -> str:
    return f"payment_{uuid.uuid4().hex}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PaymentRecord:
    payment_id: str
    asin: str
    original_asin: str | None
    quantity: int
    product: CatalogEntry
    title: str
    total_price: Decimal
    status: str = PENDING
    created_at: datetime = field(default_factory=_utcnow)
    completed_at: datetime | None = None
    order_id: str | None = None
    tracking: Any = None
    shipping: dict[str, Any] | None = None
    raw_response: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "paymentId": self.payment_id,
            "asin": self.asin,
            "originalAsin": self.original_asin,
            "quantity": self.quantity,
            "product": self.product.to_dict(),
            "title": self.title,
            "totalPrice": float(self.total_price),
            "status": self.status,
            "createdAt": self.created_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "orderId": self.order_id,
            "crossmintOrder": self.order_id,
            "trackingInfo": self.tracking,
            "shipping": self.shipping,
            "rawCrossmintResponse": self.raw_response,
            "error": self.error,
        }


class PaymentRegistry:
    def __init__(
        self,
        pending_ttl_seconds: float = DEFAULT_PENDING_TTL_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if pending_ttl_seconds <= 0:
            raise ValueError("pending_ttl_seconds must be > 0")
        self.pending_ttl_seconds = pending_ttl_seconds
        self._clock = clock
        self._records: dict[str, PaymentRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def add(self, record: PaymentRecord) -> PaymentRecord:
        with self._lock:
            self._records[record.payment_id] = record
        return record

    def get(self, payment_id: str) -> PaymentRecord | None:
        with self._lock:
            return self._records.get(payment_id)

    def latest(self) -> PaymentRecord | None:
        with self._lock:
            if not self._records:
                return None
            return max(self._records.values(), key=lambda record: record.created_at)

    def reap(self) -> int:
        """Drop pending payments whose quote has gone unpaid past the TTL.

        Settled, failed and in-flight records are kept.
        """
        now = self._clock()
        with self._lock:
            stale = [
                payment_id
                for payment_id, record in self._records.items()
                if record.status == PENDING
                and (now - record.created_at).total_seconds() >= self.pending_ttl_seconds
            ]
            for payment_id in stale:
                del self._records[payment_id]
        return len(stale)

    async def run_reaper(self, interval_seconds: float = DEFAULT_REAP_INTERVAL_SECONDS) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        while True:
            await asyncio.sleep(interval_seconds)
            removed = self.reap()
            if removed:
                logger.info("Reaped %d unpaid pending payments", removed)

    async def settle(self, payment_id: str, fulfillment: CrossmintClient) -> PaymentRecord | None:
        """Create the downstream order for a pending payment.

        Returns ``None`` for unknown ids and the untouched record when the
        payment is no longer pending.
        """
        with self._lock:
            record = self._records.get(payment_id)
            if record is None:
                return None
            if record.status != PENDING:
                logger.info("Payment %s is not pending (status: %s)", payment_id, record.status)
                return record
            # Claimed before the await so a concurrent webhook cannot submit twice.
            record.status = PROCESSING

        logger.info("Creating Crossmint order for payment %s", payment_id)
        try:
            raw = await fulfillment.create_order(
                build_order_request(record.asin, shipping=record.shipping)
            )
            validation = require_order(raw)
        except Exception as exc:
            logger.error("Failed to create order for %s: %s", payment_id, exc)
            with self._lock:
                record.status = FAILED
                record.error = str(exc)
                record.completed_at = _utcnow()
            return record

        tracking = validation.raw.get("tracking")
        with self._lock:
            record.status = COMPLETED
            record.order_id = validation.order_id
            record.tracking = tracking
            record.raw_response = validation.raw
            record.completed_at = _utcnow()
        logger.info("Order created for payment %s: %s", payment_id, validation.order_id)
        return record
