"""Server-side allow-list of purchasable identifiers."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from logging_utils import get_logger

logger = get_logger("catalog")

MAX_SUGGESTIONS = 3


class CatalogMiss(LookupError):
    """Raised when an identifier is not in the catalog."""

    def __init__(self, asin: str, suggestions: list[str]) -> None:
        super().__init__(f"ASIN {asin} is not in the approved product catalog")
        self.asin = asin
        self.suggestions = suggestions


@dataclass(frozen=True)
class CatalogEntry:
    asin: str
    name: str
    price: Decimal
    sku: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "asin": self.asin,
            "name": self.name,
            "sku": self.sku or self.asin,
            "price": float(self.price),
        }


class ValidationReason(str, Enum):
    USED_DEFAULT = "used_default"
    FOUND_IN_CATALOG = "found_in_catalog"
    NOT_IN_CATALOG = "not_in_catalog"


@dataclass(frozen=True)
class ValidationOutcome:
    valid: bool
    asin: str | None
    reason: ValidationReason
    entry: CatalogEntry | None = None
    suggestions: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "valid": self.valid,
            "asin": self.asin,
            "reason": self.reason.value,
            "product": self.entry.to_dict() if self.entry else None,
        }
        if not self.valid:
            data["suggestions"] = list(self.suggestions)
        return data


class Catalog:
    """Read-only snapshot of the catalog; safe to share between requests."""

    def __init__(self, default_asin: str, entries: Iterable[CatalogEntry]) -> None:
        self._entries = tuple(entries)
        self._by_asin = {entry.asin: entry for entry in self._entries}
        if default_asin not in self:
            raise ValueError(f"default ASIN {default_asin} is not part of the catalog")
        self.default_asin = default_asin

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, asin: object) -> bool:
        return asin in self._by_asin

    @property
    def asins(self) -> list[str]:
        return [entry.asin for entry in self._entries]

    def get(self, asin: str) -> CatalogEntry | None:
        return self._by_asin.get(asin)

    def validate(self, asin: str | None) -> ValidationOutcome:
        if not asin:
            return ValidationOutcome(
                valid=True,
                asin=self.default_asin,
                reason=ValidationReason.USED_DEFAULT,
                entry=self._by_asin[self.default_asin],
            )

        entry = self.get(asin)
        if entry is not None:
            return ValidationOutcome(
                valid=True,
                asin=asin,
                reason=ValidationReason.FOUND_IN_CATALOG,
                entry=entry,
            )

        return ValidationOutcome(
            valid=False,
            asin=asin,
            reason=ValidationReason.NOT_IN_CATALOG,
            suggestions=self.asins[:MAX_SUGGESTIONS],
        )

    def require(self, asin: str | None) -> ValidationOutcome:
        outcome = self.validate(asin)
        if not outcome.valid:
            raise CatalogMiss(str(asin), outcome.suggestions)
        return outcome

    @classmethod
    def from_dict(cls, data: Any) -> "Catalog":
        if not isinstance(data, dict):
            raise ValueError("catalog must be a JSON object")
        products = data.get("products")
        if not isinstance(products, list) or not products:
            raise ValueError("catalog must list at least one product")
        entries = []
        for item in products:
            if not isinstance(item, dict) or not isinstance(item.get("asin"), str):
                raise ValueError(f"invalid catalog product: {item!r}")
            try:
                price = Decimal(str(item.get("price", 0)))
            except InvalidOperation as exc:
                raise ValueError(f"invalid price for {item['asin']}: {item.get('price')!r}") from exc
            entries.append(
                CatalogEntry(
                    asin=item["asin"],
                    name=str(item.get("name") or item["asin"]),
                    price=price,
                    sku=item.get("sku"),
                )
            )
        default_asin = data.get("defaultASIN") or entries[0].asin
        return cls(default_asin, entries)


FALLBACK_CATALOG = Catalog(
    "B08C7KG5LP",
    [
        CatalogEntry(
            asin="B08C7KG5LP",
            name="Apple AirPods (3rd Generation)",
            price=Decimal("169.99"),
            sku="B08C7KG5LP",
        ),
        CatalogEntry(
            asin="B01MTB55WH",
            name="Apple AirPods (3rd Gen - Alt Listing)",
            price=Decimal("169.99"),
            sku="B01MTB55WH",
        ),
    ],
)


def load_catalog(path: str | Path) -> Catalog:
    """Load the catalog file, falling back to the built-in catalog on failure."""
    try:
        with open(path, encoding="utf-8") as fh:
            catalog = Catalog.from_dict(json.load(fh))
    except (OSError, ValueError) as exc:
        logger.error("Failed to load product catalog from %s: %s", path, exc)
        logger.warning("Using fallback product catalog (%d products)", len(FALLBACK_CATALOG))
        return FALLBACK_CATALOG
    logger.info("Product catalog loaded: %d products", len(catalog))
    return catalog
