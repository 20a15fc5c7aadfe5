"""Cart value objects passed into checkout.

The storefront session owns the cart; checkout only ever sees a ``Cart``
rebuilt from the session payload and hands back a fresh payload to store.
"""

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Any, Optional

from libs.common.currency import to_decimal


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass
class CartLine:
    """One cart row. Prices here are what the shopper saw, not what they pay."""

    product_id: int
    quantity: int
    unit_price: Decimal = Decimal("0")
    variant_id: Optional[int] = None
    size: Optional[str] = None
    discount_percent: Decimal = Decimal("0")
    product_name: Optional[str] = None
    brand_id: Optional[int] = None
    brand_name: Optional[str] = None
    category: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["unit_price"] = str(self.unit_price)
        data["discount_percent"] = str(self.discount_percent)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CartLine":
        return cls(
            product_id=int(data.get("product_id") or 0),
            quantity=_optional_int(data.get("quantity")) or 0,
            unit_price=to_decimal(data.get("unit_price")),
            variant_id=_optional_int(data.get("variant_id")),
            size=data.get("size"),
            discount_percent=to_decimal(data.get("discount_percent")),
            product_name=data.get("product_name"),
            brand_id=_optional_int(data.get("brand_id")),
            brand_name=data.get("brand_name"),
            category=data.get("category"),
        )


@dataclass
class BundleDefinition:
    """Two or more products sold together at a discount rate."""

    bundle_id: str
    product_ids: list[int]
    discount_rate: Decimal
    title: Optional[str] = None


@dataclass
class Cart:
    lines: list[CartLine] = field(default_factory=list)
    coupon_code: Optional[str] = None
    bundles: list[dict] = field(default_factory=list)
    points_to_redeem: int = 0

    @property
    def is_empty(self) -> bool:
        return not any(line.quantity > 0 for line in self.lines)

    def to_session(self) -> dict:
        """Serialize for the session store (JSON-safe)."""
        return {
            "lines": [line.to_dict() for line in self.lines],
            "coupon_code": self.coupon_code,
            "bundles": list(self.bundles),
            "points_to_redeem": int(self.points_to_redeem or 0),
        }

    @classmethod
    def from_session(cls, payload: Optional[dict]) -> "Cart":
        payload = payload or {}
        return cls(
            lines=[CartLine.from_dict(row) for row in payload.get("lines") or []],
            coupon_code=payload.get("coupon_code"),
            bundles=list(payload.get("bundles") or []),
            points_to_redeem=_optional_int(payload.get("points_to_redeem")) or 0,
        )
