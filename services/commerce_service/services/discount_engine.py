"""Discount engine: subtotals, coupon validation and bundle discounts.

Everything except ``validate_coupon`` and ``record_coupon_usage`` is pure. The
pure functions never raise on malformed monetary input; such values count as 0.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable, Optional, Union

from libs.common.config import get_settings
from libs.common.currency import ZERO, format_money, quantize, to_decimal
from libs.common.datetime_utils import ensure_utc, utc_now
from libs.common.errors import CouponIneligible
from libs.common.logging import get_logger
from services.commerce_service.models import Coupon, CouponUsage, DiscountType
from services.commerce_service.services.cart import BundleDefinition, CartLine
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

HUNDRED = Decimal("100")


@dataclass
class CouponValidation:
    valid: bool
    message: Optional[str] = None
    coupon: Optional[Coupon] = None
    discount_amount: Decimal = ZERO


@dataclass
class BundleDiscount:
    total_bundle_sets: int = 0
    discount_amount: Decimal = ZERO
    applied_bundles: list[dict] = field(default_factory=list)


def _line_quantity(line: CartLine) -> int:
    try:
        return max(0, int(line.quantity))
    except (TypeError, ValueError):
        return 0


# ---------------------------------------------------------------------------
# Subtotals
# ---------------------------------------------------------------------------


def calculate_subtotal(lines: Iterable[CartLine]) -> Decimal:
    """Sum of unit_price × quantity, rounded to cents."""
    total = sum(
        (to_decimal(line.unit_price) * _line_quantity(line) for line in lines or []),
        Decimal(0),
    )
    return quantize(total)


def calculate_brand_subtotal(
    lines: Iterable[CartLine],
    brand_id: Optional[int],
    brand_name: Optional[str] = None,
) -> Decimal:
    """Subtotal over lines of one brand.

    Lines without a brand id fall back to a case-insensitive brand name match.
    """
    if not brand_id:
        return ZERO
    name_key = brand_name.strip().lower() if brand_name else None

    total = Decimal(0)
    for line in lines or []:
        if line.brand_id is not None:
            matches = line.brand_id == brand_id
        else:
            matches = bool(
                name_key and line.brand_name and line.brand_name.strip().lower() == name_key
            )
        if matches:
            total += to_decimal(line.unit_price) * _line_quantity(line)
    return quantize(total)


# ---------------------------------------------------------------------------
# Coupons
# ---------------------------------------------------------------------------


def is_within_active_window(coupon: Coupon, now: Optional[datetime] = None) -> bool:
    """Exact timestamp check, then a date-only check to absorb timezone skew."""
    start = ensure_utc(coupon.start_date)
    end = ensure_utc(coupon.end_date)
    now = ensure_utc(now or utc_now())
    if start is None or end is None:
        return False

    if start <= now <= end:
        return True
    return start.date() <= now.date() <= end.date()


def calculate_discount(coupon: Coupon, eligible_subtotal: Any) -> Decimal:
    """Coupon discount against the eligible subtotal, never above it."""
    subtotal = quantize(eligible_subtotal)
    value = to_decimal(coupon.discount_value)

    if coupon.discount_type == DiscountType.PERCENTAGE:
        percentage = min(HUNDRED, max(Decimal(0), value))
        discount = subtotal * percentage / HUNDRED
    elif coupon.discount_type == DiscountType.FIXED_AMOUNT:
        discount = max(Decimal(0), value)
    else:
        discount = Decimal(0)

    if coupon.max_discount_amount is not None:
        cap = to_decimal(coupon.max_discount_amount)
        if cap >= 0:
            discount = min(discount, cap)

    discount = quantize(discount)
    if discount > subtotal:
        discount = subtotal
    return quantize(discount)


async def find_coupon_by_code(db: AsyncSession, code: str) -> Optional[Coupon]:
    """Case-insensitive lookup."""
    result = await db.execute(
        select(Coupon).where(func.lower(Coupon.code) == code.strip().lower())
    )
    return result.scalar_one_or_none()


async def get_user_usage_count(db: AsyncSession, coupon_id: int, user_id: int) -> int:
    result = await db.execute(
        select(func.count(CouponUsage.id)).where(
            CouponUsage.coupon_id == coupon_id,
            CouponUsage.user_id == user_id,
        )
    )
    return int(result.scalar() or 0)


def _usage_exhausted(coupon: Coupon) -> bool:
    limit = coupon.usage_limit
    return limit is not None and limit > 0 and (coupon.usage_count or 0) >= limit


async def validate_coupon(
    db: AsyncSession,
    code: Optional[str],
    user_id: Optional[int],
    subtotal: Any,
    lines: Iterable[CartLine],
    now: Optional[datetime] = None,
) -> CouponValidation:
    """Check a coupon against a cart.

    Checks run in order and stop at the first failure: code present, exists,
    ownership, active flag, time window, brand eligibility, minimum spend,
    global usage limit, per-user limit, non-zero discount. Ineligibility is
    returned, never raised.
    """
    trimmed = (code or "").strip()
    if not trimmed:
        return CouponValidation(False, "Please enter a coupon code.")

    coupon = await find_coupon_by_code(db, trimmed)
    if coupon is None:
        return CouponValidation(False, "Coupon code not found.")

    if coupon.owner_user_id is not None:
        if coupon.owner_user_id <= 0:
            return CouponValidation(False, "This coupon is not valid for your account.")
        if not user_id or int(user_id) != coupon.owner_user_id:
            return CouponValidation(False, "This coupon is tied to a different account.")

    if not coupon.is_active:
        return CouponValidation(False, "This coupon is not active.")

    if not is_within_active_window(coupon, now):
        return CouponValidation(False, "This coupon is not valid at the moment.")

    lines = list(lines or [])
    if coupon.brand_id:
        eligible_subtotal = calculate_brand_subtotal(
            lines, coupon.brand_id, coupon.brand_name
        )
        if eligible_subtotal <= 0:
            brand_label = f" on {coupon.brand_name}" if coupon.brand_name else ""
            return CouponValidation(
                False, f"This coupon only applies to items{brand_label}."
            )
    else:
        eligible_subtotal = quantize(subtotal)

    min_amount = to_decimal(coupon.min_order_amount)
    if eligible_subtotal < min_amount:
        prefix = "Eligible items" if coupon.brand_id else "Minimum spend"
        return CouponValidation(
            False,
            f"{prefix} must total {format_money(min_amount)} to use this coupon.",
        )

    if _usage_exhausted(coupon):
        return CouponValidation(False, "This coupon has reached its usage limit.")

    if user_id and coupon.per_user_limit and coupon.per_user_limit > 0:
        used = await get_user_usage_count(db, coupon.id, user_id)
        if used >= coupon.per_user_limit:
            return CouponValidation(False, "You have already used this coupon.")

    discount_amount = calculate_discount(coupon, eligible_subtotal)
    if discount_amount <= 0:
        return CouponValidation(
            False, "This coupon does not provide a discount for your cart."
        )

    return CouponValidation(True, coupon=coupon, discount_amount=discount_amount)


async def record_coupon_usage(
    db: AsyncSession,
    *,
    coupon_id: int,
    user_id: int,
    order_id: int,
    discount_amount: Any,
) -> CouponUsage:
    """Record one redemption inside the caller's order transaction.

    The coupon row is locked and both limits are re-checked under the lock, so
    concurrent checkouts can never push usage past the limit. Does not commit.
    """
    result = await db.execute(
        select(Coupon).where(Coupon.id == coupon_id).with_for_update()
    )
    coupon = result.scalar_one_or_none()
    if coupon is None:
        raise CouponIneligible("Coupon code not found.")

    if _usage_exhausted(coupon):
        raise CouponIneligible("This coupon has reached its usage limit.")

    if coupon.per_user_limit and coupon.per_user_limit > 0:
        used = await get_user_usage_count(db, coupon.id, user_id)
        if used >= coupon.per_user_limit:
            raise CouponIneligible("You have already used this coupon.")

    usage = CouponUsage(
        coupon_id=coupon.id,
        user_id=user_id,
        order_id=order_id,
        discount_amount=quantize(discount_amount),
    )
    db.add(usage)
    coupon.usage_count = (coupon.usage_count or 0) + 1
    await db.flush()

    logger.info(
        "Coupon %s used on order %s (usage %d/%s)",
        coupon.code,
        order_id,
        coupon.usage_count,
        coupon.usage_limit if coupon.usage_limit is not None else "-",
    )
    return usage


# ---------------------------------------------------------------------------
# Bundles
# ---------------------------------------------------------------------------


def normalize_bundle_definition(
    raw: Union[dict, BundleDefinition, None],
) -> Optional[BundleDefinition]:
    """Unique sorted product ids (at least two) and a positive rate."""
    if raw is None:
        return None
    if isinstance(raw, BundleDefinition):
        raw = {
            "id": raw.bundle_id,
            "product_ids": raw.product_ids,
            "discount_rate": raw.discount_rate,
            "title": raw.title,
        }

    ids: set[int] = set()
    for value in raw.get("product_ids") or raw.get("items") or []:
        try:
            ids.add(int(value))
        except (TypeError, ValueError):
            continue
    product_ids = sorted(ids)
    if len(product_ids) < 2:
        return None

    default_rate = get_settings().BUNDLE_DISCOUNT_RATE
    rate = to_decimal(raw.get("discount_rate"))
    if rate <= 0:
        rate = default_rate

    return BundleDefinition(
        bundle_id=raw.get("id") or "bundle-" + "-".join(str(pid) for pid in product_ids),
        product_ids=product_ids,
        discount_rate=rate,
        title=raw.get("title"),
    )


def _pair_brand_categories(
    remaining: dict[int, int],
    average_price: dict[int, Decimal],
    meta: dict[int, tuple[str, str, str]],
    rate: Decimal,
) -> tuple[int, Decimal, list[dict]]:
    """Leftover units of one brand across two categories form implicit sets."""
    buckets: dict[str, dict] = {}
    for product_id, qty in remaining.items():
        if qty <= 0 or product_id not in meta:
            continue
        brand_label, brand_key, category_key = meta[product_id]
        unit_price = average_price.get(product_id, Decimal(0))
        if unit_price <= 0:
            continue
        bucket = buckets.setdefault(brand_key, {"label": brand_label, "categories": {}})
        bucket["categories"].setdefault(category_key, []).extend([unit_price] * qty)

    total_sets = 0
    discount = Decimal(0)
    applied: list[dict] = []
    for brand_key, bucket in buckets.items():
        categories = [sorted(prices, reverse=True) for prices in bucket["categories"].values()]
        if len(categories) < 2:
            continue

        sets = 0
        value = Decimal(0)
        while True:
            available = [prices for prices in categories if prices]
            if len(available) < 2:
                break
            available.sort(key=lambda prices: prices[0], reverse=True)
            value += available[0].pop(0) + available[1].pop(0)
            sets += 1

        if sets > 0 and value > 0:
            discount += value * rate
            total_sets += sets
            applied.append(
                {
                    "bundle_id": f"brand-{brand_key}",
                    "sets_completed": sets,
                    "brand": bucket["label"],
                    "type": "brand-category",
                }
            )
    return total_sets, discount, applied


def calculate_bundle_discount(
    lines: Iterable[CartLine],
    bundle_definitions: Iterable[Union[dict, BundleDefinition]],
) -> BundleDiscount:
    """Discount for complete bundle sets in the cart.

    Remaining quantities are shared: each bundle consumes the units it uses, so
    overlapping bundles never count the same unit twice. Per bundle the
    discount is sets × Σ(average unit price of each product) × rate.
    """
    bundles = [
        bundle
        for bundle in (normalize_bundle_definition(raw) for raw in bundle_definitions or [])
        if bundle is not None
    ]
    lines = list(lines or [])
    # Brand-category pairing only rides along with registered bundles
    if not lines or not bundles:
        return BundleDiscount()

    quantity_by_product: dict[int, int] = {}
    value_by_product: dict[int, Decimal] = {}
    meta: dict[int, tuple[str, str, str]] = {}
    for line in lines:
        qty = _line_quantity(line)
        price = to_decimal(line.unit_price)
        if qty <= 0 or price < 0:
            continue
        pid = line.product_id
        quantity_by_product[pid] = quantity_by_product.get(pid, 0) + qty
        value_by_product[pid] = value_by_product.get(pid, Decimal(0)) + price * qty
        brand = (line.brand_name or "").strip()
        category = (line.category or "").strip()
        if pid not in meta and brand and category:
            meta[pid] = (brand, brand.lower(), category.lower())

    average_price = {
        pid: value_by_product[pid] / qty for pid, qty in quantity_by_product.items()
    }
    remaining = dict(quantity_by_product)

    result = BundleDiscount()
    discount = Decimal(0)
    for bundle in bundles:
        sets = min(remaining.get(pid, 0) for pid in bundle.product_ids)
        if sets <= 0:
            continue
        for pid in bundle.product_ids:
            remaining[pid] -= sets

        set_value = sum(
            (average_price.get(pid, Decimal(0)) for pid in bundle.product_ids),
            Decimal(0),
        )
        discount += set_value * sets * bundle.discount_rate
        result.total_bundle_sets += sets
        result.applied_bundles.append(
            {"bundle_id": bundle.bundle_id, "sets_completed": sets}
        )

    pair_sets, pair_discount, pair_applied = _pair_brand_categories(
        remaining, average_price, meta, get_settings().BUNDLE_DISCOUNT_RATE
    )
    result.total_bundle_sets += pair_sets
    result.applied_bundles.extend(pair_applied)
    result.discount_amount = quantize(discount + pair_discount)
    return result
