"""Checkout orchestration: cart -> priced lines -> discounts -> order.

Prices in the session cart are only what the shopper saw. Checkout re-prices
every line from the catalog, validates the coupon, applies bundles and any
points redemption, then hands the whole lot to ``order_store.create_order``
where stock, coupon usage and points are written in one transaction.
"""

from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Optional

from libs.common.config import get_settings
from libs.common.currency import ZERO, normalize_money, quantize, to_decimal
from libs.common.errors import (
    CommerceError,
    CouponIneligible,
    NotFoundError,
    ValidationError,
)
from libs.common.logging import get_logger
from services.commerce_service.models import (
    DeliveryMethod,
    Product,
    ProductVariant,
)
from services.commerce_service.services import loyalty_ledger
from services.commerce_service.services.cart import Cart, CartLine
from services.commerce_service.services.discount_engine import (
    calculate_bundle_discount,
    calculate_subtotal,
    validate_coupon,
)
from services.commerce_service.services.order_store import (
    OrderCreated,
    OrderOptions,
    create_order,
    mark_order_paid,
)
from services.commerce_service.services.order_status import resolve_delivery_method
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

HUNDRED = Decimal("100")


@dataclass
class CheckoutOptions:
    delivery_method: DeliveryMethod = DeliveryMethod.DELIVERY
    shipping_address: Optional[str] = None
    waive_delivery_fee: bool = False
    payment_method: Optional[str] = None
    # Present when the gateway has already captured the payment
    payment_reference: Optional[str] = None


@dataclass
class CheckoutResult:
    order: OrderCreated
    coupon_discount: Decimal = ZERO
    bundle_discount: Decimal = ZERO
    points_redeemed: int = 0
    points_discount: Decimal = ZERO
    shipping_amount: Decimal = ZERO
    paid: bool = False
    points_awarded: int = 0
    applied_bundles: list[dict] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    # Fresh session payload; the cart is emptied once the order exists
    cart: dict = field(default_factory=lambda: Cart().to_session())


def compute_delivery_fee(delivery_method, waive: bool = False) -> Decimal:
    """Flat fee for home delivery; pickup is free."""
    if resolve_delivery_method(delivery_method) != DeliveryMethod.DELIVERY or waive:
        return ZERO
    return quantize(get_settings().DELIVERY_FEE)


def effective_unit_price(product: Product, variant: Optional[ProductVariant]) -> Decimal:
    """Variant override if set, else product price less its percentage discount."""
    if variant is not None and variant.price_override is not None:
        return normalize_money(variant.price_override)
    base = normalize_money(product.price)
    percent = min(HUNDRED, max(ZERO, to_decimal(product.discount_percent)))
    if percent <= 0:
        return base
    return quantize(base * (HUNDRED - percent) / HUNDRED)


async def price_lines(db: AsyncSession, lines: list[CartLine]) -> list[CartLine]:
    """Cart lines re-priced and re-labelled from the catalog."""
    priced: list[CartLine] = []
    for line in lines:
        if not line.quantity or int(line.quantity) <= 0:
            continue
        product = await db.get(Product, line.product_id)
        if product is None:
            raise NotFoundError("Product not found")
        if not product.is_active:
            raise ValidationError(f"{product.name} is no longer available.")

        variant = None
        if line.variant_id:
            variant = await db.get(ProductVariant, line.variant_id)
            if variant is None or variant.product_id != product.id:
                raise NotFoundError("Variant not found")

        priced.append(
            replace(
                line,
                quantity=int(line.quantity),
                unit_price=effective_unit_price(product, variant),
                discount_percent=to_decimal(product.discount_percent),
                product_name=product.name,
                brand_id=product.brand_id,
                brand_name=product.brand_name,
                category=product.category,
            )
        )
    return priced


async def checkout(
    db: AsyncSession,
    user_id: int,
    cart: Cart,
    options: Optional[CheckoutOptions] = None,
) -> CheckoutResult:
    """Turn a cart into an order.

    Discounts stack as coupon, then bundles, then points; the total discount
    never exceeds the subtotal. A coupon that fails validation aborts the
    checkout with the validator's message.
    """
    options = options or CheckoutOptions()
    if cart is None or cart.is_empty:
        raise ValidationError("Your cart is empty.")

    delivery_method = resolve_delivery_method(options.delivery_method)
    address = (options.shipping_address or "").strip()[:255] or None
    if delivery_method == DeliveryMethod.DELIVERY and not address:
        raise ValidationError("Please provide a delivery address.")
    if delivery_method != DeliveryMethod.DELIVERY:
        address = None

    lines = await price_lines(db, cart.lines)
    if not lines:
        raise ValidationError("Your cart is empty.")
    subtotal = calculate_subtotal(lines)

    coupon_id = None
    coupon_code = None
    coupon_discount = ZERO
    if (cart.coupon_code or "").strip():
        validation = await validate_coupon(db, cart.coupon_code, user_id, subtotal, lines)
        if not validation.valid:
            raise CouponIneligible(validation.message)
        coupon_id = validation.coupon.id
        coupon_code = validation.coupon.code
        coupon_discount = validation.discount_amount

    bundle = calculate_bundle_discount(lines, cart.bundles)
    bundle_discount = min(bundle.discount_amount, max(ZERO, subtotal - coupon_discount))

    points_redeemed = 0
    points_discount = ZERO
    if cart.points_to_redeem:
        payable = max(ZERO, subtotal - coupon_discount - bundle_discount)
        quote = loyalty_ledger.calculate_redemption(
            cart.points_to_redeem,
            await loyalty_ledger.get_balance(db, user_id),
            payable,
        )
        if not quote.valid:
            raise ValidationError(quote.message)
        points_redeemed = quote.points_to_redeem
        points_discount = quote.discount_amount

    discount_total = min(quantize(coupon_discount + bundle_discount + points_discount), subtotal)
    shipping_amount = compute_delivery_fee(delivery_method, options.waive_delivery_fee)

    created = await create_order(
        db,
        user_id=user_id,
        lines=lines,
        options=OrderOptions(
            shipping_address=address,
            shipping_amount=shipping_amount,
            discount_amount=discount_total,
            promo_code=coupon_code,
            coupon_id=coupon_id,
            coupon_discount=coupon_discount,
            discount_breakdown={
                "coupon": str(coupon_discount),
                "bundle": str(bundle_discount),
                "loyalty": str(points_discount),
            },
            payment_method=options.payment_method,
            delivery_method=delivery_method,
            points_to_redeem=points_redeemed,
        ),
    )

    result = CheckoutResult(
        order=created,
        coupon_discount=coupon_discount,
        bundle_discount=bundle_discount,
        points_redeemed=points_redeemed,
        points_discount=points_discount,
        shipping_amount=shipping_amount,
        applied_bundles=bundle.applied_bundles,
    )

    if options.payment_reference:
        paid, awarded, warnings = await _confirm(
            db, created.order_id, options.payment_method, options.payment_reference
        )
        result.paid = paid
        result.points_awarded = awarded
        result.warnings.extend(warnings)

    logger.info(
        "Checkout for user %s -> order %s (coupon=%s bundle=%s points=%d, paid=%s)",
        user_id,
        created.order_number,
        coupon_discount,
        bundle_discount,
        points_redeemed,
        result.paid,
    )
    return result


async def _confirm(
    db: AsyncSession,
    order_id: int,
    payment_method: Optional[str],
    payment_reference: Optional[str],
) -> tuple[bool, int, list[str]]:
    await mark_order_paid(
        db,
        order_id,
        payment_method=payment_method,
        payment_reference=payment_reference,
    )
    try:
        award = await loyalty_ledger.award_points_for_paid_order(db, order_id)
    except (CommerceError, SQLAlchemyError) as exc:
        await db.rollback()
        logger.error("Awarding points for order %s failed: %s", order_id, exc)
        return True, 0, ["Payment recorded, but loyalty points could not be awarded."]
    return True, award.points, []


@dataclass
class PaymentConfirmation:
    order_id: int
    paid: bool
    points_awarded: int = 0
    warnings: list[str] = field(default_factory=list)


async def confirm_payment(
    db: AsyncSession,
    order_id: int,
    *,
    payment_method: Optional[str],
    payment_reference: Optional[str],
) -> PaymentConfirmation:
    """Gateway callback path: mark the order paid, then award points once."""
    paid, awarded, warnings = await _confirm(db, order_id, payment_method, payment_reference)
    return PaymentConfirmation(
        order_id=order_id, paid=paid, points_awarded=awarded, warnings=warnings
    )
