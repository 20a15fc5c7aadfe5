"""Order store: the order + order-item aggregate.

Monetary fields are fixed when the order is created. Afterwards only the
delivery fields, the status pair and ``refunded_amount`` change.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Sequence

from libs.common.config import get_settings
from libs.common.currency import ZERO, normalize_money, quantize
from libs.common.datetime_utils import utc_now
from libs.common.errors import (
    CommerceError,
    NotFoundError,
    PersistenceFailure,
    ValidationError,
)
from libs.common.logging import get_logger
from services.commerce_service.models import (
    AuditEntityType,
    DeliveryMethod,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Product,
    ProductVariant,
)
from services.commerce_service.services import inventory_ledger, loyalty_ledger
from services.commerce_service.services.audit import log_audit
from services.commerce_service.services.cart import CartLine
from services.commerce_service.services.discount_engine import (
    calculate_subtotal,
    record_coupon_usage,
)
from services.commerce_service.services.order_status import (
    can_transition,
    resolve_status,
)
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

logger = get_logger(__name__)


@dataclass
class OrderOptions:
    shipping_address: Optional[str] = None
    shipping_amount: Any = ZERO
    discount_amount: Any = ZERO
    promo_code: Optional[str] = None
    coupon_id: Optional[int] = None
    coupon_discount: Any = ZERO
    discount_breakdown: Optional[dict] = None
    payment_method: Optional[str] = None
    delivery_method: DeliveryMethod = DeliveryMethod.DELIVERY
    points_to_redeem: int = 0


@dataclass
class OrderCreated:
    order_id: int
    order_number: str
    total_amount: Decimal
    subtotal: Decimal = ZERO
    discount_amount: Decimal = ZERO
    item_ids: list[int] = field(default_factory=list)


@dataclass
class DeliveryUpdate:
    shipping_address: Optional[str] = None
    shipping_amount: Any = None
    delivery_method: Optional[DeliveryMethod] = None
    # Storefront name for the shipping fee; wins over shipping_amount when set
    delivery_fee: Any = None


@dataclass
class BestSeller:
    product_id: int
    product_name: str
    price: Decimal
    total_sold: int


def compute_total(subtotal: Any, tax: Any, shipping: Any, discount: Any) -> Decimal:
    """total = subtotal + tax + shipping - discount, to the cent."""
    return quantize(
        quantize(subtotal) + quantize(tax) + quantize(shipping) - quantize(discount)
    )


async def lock_order(db: AsyncSession, order_id: int) -> Order:
    """Order row under ``SELECT ... FOR UPDATE``. Raises 404 if missing."""
    await db.flush()
    result = await db.execute(
        select(Order)
        .where(Order.id == order_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    order = result.scalar_one_or_none()
    if not order:
        raise NotFoundError("Order not found")
    return order


# ---------------------------------------------------------------------------
# Create (atomic)
# ---------------------------------------------------------------------------


async def create_order(
    db: AsyncSession,
    *,
    user_id: int,
    lines: Sequence[CartLine],
    options: Optional[OrderOptions] = None,
) -> OrderCreated:
    """Persist an order in one all-or-nothing transaction.

    1. Compute subtotal, tax and total
    2. Insert the order row
    3. Per line: lock + decrement the variant, insert the item snapshot
    4. Record coupon usage / points redemption under their own row locks
    5. Commit

    Lines are handled one at a time in cart order. Any failure rolls the whole
    order back, stock and coupon usage included.
    """
    options = options or OrderOptions()
    lines = [line for line in lines or [] if line.quantity and int(line.quantity) > 0]
    if not lines:
        raise ValidationError("Cart is empty")

    settings = get_settings()
    subtotal = calculate_subtotal(lines)
    tax_amount = quantize(subtotal * settings.TAX_RATE)
    shipping_amount = normalize_money(options.shipping_amount)
    discount_amount = min(normalize_money(options.discount_amount), subtotal)
    total_amount = compute_total(subtotal, tax_amount, shipping_amount, discount_amount)

    try:
        order = Order(
            order_number=Order.generate_order_number(),
            user_id=user_id,
            subtotal=subtotal,
            tax_amount=tax_amount,
            shipping_amount=shipping_amount,
            discount_amount=discount_amount,
            total_amount=total_amount,
            refunded_amount=ZERO,
            promo_code=options.promo_code,
            coupon_id=options.coupon_id,
            discount_breakdown=options.discount_breakdown,
            loyalty_points_redeemed=max(0, int(options.points_to_redeem or 0)),
            status=OrderStatus.PROCESSING,
            payment_status=PaymentStatus.PENDING,
            payment_method=options.payment_method,
            delivery_method=options.delivery_method,
            shipping_address=options.shipping_address,
        )
        db.add(order)
        await db.flush()

        items: list[OrderItem] = []
        for line in lines:
            variant, _ = await inventory_ledger.decrement_for_line(db, line, order.id)
            product = await db.get(Product, variant.product_id)

            unit_price = quantize(line.unit_price)
            item = OrderItem(
                order_id=order.id,
                variant_id=variant.id,
                product_id=variant.product_id,
                product_name=line.product_name or (product.name if product else ""),
                sku=variant.sku,
                size=variant.size,
                color=variant.color,
                quantity=int(line.quantity),
                unit_price=unit_price,
                total_price=quantize(unit_price * int(line.quantity)),
            )
            db.add(item)
            items.append(item)

        if options.coupon_id:
            await record_coupon_usage(
                db,
                coupon_id=options.coupon_id,
                user_id=user_id,
                order_id=order.id,
                discount_amount=options.coupon_discount,
            )

        if order.loyalty_points_redeemed > 0:
            await loyalty_ledger.redeem_points_for_order(
                db,
                user_id=user_id,
                order_id=order.id,
                points=order.loyalty_points_redeemed,
                commit=False,
            )

        await db.flush()
        await db.commit()
    except CommerceError:
        await db.rollback()
        raise
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Order creation failed for user %s", user_id)
        raise PersistenceFailure("Unable to place your order right now.") from exc

    logger.info(
        "Created order %s for user %s: subtotal=%s discount=%s total=%s (%d items)",
        order.order_number,
        user_id,
        subtotal,
        discount_amount,
        total_amount,
        len(items),
    )
    return OrderCreated(
        order_id=order.id,
        order_number=order.order_number,
        total_amount=total_amount,
        subtotal=subtotal,
        discount_amount=discount_amount,
        item_ids=[item.id for item in items],
    )


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


async def update_delivery(
    db: AsyncSession,
    order_id: int,
    update: DeliveryUpdate,
    performed_by: str = "system",
) -> Order:
    """Change delivery details and recompute the total.

    Subtotal, tax and discount are never recomputed; only shipping moves.
    """
    try:
        order = await lock_order(db, order_id)

        fee = update.delivery_fee if update.delivery_fee is not None else update.shipping_amount
        shipping_amount = (
            normalize_money(fee) if fee is not None else quantize(order.shipping_amount)
        )
        new_total = compute_total(
            order.subtotal, order.tax_amount, shipping_amount, order.discount_amount
        )
        if new_total < quantize(order.refunded_amount):
            raise ValidationError(
                "Delivery change would drop the order total below the amount already refunded."
            )

        old_value = {
            "shipping_address": order.shipping_address,
            "shipping_amount": str(order.shipping_amount),
            "total_amount": str(order.total_amount),
        }
        if update.shipping_address is not None:
            order.shipping_address = update.shipping_address
        if update.delivery_method is not None:
            order.delivery_method = update.delivery_method
        order.shipping_amount = shipping_amount
        order.total_amount = new_total

        await log_audit(
            db,
            AuditEntityType.ORDER,
            order.id,
            "delivery_updated",
            performed_by,
            old_value=old_value,
            new_value={
                "shipping_address": order.shipping_address,
                "shipping_amount": str(shipping_amount),
                "total_amount": str(new_total),
            },
        )
        await db.commit()
    except CommerceError:
        await db.rollback()
        raise

    logger.info("Order %s delivery updated, total now %s", order_id, new_total)
    return order


async def mark_order_paid(
    db: AsyncSession,
    order_id: int,
    *,
    payment_method: Optional[str] = None,
    payment_reference: Optional[str] = None,
) -> Order:
    """Record the gateway's payment confirmation. Repeats are no-ops."""
    try:
        order = await lock_order(db, order_id)
        if order.payment_status in (PaymentStatus.PAID, PaymentStatus.COMPLETED):
            await db.commit()
            return order
        if order.payment_status == PaymentStatus.REFUNDED:
            raise ValidationError("Order has already been refunded.")

        order.payment_status = PaymentStatus.PAID
        order.paid_at = utc_now()
        if payment_method:
            order.payment_method = payment_method
        if payment_reference:
            order.payment_reference = payment_reference
        await db.commit()
    except CommerceError:
        await db.rollback()
        raise

    logger.info(
        "Order %s paid via %s (ref=%s)", order_id, order.payment_method, payment_reference
    )
    return order


async def advance_order_status(
    db: AsyncSession,
    order_id: int,
    next_status: Any,
    performed_by: str = "system",
    notes: Optional[str] = None,
) -> Order:
    """Move an order along its fulfilment flow (stay or one step forward)."""
    target = resolve_status(next_status)
    if target is None:
        raise ValidationError("Unknown order status.")

    try:
        order = await lock_order(db, order_id)
        current = order.status
        if not can_transition(current, target, order.delivery_method):
            raise ValidationError(
                f"Cannot move order from {current.value} to {target.value}."
            )
        if current == target:
            await db.commit()
            return order

        order.status = target
        if target == OrderStatus.COMPLETED:
            order.completed_at = utc_now()

        await log_audit(
            db,
            AuditEntityType.ORDER,
            order.id,
            "status_changed",
            performed_by,
            old_value={"status": current.value},
            new_value={"status": target.value},
            notes=notes,
        )
        await db.commit()
    except CommerceError:
        await db.rollback()
        raise

    logger.info("Order %s status %s -> %s", order_id, current.value, target.value)
    return order


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def find_by_id(
    db: AsyncSession, order_id: int, with_items: bool = False
) -> Optional[Order]:
    query = select(Order).where(Order.id == order_id)
    if with_items:
        query = query.options(selectinload(Order.items)).execution_options(
            populate_existing=True
        )
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_order(db: AsyncSession, order_id: int, with_items: bool = False) -> Order:
    order = await find_by_id(db, order_id, with_items=with_items)
    if not order:
        raise NotFoundError("Order not found")
    return order


async def find_by_id_for_user(
    db: AsyncSession, order_id: int, user_id: int, with_items: bool = True
) -> Order:
    """Order owned by ``user_id``; someone else's order reads as missing."""
    order = await find_by_id(db, order_id, with_items=with_items)
    if not order or order.user_id != user_id:
        raise NotFoundError("Order not found")
    return order


async def find_by_user(db: AsyncSession, user_id: int) -> list[Order]:
    result = await db.execute(
        select(Order)
        .where(Order.user_id == user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
    )
    return list(result.scalars().all())


async def find_items_by_order_ids(
    db: AsyncSession, order_ids: Sequence[int]
) -> list[OrderItem]:
    if not order_ids:
        return []
    result = await db.execute(
        select(OrderItem)
        .where(OrderItem.order_id.in_(list(order_ids)))
        .order_by(OrderItem.order_id.desc(), OrderItem.product_name.asc())
    )
    return list(result.scalars().all())


async def get_best_sellers(db: AsyncSession, limit: int = 5) -> list[BestSeller]:
    """Active products ranked by units sold."""
    safe_limit = limit if limit and limit > 0 else 5
    total_sold = func.sum(OrderItem.quantity).label("total_sold")
    result = await db.execute(
        select(Product.id, Product.name, Product.price, total_sold)
        .select_from(OrderItem)
        .join(ProductVariant, ProductVariant.id == OrderItem.variant_id)
        .join(Product, Product.id == ProductVariant.product_id)
        .where(Product.is_active.is_(True))
        .group_by(Product.id, Product.name, Product.price)
        .order_by(total_sold.desc())
        .limit(safe_limit)
    )
    return [
        BestSeller(
            product_id=row.id,
            product_name=row.name,
            price=quantize(row.price),
            total_sold=int(row.total_sold or 0),
        )
        for row in result.all()
    ]
