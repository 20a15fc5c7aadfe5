"""Unit tests for order creation, inventory movements and order mutations.

Tests call the order store and inventory ledger directly with the db_session
fixture. No HTTP layer involved.
"""

from decimal import Decimal

import pytest
from libs.common.datetime_utils import ensure_utc
from libs.common.errors import (
    CouponIneligible,
    InsufficientStock,
    NotFoundError,
    ValidationError,
)
from services.commerce_service.models import (
    AuditLog,
    CouponUsage,
    DeliveryMethod,
    InventoryMovement,
    InventoryMovementType,
    Order,
    OrderStatus,
    PaymentStatus,
    Product,
    ProductVariant,
)
from services.commerce_service.services import inventory_ledger, order_store
from services.commerce_service.services.cart import CartLine
from sqlalchemy import func, select
from tests.factories import (
    CouponFactory,
    VariantFactory,
    seed_order,
    seed_product,
    seed_user,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _cart_line(variant, quantity, price="20.00"):
    return CartLine(
        product_id=variant.product_id,
        variant_id=variant.id,
        quantity=quantity,
        unit_price=Decimal(price),
        product_name="Swim Goggles",
    )


async def _fresh_variant(db, variant_id):
    return await db.get(ProductVariant, variant_id, populate_existing=True)


async def _count(db, model):
    result = await db.execute(select(func.count()).select_from(model))
    return result.scalar()


# ---------------------------------------------------------------------------
# create_order
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_order_decrements_stock_and_fixes_totals(db_session):
    user = await seed_user(db_session)
    product, variant = await seed_product(db_session, quantity=5)
    product_id, variant_id = product.id, variant.id

    created = await order_store.create_order(
        db_session,
        user_id=user.id,
        lines=[_cart_line(variant, 2)],
        options=order_store.OrderOptions(
            shipping_amount="1.50", discount_amount="5", shipping_address="1 Pool Lane"
        ),
    )

    assert created.subtotal == Decimal("40.00")
    assert created.discount_amount == Decimal("5.00")
    assert created.total_amount == Decimal("36.50")
    assert len(created.item_ids) == 1

    order = await order_store.get_order(db_session, created.order_id, with_items=True)
    assert order.status == OrderStatus.PROCESSING
    assert order.payment_status == PaymentStatus.PENDING
    assert order.items[0].sku == variant.sku
    assert order.items[0].total_price == Decimal("40.00")

    assert (await _fresh_variant(db_session, variant_id)).quantity == 3
    product = await db_session.get(Product, product_id, populate_existing=True)
    assert product.total_quantity == 3

    movements = (await db_session.execute(select(InventoryMovement))).scalars().all()
    assert [(m.movement_type, m.quantity) for m in movements] == [
        (InventoryMovementType.SALE, -2)
    ]
    assert movements[0].reference_id == created.order_id


@pytest.mark.asyncio
@pytest.mark.unit
async def test_explicit_variant_is_locked_once_per_line(db_session, monkeypatch):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session, quantity=5)
    variant_id = variant.id

    locked = []
    real_lock = inventory_ledger.lock_variant

    async def counting_lock(db, vid):
        locked.append(vid)
        return await real_lock(db, vid)

    monkeypatch.setattr(inventory_ledger, "lock_variant", counting_lock)

    await order_store.create_order(
        db_session,
        user_id=user.id,
        lines=[_cart_line(variant, 2)],
        options=order_store.OrderOptions(shipping_address="1 Pool Lane"),
    )

    assert locked == [variant_id]
    assert (await _fresh_variant(db_session, variant_id)).quantity == 3


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_order_discount_capped_at_subtotal(db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)

    created = await order_store.create_order(
        db_session,
        user_id=user.id,
        lines=[_cart_line(variant, 1, "10.00")],
        options=order_store.OrderOptions(discount_amount="25"),
    )

    assert created.discount_amount == Decimal("10.00")
    assert created.total_amount == Decimal("0.00")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_insufficient_stock_rolls_back_whole_order(db_session):
    """A failing second line leaves the first line's stock untouched."""
    user = await seed_user(db_session)
    _, plenty = await seed_product(db_session, quantity=5)
    _, scarce = await seed_product(db_session, quantity=2, name="Kickboard")
    user_id, plenty_id, scarce_id = user.id, plenty.id, scarce.id

    with pytest.raises(InsufficientStock) as exc_info:
        await order_store.create_order(
            db_session,
            user_id=user_id,
            lines=[_cart_line(plenty, 1), _cart_line(scarce, 10)],
        )

    assert exc_info.value.status_code == 409
    assert "only 2 left" in exc_info.value.detail
    assert (await _fresh_variant(db_session, plenty_id)).quantity == 5
    assert (await _fresh_variant(db_session, scarce_id)).quantity == 2
    assert await _count(db_session, Order) == 0
    assert await _count(db_session, InventoryMovement) == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_order_rejects_exhausted_coupon(db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session, quantity=5)
    coupon = CouponFactory.create(usage_limit=1, usage_count=1)
    db_session.add(coupon)
    await db_session.commit()
    user_id, variant_id, coupon_id = user.id, variant.id, coupon.id

    with pytest.raises(CouponIneligible):
        await order_store.create_order(
            db_session,
            user_id=user_id,
            lines=[_cart_line(variant, 1)],
            options=order_store.OrderOptions(
                coupon_id=coupon_id, coupon_discount="2", discount_amount="2"
            ),
        )

    assert (await _fresh_variant(db_session, variant_id)).quantity == 5
    assert await _count(db_session, CouponUsage) == 0


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_order_records_coupon_usage(db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    coupon = CouponFactory.create(usage_limit=5)
    db_session.add(coupon)
    await db_session.commit()

    created = await order_store.create_order(
        db_session,
        user_id=user.id,
        lines=[_cart_line(variant, 1)],
        options=order_store.OrderOptions(
            coupon_id=coupon.id,
            promo_code=coupon.code,
            coupon_discount="2",
            discount_amount="2",
        ),
    )

    usage = (await db_session.execute(select(CouponUsage))).scalar_one()
    assert usage.order_id == created.order_id
    assert usage.discount_amount == Decimal("2.00")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_create_order_requires_lines(db_session):
    with pytest.raises(ValidationError):
        await order_store.create_order(
            db_session, user_id=1, lines=[CartLine(product_id=1, quantity=0)]
        )


# ---------------------------------------------------------------------------
# Inventory ledger
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_restock_adds_units_and_records_return(db_session):
    _, variant = await seed_product(db_session, quantity=1)

    await inventory_ledger.restock(
        db_session, variant.id, 3, reference_id=42, performed_by="admin"
    )
    await db_session.commit()

    assert (await _fresh_variant(db_session, variant.id)).quantity == 4
    snapshot = await inventory_ledger.stock_snapshot(db_session, variant.id)
    assert snapshot.quantity == 4
    assert snapshot.movement_total == 3
    movement = (await db_session.execute(select(InventoryMovement))).scalar_one()
    assert movement.movement_type == InventoryMovementType.RETURN
    assert movement.reference_type == "refund_request"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_restock_rejects_non_positive_quantity(db_session):
    _, variant = await seed_product(db_session)
    with pytest.raises(ValidationError):
        await inventory_ledger.restock(db_session, variant.id, 0)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_line_without_variant_prefers_matching_size(db_session):
    product, small = await seed_product(db_session, variant_overrides={"size": "S"})
    large = VariantFactory.create(product.id, size="L", quantity=4)
    db_session.add(large)
    await db_session.commit()

    picked = await inventory_ledger.resolve_variant_for_line(
        db_session, CartLine(product_id=product.id, quantity=1, size="L")
    )
    fallback = await inventory_ledger.resolve_variant_for_line(
        db_session, CartLine(product_id=product.id, quantity=1, size="XXL")
    )

    assert picked.id == large.id
    assert fallback.id == small.id


@pytest.mark.asyncio
@pytest.mark.unit
async def test_unknown_variant_is_not_found(db_session):
    with pytest.raises(NotFoundError):
        await inventory_ledger.decrement_for_order(db_session, 999, 1)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_update_delivery_recomputes_total_and_audits(db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(db_session, user, [(variant, 1, "20")])

    updated = await order_store.update_delivery(
        db_session,
        order.id,
        order_store.DeliveryUpdate(
            shipping_address="2 Lane Rope Road",
            delivery_method=DeliveryMethod.DELIVERY,
            shipping_amount="1.50",
        ),
        performed_by="7",
    )

    assert updated.shipping_amount == Decimal("1.50")
    assert updated.total_amount == Decimal("21.50")
    assert updated.subtotal == Decimal("20.00")
    audit = (await db_session.execute(select(AuditLog))).scalar_one()
    assert audit.action == "delivery_updated"
    assert audit.old_value["total_amount"] == "20.00"


@pytest.mark.asyncio
@pytest.mark.unit
async def test_update_delivery_cannot_drop_below_refunded(db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(
        db_session,
        user,
        [(variant, 1, "100")],
        shipping="5.00",
        refunded_amount=Decimal("102.00"),
    )
    order_id = order.id

    with pytest.raises(ValidationError) as exc_info:
        await order_store.update_delivery(
            db_session,
            order_id,
            order_store.DeliveryUpdate(
                delivery_method=DeliveryMethod.PICKUP, shipping_amount="0"
            ),
        )

    assert "already refunded" in exc_info.value.detail
    fresh = await db_session.get(Order, order_id, populate_existing=True)
    assert fresh.total_amount == Decimal("105.00")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_mark_order_paid_is_idempotent(db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(
        db_session,
        user,
        [(variant, 1, "20")],
        status=OrderStatus.PROCESSING,
        payment_status=PaymentStatus.PENDING,
        paid_at=None,
    )

    first = await order_store.mark_order_paid(
        db_session, order.id, payment_method="paypal", payment_reference="CAP-1"
    )
    paid_at = first.paid_at
    second = await order_store.mark_order_paid(
        db_session, order.id, payment_method="stripe", payment_reference="pi_2"
    )

    assert second.payment_status == PaymentStatus.PAID
    assert second.payment_reference == "CAP-1"
    assert ensure_utc(second.paid_at) == ensure_utc(paid_at)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_advance_order_status_one_step_at_a_time(db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(
        db_session, user, [(variant, 1, "20")], status=OrderStatus.PROCESSING
    )

    moved = await order_store.advance_order_status(db_session, order.id, "packing", "9")
    assert moved.status == OrderStatus.PACKING

    with pytest.raises(ValidationError) as exc_info:
        await order_store.advance_order_status(db_session, order.id, "delivered", "9")
    assert exc_info.value.detail == "Cannot move order from packing to delivered."

    with pytest.raises(ValidationError):
        await order_store.advance_order_status(db_session, order.id, "teleported", "9")


@pytest.mark.asyncio
@pytest.mark.unit
async def test_pickup_order_completes_with_timestamp(db_session):
    user = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(
        db_session,
        user,
        [(variant, 1, "20")],
        status=OrderStatus.READY_FOR_PICKUP,
        delivery_method=DeliveryMethod.PICKUP,
    )

    done = await order_store.advance_order_status(db_session, order.id, "completed", "9")

    assert done.status == OrderStatus.COMPLETED
    assert done.completed_at is not None


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_find_by_id_for_user_hides_other_users_orders(db_session):
    owner = await seed_user(db_session)
    stranger = await seed_user(db_session)
    _, variant = await seed_product(db_session)
    order, _ = await seed_order(db_session, owner, [(variant, 1, "20")])

    found = await order_store.find_by_id_for_user(db_session, order.id, owner.id)
    assert len(found.items) == 1

    with pytest.raises(NotFoundError):
        await order_store.find_by_id_for_user(db_session, order.id, stranger.id)


@pytest.mark.asyncio
@pytest.mark.unit
async def test_best_sellers_ranked_by_units(db_session):
    user = await seed_user(db_session)
    goggles, goggles_variant = await seed_product(db_session, name="Goggles")
    caps, caps_variant = await seed_product(db_session, name="Cap")
    await seed_order(db_session, user, [(goggles_variant, 1, "20"), (caps_variant, 3, "5")])
    await seed_order(db_session, user, [(goggles_variant, 1, "20")])

    best = await order_store.get_best_sellers(db_session, limit=5)

    assert [(b.product_id, b.total_sold) for b in best] == [(caps.id, 3), (goggles.id, 2)]
