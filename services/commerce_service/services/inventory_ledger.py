"""Inventory ledger: per-variant stock under row locks.

Every change is a locked read-modify-write on ``product_variants`` plus an
``inventory_movements`` row. Nothing here commits; callers own the transaction.
"""

from dataclasses import dataclass
from typing import Optional

from libs.common.errors import InsufficientStock, NotFoundError, ValidationError
from libs.common.logging import get_logger
from services.commerce_service.models import (
    InventoryMovement,
    InventoryMovementType,
    Product,
    ProductVariant,
)
from services.commerce_service.services.cart import CartLine
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)


@dataclass
class StockSnapshot:
    variant_id: int
    quantity: int
    movement_total: int


async def lock_variant(db: AsyncSession, variant_id: int) -> Optional[ProductVariant]:
    # Pending writes must reach the row before it is re-read under the lock
    await db.flush()
    result = await db.execute(
        select(ProductVariant)
        .where(ProductVariant.id == variant_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def resolve_variant_for_line(db: AsyncSession, line: CartLine) -> ProductVariant:
    """Locked variant for a cart line: the explicit one, else the product's first.

    Without an explicit variant a matching size wins, otherwise the lowest id.
    """
    if line.variant_id:
        variant = await lock_variant(db, line.variant_id)
        if variant is None or (line.product_id and variant.product_id != line.product_id):
            raise NotFoundError("Variant not found")
        return variant

    await db.flush()
    query = (
        select(ProductVariant)
        .where(ProductVariant.product_id == line.product_id)
        .order_by(ProductVariant.id)
        .execution_options(populate_existing=True)
    )
    if line.size:
        sized = await db.execute(
            query.where(ProductVariant.size == line.size).limit(1).with_for_update()
        )
        variant = sized.scalar_one_or_none()
        if variant is not None:
            return variant

    result = await db.execute(query.limit(1).with_for_update())
    variant = result.scalar_one_or_none()
    if variant is None:
        raise NotFoundError("No variant available")
    return variant


async def _adjust_product_total(db: AsyncSession, product_id: int, delta: int) -> None:
    # Relative update; concurrent orders on sibling variants must not clobber it
    await db.execute(
        update(Product)
        .where(Product.id == product_id)
        .values(total_quantity=Product.total_quantity + delta)
    )


async def _take_stock(
    db: AsyncSession,
    variant: ProductVariant,
    quantity: int,
    order_id: Optional[int] = None,
) -> InventoryMovement:
    """Take ``quantity`` units off a variant locked by this transaction.

    Availability is checked against the locked row, not the cart, so two
    checkouts racing for the last unit cannot both pass.
    """
    if quantity is None or int(quantity) <= 0:
        raise ValidationError("Invalid quantity")
    quantity = int(quantity)

    available = variant.quantity or 0
    if available < quantity:
        logger.info(
            "Insufficient stock for variant %s: wanted %d, have %d",
            variant.id,
            quantity,
            available,
        )
        raise InsufficientStock(
            f"Insufficient stock for {variant.sku}: only {available} left."
        )

    variant.quantity = available - quantity
    await _adjust_product_total(db, variant.product_id, -quantity)

    movement = InventoryMovement(
        variant_id=variant.id,
        movement_type=InventoryMovementType.SALE,
        quantity=-quantity,
        reference_type="order",
        reference_id=order_id,
    )
    db.add(movement)
    return movement


async def decrement_for_order(
    db: AsyncSession,
    variant_id: int,
    quantity: int,
    order_id: Optional[int] = None,
) -> InventoryMovement:
    """Lock a variant by id and take units off it for an order."""
    variant = await lock_variant(db, variant_id)
    if variant is None:
        raise NotFoundError("Variant not found")
    return await _take_stock(db, variant, quantity, order_id)


async def decrement_for_line(
    db: AsyncSession,
    line: CartLine,
    order_id: Optional[int] = None,
) -> tuple[ProductVariant, InventoryMovement]:
    """Resolve a cart line's variant and take the line's units off it.

    The row locked while resolving is the one decremented.
    """
    variant = await resolve_variant_for_line(db, line)
    movement = await _take_stock(db, variant, line.quantity, order_id)
    return variant, movement


async def restock(
    db: AsyncSession,
    variant_id: int,
    quantity: int,
    *,
    reference_type: str = "refund_request",
    reference_id: Optional[int] = None,
    performed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> InventoryMovement:
    """Put units back. Unconditional increment under the same row lock."""
    if quantity is None or int(quantity) <= 0:
        raise ValidationError("Invalid quantity")
    quantity = int(quantity)

    variant = await lock_variant(db, variant_id)
    if variant is None:
        raise NotFoundError("Variant not found")

    variant.quantity = (variant.quantity or 0) + quantity
    await _adjust_product_total(db, variant.product_id, quantity)

    movement = InventoryMovement(
        variant_id=variant.id,
        movement_type=InventoryMovementType.RETURN,
        quantity=quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        performed_by=performed_by,
        notes=notes,
    )
    db.add(movement)
    logger.info(
        "Restocked variant %s by %d (%s #%s)",
        variant.id,
        quantity,
        reference_type,
        reference_id,
    )
    return movement


async def stock_snapshot(db: AsyncSession, variant_id: int) -> StockSnapshot:
    """Current stock and the net of every recorded movement for a variant."""
    result = await db.execute(
        select(ProductVariant.quantity).where(ProductVariant.id == variant_id)
    )
    quantity = result.scalar_one_or_none()
    if quantity is None:
        raise NotFoundError("Variant not found")

    movement_total = await db.execute(
        select(func.coalesce(func.sum(InventoryMovement.quantity), 0)).where(
            InventoryMovement.variant_id == variant_id
        )
    )
    return StockSnapshot(
        variant_id=variant_id,
        quantity=int(quantity),
        movement_total=int(movement_total.scalar() or 0),
    )
