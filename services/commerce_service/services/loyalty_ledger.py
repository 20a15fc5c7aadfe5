"""Loyalty points ledger: append-only transactions plus a cached balance.

Every mutation follows the same steps:

1. Idempotency check on ``(user_id, order_id, reason)``
2. SELECT FOR UPDATE on the user row
3. Reject if the balance would go negative
4. Insert the transaction with a balance snapshot
5. Update ``users.loyalty_points_balance``
6. Commit (unless the caller owns the transaction)
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional, Sequence

from libs.common.config import get_settings
from libs.common.currency import ZERO, floor_int, normalize_money, quantize
from libs.common.errors import (
    CommerceError,
    InsufficientPoints,
    NotFoundError,
    ValidationError,
)
from libs.common.logging import get_logger
from services.commerce_service.models import (
    AuditEntityType,
    LoyaltyTransaction,
    Order,
    OrderStatus,
    PaymentStatus,
    User,
)
from services.commerce_service.services.audit import log_audit
from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

PURCHASE_REASON = "Order completed"
REDEMPTION_REASON = "redemption"
ADMIN_ADJUSTMENT_REASON = "admin adjustment"
REFUND_CLAWBACK_REASON_PREFIX = "refund"
VOUCHER_REDEMPTION_REASON_PREFIX = "redemption:voucher"
REDEMPTION_RETURN_REASON = "redemption:return"

MAX_REASON_LENGTH = 120

NON_EARNING_ORDER_STATUSES = (OrderStatus.CANCELLED, OrderStatus.RETURNED)
EARNING_PAYMENT_STATUSES = (PaymentStatus.PAID, PaymentStatus.COMPLETED)


@dataclass
class LoyaltyResult:
    """Outcome of an award/redeem/clawback call. ``points`` is always >= 0."""

    points: int = 0
    balance: int = 0
    skipped: bool = False
    already_processed: bool = False
    insufficient_balance: bool = False
    target: Optional[int] = None
    already_clawed_back: Optional[int] = None
    transaction_id: Optional[int] = None


@dataclass
class RedemptionQuote:
    valid: bool
    message: Optional[str]
    requested_points: int
    available_points: int
    max_redeemable_points: int
    points_to_redeem: int = 0
    discount_amount: Decimal = ZERO


@dataclass
class OrderPointsSummary:
    earned_points: int = 0
    redeemed_points: int = 0

    @property
    def net_points(self) -> int:
        return self.earned_points - self.redeemed_points


@dataclass
class BalanceCheck:
    user_id: int
    cached_balance: int
    ledger_balance: int

    @property
    def consistent(self) -> bool:
        return self.cached_balance == self.ledger_balance


def _clean_reason(reason: Any) -> str:
    return str(reason or "").strip()[:MAX_REASON_LENGTH]


def build_idempotency_key(user_id: int, order_id: Optional[int], reason: str) -> str:
    return f"{user_id}:{order_id if order_id else '-'}:{_clean_reason(reason)}"


def _whole_points(value: Any) -> int:
    try:
        points = int(value)
    except (TypeError, ValueError):
        return 0
    return points if points > 0 else 0


def calculate_spend_points(amount: Any) -> int:
    """Base points for an amount: floor(amount × points-per-dollar)."""
    safe_amount = normalize_money(amount)
    if safe_amount <= 0:
        return 0
    return max(0, floor_int(safe_amount * get_settings().LOYALTY_POINTS_PER_DOLLAR))


def calculate_earn_points(amount: Any) -> int:
    """Base points plus the per-order bonus."""
    base = calculate_spend_points(amount)
    if base <= 0:
        return 0
    return base + get_settings().LOYALTY_ORDER_BONUS_POINTS


# ---------------------------------------------------------------------------
# Core primitive
# ---------------------------------------------------------------------------


async def _find_by_key(db: AsyncSession, key: str) -> Optional[LoyaltyTransaction]:
    result = await db.execute(
        select(LoyaltyTransaction).where(LoyaltyTransaction.idempotency_key == key)
    )
    return result.scalar_one_or_none()


async def _lock_user(db: AsyncSession, user_id: int) -> User:
    await db.flush()
    result = await db.execute(
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if not user:
        raise NotFoundError("User not found")
    return user


async def _apply(
    db: AsyncSession,
    *,
    user_id: int,
    points_change: int,
    reason: str,
    order_id: Optional[int],
    idempotency_key: Optional[str],
    commit: bool,
    clamp_to_balance: bool = False,
) -> tuple[Optional[LoyaltyTransaction], bool]:
    """Returns ``(transaction, created)``. A clamp to zero yields ``(None, False)``."""
    try:
        points_change = int(points_change)
    except (TypeError, ValueError):
        points_change = 0
    if points_change == 0:
        raise ValidationError("Points change must not be zero.")
    reason = _clean_reason(reason)
    if not reason:
        raise ValidationError("Points transaction reason is required.")
    if order_id is not None:
        key = build_idempotency_key(user_id, order_id, reason)
    else:
        key = idempotency_key or f"{build_idempotency_key(user_id, None, reason)}:{uuid.uuid4().hex}"

    existing = await _find_by_key(db, key)
    if existing:
        logger.info("Idempotent replay for key=%s -> txn=%s", key, existing.id)
        return existing, False

    try:
        user = await _lock_user(db, user_id)
        current = max(0, user.loyalty_points_balance or 0)

        if clamp_to_balance and points_change < 0:
            points_change = -min(-points_change, current)
            if points_change == 0:
                if commit:
                    await db.commit()
                return None, False

        next_balance = current + points_change
        if next_balance < 0:
            raise InsufficientPoints()

        txn = LoyaltyTransaction(
            user_id=user_id,
            order_id=order_id,
            points_change=points_change,
            reason=reason,
            idempotency_key=key,
            balance_after=next_balance,
        )
        db.add(txn)
        user.loyalty_points_balance = next_balance
        await db.flush()

        if commit:
            await db.commit()
    except CommerceError:
        if commit:
            await db.rollback()
        raise
    except IntegrityError:
        if not commit:
            raise
        # Lost a race on the same key; the winner's row is the answer
        await db.rollback()
        existing = await _find_by_key(db, key)
        if existing is None:
            raise
        return existing, False

    logger.info(
        "Points %+d for user %s (order=%s, reason=%s), balance %d->%d",
        points_change,
        user_id,
        order_id,
        reason,
        current,
        next_balance,
    )
    return txn, True


async def apply_points_transaction(
    db: AsyncSession,
    *,
    user_id: int,
    points_change: int,
    reason: str,
    order_id: Optional[int] = None,
    idempotency_key: Optional[str] = None,
    commit: bool = True,
) -> LoyaltyTransaction:
    """Post one signed points change for a user.

    Replays of an existing ``(user, order, reason)`` return the original row.
    With ``commit=False`` the caller's transaction carries the change.
    """
    txn, _ = await _apply(
        db,
        user_id=user_id,
        points_change=points_change,
        reason=reason,
        order_id=order_id,
        idempotency_key=idempotency_key,
        commit=commit,
    )
    return txn


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_balance(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        select(User.loyalty_points_balance).where(User.id == user_id)
    )
    balance = result.scalar_one_or_none()
    return max(0, int(balance or 0))


async def list_transactions(
    db: AsyncSession, user_id: int, limit: int = 50
) -> list[LoyaltyTransaction]:
    result = await db.execute(
        select(LoyaltyTransaction)
        .where(LoyaltyTransaction.user_id == user_id)
        .order_by(LoyaltyTransaction.created_at.desc(), LoyaltyTransaction.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def _sum_points(db: AsyncSession, *conditions) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(LoyaltyTransaction.points_change), 0)).where(
            *conditions
        )
    )
    return int(result.scalar() or 0)


async def get_order_earned_points(db: AsyncSession, user_id: int, order_id: int) -> int:
    return max(
        0,
        await _sum_points(
            db,
            LoyaltyTransaction.user_id == user_id,
            LoyaltyTransaction.order_id == order_id,
            LoyaltyTransaction.points_change > 0,
            LoyaltyTransaction.reason == PURCHASE_REASON,
        ),
    )


async def get_order_clawed_back_points(
    db: AsyncSession, user_id: int, order_id: int
) -> int:
    return abs(
        await _sum_points(
            db,
            LoyaltyTransaction.user_id == user_id,
            LoyaltyTransaction.order_id == order_id,
            LoyaltyTransaction.points_change < 0,
            LoyaltyTransaction.reason.like(f"{REFUND_CLAWBACK_REASON_PREFIX}%"),
        )
    )


async def get_order_points_summary(
    db: AsyncSession,
    order_ids: Sequence[int],
    user_id: Optional[int] = None,
) -> dict[int, OrderPointsSummary]:
    """Earned and redeemed points per order (purchase/redemption rows only)."""
    safe_ids = sorted({int(oid) for oid in order_ids or [] if oid and int(oid) > 0})
    if not safe_ids:
        return {}

    earned = func.sum(
        case(
            (
                (LoyaltyTransaction.points_change > 0)
                & (LoyaltyTransaction.reason == PURCHASE_REASON),
                LoyaltyTransaction.points_change,
            ),
            else_=0,
        )
    )
    redeemed = func.sum(
        case(
            (
                (LoyaltyTransaction.points_change < 0)
                & (LoyaltyTransaction.reason == REDEMPTION_REASON),
                -LoyaltyTransaction.points_change,
            ),
            else_=0,
        )
    )
    query = (
        select(LoyaltyTransaction.order_id, earned, redeemed)
        .where(LoyaltyTransaction.order_id.in_(safe_ids))
        .group_by(LoyaltyTransaction.order_id)
    )
    if user_id:
        query = query.where(LoyaltyTransaction.user_id == user_id)

    summary = {order_id: OrderPointsSummary() for order_id in safe_ids}
    for order_id, earned_points, redeemed_points in (await db.execute(query)).all():
        summary[order_id] = OrderPointsSummary(
            earned_points=max(0, int(earned_points or 0)),
            redeemed_points=max(0, int(redeemed_points or 0)),
        )
    return summary


async def get_total_issued_points(db: AsyncSession) -> int:
    return max(0, await _sum_points(db, LoyaltyTransaction.points_change > 0))


async def verify_balance(db: AsyncSession, user_id: int) -> BalanceCheck:
    """Cached balance against the ledger sum."""
    result = await db.execute(
        select(User.loyalty_points_balance).where(User.id == user_id)
    )
    cached = result.scalar_one_or_none()
    if cached is None:
        raise NotFoundError("User not found")
    ledger = await _sum_points(db, LoyaltyTransaction.user_id == user_id)
    return BalanceCheck(user_id=user_id, cached_balance=int(cached), ledger_balance=ledger)


# ---------------------------------------------------------------------------
# Earn / redeem
# ---------------------------------------------------------------------------


async def award_points_for_paid_order(
    db: AsyncSession, order_id: int
) -> LoyaltyResult:
    """Award purchase points once per order.

    Not-yet-paid, cancelled and returned orders are skipped without error.
    """
    result = await db.execute(select(Order).where(Order.id == order_id))
    order = result.scalar_one_or_none()
    if not order:
        raise NotFoundError("Order not found")

    user_id = order.user_id
    if (
        order.payment_status not in EARNING_PAYMENT_STATUSES
        or order.status in NON_EARNING_ORDER_STATUSES
    ):
        return LoyaltyResult(balance=await get_balance(db, user_id), skipped=True)

    points = calculate_earn_points(order.total_amount)
    if points <= 0:
        return LoyaltyResult(balance=await get_balance(db, user_id), skipped=True)

    txn, created = await _apply(
        db,
        user_id=user_id,
        points_change=points,
        reason=PURCHASE_REASON,
        order_id=order_id,
        idempotency_key=None,
        commit=True,
    )
    if not created:
        return LoyaltyResult(
            balance=await get_balance(db, user_id), already_processed=True
        )
    return LoyaltyResult(points=points, balance=txn.balance_after, transaction_id=txn.id)


def calculate_redemption(
    requested_points: Any, available_points: Any, max_discountable_amount: Any
) -> RedemptionQuote:
    """Validate a points redemption against the balance and the payable amount.

    Points go in fixed steps; each point is worth 1/points-per-dollar off.
    """
    settings = get_settings()
    step = settings.LOYALTY_REDEMPTION_STEP_POINTS
    rate = settings.LOYALTY_REDEMPTION_POINTS_PER_DOLLAR

    requested = _whole_points(requested_points)
    available = max(0, floor_int(available_points))
    max_amount = normalize_money(max_discountable_amount)
    max_by_amount = floor_int(max_amount * rate)
    max_redeemable = max(0, (min(available, max_by_amount) // step) * step)

    def invalid(message: str) -> RedemptionQuote:
        return RedemptionQuote(False, message, requested, available, max_redeemable)

    if requested <= 0:
        return RedemptionQuote(True, None, 0, available, max_redeemable)
    if not settings.LOYALTY_REDEMPTION_ENABLED:
        return invalid("Points redemption is currently unavailable.")
    if max_redeemable <= 0:
        if available <= 0:
            return invalid("You do not have any points to redeem.")
        return invalid("Your order total is too low for points redemption.")
    if requested % step != 0:
        return invalid(f"Points can be redeemed in {step}-point increments.")
    if requested > available:
        return invalid(f"You only have {available} points available.")
    if requested > max_redeemable:
        return invalid(f"You can redeem up to {max_redeemable} points for this checkout.")

    return RedemptionQuote(
        True,
        None,
        requested,
        available,
        max_redeemable,
        points_to_redeem=requested,
        discount_amount=quantize(Decimal(requested) / rate),
    )


async def redeem_points_for_order(
    db: AsyncSession,
    *,
    user_id: int,
    order_id: int,
    points: int,
    commit: bool = True,
) -> LoyaltyResult:
    """Spend points against an order, once per order."""
    safe_points = _whole_points(points)
    if safe_points <= 0:
        return LoyaltyResult(balance=await get_balance(db, user_id), skipped=True)

    txn, created = await _apply(
        db,
        user_id=user_id,
        points_change=-safe_points,
        reason=REDEMPTION_REASON,
        order_id=order_id,
        idempotency_key=None,
        commit=commit,
    )
    if not created:
        return LoyaltyResult(
            balance=await get_balance(db, user_id), already_processed=True
        )
    return LoyaltyResult(
        points=safe_points, balance=txn.balance_after, transaction_id=txn.id
    )


async def redeem_points_for_voucher(
    db: AsyncSession,
    *,
    user_id: int,
    points: int,
    voucher_code: Optional[str] = None,
) -> LoyaltyResult:
    """Spend points on a voucher; once per voucher code."""
    safe_points = _whole_points(points)
    if safe_points <= 0:
        return LoyaltyResult(balance=await get_balance(db, user_id), skipped=True)

    code = (voucher_code or "").strip()
    reason = _clean_reason(
        f"{VOUCHER_REDEMPTION_REASON_PREFIX}:{code}" if code else VOUCHER_REDEMPTION_REASON_PREFIX
    )
    txn, created = await _apply(
        db,
        user_id=user_id,
        points_change=-safe_points,
        reason=reason,
        order_id=None,
        idempotency_key=build_idempotency_key(user_id, None, reason) if code else None,
        commit=True,
    )
    if not created:
        return LoyaltyResult(
            balance=await get_balance(db, user_id), already_processed=True
        )
    return LoyaltyResult(
        points=safe_points, balance=txn.balance_after, transaction_id=txn.id
    )


# ---------------------------------------------------------------------------
# Refund side
# ---------------------------------------------------------------------------


async def clawback_points_for_refund(
    db: AsyncSession,
    *,
    user_id: int,
    order_id: int,
    cumulative_refunded_amount: Any,
    order_total_amount: Any,
    refund_reference: str = "",
) -> LoyaltyResult:
    """Take back purchase points in proportion to what has been refunded so far.

    target = min(earned, points for the cumulative refund capped at the order
    total, plus the order bonus on a full refund). Only the part not already
    clawed back is deducted, and never more than the current balance, so a
    refund is never blocked by points spent elsewhere.
    """
    # Earned and clawed-back totals are read under the user lock, so a
    # concurrent clawback on the same order is counted before ours is sized
    user = await _lock_user(db, user_id)

    async def skip(**fields) -> LoyaltyResult:
        balance = max(0, user.loyalty_points_balance or 0)
        await db.commit()
        return LoyaltyResult(balance=balance, skipped=True, **fields)

    earned = await get_order_earned_points(db, user_id, order_id)
    if earned <= 0:
        return await skip()

    total = normalize_money(order_total_amount)
    refunded = normalize_money(cumulative_refunded_amount)
    capped = min(refunded, total) if total > 0 else refunded
    bonus = get_settings().LOYALTY_ORDER_BONUS_POINTS if total > 0 and capped >= total else 0
    target = min(earned, calculate_spend_points(capped) + bonus)
    if target <= 0:
        return await skip()

    already = await get_order_clawed_back_points(db, user_id, order_id)
    owed = max(0, target - already)
    if owed <= 0:
        return await skip(target=target, already_clawed_back=already)

    ref = (refund_reference or "").strip()
    reason = _clean_reason(
        f"{REFUND_CLAWBACK_REASON_PREFIX} ({ref})" if ref else REFUND_CLAWBACK_REASON_PREFIX
    )
    txn, created = await _apply(
        db,
        user_id=user_id,
        points_change=-owed,
        reason=reason,
        order_id=order_id,
        idempotency_key=None,
        commit=True,
        clamp_to_balance=True,
    )
    if txn is None:
        return LoyaltyResult(
            balance=await get_balance(db, user_id),
            skipped=True,
            insufficient_balance=True,
            target=target,
            already_clawed_back=already,
        )
    if not created:
        return await skip(
            already_processed=True, target=target, already_clawed_back=already
        )
    return LoyaltyResult(
        points=-txn.points_change,
        balance=txn.balance_after,
        insufficient_balance=-txn.points_change < owed,
        target=target,
        already_clawed_back=already,
        transaction_id=txn.id,
    )


async def return_redeemed_points_for_order(
    db: AsyncSession,
    *,
    user_id: int,
    order_id: int,
    points: int,
    reference: str = "",
) -> LoyaltyResult:
    """Give back points spent on an order that has been fully refunded."""
    safe_points = _whole_points(points)
    if safe_points <= 0:
        return LoyaltyResult(balance=await get_balance(db, user_id), skipped=True)

    ref = (reference or "").strip()
    reason = _clean_reason(
        f"{REDEMPTION_RETURN_REASON} ({ref})" if ref else REDEMPTION_RETURN_REASON
    )
    txn, created = await _apply(
        db,
        user_id=user_id,
        points_change=safe_points,
        reason=reason,
        order_id=order_id,
        idempotency_key=None,
        commit=True,
    )
    if not created:
        return LoyaltyResult(
            balance=await get_balance(db, user_id),
            skipped=True,
            already_processed=True,
        )
    return LoyaltyResult(
        points=safe_points, balance=txn.balance_after, transaction_id=txn.id
    )


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


async def adjust_points_by_admin(
    db: AsyncSession,
    *,
    user_id: int,
    points_change: int,
    admin_user_id: Optional[int] = None,
    note: str = "",
) -> LoyaltyTransaction:
    """Manual correction. The reason records who made it and why."""
    parts = [ADMIN_ADJUSTMENT_REASON]
    if admin_user_id:
        parts.append(f"by admin #{admin_user_id}")
    safe_note = (note or "").strip()
    if safe_note:
        parts.append(f"note: {safe_note}")
    reason = _clean_reason(" - ".join(parts))

    try:
        txn, _ = await _apply(
            db,
            user_id=user_id,
            points_change=points_change,
            reason=reason,
            order_id=None,
            idempotency_key=None,
            commit=False,
        )
        await log_audit(
            db,
            AuditEntityType.LOYALTY,
            user_id,
            "points_adjusted",
            str(admin_user_id or "admin"),
            new_value={
                "points_change": txn.points_change,
                "balance_after": txn.balance_after,
            },
            notes=safe_note or None,
        )
        await db.commit()
    except CommerceError:
        await db.rollback()
        raise

    return txn
