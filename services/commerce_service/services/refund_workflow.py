"""Refund workflow: request -> items -> posting.

Proration, eligibility and the approval state machine for customer and admin
refunds. Approval runs in three steps so no database lock is held while the
payment gateway is called:

1. claim  - lock the order, check the balance, mark the request ``processing``
2. gateway - refund the capture (or record a manual refund)
3. post   - lock the order, write the posting, bump ``refunded_amount``

Loyalty clawback, redeemed-point return and restocking run after the money is
posted; their failures become warnings on the outcome, never a rollback.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from libs.common.config import get_settings
from libs.common.currency import ZERO, quantize
from libs.common.datetime_utils import ensure_utc, utc_now
from libs.common.errors import (
    CommerceError,
    GatewayFailure,
    NotFoundError,
    PersistenceFailure,
    ValidationError,
)
from libs.common.logging import get_logger
from services.commerce_service.models import (
    AuditEntityType,
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    RefundFlow,
    RefundPosting,
    RefundRequest,
    RefundRequestItem,
    RequestStatus,
)
from services.commerce_service.services import inventory_ledger, loyalty_ledger
from services.commerce_service.services.audit import log_audit
from services.commerce_service.services.order_store import (
    find_by_id_for_user,
    lock_order,
)
from services.commerce_service.services.payment_gateway import (
    PaymentGateway,
    resolve_gateway,
)
from services.commerce_service.services.request_status import (
    OPEN_REFUND_STATUSES,
    REFUND_RESERVING_STATUSES,
    can_transition_refund,
)
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

logger = get_logger(__name__)

REFUND_ELIGIBLE_STATUSES = (OrderStatus.DELIVERED, OrderStatus.COMPLETED)

GatewayResolver = Callable[[Optional[str], Optional[str]], PaymentGateway]


@dataclass
class RefundLinePricing:
    order_item_id: int
    quantity: int
    line_total: Decimal
    line_discount: Decimal
    refundable_total: Decimal
    unit_price: Decimal


@dataclass
class RefundEligibility:
    status_eligible: bool
    payment_eligible: bool
    within_window: bool
    days_since: Optional[int]
    remaining: Decimal

    @property
    def allowed(self) -> bool:
        return self.status_eligible and self.payment_eligible and self.within_window


@dataclass
class RefundSelection:
    order_item_id: int
    quantity: int


@dataclass
class RefundOutcome:
    request_id: int
    status: RequestStatus
    approved_amount: Decimal
    order_refunded_amount: Decimal
    full_refund: bool
    posting_id: Optional[int] = None
    gateway_refund_id: Optional[str] = None
    points_clawed_back: int = 0
    points_returned: int = 0
    restocked: bool = False
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def build_refund_pricing(
    order: Order, items: Iterable[OrderItem]
) -> dict[int, RefundLinePricing]:
    """Spread the order discount over lines in proportion to their totals.

    The pool is the order discount capped at the line subtotal. Each line's
    share is rounded on its own and never re-normalised, so the shares may
    miss the pool by a few cents.
    """
    items = list(items)
    line_totals = {item.id: quantize(item.total_price) for item in items}
    line_subtotal = quantize(sum(line_totals.values(), Decimal(0)))
    pool = min(quantize(order.discount_amount), line_subtotal)

    pricing: dict[int, RefundLinePricing] = {}
    for item in items:
        line_total = line_totals[item.id]
        if line_subtotal > 0 and pool > 0:
            line_discount = quantize(pool * line_total / line_subtotal)
        else:
            line_discount = ZERO
        refundable_total = max(ZERO, line_total - line_discount)
        quantity = max(0, int(item.quantity or 0))
        unit_price = quantize(refundable_total / quantity) if quantity else ZERO
        pricing[item.id] = RefundLinePricing(
            order_item_id=item.id,
            quantity=quantity,
            line_total=line_total,
            line_discount=line_discount,
            refundable_total=refundable_total,
            unit_price=unit_price,
        )
    return pricing


def build_refund_eligibility(
    order: Order,
    now: Optional[datetime] = None,
    window_days: Optional[int] = None,
) -> RefundEligibility:
    """Paid, delivered/completed, and placed within the refund window."""
    window_days = window_days if window_days is not None else get_settings().REFUND_WINDOW_DAYS
    now = ensure_utc(now or utc_now())

    within_window = True
    days_since = None
    created_at = ensure_utc(order.created_at)
    if created_at is not None:
        elapsed = now - created_at
        days_since = elapsed.days
        within_window = elapsed.total_seconds() <= window_days * 86400

    return RefundEligibility(
        status_eligible=order.status in REFUND_ELIGIBLE_STATUSES,
        payment_eligible=order.payment_status == PaymentStatus.PAID,
        within_window=within_window,
        days_since=days_since,
        remaining=order.remaining_refundable,
    )


def _normalize_selections(
    selections: Union[Mapping[Any, Any], Sequence[RefundSelection], None],
) -> list[RefundSelection]:
    if not selections:
        return []
    if isinstance(selections, Mapping):
        pairs = list(selections.items())
    else:
        pairs = [(sel.order_item_id, sel.quantity) for sel in selections]

    merged: dict[int, int] = {}
    for raw_id, raw_qty in pairs:
        try:
            item_id, qty = int(raw_id), int(raw_qty)
        except (TypeError, ValueError):
            continue
        if qty > 0:
            merged[item_id] = merged.get(item_id, 0) + qty
    return [RefundSelection(item_id, qty) for item_id, qty in merged.items()]


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


async def get_refunded_quantities(db: AsyncSession, order_id: int) -> dict[int, int]:
    """Units per order item already tied up in approved, processing or completed requests."""
    result = await db.execute(
        select(RefundRequestItem.order_item_id, func.sum(RefundRequestItem.quantity))
        .join(RefundRequest, RefundRequest.id == RefundRequestItem.request_id)
        .where(
            RefundRequest.order_id == order_id,
            RefundRequest.status.in_(REFUND_RESERVING_STATUSES),
        )
        .group_by(RefundRequestItem.order_item_id)
    )
    return {order_item_id: int(qty or 0) for order_item_id, qty in result.all()}


async def _has_open_request(db: AsyncSession, order_id: int) -> bool:
    result = await db.execute(
        select(RefundRequest.id)
        .where(
            RefundRequest.order_id == order_id,
            RefundRequest.status.in_(OPEN_REFUND_STATUSES),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _reserved_by_others(db: AsyncSession, order_id: int, request_id: int) -> Decimal:
    """Approved amounts of other requests still waiting on the gateway."""
    result = await db.execute(
        select(func.coalesce(func.sum(RefundRequest.approved_amount), 0)).where(
            RefundRequest.order_id == order_id,
            RefundRequest.id != request_id,
            RefundRequest.status == RequestStatus.PROCESSING,
        )
    )
    return quantize(result.scalar() or 0)


async def get_refund_request(
    db: AsyncSession, request_id: int, user_id: Optional[int] = None
) -> RefundRequest:
    result = await db.execute(
        select(RefundRequest)
        .where(RefundRequest.id == request_id)
        .options(selectinload(RefundRequest.items), selectinload(RefundRequest.postings))
        .execution_options(populate_existing=True)
    )
    request = result.scalar_one_or_none()
    if not request or (user_id is not None and request.user_id != user_id):
        raise NotFoundError("Refund request not found")
    return request


async def list_refund_requests_for_user(db: AsyncSession, user_id: int) -> list[RefundRequest]:
    result = await db.execute(
        select(RefundRequest)
        .where(RefundRequest.user_id == user_id)
        .order_by(RefundRequest.created_at.desc(), RefundRequest.id.desc())
    )
    return list(result.scalars().all())


async def list_refund_requests(
    db: AsyncSession, status: Optional[RequestStatus] = None
) -> list[RefundRequest]:
    query = select(RefundRequest).order_by(
        RefundRequest.created_at.desc(), RefundRequest.id.desc()
    )
    if status is not None:
        query = query.where(RefundRequest.status == status)
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_postings(db: AsyncSession, request_id: int) -> list[RefundPosting]:
    result = await db.execute(
        select(RefundPosting)
        .where(RefundPosting.request_id == request_id)
        .order_by(RefundPosting.created_at.desc(), RefundPosting.id.desc())
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


async def _order_items(db: AsyncSession, order_id: int) -> list[OrderItem]:
    result = await db.execute(
        select(OrderItem).where(OrderItem.order_id == order_id).order_by(OrderItem.id)
    )
    return list(result.scalars().all())


async def _build_request_items(
    db: AsyncSession,
    order: Order,
    selections: list[RefundSelection],
) -> tuple[list[RefundRequestItem], Decimal, bool]:
    """Validate selections against unrefunded units and price them.

    Returns the item rows, their total and whether every remaining unit of
    the order was selected.
    """
    order_items = await _order_items(db, order.id)
    items_by_id = {item.id: item for item in order_items}
    refunded = await get_refunded_quantities(db, order.id)
    pricing = build_refund_pricing(order, order_items)

    rows: list[RefundRequestItem] = []
    amount = Decimal(0)
    selected_by_item: dict[int, int] = {}
    for selection in selections:
        item = items_by_id.get(selection.order_item_id)
        if item is None:
            raise ValidationError("The selected item is not part of this order.")
        remaining_qty = item.quantity - refunded.get(item.id, 0)
        if remaining_qty <= 0:
            raise ValidationError(f"{item.product_name} has already been refunded.")
        if selection.quantity > remaining_qty:
            raise ValidationError(
                f"Only {remaining_qty} of {item.product_name} can still be refunded."
            )

        unit_price = pricing[item.id].unit_price
        line_amount = quantize(unit_price * selection.quantity)
        amount += line_amount
        selected_by_item[item.id] = selection.quantity
        rows.append(
            RefundRequestItem(
                order_item_id=item.id,
                product_id=item.product_id,
                variant_id=item.variant_id,
                quantity=selection.quantity,
                unit_price=unit_price,
                line_refund_amount=line_amount,
            )
        )

    full_return = all(
        selected_by_item.get(item.id, 0) == item.quantity - refunded.get(item.id, 0)
        for item in order_items
    )
    return rows, quantize(amount), full_return


async def submit_refund_request(
    db: AsyncSession,
    *,
    user_id: int,
    order_id: int,
    selections: Union[Mapping[Any, Any], Sequence[RefundSelection]],
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RefundRequest:
    """Customer refund request for selected units of an order.

    Units are checked against what is still unrefunded, never the raw purchase
    quantity. Selecting every remaining unit adds the shipping fee. The
    request and its items are written together.
    """
    settings = get_settings()
    await find_by_id_for_user(db, order_id, user_id, with_items=False)

    try:
        order = await lock_order(db, order_id)

        eligibility = build_refund_eligibility(order, now)
        if not eligibility.payment_eligible:
            raise ValidationError("Only paid orders can be refunded.")
        if not eligibility.status_eligible:
            raise ValidationError("Refunds are available once the order has been delivered.")
        if not eligibility.within_window:
            raise ValidationError("The refund window for this order has closed.")
        remaining = eligibility.remaining
        if remaining <= 0:
            raise ValidationError("No refundable balance remaining.")

        if await _has_open_request(db, order_id):
            raise ValidationError("You already have a pending refund request for this order.")

        normalized = _normalize_selections(selections)
        if not normalized:
            raise ValidationError("Select at least one item to refund.")

        rows, amount, full_return = await _build_request_items(db, order, normalized)
        includes_shipping = full_return and quantize(order.shipping_amount) > 0
        if includes_shipping:
            amount = quantize(amount + quantize(order.shipping_amount))

        if amount <= 0:
            raise ValidationError("Refund amount must be greater than 0.")
        if amount > remaining + settings.REFUND_TOLERANCE:
            raise ValidationError("Refund amount exceeds remaining balance.")
        amount = min(amount, remaining)

        request = RefundRequest(
            order_id=order_id,
            user_id=user_id,
            flow=RefundFlow.CUSTOMER,
            payment_method=order.payment_method,
            requested_amount=amount,
            reason=(reason or "").strip() or None,
            status=RequestStatus.PENDING,
            includes_shipping=includes_shipping,
        )
        request.items = rows
        db.add(request)
        await db.flush()
        await log_audit(
            db,
            AuditEntityType.REFUND_REQUEST,
            request.id,
            "refund_requested",
            str(user_id),
            new_value={"amount": str(amount), "items": len(rows)},
        )
        await db.commit()
    except CommerceError:
        await db.rollback()
        raise

    logger.info(
        "Refund request %s submitted for order %s: %s (%d lines, shipping=%s)",
        request.id,
        order_id,
        amount,
        len(rows),
        includes_shipping,
    )
    return request


async def create_admin_refund(
    db: AsyncSession,
    *,
    order_id: int,
    amount: Any,
    admin_id: str,
    reason: Optional[str] = None,
    selections: Union[Mapping[Any, Any], Sequence[RefundSelection], None] = None,
    restock: bool = False,
    gateway_resolver: GatewayResolver = resolve_gateway,
) -> RefundOutcome:
    """Admin-initiated refund: open a request on the order and approve it."""
    requested = quantize(amount)
    if requested <= 0:
        raise ValidationError("Refund amount must be greater than 0.")

    try:
        order = await lock_order(db, order_id)
        if requested > order.remaining_refundable:
            raise ValidationError("Refund amount exceeds remaining balance.")
        if await _has_open_request(db, order_id):
            raise ValidationError("This order already has an open refund request.")

        rows: list[RefundRequestItem] = []
        normalized = _normalize_selections(selections)
        if normalized:
            rows, _, _ = await _build_request_items(db, order, normalized)

        request = RefundRequest(
            order_id=order_id,
            user_id=order.user_id,
            flow=RefundFlow.ADMIN,
            payment_method=order.payment_method,
            requested_amount=requested,
            reason=(reason or "").strip() or None,
            status=RequestStatus.PENDING,
        )
        request.items = rows
        db.add(request)
        await db.flush()
        request_id = request.id
        await db.commit()
    except CommerceError:
        await db.rollback()
        raise

    logger.info("Admin %s opened refund %s on order %s for %s", admin_id, request_id, order_id, requested)
    return await approve_refund_request(
        db,
        request_id,
        approver=admin_id,
        restock=restock,
        note=reason,
        gateway_resolver=gateway_resolver,
    )


# ---------------------------------------------------------------------------
# Approval
# ---------------------------------------------------------------------------


async def _load_request(db: AsyncSession, request_id: int) -> RefundRequest:
    result = await db.execute(
        select(RefundRequest)
        .where(RefundRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    request = result.scalar_one_or_none()
    if not request:
        raise NotFoundError("Refund request not found")
    return request


async def _mark_failed(db: AsyncSession, request_id: int, message: str) -> None:
    try:
        request = await _load_request(db, request_id)
        request.status = RequestStatus.FAILED
        request.admin_note = message
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Could not mark refund request %s as failed", request_id)
        raise
    logger.warning("Refund request %s failed: %s", request_id, message)


async def approve_refund_request(
    db: AsyncSession,
    request_id: int,
    *,
    approver: str,
    override_amount: Any = None,
    restock: bool = False,
    note: Optional[str] = None,
    gateway_resolver: GatewayResolver = resolve_gateway,
) -> RefundOutcome:
    """Approve a pending request and move the money.

    The approver may lower the payout but never raise it above the requested
    amount or the order's remaining balance.
    """
    settings = get_settings()
    note = (note or "").strip() or None

    # 1. Claim under the order lock
    request = await _load_request(db, request_id)
    order_id = request.order_id
    try:
        order = await lock_order(db, order_id)
        request = await _load_request(db, request_id)
        if request.status != RequestStatus.PENDING:
            raise ValidationError("Refund request is no longer pending.")

        requested = quantize(request.requested_amount)
        amount = quantize(override_amount) if override_amount not in (None, "") else requested
        if amount <= 0:
            raise ValidationError("Invalid refund amount.")
        available = order.remaining_refundable - await _reserved_by_others(db, order_id, request_id)
        if amount > available:
            raise ValidationError("Refund amount exceeds remaining balance.")
        if requested > 0 and amount > requested:
            raise ValidationError("Refund amount cannot exceed requested amount.")

        request.status = RequestStatus.PROCESSING
        request.approved_amount = amount
        request.admin_note = note
        request.reviewed_by = str(approver)

        user_id = request.user_id
        payment_method = order.payment_method
        capture_reference = order.payment_reference
        points_redeemed = order.loyalty_points_redeemed or 0
        await db.commit()
    except CommerceError:
        await db.rollback()
        raise

    # 2. Gateway call, no lock held
    gateway = gateway_resolver(payment_method, capture_reference)
    try:
        response = await gateway.refund_capture(capture_reference, amount, settings.CURRENCY)
        if not response.ok:
            raise GatewayFailure(response.error_message)
    except GatewayFailure as exc:
        await _mark_failed(db, request_id, str(exc.detail))
        raise

    # 3. Post under the order lock
    try:
        order = await lock_order(db, order_id)
        request = await _load_request(db, request_id)
        if not can_transition_refund(request.status, RequestStatus.COMPLETED):
            raise PersistenceFailure("Refund request changed while the refund was in flight.")
        if amount > order.remaining_refundable:
            raise PersistenceFailure("Refund would exceed the order total.")

        posting = RefundPosting(
            request_id=request_id,
            order_id=order_id,
            amount=amount,
            currency=settings.CURRENCY,
            status=response.refund_status.lower(),
            gateway=gateway.name,
            gateway_refund_id=response.refund_id or "MANUAL",
            capture_reference=capture_reference,
            gateway_payload=response.data,
        )
        db.add(posting)

        previous_refunded = quantize(order.refunded_amount)
        new_refunded = quantize(previous_refunded + amount)
        total = quantize(order.total_amount)
        full_refund = total > 0 and new_refunded >= total - settings.REFUND_TOLERANCE

        order.refunded_amount = new_refunded
        if full_refund:
            order.payment_status = PaymentStatus.REFUNDED
            order.status = OrderStatus.RETURNED
        request.status = RequestStatus.COMPLETED

        await db.flush()
        await log_audit(
            db,
            AuditEntityType.REFUND_REQUEST,
            request_id,
            "refund_posted",
            str(approver),
            old_value={"refunded_amount": str(previous_refunded)},
            new_value={
                "refunded_amount": str(new_refunded),
                "full_refund": full_refund,
                "gateway": gateway.name,
            },
            notes=note,
        )
        posting_id = posting.id
        gateway_refund_id = posting.gateway_refund_id
        await db.commit()
    except (CommerceError, SQLAlchemyError) as exc:
        await db.rollback()
        logger.error(
            "Refund %s moved %s at %s but could not be recorded: %s",
            request_id,
            amount,
            gateway.name,
            exc,
        )
        await _mark_failed(db, request_id, "Refund processed but failed to save record.")
        raise PersistenceFailure("Refund processed but failed to save record.") from exc

    logger.info(
        "Refund %s posted: %s on order %s (refunded %s/%s, full=%s, gateway=%s)",
        request_id,
        amount,
        order_id,
        new_refunded,
        total,
        full_refund,
        gateway.name,
    )

    outcome = RefundOutcome(
        request_id=request_id,
        status=RequestStatus.COMPLETED,
        approved_amount=amount,
        order_refunded_amount=new_refunded,
        full_refund=full_refund,
        posting_id=posting_id,
        gateway_refund_id=gateway_refund_id,
    )

    # 4. After-effects; the refund stands whatever happens here
    try:
        clawback = await loyalty_ledger.clawback_points_for_refund(
            db,
            user_id=user_id,
            order_id=order_id,
            cumulative_refunded_amount=new_refunded,
            order_total_amount=total,
            refund_reference=f"request #{request_id}",
        )
        outcome.points_clawed_back = clawback.points
    except (CommerceError, SQLAlchemyError) as exc:
        await db.rollback()
        logger.error("Points clawback failed for refund %s: %s", request_id, exc)
        outcome.warnings.append("Refund completed, but points reversal could not be applied.")

    if full_refund and points_redeemed > 0:
        try:
            returned = await loyalty_ledger.return_redeemed_points_for_order(
                db,
                user_id=user_id,
                order_id=order_id,
                points=points_redeemed,
                reference=f"request #{request_id}",
            )
            outcome.points_returned = returned.points
        except (CommerceError, SQLAlchemyError) as exc:
            await db.rollback()
            logger.error("Returning redeemed points failed for refund %s: %s", request_id, exc)
            outcome.warnings.append("Refund completed, but redeemed points could not be returned.")

    if restock:
        warning = await _restock_request_items(db, request_id, str(approver))
        if warning:
            outcome.warnings.append(warning)
        else:
            outcome.restocked = True

    return outcome


async def _restock_request_items(
    db: AsyncSession, request_id: int, performed_by: str
) -> Optional[str]:
    """Put refunded units back on the shelf. Returns a warning on failure."""
    result = await db.execute(
        select(RefundRequestItem)
        .where(RefundRequestItem.request_id == request_id)
        .order_by(RefundRequestItem.id)
    )
    items = list(result.scalars().all())
    if not items:
        return None

    try:
        for item in items:
            await inventory_ledger.restock(
                db,
                item.variant_id,
                item.quantity,
                reference_type="refund_request",
                reference_id=request_id,
                performed_by=performed_by,
            )
        await db.commit()
    except (CommerceError, SQLAlchemyError) as exc:
        await db.rollback()
        message = "Refund processed, but restocking failed."
        logger.error("Restock failed for refund %s: %s", request_id, exc)
        request = await _load_request(db, request_id)
        request.restock_warning = f"{message} {exc}"
        await db.commit()
        return message

    logger.info("Restocked %d lines for refund %s", len(items), request_id)
    return None


async def reject_refund_request(
    db: AsyncSession,
    request_id: int,
    *,
    note: Optional[str],
    admin_id: str,
) -> RefundRequest:
    """Terminal rejection. No money or stock moves."""
    note = (note or "").strip()
    if not note:
        raise ValidationError("Rejection reason is required.")

    request = await _load_request(db, request_id)
    try:
        await lock_order(db, request.order_id)
        request = await _load_request(db, request_id)
        if not can_transition_refund(request.status, RequestStatus.REJECTED):
            raise ValidationError("Refund request is no longer pending.")

        request.status = RequestStatus.REJECTED
        request.admin_note = note
        request.reviewed_by = str(admin_id)
        await log_audit(
            db,
            AuditEntityType.REFUND_REQUEST,
            request_id,
            "refund_rejected",
            str(admin_id),
            notes=note,
        )
        await db.commit()
    except CommerceError:
        await db.rollback()
        raise

    logger.info("Refund request %s rejected by %s", request_id, admin_id)
    return request
