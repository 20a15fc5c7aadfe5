"""Return and exchange requests.

One request per order, kept in ``return_requests``. A customer may edit the
request while it is pending; once an admin has reviewed it the request is
frozen. Money only moves through the refund workflow.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from libs.common.config import get_settings
from libs.common.datetime_utils import ensure_utc, utc_now
from libs.common.errors import CommerceError, NotFoundError, ValidationError
from libs.common.logging import get_logger
from services.commerce_service.models import (
    AuditEntityType,
    Order,
    OrderStatus,
    PaymentStatus,
    RequestStatus,
    ReturnRequest,
    ReturnType,
)
from services.commerce_service.services.audit import log_audit
from services.commerce_service.services.order_store import find_by_id_for_user
from services.commerce_service.services.request_status import (
    can_transition_return,
    resolve_request_status,
)
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

logger = get_logger(__name__)

RETURN_ELIGIBLE_STATUSES = (OrderStatus.DELIVERED, OrderStatus.COMPLETED)


@dataclass
class ReturnEligibility:
    status_eligible: bool
    payment_eligible: bool
    within_window: bool
    days_since: Optional[int]
    deadline: Optional[datetime]

    @property
    def allowed(self) -> bool:
        return self.status_eligible and self.payment_eligible and self.within_window


def compute_return_eligibility(
    order: Order,
    now: Optional[datetime] = None,
    window_days: Optional[int] = None,
) -> ReturnEligibility:
    window_days = window_days if window_days is not None else get_settings().RETURN_WINDOW_DAYS
    now = ensure_utc(now or utc_now())

    created_at = ensure_utc(order.created_at)
    deadline = created_at + timedelta(days=window_days) if created_at else None
    return ReturnEligibility(
        status_eligible=order.status in RETURN_ELIGIBLE_STATUSES,
        payment_eligible=order.payment_status == PaymentStatus.PAID,
        within_window=deadline is None or now <= deadline,
        days_since=(now - created_at).days if created_at else None,
        deadline=deadline,
    )


def _resolve_type(value) -> ReturnType:
    if isinstance(value, ReturnType):
        return value
    try:
        return ReturnType(str(value or "").strip().lower())
    except ValueError:
        raise ValidationError("Choose either a return or an exchange.")


async def find_return_request(db: AsyncSession, order_id: int) -> Optional[ReturnRequest]:
    result = await db.execute(
        select(ReturnRequest)
        .where(ReturnRequest.order_id == order_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_return_requests(
    db: AsyncSession, status: Optional[RequestStatus] = None
) -> list[ReturnRequest]:
    query = select(ReturnRequest).order_by(ReturnRequest.requested_at.desc())
    if status is not None:
        query = query.where(ReturnRequest.status == status)
    result = await db.execute(query)
    return list(result.scalars().all())


async def submit_return_request(
    db: AsyncSession,
    *,
    user_id: int,
    order_id: int,
    request_type,
    reason: Optional[str],
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ReturnRequest:
    """Create or update the order's return request while it is still pending."""
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Please add a short reason for your request.")
    kind = _resolve_type(request_type)

    order = await find_by_id_for_user(db, order_id, user_id, with_items=False)
    if not compute_return_eligibility(order, now).allowed:
        raise ValidationError("This order is not eligible for returns or exchanges.")

    try:
        existing = await find_return_request(db, order_id)
        if existing and resolve_request_status(existing.status) != RequestStatus.PENDING:
            raise ValidationError("This return request has already been reviewed.")

        if existing:
            existing.request_type = kind
            existing.reason = reason
            existing.notes = (notes or "").strip() or None
            request = existing
        else:
            request = ReturnRequest(
                order_id=order_id,
                user_id=user_id,
                request_type=kind,
                reason=reason,
                notes=(notes or "").strip() or None,
                status=RequestStatus.PENDING,
            )
            db.add(request)
        await db.commit()
    except CommerceError:
        await db.rollback()
        raise
    except IntegrityError:
        # Two submissions raced on the unique order_id
        await db.rollback()
        raise ValidationError("A return request for this order is already being processed.")

    logger.info("Return request (%s) saved for order %s", kind.value, order_id)
    return request


async def _transition(
    db: AsyncSession,
    order_id: int,
    target: RequestStatus,
    admin_id: str,
    note: Optional[str],
    action: str,
) -> ReturnRequest:
    try:
        request = await find_return_request(db, order_id)
        if request is None:
            raise NotFoundError("Return request not found")
        current = resolve_request_status(request.status)
        if not can_transition_return(current, target):
            if current == RequestStatus.PENDING:
                raise ValidationError("Only approved requests can be completed.")
            raise ValidationError("This return request has already been reviewed.")

        request.status = target
        request.admin_note = (note or "").strip() or request.admin_note
        request.reviewed_by = str(admin_id)
        if request.reviewed_at is None:
            request.reviewed_at = utc_now()
        await log_audit(
            db,
            AuditEntityType.RETURN_REQUEST,
            request.id,
            action,
            str(admin_id),
            old_value={"status": current.value},
            new_value={"status": target.value},
            notes=note,
        )
        await db.commit()
    except CommerceError:
        await db.rollback()
        raise

    logger.info("Return request for order %s moved %s -> %s", order_id, current.value, target.value)
    return request


async def review_return_request(
    db: AsyncSession,
    order_id: int,
    *,
    approve: bool,
    admin_id: str,
    note: Optional[str] = None,
) -> ReturnRequest:
    if not approve and not (note or "").strip():
        raise ValidationError("Rejection reason is required.")
    target = RequestStatus.APPROVED if approve else RequestStatus.REJECTED
    action = "return_approved" if approve else "return_rejected"
    return await _transition(db, order_id, target, admin_id, note, action)


async def complete_return_request(
    db: AsyncSession,
    order_id: int,
    *,
    admin_id: str,
    note: Optional[str] = None,
) -> ReturnRequest:
    """Goods received back. Any refund is issued separately."""
    return await _transition(
        db, order_id, RequestStatus.COMPLETED, admin_id, note, "return_completed"
    )
