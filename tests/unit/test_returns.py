"""Unit tests for return and exchange requests."""

from datetime import datetime, timedelta, timezone

import pytest
from libs.common.datetime_utils import ensure_utc
from libs.common.errors import NotFoundError, ValidationError
from services.commerce_service.models import (
    AuditLog,
    Order,
    OrderStatus,
    PaymentStatus,
    RequestStatus,
    ReturnType,
)
from services.commerce_service.services import returns
from sqlalchemy import select
from tests.factories import seed_order, seed_product, seed_user


async def _delivered_order(db, **overrides):
    user = await seed_user(db)
    _, variant = await seed_product(db)
    order, _ = await seed_order(db, user, [(variant, 1, "20")], **overrides)
    return user, order


async def _submit(db, user, order, request_type="return", reason="Too small", **kwargs):
    return await returns.submit_return_request(
        db,
        user_id=user.id,
        order_id=order.id,
        request_type=request_type,
        reason=reason,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Eligibility
# ---------------------------------------------------------------------------


@pytest.mark.unit
class TestReturnEligibility:
    def test_window_is_seven_days_from_purchase(self):
        placed = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
        order = Order(
            status=OrderStatus.DELIVERED, payment_status=PaymentStatus.PAID, created_at=placed
        )

        inside = returns.compute_return_eligibility(order, now=placed + timedelta(days=7))
        outside = returns.compute_return_eligibility(
            order, now=placed + timedelta(days=7, seconds=1)
        )

        assert inside.allowed
        assert inside.deadline == placed + timedelta(days=7)
        assert not outside.within_window

    def test_naive_timestamps_are_treated_as_utc(self):
        placed = datetime(2024, 3, 1, 12)
        order = Order(
            status=OrderStatus.COMPLETED, payment_status=PaymentStatus.PAID, created_at=placed
        )
        result = returns.compute_return_eligibility(
            order, now=datetime(2024, 3, 3, 12, tzinfo=timezone.utc)
        )
        assert result.allowed
        assert result.days_since == 2

    def test_undelivered_orders_are_not_eligible(self):
        order = Order(
            status=OrderStatus.SHIPPED,
            payment_status=PaymentStatus.PAID,
            created_at=datetime.now(timezone.utc),
        )
        assert not returns.compute_return_eligibility(order).allowed


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_submit_creates_then_updates_pending_request(db_session):
    user, order = await _delivered_order(db_session)

    first = await _submit(db_session, user, order, notes=" size M please ")
    second = await _submit(db_session, user, order, request_type="Exchange", reason="Wrong colour")

    assert second.id == first.id
    assert second.request_type == ReturnType.EXCHANGE
    assert second.reason == "Wrong colour"
    assert second.notes is None
    assert len(await returns.list_return_requests(db_session)) == 1


@pytest.mark.asyncio
@pytest.mark.unit
@pytest.mark.parametrize(
    "request_type, reason, message",
    [
        ("return", "   ", "Please add a short reason for your request."),
        ("swap", "Too small", "Choose either a return or an exchange."),
    ],
)
async def test_submit_validates_input(db_session, request_type, reason, message):
    user, order = await _delivered_order(db_session)

    with pytest.raises(ValidationError) as exc_info:
        await _submit(db_session, user, order, request_type=request_type, reason=reason)

    assert exc_info.value.detail == message


@pytest.mark.asyncio
@pytest.mark.unit
async def test_submit_refuses_ineligible_orders(db_session):
    user, late = await _delivered_order(
        db_session, created_at=datetime.now(timezone.utc) - timedelta(days=8)
    )
    _, unpaid = await _delivered_order(db_session, payment_status=PaymentStatus.PENDING)
    stranger = await seed_user(db_session)

    with pytest.raises(ValidationError) as exc_info:
        await _submit(db_session, user, late)
    with pytest.raises(NotFoundError):
        await _submit(db_session, stranger, unpaid)

    assert exc_info.value.detail == "This order is not eligible for returns or exchanges."


# ---------------------------------------------------------------------------
# Review
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.unit
async def test_approve_then_complete(db_session):
    user, order = await _delivered_order(db_session)
    await _submit(db_session, user, order)

    approved = await returns.review_return_request(
        db_session, order.id, approve=True, admin_id="7", note="Send it back"
    )
    assert approved.status == RequestStatus.APPROVED
    reviewed_at = ensure_utc(approved.reviewed_at)

    completed = await returns.complete_return_request(db_session, order.id, admin_id="7")

    assert completed.status == RequestStatus.COMPLETED
    assert ensure_utc(completed.reviewed_at) == reviewed_at
    assert completed.admin_note == "Send it back"
    actions = (await db_session.execute(select(AuditLog.action).order_by(AuditLog.id))).scalars()
    assert list(actions) == ["return_approved", "return_completed"]


@pytest.mark.asyncio
@pytest.mark.unit
async def test_reviewed_request_is_frozen(db_session):
    user, order = await _delivered_order(db_session)
    order_id = order.id
    await _submit(db_session, user, order)
    await returns.review_return_request(
        db_session, order.id, approve=False, admin_id="7", note="Worn"
    )

    with pytest.raises(ValidationError) as resubmit:
        await _submit(db_session, user, order)
    with pytest.raises(ValidationError) as re_review:
        await returns.review_return_request(db_session, order_id, approve=True, admin_id="7")

    assert resubmit.value.detail == "This return request has already been reviewed."
    assert re_review.value.detail == "This return request has already been reviewed."


@pytest.mark.asyncio
@pytest.mark.unit
async def test_completion_requires_approval(db_session):
    user, order = await _delivered_order(db_session)
    await _submit(db_session, user, order)

    with pytest.raises(ValidationError) as exc_info:
        await returns.complete_return_request(db_session, order.id, admin_id="7")

    assert exc_info.value.detail == "Only approved requests can be completed."


@pytest.mark.asyncio
@pytest.mark.unit
async def test_rejection_needs_a_reason_and_missing_requests_404(db_session):
    _, order = await _delivered_order(db_session)

    with pytest.raises(ValidationError):
        await returns.review_return_request(db_session, order.id, approve=False, admin_id="7")
    with pytest.raises(NotFoundError):
        await returns.review_return_request(db_session, order.id, approve=True, admin_id="7")
