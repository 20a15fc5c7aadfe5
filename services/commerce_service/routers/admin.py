"""Admin commerce API router.

Refund review, admin refunds, returns, order status, delivery changes,
loyalty corrections and a few ledger reports.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from libs.auth.dependencies import require_admin
from libs.auth.models import AuthUser
from libs.common.errors import ValidationError
from libs.db.session import get_async_db
from services.commerce_service.schemas import (
    AdminRefundCreate,
    BalanceCheckResponse,
    BestSellerResponse,
    DeliveryUpdateRequest,
    LoyaltyTransactionResponse,
    OrderResponse,
    OrderStatusUpdate,
    PointsAdjustRequest,
    RefundApproveRequest,
    RefundOutcomeResponse,
    RefundRejectRequest,
    RefundRequestDetail,
    RefundRequestResponse,
    ReturnCompleteRequest,
    ReturnRequestResponse,
    ReturnReviewRequest,
    StockSnapshotResponse,
)
from services.commerce_service.services import (
    inventory_ledger,
    loyalty_ledger,
    order_store,
    refund_workflow,
    returns,
)
from services.commerce_service.services.checkout import compute_delivery_fee
from services.commerce_service.services.request_status import resolve_request_status
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["admin"])


def _status_filter(value: Optional[str]):
    if not value:
        return None
    status = resolve_request_status(value)
    if status is None:
        raise ValidationError(f"Unknown request status: {value}")
    return status


def _outcome_response(outcome: refund_workflow.RefundOutcome) -> RefundOutcomeResponse:
    return RefundOutcomeResponse(
        request_id=outcome.request_id,
        status=outcome.status,
        approved_amount=outcome.approved_amount,
        order_refunded_amount=outcome.order_refunded_amount,
        full_refund=outcome.full_refund,
        posting_id=outcome.posting_id,
        gateway_refund_id=outcome.gateway_refund_id,
        points_clawed_back=outcome.points_clawed_back,
        points_returned=outcome.points_returned,
        restocked=outcome.restocked,
        warnings=outcome.warnings,
    )


# ============================================================================
# REFUNDS
# ============================================================================


@router.get("/refunds", response_model=list[RefundRequestResponse])
async def list_refunds(
    status: Optional[str] = Query(None),
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    return await refund_workflow.list_refund_requests(db, _status_filter(status))


@router.get("/refunds/{request_id}", response_model=RefundRequestDetail)
async def get_refund(
    request_id: int,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    return await refund_workflow.get_refund_request(db, request_id)


@router.post("/refunds/{request_id}/approve", response_model=RefundOutcomeResponse)
async def approve_refund(
    request_id: int,
    request: RefundApproveRequest,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """Approve a pending refund and send it to the payment gateway."""
    outcome = await refund_workflow.approve_refund_request(
        db,
        request_id,
        approver=str(current_user.user_id),
        override_amount=request.amount,
        restock=request.restock,
        note=request.note,
    )
    return _outcome_response(outcome)


@router.post("/refunds/{request_id}/reject", response_model=RefundRequestResponse)
async def reject_refund(
    request_id: int,
    request: RefundRejectRequest,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    return await refund_workflow.reject_refund_request(
        db, request_id, note=request.note, admin_id=str(current_user.user_id)
    )


@router.post(
    "/orders/{order_id}/refunds", response_model=RefundOutcomeResponse, status_code=201
)
async def create_refund(
    order_id: int,
    request: AdminRefundCreate,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """Refund an order directly, without a customer request."""
    outcome = await refund_workflow.create_admin_refund(
        db,
        order_id=order_id,
        amount=request.amount,
        admin_id=str(current_user.user_id),
        reason=request.reason,
        selections=[
            refund_workflow.RefundSelection(item.order_item_id, item.quantity)
            for item in request.items
        ],
        restock=request.restock,
    )
    return _outcome_response(outcome)


# ============================================================================
# RETURNS
# ============================================================================


@router.get("/returns", response_model=list[ReturnRequestResponse])
async def list_returns(
    status: Optional[str] = Query(None),
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    return await returns.list_return_requests(db, _status_filter(status))


@router.post("/orders/{order_id}/returns/review", response_model=ReturnRequestResponse)
async def review_return(
    order_id: int,
    request: ReturnReviewRequest,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    return await returns.review_return_request(
        db,
        order_id,
        approve=request.approve,
        admin_id=str(current_user.user_id),
        note=request.note,
    )


@router.post("/orders/{order_id}/returns/complete", response_model=ReturnRequestResponse)
async def complete_return(
    order_id: int,
    request: ReturnCompleteRequest,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    return await returns.complete_return_request(
        db, order_id, admin_id=str(current_user.user_id), note=request.note
    )


# ============================================================================
# ORDERS
# ============================================================================


@router.patch("/orders/{order_id}/status", response_model=OrderResponse)
async def update_order_status(
    order_id: int,
    request: OrderStatusUpdate,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    await order_store.advance_order_status(
        db,
        order_id,
        request.status,
        performed_by=str(current_user.user_id),
        notes=request.notes,
    )
    return await order_store.get_order(db, order_id, with_items=True)


@router.patch("/orders/{order_id}/delivery", response_model=OrderResponse)
async def update_order_delivery(
    order_id: int,
    request: DeliveryUpdateRequest,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """Admins may waive the delivery fee."""
    await order_store.update_delivery(
        db,
        order_id,
        order_store.DeliveryUpdate(
            shipping_address=request.shipping_address,
            delivery_method=request.delivery_method,
            shipping_amount=compute_delivery_fee(request.delivery_method, request.waive_fee),
        ),
        performed_by=str(current_user.user_id),
    )
    return await order_store.get_order(db, order_id, with_items=True)


@router.get("/orders/{order_id}/points")
async def get_order_points(
    order_id: int,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    """Points earned and redeemed on one order."""
    summary = await loyalty_ledger.get_order_points_summary(db, [order_id])
    entry = summary.get(order_id) or loyalty_ledger.OrderPointsSummary()
    return {
        "order_id": order_id,
        "earned_points": entry.earned_points,
        "redeemed_points": entry.redeemed_points,
        "net_points": entry.net_points,
    }


# ============================================================================
# REPORTS
# ============================================================================


@router.get("/reports/best-sellers", response_model=list[BestSellerResponse])
async def best_sellers(
    limit: int = Query(5, ge=1, le=50),
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    rows = await order_store.get_best_sellers(db, limit=limit)
    return [
        BestSellerResponse(
            product_id=row.product_id,
            product_name=row.product_name,
            price=row.price,
            total_sold=row.total_sold,
        )
        for row in rows
    ]


@router.get("/inventory/variants/{variant_id}", response_model=StockSnapshotResponse)
async def get_stock_snapshot(
    variant_id: int,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    snapshot = await inventory_ledger.stock_snapshot(db, variant_id)
    return StockSnapshotResponse(
        variant_id=snapshot.variant_id,
        quantity=snapshot.quantity,
        movement_total=snapshot.movement_total,
    )


# ============================================================================
# LOYALTY
# ============================================================================


@router.post(
    "/loyalty/{user_id}/adjust",
    response_model=LoyaltyTransactionResponse,
    status_code=201,
)
async def adjust_points(
    user_id: int,
    request: PointsAdjustRequest,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    return await loyalty_ledger.adjust_points_by_admin(
        db,
        user_id=user_id,
        points_change=request.points_change,
        admin_user_id=current_user.user_id,
        note=request.note or "",
    )


@router.get("/loyalty/issued")
async def total_issued_points(
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    return {"total_issued_points": await loyalty_ledger.get_total_issued_points(db)}


@router.get("/loyalty/{user_id}/verify", response_model=BalanceCheckResponse)
async def verify_points_balance(
    user_id: int,
    current_user: AuthUser = Depends(require_admin),
    db: AsyncSession = Depends(get_async_db),
):
    check = await loyalty_ledger.verify_balance(db, user_id)
    return BalanceCheckResponse(
        user_id=check.user_id,
        cached_balance=check.cached_balance,
        ledger_balance=check.ledger_balance,
        consistent=check.consistent,
    )
