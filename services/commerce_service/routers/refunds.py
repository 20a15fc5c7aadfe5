"""Customer refund and return requests."""

from fastapi import APIRouter, Depends
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.common.errors import NotFoundError
from libs.db.session import get_async_db
from services.commerce_service.schemas import (
    RefundEligibilityResponse,
    RefundRequestCreate,
    RefundRequestDetail,
    RefundRequestResponse,
    ReturnRequestCreate,
    ReturnRequestResponse,
)
from services.commerce_service.services import refund_workflow, returns
from services.commerce_service.services.order_store import find_by_id_for_user
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["refunds"])


# ============================================================================
# REFUNDS
# ============================================================================


@router.get("/orders/{order_id}/refund-eligibility", response_model=RefundEligibilityResponse)
async def get_refund_eligibility(
    order_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    order = await find_by_id_for_user(db, order_id, current_user.user_id, with_items=False)
    eligibility = refund_workflow.build_refund_eligibility(order)
    return RefundEligibilityResponse(
        allowed=eligibility.allowed,
        status_eligible=eligibility.status_eligible,
        payment_eligible=eligibility.payment_eligible,
        within_window=eligibility.within_window,
        days_since=eligibility.days_since,
        remaining=eligibility.remaining,
        refunded_quantities=await refund_workflow.get_refunded_quantities(db, order_id),
    )


@router.post(
    "/orders/{order_id}/refunds", response_model=RefundRequestDetail, status_code=201
)
async def request_refund(
    order_id: int,
    request: RefundRequestCreate,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Ask for a refund on selected units of a delivered order."""
    refund = await refund_workflow.submit_refund_request(
        db,
        user_id=current_user.user_id,
        order_id=order_id,
        selections=[
            refund_workflow.RefundSelection(item.order_item_id, item.quantity)
            for item in request.items
        ],
        reason=request.reason,
    )
    return await refund_workflow.get_refund_request(db, refund.id, current_user.user_id)


@router.get("/refunds", response_model=list[RefundRequestResponse])
async def list_my_refunds(
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    return await refund_workflow.list_refund_requests_for_user(db, current_user.user_id)


@router.get("/refunds/{request_id}", response_model=RefundRequestDetail)
async def get_my_refund(
    request_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    return await refund_workflow.get_refund_request(db, request_id, current_user.user_id)


# ============================================================================
# RETURNS / EXCHANGES
# ============================================================================


@router.post(
    "/orders/{order_id}/returns", response_model=ReturnRequestResponse, status_code=201
)
async def request_return(
    order_id: int,
    request: ReturnRequestCreate,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Create or update the return/exchange request for an order."""
    return await returns.submit_return_request(
        db,
        user_id=current_user.user_id,
        order_id=order_id,
        request_type=request.request_type,
        reason=request.reason,
        notes=request.notes,
    )


@router.get("/orders/{order_id}/returns", response_model=ReturnRequestResponse)
async def get_my_return(
    order_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    await find_by_id_for_user(db, order_id, current_user.user_id, with_items=False)
    return_request = await returns.find_return_request(db, order_id)
    if return_request is None:
        raise NotFoundError("Return request not found")
    return return_request
