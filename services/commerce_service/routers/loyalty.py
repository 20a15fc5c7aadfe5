"""Loyalty points: balance, history, redemption quotes and vouchers."""

from fastapi import APIRouter, Depends, Query
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.commerce_service.schemas import (
    LoyaltyResultResponse,
    LoyaltySummaryResponse,
    RedemptionQuoteRequest,
    RedemptionQuoteResponse,
    VoucherRedeemRequest,
)
from services.commerce_service.services import loyalty_ledger
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(prefix="/loyalty", tags=["loyalty"])


@router.get("", response_model=LoyaltySummaryResponse)
async def get_my_points(
    limit: int = Query(50, ge=1, le=200),
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Current balance and most recent transactions."""
    balance = await loyalty_ledger.get_balance(db, current_user.user_id)
    transactions = await loyalty_ledger.list_transactions(
        db, current_user.user_id, limit=limit
    )
    return LoyaltySummaryResponse(balance=balance, transactions=transactions)


@router.post("/quote", response_model=RedemptionQuoteResponse)
async def quote_redemption(
    request: RedemptionQuoteRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    balance = await loyalty_ledger.get_balance(db, current_user.user_id)
    quote = loyalty_ledger.calculate_redemption(request.points, balance, request.order_amount)
    return RedemptionQuoteResponse(
        valid=quote.valid,
        message=quote.message,
        available_points=quote.available_points,
        max_redeemable_points=quote.max_redeemable_points,
        points_to_redeem=quote.points_to_redeem,
        discount_amount=quote.discount_amount,
    )


@router.post("/vouchers", response_model=LoyaltyResultResponse)
async def redeem_voucher(
    request: VoucherRedeemRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Spend points on a voucher. Replays of the same code are no-ops."""
    result = await loyalty_ledger.redeem_points_for_voucher(
        db,
        user_id=current_user.user_id,
        points=request.points,
        voucher_code=request.voucher_code,
    )
    return LoyaltyResultResponse(
        points=result.points,
        balance=result.balance,
        skipped=result.skipped,
        already_processed=result.already_processed,
        insufficient_balance=result.insufficient_balance,
        transaction_id=result.transaction_id,
    )
