"""Checkout and order history router."""

from fastapi import APIRouter, Depends
from libs.auth.dependencies import get_current_user
from libs.auth.models import AuthUser
from libs.db.session import get_async_db
from services.commerce_service.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    DeliveryUpdateRequest,
    OrderResponse,
    OrderSummaryResponse,
    PaymentConfirmRequest,
    PaymentConfirmResponse,
)
from services.commerce_service.services import order_store
from services.commerce_service.services.cart import Cart, CartLine
from services.commerce_service.services.checkout import (
    CheckoutOptions,
    checkout,
    compute_delivery_fee,
    confirm_payment,
)
from sqlalchemy.ext.asyncio import AsyncSession

router = APIRouter(tags=["checkout"])


# ============================================================================
# CHECKOUT
# ============================================================================


@router.post("/checkout", response_model=CheckoutResponse, status_code=201)
async def place_order(
    request: CheckoutRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Price the cart, apply discounts and create the order."""
    cart = Cart(
        lines=[
            CartLine(
                product_id=line.product_id,
                quantity=line.quantity,
                variant_id=line.variant_id,
                size=line.size,
            )
            for line in request.lines
        ],
        coupon_code=request.coupon_code,
        bundles=[bundle.model_dump(exclude_none=True) for bundle in request.bundles],
        points_to_redeem=request.points_to_redeem,
    )
    result = await checkout(
        db,
        current_user.user_id,
        cart,
        CheckoutOptions(
            delivery_method=request.delivery_method,
            shipping_address=request.shipping_address,
            payment_method=request.payment_method,
            payment_reference=request.payment_reference,
        ),
    )
    return CheckoutResponse(
        order_id=result.order.order_id,
        order_number=result.order.order_number,
        subtotal=result.order.subtotal,
        discount_amount=result.order.discount_amount,
        shipping_amount=result.shipping_amount,
        total_amount=result.order.total_amount,
        coupon_discount=result.coupon_discount,
        bundle_discount=result.bundle_discount,
        points_redeemed=result.points_redeemed,
        points_discount=result.points_discount,
        applied_bundles=result.applied_bundles,
        paid=result.paid,
        points_awarded=result.points_awarded,
        warnings=result.warnings,
    )


@router.post("/orders/{order_id}/payment", response_model=PaymentConfirmResponse)
async def confirm_order_payment(
    order_id: int,
    request: PaymentConfirmRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Record a captured payment for one of the caller's orders."""
    await order_store.find_by_id_for_user(db, order_id, current_user.user_id, with_items=False)
    confirmation = await confirm_payment(
        db,
        order_id,
        payment_method=request.payment_method,
        payment_reference=request.payment_reference,
    )
    return PaymentConfirmResponse(
        order_id=confirmation.order_id,
        paid=confirmation.paid,
        points_awarded=confirmation.points_awarded,
        warnings=confirmation.warnings,
    )


# ============================================================================
# ORDERS
# ============================================================================


@router.get("/orders", response_model=list[OrderSummaryResponse])
async def list_my_orders(
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    return await order_store.find_by_user(db, current_user.user_id)


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_my_order(
    order_id: int,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    return await order_store.find_by_id_for_user(db, order_id, current_user.user_id)


@router.patch("/orders/{order_id}/delivery", response_model=OrderResponse)
async def update_my_delivery(
    order_id: int,
    request: DeliveryUpdateRequest,
    current_user: AuthUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_db),
):
    """Change delivery method/address; the fee follows the method."""
    await order_store.find_by_id_for_user(db, order_id, current_user.user_id, with_items=False)
    await order_store.update_delivery(
        db,
        order_id,
        order_store.DeliveryUpdate(
            shipping_address=request.shipping_address,
            delivery_method=request.delivery_method,
            shipping_amount=compute_delivery_fee(request.delivery_method),
        ),
        performed_by=str(current_user.user_id),
    )
    return await order_store.find_by_id_for_user(db, order_id, current_user.user_id)
