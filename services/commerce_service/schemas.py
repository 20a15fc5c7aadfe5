"""Pydantic schemas for the commerce service."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from services.commerce_service.models import (
    DeliveryMethod,
    OrderStatus,
    PaymentStatus,
    RefundFlow,
    RequestStatus,
    ReturnType,
)

# ============================================================================
# CHECKOUT SCHEMAS
# ============================================================================


class CartLineIn(BaseModel):
    product_id: int
    quantity: int = Field(..., ge=1)
    variant_id: Optional[int] = None
    size: Optional[str] = Field(None, max_length=20)


class BundleIn(BaseModel):
    id: Optional[str] = None
    product_ids: list[int] = Field(..., min_length=2)
    discount_rate: Optional[Decimal] = Field(None, gt=0, le=1)
    title: Optional[str] = None


class CheckoutRequest(BaseModel):
    lines: list[CartLineIn] = Field(..., min_length=1)
    coupon_code: Optional[str] = Field(None, max_length=50)
    bundles: list[BundleIn] = []
    points_to_redeem: int = Field(0, ge=0)
    delivery_method: DeliveryMethod = DeliveryMethod.DELIVERY
    shipping_address: Optional[str] = None
    payment_method: Optional[str] = Field(None, max_length=20)
    payment_reference: Optional[str] = Field(None, max_length=100)


class CheckoutResponse(BaseModel):
    order_id: int
    order_number: str
    subtotal: Decimal
    discount_amount: Decimal
    shipping_amount: Decimal
    total_amount: Decimal
    coupon_discount: Decimal
    bundle_discount: Decimal
    points_redeemed: int
    points_discount: Decimal
    applied_bundles: list[dict] = []
    paid: bool
    points_awarded: int = 0
    warnings: list[str] = []


class PaymentConfirmRequest(BaseModel):
    payment_method: str = Field(..., max_length=20)
    payment_reference: str = Field(..., min_length=1, max_length=100)


class PaymentConfirmResponse(BaseModel):
    order_id: int
    paid: bool
    points_awarded: int = 0
    warnings: list[str] = []


# ============================================================================
# ORDER SCHEMAS
# ============================================================================


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int
    variant_id: int
    product_name: str
    sku: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class OrderSummaryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    user_id: int
    subtotal: Decimal
    tax_amount: Decimal
    shipping_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal
    refunded_amount: Decimal
    promo_code: Optional[str] = None
    loyalty_points_redeemed: int = 0
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: Optional[str] = None
    delivery_method: DeliveryMethod
    shipping_address: Optional[str] = None
    paid_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime


class OrderResponse(OrderSummaryResponse):
    discount_breakdown: Optional[dict] = None
    items: list[OrderItemResponse] = []


class DeliveryUpdateRequest(BaseModel):
    delivery_method: DeliveryMethod
    shipping_address: Optional[str] = None
    waive_fee: bool = False


class OrderStatusUpdate(BaseModel):
    status: str = Field(..., min_length=1)
    notes: Optional[str] = None


class BestSellerResponse(BaseModel):
    product_id: int
    product_name: str
    price: Decimal
    total_sold: int


class StockSnapshotResponse(BaseModel):
    variant_id: int
    quantity: int
    movement_total: int


# ============================================================================
# REFUND SCHEMAS
# ============================================================================


class RefundEligibilityResponse(BaseModel):
    allowed: bool
    status_eligible: bool
    payment_eligible: bool
    within_window: bool
    days_since: Optional[int] = None
    remaining: Decimal
    refunded_quantities: dict[int, int] = {}


class RefundItemSelection(BaseModel):
    order_item_id: int
    quantity: int = Field(..., ge=1)


class RefundRequestCreate(BaseModel):
    items: list[RefundItemSelection] = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=1000)


class RefundRequestItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_item_id: int
    product_id: int
    variant_id: int
    quantity: int
    unit_price: Decimal
    line_refund_amount: Decimal


class RefundPostingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    request_id: int
    order_id: int
    amount: Decimal
    currency: str
    status: str
    gateway: str
    gateway_refund_id: str
    capture_reference: Optional[str] = None
    created_at: datetime


class RefundRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    user_id: int
    flow: RefundFlow
    payment_method: Optional[str] = None
    requested_amount: Decimal
    approved_amount: Optional[Decimal] = None
    reason: Optional[str] = None
    admin_note: Optional[str] = None
    status: RequestStatus
    includes_shipping: bool = False
    restock_warning: Optional[str] = None
    created_at: datetime


class RefundRequestDetail(RefundRequestResponse):
    items: list[RefundRequestItemResponse] = []
    postings: list[RefundPostingResponse] = []


class RefundApproveRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0)
    restock: bool = False
    note: Optional[str] = None


class RefundRejectRequest(BaseModel):
    note: str

    @field_validator("note")
    @classmethod
    def note_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Rejection reason is required.")
        return v.strip()


class AdminRefundCreate(BaseModel):
    amount: Decimal = Field(..., gt=0)
    reason: Optional[str] = None
    items: list[RefundItemSelection] = []
    restock: bool = False


class RefundOutcomeResponse(BaseModel):
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
    warnings: list[str] = []


# ============================================================================
# RETURN SCHEMAS
# ============================================================================


class ReturnRequestCreate(BaseModel):
    request_type: ReturnType = ReturnType.RETURN
    reason: str = Field(..., max_length=1000)
    notes: Optional[str] = Field(None, max_length=2000)


class ReturnRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    user_id: int
    request_type: ReturnType
    reason: str
    notes: Optional[str] = None
    status: RequestStatus
    admin_note: Optional[str] = None
    requested_at: datetime
    reviewed_at: Optional[datetime] = None


class ReturnReviewRequest(BaseModel):
    approve: bool
    note: Optional[str] = None


class ReturnCompleteRequest(BaseModel):
    note: Optional[str] = None


# ============================================================================
# LOYALTY SCHEMAS
# ============================================================================


class LoyaltyTransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: Optional[int] = None
    points_change: int
    reason: str
    balance_after: int
    created_at: datetime


class LoyaltySummaryResponse(BaseModel):
    balance: int
    transactions: list[LoyaltyTransactionResponse] = []


class RedemptionQuoteRequest(BaseModel):
    points: int = Field(..., ge=0)
    order_amount: Decimal = Field(..., ge=0)


class RedemptionQuoteResponse(BaseModel):
    valid: bool
    message: Optional[str] = None
    available_points: int
    max_redeemable_points: int
    points_to_redeem: int = 0
    discount_amount: Decimal = Decimal("0.00")


class VoucherRedeemRequest(BaseModel):
    points: int = Field(..., gt=0)
    voucher_code: str = Field(..., min_length=1, max_length=100)


class LoyaltyResultResponse(BaseModel):
    points: int = 0
    balance: int = 0
    skipped: bool = False
    already_processed: bool = False
    insufficient_balance: bool = False
    transaction_id: Optional[int] = None


class PointsAdjustRequest(BaseModel):
    points_change: int
    note: Optional[str] = Field(None, max_length=200)

    @field_validator("points_change")
    @classmethod
    def non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("Points change must not be zero.")
        return v


class BalanceCheckResponse(BaseModel):
    user_id: int
    cached_balance: int
    ledger_balance: int
    consistent: bool
