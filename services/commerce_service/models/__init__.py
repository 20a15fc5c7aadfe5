"""Commerce Service models package."""

from services.commerce_service.models.catalog import Product, ProductVariant, User
from services.commerce_service.models.commerce import (
    AuditLog,
    Coupon,
    CouponUsage,
    Order,
    OrderItem,
)
from services.commerce_service.models.enums import (
    AuditEntityType,
    DeliveryMethod,
    DiscountType,
    InventoryMovementType,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    RefundFlow,
    RequestStatus,
    ReturnType,
    UserRole,
)
from services.commerce_service.models.inventory import InventoryMovement
from services.commerce_service.models.loyalty import LoyaltyTransaction
from services.commerce_service.models.refunds import (
    MANUAL_REFUND_MARKER,
    RefundPosting,
    RefundRequest,
    RefundRequestItem,
    ReturnRequest,
)

__all__ = [
    "AuditEntityType",
    "AuditLog",
    "Coupon",
    "CouponUsage",
    "DeliveryMethod",
    "DiscountType",
    "InventoryMovement",
    "InventoryMovementType",
    "LoyaltyTransaction",
    "MANUAL_REFUND_MARKER",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "Product",
    "ProductVariant",
    "RefundFlow",
    "RefundPosting",
    "RefundRequest",
    "RefundRequestItem",
    "RequestStatus",
    "ReturnRequest",
    "ReturnType",
    "User",
    "UserRole",
]
