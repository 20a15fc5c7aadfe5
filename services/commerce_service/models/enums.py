"""Enum definitions for commerce service models."""

import enum


def enum_values(enum_cls):
    """Return persistent DB values for SAEnum mappings."""
    return [member.value for member in enum_cls]


class UserRole(str, enum.Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class OrderStatus(str, enum.Enum):
    PROCESSING = "processing"
    PACKING = "packing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    READY_FOR_PICKUP = "ready_for_pickup"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    COMPLETED = "completed"
    REFUNDED = "refunded"
    FAILED = "failed"


class PaymentMethod(str, enum.Enum):
    PAYPAL = "paypal"
    STRIPE = "stripe"
    NETS = "nets"
    COD = "cod"
    MANUAL = "manual"


class DeliveryMethod(str, enum.Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED_AMOUNT = "fixed_amount"


class InventoryMovementType(str, enum.Enum):
    SALE = "sale"
    RETURN = "return"
    ADJUSTMENT = "adjustment"


class RequestStatus(str, enum.Enum):
    """Shared lifecycle for refund and return requests."""

    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"
    FAILED = "failed"


class RefundFlow(str, enum.Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class ReturnType(str, enum.Enum):
    RETURN = "return"
    EXCHANGE = "exchange"


class AuditEntityType(str, enum.Enum):
    ORDER = "order"
    INVENTORY = "inventory"
    REFUND_REQUEST = "refund_request"
    RETURN_REQUEST = "return_request"
    LOYALTY = "loyalty"
    COUPON = "coupon"
