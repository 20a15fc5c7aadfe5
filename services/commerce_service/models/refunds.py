"""Refund and return models: requests, request items, postings, returns."""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from libs.common.datetime_utils import utc_now
from libs.db.base import Base, JSONType
from services.commerce_service.models.enums import (
    RefundFlow,
    RequestStatus,
    ReturnType,
    enum_values,
)
from sqlalchemy import CheckConstraint, DateTime
from sqlalchemy import Enum as SAEnum
from sqlalchemy import ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

MANUAL_REFUND_MARKER = "MANUAL"

# ============================================================================
# REFUND REQUESTS
# ============================================================================


class RefundRequest(Base):
    """A request for money back on an order (customer or admin initiated)."""

    __tablename__ = "refund_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("orders.id"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)

    flow: Mapped[RefundFlow] = mapped_column(
        SAEnum(RefundFlow, values_callable=enum_values, name="refund_flow_enum"),
        default=RefundFlow.CUSTOMER,
        nullable=False,
    )
    payment_method: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    requested_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    approved_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    admin_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    status: Mapped[RequestStatus] = mapped_column(
        SAEnum(RequestStatus, values_callable=enum_values, name="request_status_enum"),
        default=RequestStatus.PENDING,
        nullable=False,
    )
    includes_shipping: Mapped[bool] = mapped_column(default=False, nullable=False)
    restock_warning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("requested_amount > 0", name="ck_refund_requests_positive"),
        Index("ix_refund_requests_order_status", "order_id", "status"),
    )

    # Relationships
    items = relationship(
        "RefundRequestItem",
        back_populates="request",
        cascade="all, delete-orphan",
        order_by="RefundRequestItem.id",
    )
    postings = relationship(
        "RefundPosting", back_populates="request", order_by="RefundPosting.id"
    )

    def __repr__(self):
        return f"<RefundRequest {self.id} order={self.order_id} {self.status}>"


class RefundRequestItem(Base):
    """Selected units of one order item. Immutable once written."""

    __tablename__ = "refund_request_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("refund_requests.id", ondelete="CASCADE"), nullable=False
    )
    order_item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("order_items.id"), nullable=False, index=True
    )
    product_id: Mapped[int] = mapped_column(Integer, nullable=False)
    variant_id: Mapped[int] = mapped_column(Integer, nullable=False)

    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    # Prorated (net of order discount) price per unit
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    line_refund_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_refund_items_positive_quantity"),
    )

    request = relationship("RefundRequest", back_populates="items")

    def __repr__(self):
        return f"<RefundRequestItem order_item={self.order_item_id} qty={self.quantity}>"


class RefundPosting(Base):
    """Money actually moved back to the customer. Append-only."""

    __tablename__ = "refund_postings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("refund_requests.id"), nullable=False, index=True
    )
    order_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("orders.id"), nullable=False, index=True
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False)

    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    gateway_refund_id: Mapped[str] = mapped_column(
        String(100), default=MANUAL_REFUND_MARKER, nullable=False
    )
    capture_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    gateway_payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_refund_postings_positive"),
    )

    request = relationship("RefundRequest", back_populates="postings")

    def __repr__(self):
        return f"<RefundPosting {self.gateway_refund_id} {self.amount}>"


# ============================================================================
# RETURN / EXCHANGE REQUESTS
# ============================================================================


class ReturnRequest(Base):
    """Customer return or exchange request. One per order."""

    __tablename__ = "return_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("orders.id"), unique=True, nullable=False
    )
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)

    request_type: Mapped[ReturnType] = mapped_column(
        SAEnum(ReturnType, values_callable=enum_values, name="return_type_enum"),
        default=ReturnType.RETURN,
        nullable=False,
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[RequestStatus] = mapped_column(
        SAEnum(RequestStatus, values_callable=enum_values, name="request_status_enum"),
        default=RequestStatus.PENDING,
        nullable=False,
    )
    admin_note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    requested_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now
    )
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now
    )

    def __repr__(self):
        return f"<ReturnRequest order={self.order_id} {self.request_type} {self.status}>"
