"""Payment model - one collection attempt for an order."""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any

from sqlalchemy import String, DateTime, ForeignKey, Numeric, JSON
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.fsm.states import PaymentStatus
from app.models.order import utcnow


class Payment(Base):
    """
    Payment record for an order.

    Retries reuse the same row (status reset), so an order has at most one.
    gateway_order_id is written once and never changed.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    order_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("orders.id"),
        nullable=False,
        index=True,
    )

    order_number: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        index=True,
    )

    # Mirrors the order owner
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # cod | razorpay
    provider: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        default="INR",
        nullable=False,
    )

    # card / upi / netbanking / cod, as reported by the gateway
    method: Mapped[Optional[str]] = mapped_column(
        String(30),
        nullable=True,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
        index=True,
    )

    # Razorpay order id (order_XXXX)
    gateway_order_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )

    # Hosted checkout (Razorpay payment link id and short URL)
    checkout_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        unique=True,
        nullable=True,
    )
    checkout_url: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )

    # Razorpay payment id (pay_XXXX), or cod_<id>
    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    gateway_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Failure details
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Verification data or raw webhook payload
    gateway_response: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
    )

    # Refund
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2),
        nullable=True,
    )
    refund_transaction_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
    )

    # Timestamps
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<Payment {self.id} {self.provider} {self.status}>"

    @property
    def is_completed(self) -> bool:
        return self.status == PaymentStatus.COMPLETED.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "order_id": str(self.order_id),
            "order_number": self.order_number,
            "provider": self.provider,
            "amount": f"{self.amount:.2f}",
            "currency": self.currency,
            "method": self.method,
            "status": self.status,
            "gateway_order_id": self.gateway_order_id,
            "checkout_url": self.checkout_url,
            "transaction_id": self.transaction_id,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "failure_reason": self.failure_reason,
            "refund_amount": f"{self.refund_amount:.2f}" if self.refund_amount is not None else None,
            "refund_transaction_id": self.refund_transaction_id,
        }
