"""Order model - purchase request, totals and status."""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List

from sqlalchemy import String, DateTime, Numeric, JSON, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.fsm.states import OrderStatus, PaymentStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    """
    Order placed by a signed-in user or a guest session.
    Never deleted; only its status moves.
    """

    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint(
            "(user_id IS NULL) <> (session_id IS NULL)",
            name="ck_orders_single_owner",
        ),
        CheckConstraint("total_amount > 0", name="ck_orders_positive_total"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )

    # Human-facing reference, e.g. ORD-20260101-4F2A9C
    order_number: Mapped[str] = mapped_column(
        String(32),
        unique=True,
        nullable=False,
        index=True,
    )

    # Owner: exactly one of these is set
    user_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    session_id: Mapped[Optional[str]] = mapped_column(
        String(128),
        nullable=True,
        index=True,
    )

    items: Mapped[List[Dict[str, Any]]] = mapped_column(
        JSON,
        default=list,
        nullable=False,
    )

    shipping_address: Mapped[Dict[str, Any]] = mapped_column(
        JSON,
        nullable=False,
    )

    guest_info: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        JSON,
        nullable=True,
    )

    total_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2),
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        default="INR",
        nullable=False,
    )

    status: Mapped[str] = mapped_column(
        String(30),
        default=OrderStatus.CREATED.value,
        nullable=False,
        index=True,
    )

    # Mirrors the linked payment's status
    payment_status: Mapped[str] = mapped_column(
        String(20),
        default=PaymentStatus.PENDING.value,
        nullable=False,
    )

    # Set on first payment attempt
    payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        nullable=True,
    )

    cancel_reason: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )

    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

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
        return f"<Order {self.order_number} {self.status}/{self.payment_status}>"

    def is_owned_by(self, user_id: Optional[str] = None, session_id: Optional[str] = None) -> bool:
        """Check the order belongs to the given user or guest session."""
        if self.user_id is not None:
            return user_id == self.user_id
        return session_id is not None and session_id == self.session_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "order_number": self.order_number,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "items": self.items,
            "shipping_address": self.shipping_address,
            "guest_info": self.guest_info,
            "total_amount": f"{self.total_amount:.2f}",
            "currency": self.currency,
            "status": self.status,
            "payment_status": self.payment_status,
            "payment_id": str(self.payment_id) if self.payment_id else None,
            "cancel_reason": self.cancel_reason,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
