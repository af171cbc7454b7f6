"""
Order Ledger - order records and their status writes.
"""

import uuid
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import InvalidStateError, NotFoundError
from app.fsm.machine import order_sources
from app.fsm.states import OrderStatus, PaymentStatus
from app.models.order import Order, utcnow

logger = logging.getLogger(__name__)


class OrderLedger:
    """Owns the orders table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        order_number: str,
        total_amount: Decimal,
        items: List[Dict[str, Any]],
        shipping_address: Dict[str, Any],
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        guest_info: Optional[Dict[str, Any]] = None,
        currency: str = "INR",
    ) -> Order:
        order = Order(
            order_number=order_number,
            user_id=user_id,
            session_id=session_id,
            items=items,
            shipping_address=shipping_address,
            guest_info=guest_info,
            total_amount=total_amount,
            currency=currency,
            status=OrderStatus.CREATED.value,
            payment_status=PaymentStatus.PENDING.value,
        )
        self.db.add(order)
        await self.db.flush()

        logger.info(f"Created order {order_number} for {total_amount} {currency}")
        return order

    async def _get_one(self, *criteria) -> Optional[Order]:
        result = await self.db.execute(
            select(Order).where(*criteria).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, order_id: uuid.UUID) -> Optional[Order]:
        return await self._get_one(Order.id == order_id)

    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        return await self._get_one(Order.order_number == order_number)

    async def list_by_user(self, user_id: str) -> List[Order]:
        result = await self.db.execute(
            select(Order).where(Order.user_id == user_id).order_by(Order.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_by_session(self, session_id: str) -> List[Order]:
        result = await self.db.execute(
            select(Order).where(Order.session_id == session_id).order_by(Order.created_at.desc())
        )
        return list(result.scalars().all())

    async def update_status(
        self,
        order_id: uuid.UUID,
        status: OrderStatus,
        payment_status: Optional[PaymentStatus] = None,
    ) -> Order:
        """
        Set status and payment_status together.

        The current row is re-read first; writing the pair it already holds
        is a no-op, so a duplicate confirmation never touches the row. A move
        to a different status is one conditional UPDATE pinned to the legal
        source statuses, so a cancelled or refunded order is never reopened.
        """
        order = await self.get_by_id(order_id)
        if not order:
            raise NotFoundError("Order not found")

        status = OrderStatus(status)
        values: Dict[str, Any] = {"status": status.value}
        if payment_status is not None:
            values["payment_status"] = PaymentStatus(payment_status).value

        if all(getattr(order, key) == value for key, value in values.items()):
            logger.debug(f"Order {order.order_number} already {values}, skipping write")
            return order

        previous = order.status
        allowed = set(order_sources(status)) | {status.value}
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status.in_(sorted(allowed)))
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        order = await self.get_by_id(order_id)

        if result.rowcount != 1:
            raise InvalidStateError(f"Cannot move order from {order.status} to {status.value}")

        logger.info(f"Order {order.order_number}: {previous} -> {status.value}")
        return order

    async def link_payment_id(self, order_id: uuid.UUID, payment_id: uuid.UUID) -> None:
        await self.db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(payment_id=payment_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    async def mark_cancelled(
        self,
        order_id: uuid.UUID,
        reason: Optional[str],
        cancelled_at: Optional[datetime] = None,
    ) -> Order:
        """Cancel an order that has no payment attached yet."""
        result = await self.db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status.in_(order_sources(OrderStatus.CANCELLED)),
            )
            .values(
                status=OrderStatus.CANCELLED.value,
                cancel_reason=reason,
                cancelled_at=cancelled_at or utcnow(),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        order = await self.get_by_id(order_id)
        if not order:
            raise NotFoundError("Order not found")
        if result.rowcount != 1:
            raise InvalidStateError(f"Cannot cancel an order that is {order.status}")
        return order
