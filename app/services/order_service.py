"""
Order Service - order creation, lookup and customer/admin status changes.

Payment-driven statuses (payment_pending, confirmed, payment_failed,
refunded) are written only by PaymentService; this service never sets them.
"""

import uuid
import secrets
import logging
from datetime import datetime, timezone
from typing import List, Optional

from app.errors import InvalidStateError, NotFoundError
from app.fsm.machine import PAYMENT_DRIVEN_ORDER_STATUSES, can_transition_order
from app.fsm.states import OrderStatus
from app.models.order import Order
from app.schemas.orders import CreateOrderRequest
from app.services.order_ledger import OrderLedger

logger = logging.getLogger(__name__)


class OrderService:
    """Customer and admin operations on orders."""

    ORDER_NUMBER_ATTEMPTS = 5

    def __init__(self, orders: OrderLedger):
        self.orders = orders

    async def _new_order_number(self) -> str:
        """Generate an unused order number like ORD-20260101-4F2A9C."""
        today = datetime.now(timezone.utc).strftime("%Y%m%d")
        for _ in range(self.ORDER_NUMBER_ATTEMPTS):
            candidate = f"ORD-{today}-{secrets.token_hex(3).upper()}"
            if not await self.orders.get_by_order_number(candidate):
                return candidate
        raise RuntimeError("Could not allocate a unique order number")

    async def create_order(self, data: CreateOrderRequest, user_id: Optional[str] = None) -> Order:
        """
        Create an order in status created.

        Owned by ``user_id`` when given, otherwise by the guest session in
        ``data``; exactly one of the two must be set.
        """
        session_id = data.session_id
        if bool(user_id) == bool(session_id):
            raise ValueError("Exactly one of user_id or session_id is required")

        order_number = await self._new_order_number()
        return await self.orders.create(
            order_number=order_number,
            total_amount=data.total_amount,
            items=[item.model_dump(mode="json") for item in data.items],
            shipping_address=data.shipping_address.model_dump(mode="json"),
            user_id=user_id,
            session_id=session_id,
            guest_info=data.guest_info.model_dump(mode="json") if data.guest_info else None,
        )

    async def get_order(self, order_id: uuid.UUID) -> Order:
        order = await self.orders.get_by_id(order_id)
        if not order:
            raise NotFoundError("Order not found")
        return order

    async def get_order_by_number(self, order_number: str) -> Order:
        order = await self.orders.get_by_order_number(order_number)
        if not order:
            raise NotFoundError("Order not found")
        return order

    async def list_user_orders(self, user_id: str) -> List[Order]:
        return await self.orders.list_by_user(user_id)

    async def list_guest_orders(self, session_id: str) -> List[Order]:
        return await self.orders.list_by_session(session_id)

    async def cancel_order(
        self,
        order_id: uuid.UUID,
        reason: Optional[str] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Order:
        """
        Cancel an order the caller owns.

        Only orders with no payment attached can be cancelled; a confirmed
        order goes through a refund instead.
        """
        order = await self.get_order(order_id)

        # Someone else's order looks the same as a missing one
        if not order.is_owned_by(user_id=user_id, session_id=session_id):
            raise NotFoundError("Order not found")

        if not can_transition_order(OrderStatus(order.status), OrderStatus.CANCELLED):
            raise InvalidStateError(f"Cannot cancel an order that is {order.status}")

        order = await self.orders.mark_cancelled(order.id, reason)
        logger.info(f"Order {order.order_number} cancelled: {reason or 'no reason given'}")
        return order

    async def update_order_status(self, order_id: uuid.UUID, status: OrderStatus) -> Order:
        """Admin status change, limited to statuses the payment flow does not own."""
        status = OrderStatus(status)
        order = await self.get_order(order_id)

        if status in PAYMENT_DRIVEN_ORDER_STATUSES:
            raise InvalidStateError(f"Status {status.value} is set by the payment flow")

        if status.value == order.status:
            return order

        if not can_transition_order(OrderStatus(order.status), status):
            raise InvalidStateError(f"Cannot move order from {order.status} to {status.value}")

        if status == OrderStatus.CANCELLED:
            return await self.orders.mark_cancelled(order.id, "Cancelled by admin")
        return await self.orders.update_status(order.id, status)
