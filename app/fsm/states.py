"""
FSM State Definitions.
Order and payment statuses plus the provider/checkout enums that select a flow.
"""

from enum import Enum


class OrderStatus(str, Enum):
    """
    Lifecycle of an order.

    created -> payment_pending -> confirmed is the happy path;
    payment_failed, cancelled and refunded are side branches.
    """

    CREATED = "created"
    PAYMENT_PENDING = "payment_pending"
    CONFIRMED = "confirmed"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.CANCELLED, OrderStatus.REFUNDED)


class PaymentStatus(str, Enum):
    """
    Status of a payment record.
    Also mirrored onto the order as ``payment_status``.
    """

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentProvider(str, Enum):
    """Who collects the money."""

    COD = "cod"
    RAZORPAY = "razorpay"


class CheckoutMethod(str, Enum):
    """
    Explicit method a client picks when initiating payment.

    RAZORPAY opens the in-page checkout modal against a gateway order;
    PAYMENT_LINK redirects to a hosted Razorpay page.
    """

    COD = "cod"
    RAZORPAY = "razorpay"
    PAYMENT_LINK = "payment_link"
