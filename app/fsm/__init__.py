"""FSM package for order and payment state management."""

from app.fsm.states import OrderStatus, PaymentStatus, PaymentProvider, CheckoutMethod

__all__ = ["OrderStatus", "PaymentStatus", "PaymentProvider", "CheckoutMethod"]
