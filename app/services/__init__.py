"""Services package."""

from app.services.gateway import PaymentGateway, RazorpayGateway
from app.services.order_ledger import OrderLedger
from app.services.order_service import OrderService
from app.services.payment_ledger import PaymentLedger
from app.services.payment_service import PaymentService

__all__ = [
    "PaymentGateway",
    "RazorpayGateway",
    "OrderLedger",
    "OrderService",
    "PaymentLedger",
    "PaymentService",
]
