"""Request bodies for the order and payment endpoints."""

from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field

from app.fsm.states import CheckoutMethod, OrderStatus


class OrderItem(BaseModel):
    product_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    quantity: int = Field(gt=0)
    unit_price: Decimal = Field(gt=0, decimal_places=2)

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


class ShippingAddress(BaseModel):
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    address_line1: str = Field(min_length=1)
    address_line2: Optional[str] = None
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    pincode: str = Field(min_length=1)


class GuestInfo(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None


class CreateOrderRequest(BaseModel):
    """
    New order from a signed-in user or a guest.

    The owning user id comes from the authenticated caller, never from the
    body; guests send ``session_id`` instead.
    """

    session_id: Optional[str] = None
    items: List[OrderItem] = Field(min_length=1)
    shipping_address: ShippingAddress
    guest_info: Optional[GuestInfo] = None

    @property
    def total_amount(self) -> Decimal:
        return sum((item.line_total for item in self.items), Decimal("0")).quantize(Decimal("0.01"))


class InitiatePaymentRequest(BaseModel):
    method: CheckoutMethod


class CancelOrderRequest(BaseModel):
    session_id: Optional[str] = None
    reason: Optional[str] = Field(default=None, max_length=500)


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: str = Field(min_length=1)
    razorpay_payment_id: str = Field(min_length=1)
    razorpay_signature: str = Field(min_length=1)


class RefundRequest(BaseModel):
    refund_amount: Decimal = Field(decimal_places=2)
    refund_transaction_id: Optional[str] = None
