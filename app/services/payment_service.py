"""
Payment Service - the order/payment state machine.

Decides which transitions are legal, keeps the order in step with its
payment, and makes every gateway-driven entry point safe to repeat.
The webhook and the client-side verify call may race on the same payment;
PaymentLedger.mark_completed is the one place that decides who wins.
"""

import uuid
import logging
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar, Union

from app.config import settings
from app.errors import (
    DuplicatePaymentError,
    GatewayIntegrationError,
    InvalidAmountError,
    InvalidSignatureError,
    InvalidStateError,
    NoCheckoutAvailableError,
    NotFoundError,
)
from app.fsm.machine import ORDER_STATE_FOR_PAYMENT, can_transition_order
from app.fsm.states import CheckoutMethod, OrderStatus, PaymentProvider, PaymentStatus
from app.models.order import Order
from app.models.payment import Payment
from app.schemas.events import PaymentFailureEvent, PaymentSuccessEvent
from app.services.gateway import PaymentGateway, to_minor_units
from app.services.order_ledger import OrderLedger
from app.services.payment_ledger import PaymentLedger

logger = logging.getLogger(__name__)

T = TypeVar("T")

PaymentEvent = Union[PaymentSuccessEvent, PaymentFailureEvent]
Resolver = Callable[[str], Awaitable[Optional[Payment]]]

# Failure reasons after which a stored payment link can no longer be paid
DEAD_CHECKOUT_REASONS = frozenset({"payment_link.expired", "payment_link.cancelled"})


@dataclass(frozen=True)
class GatewayCheckout:
    """Parameters the frontend needs to open the Razorpay checkout modal."""

    payment_id: str
    razorpay_order_id: str
    razorpay_key_id: str
    amount: int
    currency: str
    order_number: str
    # Pass as checkout `notes`; the payment.captured webhook finds the order by it
    notes: Dict[str, str]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class RetryCheckout:
    """A hosted checkout page the customer can go back to."""

    payment_id: str
    checkout_url: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class PaymentService:
    """Orchestrates payments against the two ledgers and the gateway."""

    def __init__(
        self,
        payments: PaymentLedger,
        orders: OrderLedger,
        gateway: PaymentGateway,
    ):
        self.payments = payments
        self.orders = orders
        self.gateway = gateway

    # --- Helpers -------------------------------------------------------------

    async def _require_order(self, order_id: uuid.UUID) -> Order:
        order = await self.orders.get_by_id(order_id)
        if not order:
            raise NotFoundError("Order not found")
        return order

    @staticmethod
    def _ensure_payable(order: Order) -> None:
        if OrderStatus(order.status).is_terminal:
            raise InvalidStateError(f"Order {order.order_number} is {order.status}")

    @staticmethod
    def _reject_settled(payment: Optional[Payment]) -> None:
        if payment and payment.status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
            raise DuplicatePaymentError("Payment already exists for this order")

    async def _ensure_order_accepts(self, payment: Payment, target: PaymentStatus) -> None:
        """Refuse a payment write whose order state could not follow."""
        order = await self._require_order(payment.order_id)
        status, _ = ORDER_STATE_FOR_PAYMENT[target]
        if order.status != status.value and not can_transition_order(OrderStatus(order.status), status):
            raise InvalidStateError(
                f"Order {order.order_number} is {order.status}, cannot apply a {target.value} payment"
            )

    async def _sync_order(self, payment: Payment) -> Order:
        """Write the order status implied by the payment's stored status."""
        status, payment_status = ORDER_STATE_FOR_PAYMENT[PaymentStatus(payment.status)]
        return await self.orders.update_status(payment.order_id, status, payment_status)

    async def _gateway_call(self, operation: str, call: Awaitable[T]) -> T:
        """Run an adapter call; nothing but GatewayIntegrationError gets out."""
        try:
            return await call
        except GatewayIntegrationError:
            raise
        except Exception as e:
            logger.error(f"Gateway {operation} failed: {e}", exc_info=True)
            raise GatewayIntegrationError(f"Payment gateway error during {operation}") from e

    # --- Shared constructor --------------------------------------------------

    async def create_payment(
        self,
        order: Order,
        provider: PaymentProvider,
        method: Optional[str] = None,
        gateway_order_id: Optional[str] = None,
        completed: bool = False,
    ) -> Payment:
        """
        Create the payment row for an order and link it onto the order.

        ``completed`` is for self-attesting offline methods (cash on
        delivery): the payment is completed immediately with a transaction
        id derived from its own id.
        """
        payment = await self.payments.create(
            order_id=order.id,
            order_number=order.order_number,
            provider=PaymentProvider(provider).value,
            amount=order.total_amount,
            user_id=order.user_id,
            session_id=order.session_id,
            method=method,
            currency=order.currency,
        )

        if gateway_order_id:
            payment = await self.payments.set_gateway_order_id(payment.id, gateway_order_id)

        if completed:
            payment = await self.payments.mark_completed(
                payment.id,
                transaction_id=f"cod_{payment.id}",
                method=PaymentProvider.COD.value,
            )

        await self.orders.link_payment_id(order.id, payment.id)
        return payment

    # --- Cash on delivery ----------------------------------------------------

    async def process_cod_payment(self, order_id: uuid.UUID) -> Payment:
        """Create a completed COD payment and confirm the order."""
        order = await self._require_order(order_id)

        if await self.payments.get_by_order_id(order.id):
            raise DuplicatePaymentError("Payment already exists for this order")
        self._ensure_payable(order)

        payment = await self.create_payment(
            order,
            provider=PaymentProvider.COD,
            method=PaymentProvider.COD.value,
            completed=True,
        )
        await self._sync_order(payment)

        logger.info(f"COD payment {payment.id} confirmed order {order.order_number}")
        return payment

    # --- Razorpay checkout modal ---------------------------------------------

    def _gateway_checkout(self, order: Order, payment: Payment) -> GatewayCheckout:
        return GatewayCheckout(
            payment_id=str(payment.id),
            razorpay_order_id=payment.gateway_order_id,
            razorpay_key_id=settings.razorpay_key_id,
            amount=to_minor_units(order.total_amount),
            currency=order.currency,
            order_number=order.order_number,
            notes={"order_number": order.order_number},
        )

    async def initiate_gateway_payment(self, order_id: uuid.UUID) -> GatewayCheckout:
        """
        Create (or reuse) the Razorpay order backing this order's payment.

        A payment that already has a gateway order id is returned as-is, so
        reopening checkout never reserves funds on a second remote order.
        The remote order is created before any local write: if the gateway
        fails, nothing here has been written.
        """
        order = await self._require_order(order_id)
        payment = await self.payments.get_by_order_id(order.id)
        self._reject_settled(payment)
        self._ensure_payable(order)

        if payment and payment.gateway_order_id:
            if payment.status == PaymentStatus.FAILED.value:
                payment = await self.payments.reset_to_pending(payment.id)
                await self._sync_order(payment)
            logger.info(f"Reusing Razorpay order {payment.gateway_order_id} for {order.order_number}")
            return self._gateway_checkout(order, payment)

        gateway_order_id = await self._gateway_call(
            "create_order",
            self.gateway.create_order(
                str(order.id),
                to_minor_units(order.total_amount),
                order.currency,
                {"order_number": order.order_number},
            ),
        )

        if payment is None:
            payment = await self.create_payment(
                order,
                provider=PaymentProvider.RAZORPAY,
                gateway_order_id=gateway_order_id,
            )
        else:
            payment = await self.payments.set_gateway_order_id(payment.id, gateway_order_id)
            if payment.status == PaymentStatus.FAILED.value:
                payment = await self.payments.reset_to_pending(payment.id)

        await self.orders.update_status(order.id, OrderStatus.PAYMENT_PENDING, PaymentStatus.PENDING)
        return self._gateway_checkout(order, payment)

    async def verify_gateway_payment(
        self,
        razorpay_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> Payment:
        """Confirm a checkout-modal payment from its signed client callback."""
        is_valid = await self._gateway_call(
            "verify_payment_signature",
            self.gateway.verify_payment_signature(razorpay_order_id, gateway_payment_id, signature),
        )
        if not is_valid:
            raise InvalidSignatureError("Invalid payment signature")

        payment = await self.payments.get_by_gateway_order_id(razorpay_order_id)
        if not payment:
            raise NotFoundError("Payment not found")

        if payment.is_completed:
            # The signature binds razorpay_order_id, so this is the same
            # order; a different payment id means a second capture to settle.
            if payment.transaction_id != gateway_payment_id:
                logger.warning(
                    f"Payment {payment.id} completed with {payment.transaction_id}, "
                    f"callback reported {gateway_payment_id}"
                )
            return payment

        await self._ensure_order_accepts(payment, PaymentStatus.COMPLETED)
        payment = await self.payments.mark_completed(
            payment.id,
            transaction_id=gateway_payment_id,
            gateway_transaction_id=razorpay_order_id,
            method=PaymentProvider.RAZORPAY.value,
            extra_metadata={"razorpay_signature": signature},
        )
        await self._sync_order(payment)
        return payment

    # --- Razorpay payment links ----------------------------------------------

    @staticmethod
    def _resumable(payment: Payment) -> bool:
        return bool(payment.checkout_url) and payment.failure_reason not in DEAD_CHECKOUT_REASONS

    async def initiate_payment_link(self, order_id: uuid.UUID) -> RetryCheckout:
        """Send the customer to a hosted Razorpay page for this order."""
        order = await self._require_order(order_id)
        payment = await self.payments.get_by_order_id(order.id)
        self._reject_settled(payment)
        self._ensure_payable(order)

        if payment and payment.status == PaymentStatus.PENDING.value and self._resumable(payment):
            return RetryCheckout(payment_id=str(payment.id), checkout_url=payment.checkout_url)

        customer: Dict[str, str] = {}
        contact = (order.shipping_address or {}).get("phone")
        if contact:
            customer["contact"] = contact
        name = (order.shipping_address or {}).get("name")
        if name:
            customer["name"] = name

        link = await self._gateway_call(
            "create_payment_link",
            self.gateway.create_payment_link(
                order.order_number,
                to_minor_units(order.total_amount),
                order.currency,
                f"Order {order.order_number}",
                customer,
                {"order_number": order.order_number},
            ),
        )

        if payment is None:
            payment = await self.create_payment(order, provider=PaymentProvider.RAZORPAY)
        payment = await self.payments.set_checkout(payment.id, link.id, link.url)
        if payment.status == PaymentStatus.FAILED.value:
            payment = await self.payments.reset_to_pending(payment.id)

        await self.orders.update_status(order.id, OrderStatus.PAYMENT_PENDING, PaymentStatus.PENDING)
        return RetryCheckout(payment_id=str(payment.id), checkout_url=link.url)

    async def initiate_payment(self, order_id: uuid.UUID, method: CheckoutMethod) -> Dict[str, Any]:
        """Start payment for an order with the method the client chose."""
        method = CheckoutMethod(method)
        if method == CheckoutMethod.COD:
            payment = await self.process_cod_payment(order_id)
            return {"method": method.value, "payment": payment.to_dict()}
        if method == CheckoutMethod.RAZORPAY:
            checkout = await self.initiate_gateway_payment(order_id)
            return {"method": method.value, **checkout.to_dict()}
        checkout = await self.initiate_payment_link(order_id)
        return {"method": method.value, **checkout.to_dict()}

    # --- Webhook events ------------------------------------------------------

    async def _payment_for_order_number(self, order_number: str) -> Optional[Payment]:
        order = await self.orders.get_by_order_number(order_number)
        if not order:
            return None
        return await self.payments.get_by_order_id(order.id)

    def _resolvers(self) -> List[Tuple[str, Resolver]]:
        """Event lookup strategies, highest priority first."""
        return [
            ("checkout_id", self.payments.get_by_checkout_id),
            ("order_number", self._payment_for_order_number),
            ("transaction_id", self.payments.get_by_transaction_id),
        ]

    async def resolve_event_payment(self, event: PaymentEvent) -> Payment:
        """
        Find the payment an event refers to.

        The first identifier the event carries picks the strategy; a miss on
        that strategy is final, lower-priority identifiers are not tried.
        """
        for field, resolver in self._resolvers():
            value = getattr(event, field, None)
            if not value:
                continue
            payment = await resolver(value)
            if not payment:
                logger.warning(f"No payment for {field}={value}")
                raise NotFoundError("Payment not found")
            return payment
        raise NotFoundError("Payment not found")

    async def handle_payment_success(self, event: PaymentSuccessEvent) -> Payment:
        """Complete a payment from a gateway success event. Safe to repeat."""
        payment = await self.resolve_event_payment(event)

        if payment.is_completed:
            logger.info(f"Payment {payment.id} already completed, ignoring duplicate success event")
            return payment

        await self._ensure_order_accepts(payment, PaymentStatus.COMPLETED)
        payment = await self.payments.mark_completed(
            payment.id,
            transaction_id=event.transaction_id,
            gateway_transaction_id=event.gateway_transaction_id,
            method=event.method,
            extra_metadata=event.raw_payload or None,
        )
        await self._sync_order(payment)
        return payment

    async def handle_payment_failure(self, event: PaymentFailureEvent) -> Payment:
        """Fail a payment from a gateway failure event."""
        payment = await self.resolve_event_payment(event)

        await self._ensure_order_accepts(payment, PaymentStatus.FAILED)
        payment = await self.payments.mark_failed(
            payment.id,
            error_code=event.error_code,
            error_message=event.error_message,
            failure_reason=event.failure_reason,
            extra_metadata=event.raw_payload or None,
        )
        await self._sync_order(payment)
        return payment

    # --- Refund and retry ----------------------------------------------------

    async def initiate_refund(
        self,
        payment_id: uuid.UUID,
        refund_amount: Decimal,
        refund_transaction_id: Optional[str] = None,
    ) -> Payment:
        """Refund a completed payment and mark its order refunded."""
        payment = await self.payments.get_by_id(payment_id)
        if not payment:
            raise NotFoundError("Payment not found")

        if payment.status != PaymentStatus.COMPLETED.value:
            raise InvalidStateError("Can only refund completed payments")

        refund_amount = Decimal(refund_amount)
        if refund_amount > payment.amount:
            raise InvalidAmountError("Refund amount cannot exceed payment amount")
        if refund_amount <= 0:
            raise InvalidAmountError("Refund amount must be positive")

        payment = await self.payments.initiate_refund(payment.id, refund_amount, refund_transaction_id)
        await self._sync_order(payment)
        return payment

    async def retry_payment(self, order_id: uuid.UUID) -> RetryCheckout:
        """
        Reopen a failed payment for another attempt.

        The payment goes back to pending and the order to payment_pending
        either way. The stored checkout URL is returned when it can still be
        paid; otherwise NoCheckoutAvailableError tells the client to start a
        fresh checkout, which reuses the reopened payment.
        """
        payment = await self.payments.get_by_order_id(order_id)
        if not payment:
            raise NotFoundError("Payment not found")

        if payment.status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
            raise InvalidStateError("Payment already completed")

        await self._ensure_order_accepts(payment, PaymentStatus.PENDING)
        resumable = self._resumable(payment)

        payment = await self.payments.reset_to_pending(payment.id, drop_checkout_url=not resumable)
        await self._sync_order(payment)

        if not resumable:
            raise NoCheckoutAvailableError("No checkout URL available for retry")
        return RetryCheckout(payment_id=str(payment.id), checkout_url=payment.checkout_url)

    # --- Reads ---------------------------------------------------------------

    async def get_payment(self, payment_id: uuid.UUID) -> Payment:
        payment = await self.payments.get_by_id(payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        return payment

    async def get_payment_for_order(self, order_id: uuid.UUID) -> Payment:
        payment = await self.payments.get_by_order_id(order_id)
        if not payment:
            raise NotFoundError("Payment not found for this order")
        return payment
