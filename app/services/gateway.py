"""
Gateway Adapter - Razorpay order creation, payment links and signature checks.

The Razorpay SDK is synchronous, so every call runs in a worker thread and is
bounded by ``settings.gateway_timeout_seconds``. Anything the SDK or the
transport raises comes out of here as GatewayIntegrationError.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Callable, Dict, Optional, Protocol

import razorpay
from razorpay.errors import SignatureVerificationError

from app.config import settings
from app.errors import GatewayIntegrationError

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Convert a rupee amount to paise, exactly."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int) -> Decimal:
    """Convert paise to a two-decimal rupee amount."""
    return (Decimal(amount_minor) / 100).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class CheckoutLink:
    """Hosted checkout page created on the gateway."""

    id: str
    url: str


class PaymentGateway(Protocol):
    """What the payment service needs from a gateway."""

    async def create_order(
        self,
        reference_id: str,
        amount_minor_units: int,
        currency: str,
        metadata: Dict[str, str],
    ) -> str:
        ...

    async def verify_payment_signature(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> bool:
        ...

    async def create_payment_link(
        self,
        reference_id: str,
        amount_minor_units: int,
        currency: str,
        description: str,
        customer: Dict[str, str],
        metadata: Dict[str, str],
    ) -> CheckoutLink:
        ...


class RazorpayGateway:
    """PaymentGateway backed by the Razorpay REST API."""

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[razorpay.Client] = None,
    ):
        self.key_id = key_id if key_id is not None else settings.razorpay_key_id
        key_secret = key_secret if key_secret is not None else settings.razorpay_key_secret
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self.client = client or razorpay.Client(auth=(self.key_id, key_secret))

    async def _call(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking SDK call off the event loop, with a deadline."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Razorpay {operation} timed out after {self.timeout}s")
            raise GatewayIntegrationError(f"Payment gateway timed out during {operation}") from e
        except SignatureVerificationError:
            raise
        except Exception as e:
            logger.error(f"Razorpay {operation} failed: {e}", exc_info=True)
            raise GatewayIntegrationError(f"Payment gateway error during {operation}") from e

    async def create_order(
        self,
        reference_id: str,
        amount_minor_units: int,
        currency: str,
        metadata: Dict[str, str],
    ) -> str:
        """Create a Razorpay order and return its id (order_XXXX)."""
        payload = {
            "amount": amount_minor_units,
            "currency": currency,
            "receipt": reference_id[:40],
            "payment_capture": 1,
            "notes": metadata,
        }
        razorpay_order = await self._call("create_order", self.client.order.create, payload)

        gateway_order_id = razorpay_order.get("id") if isinstance(razorpay_order, dict) else None
        if not gateway_order_id:
            raise GatewayIntegrationError("Payment gateway returned an order without an id")

        logger.info(f"Created Razorpay order {gateway_order_id} for {reference_id}")
        return gateway_order_id

    async def verify_payment_signature(
        self,
        gateway_order_id: str,
        gateway_payment_id: str,
        signature: str,
    ) -> bool:
        """Check the checkout callback signature. A mismatch returns False."""
        params = {
            "razorpay_order_id": gateway_order_id,
            "razorpay_payment_id": gateway_payment_id,
            "razorpay_signature": signature,
        }
        try:
            result = await self._call(
                "verify_payment_signature",
                self.client.utility.verify_payment_signature,
                params,
            )
        except SignatureVerificationError:
            logger.warning(f"Signature mismatch for Razorpay order {gateway_order_id}")
            return False
        # Older SDKs return None on success and only signal failure by raising
        return result is None or bool(result)

    async def create_payment_link(
        self,
        reference_id: str,
        amount_minor_units: int,
        currency: str,
        description: str,
        customer: Dict[str, str],
        metadata: Dict[str, str],
    ) -> CheckoutLink:
        """Create a hosted Razorpay payment link."""
        payload = {
            "amount": amount_minor_units,
            "currency": currency,
            "accept_partial": False,
            "reference_id": reference_id,
            "description": description,
            "customer": customer,
            "notify": {
                "sms": False,
                "email": False,
            },
            "notes": metadata,
        }
        link = await self._call("create_payment_link", self.client.payment_link.create, payload)

        try:
            checkout = CheckoutLink(id=link["id"], url=link["short_url"])
        except (KeyError, TypeError) as e:
            raise GatewayIntegrationError("Payment gateway returned an incomplete payment link") from e

        logger.info(f"Created Razorpay payment link {checkout.id} for {reference_id}")
        return checkout
