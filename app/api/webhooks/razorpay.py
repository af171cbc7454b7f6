"""
Razorpay Webhook Handler.
Verifies signatures, normalizes payment events and hands them to PaymentService.
"""

import hmac
import hashlib
import logging
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple, Union

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_payment_service
from app.config import settings
from app.database import get_db
from app.errors import PaymentError
from app.schemas.events import PaymentFailureEvent, PaymentSuccessEvent
from app.services.gateway import from_minor_units
from app.services.payment_service import PaymentService

router = APIRouter()
logger = logging.getLogger(__name__)

NormalizedEvent = Union[PaymentSuccessEvent, PaymentFailureEvent]


def verify_razorpay_signature(payload: bytes, signature: str) -> bool:
    """
    Verify Razorpay webhook signature using HMAC SHA256 over the raw body.
    """
    if not settings.razorpay_webhook_secret:
        if settings.is_production:
            logger.error("Razorpay webhook secret not configured")
            return False
        logger.warning("Razorpay webhook secret not configured, skipping verification")
        return True

    expected_signature = hmac.new(
        settings.razorpay_webhook_secret.encode(),
        payload,
        hashlib.sha256,
    ).hexdigest()

    return hmac.compare_digest(expected_signature, signature or "")


def _entity(payload: Dict[str, Any], name: str) -> Dict[str, Any]:
    return (payload.get("payload") or {}).get(name, {}).get("entity") or {}


def _amount(payment: Dict[str, Any]) -> Optional[Decimal]:
    amount = payment.get("amount")
    return from_minor_units(int(amount)) if amount is not None else None


def normalize_event(payload: Dict[str, Any]) -> Optional[Tuple[str, NormalizedEvent]]:
    """
    Map a Razorpay webhook envelope onto a success or failure event.

    Returns None for events this service does not act on. Raises
    pydantic.ValidationError when a handled event lacks the fields the
    payment flow needs.

    Orders and links are created with notes.order_number, which is how
    checkout-modal payments find their order.
    """
    event_type = payload.get("event")
    payment = _entity(payload, "payment")
    notes = payment.get("notes") or {}
    if not isinstance(notes, dict):
        # Razorpay sends [] for empty notes
        notes = {}

    if event_type in ("payment.captured", "order.paid"):
        return event_type, PaymentSuccessEvent(
            order_number=notes.get("order_number"),
            transaction_id=payment.get("id"),
            gateway_transaction_id=payment.get("order_id"),
            method=payment.get("method"),
            amount=_amount(payment),
            raw_payload=payload,
        )

    if event_type == "payment_link.paid":
        payment_link = _entity(payload, "payment_link")
        return event_type, PaymentSuccessEvent(
            checkout_id=payment_link.get("id"),
            transaction_id=payment.get("id"),
            gateway_transaction_id=payment.get("order_id") or payment_link.get("order_id"),
            method=payment.get("method"),
            amount=_amount(payment),
            raw_payload=payload,
        )

    if event_type == "payment.failed":
        return event_type, PaymentFailureEvent(
            order_number=notes.get("order_number"),
            transaction_id=payment.get("id"),
            error_code=payment.get("error_code"),
            error_message=payment.get("error_description"),
            failure_reason=payment.get("error_reason"),
            raw_payload=payload,
        )

    if event_type in ("payment_link.expired", "payment_link.cancelled"):
        payment_link = _entity(payload, "payment_link")
        return event_type, PaymentFailureEvent(
            checkout_id=payment_link.get("id"),
            failure_reason=event_type,
            error_message=f"Payment link {payment_link.get('status') or event_type.split('.')[-1]}",
            raw_payload=payload,
        )

    return None


@router.post("/razorpay")
async def razorpay_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Handle Razorpay webhook events.

    Business failures (unknown payment, illegal transition) are acknowledged
    with 200 so Razorpay stops redelivering them; unexpected errors propagate
    and the delivery is retried.
    """
    body = await request.body()

    signature = request.headers.get("X-Razorpay-Signature", "")
    if not verify_razorpay_signature(body, signature):
        logger.error("Invalid Razorpay webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    payload = await request.json()
    event_type = payload.get("event")
    logger.info(f"Razorpay webhook received: {event_type}")

    try:
        normalized = normalize_event(payload)
    except (ValidationError, ValueError, TypeError) as e:
        logger.warning(f"Malformed Razorpay {event_type} event: {e}")
        return {"status": "ignored", "reason": "malformed_event"}

    if normalized is None:
        logger.info(f"Unhandled Razorpay event: {event_type}")
        return {"status": "ignored", "reason": "unhandled_event"}

    event_type, event = normalized
    try:
        if isinstance(event, PaymentSuccessEvent):
            payment = await service.handle_payment_success(event)
        else:
            payment = await service.handle_payment_failure(event)
    except PaymentError as e:
        await db.rollback()
        logger.warning(f"Razorpay {event_type} not applied: {e.kind}: {e.message}")
        return {"status": "ignored", "reason": e.kind}

    logger.info(f"Razorpay {event_type} applied to payment {payment.id} ({payment.status})")
    return {"status": "ok", "payment_id": str(payment.id), "payment_status": payment.status}
