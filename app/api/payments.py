"""
Payment Endpoints.
Checkout callback verification, retry, refund and payment reads.
"""

import uuid
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_admin_user, get_payment_service
from app.database import get_db
from app.errors import NoCheckoutAvailableError
from app.schemas.orders import RefundRequest, VerifyPaymentRequest
from app.services.payment_service import PaymentService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/verify")
async def verify_payment(
    request: VerifyPaymentRequest,
    service: PaymentService = Depends(get_payment_service),
):
    """
    Verify the Razorpay checkout callback.

    The frontend posts razorpay_order_id, razorpay_payment_id and
    razorpay_signature after the checkout modal closes successfully.
    """
    payment = await service.verify_gateway_payment(
        request.razorpay_order_id,
        request.razorpay_payment_id,
        request.razorpay_signature,
    )
    return {"status": "success", "payment": payment.to_dict()}


@router.post("/orders/{order_id}/retry")
async def retry_payment(
    order_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    """
    Reopen a failed payment.

    The payment is reset to pending even when there is no checkout page to
    resume; that reset is committed before the 400 goes back to the client.
    """
    try:
        checkout = await service.retry_payment(order_id)
    except NoCheckoutAvailableError:
        await db.commit()
        raise
    return {"status": "success", **checkout.to_dict()}


@router.get("/orders/{order_id}")
async def get_order_payment(
    order_id: uuid.UUID,
    service: PaymentService = Depends(get_payment_service),
):
    payment = await service.get_payment_for_order(order_id)
    return {"status": "success", "payment": payment.to_dict()}


@router.get("/{payment_id}")
async def get_payment(
    payment_id: uuid.UUID,
    service: PaymentService = Depends(get_payment_service),
):
    payment = await service.get_payment(payment_id)
    return {"status": "success", "payment": payment.to_dict()}


@router.post("/{payment_id}/refund")
async def refund_payment(
    payment_id: uuid.UUID,
    request: RefundRequest,
    service: PaymentService = Depends(get_payment_service),
    _: str = Depends(get_admin_user),
):
    """Record a refund for a completed payment (admin)."""
    payment = await service.initiate_refund(
        payment_id,
        request.refund_amount,
        request.refund_transaction_id,
    )
    logger.info(f"Admin refunded {request.refund_amount} on payment {payment_id}")
    return {"status": "success", "payment": payment.to_dict()}
