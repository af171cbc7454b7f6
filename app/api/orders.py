"""
Order Endpoints.
Create, read, cancel and pay for orders.
"""

import uuid
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import (
    get_admin_user,
    get_current_user_id,
    get_order_service,
    get_payment_service,
    require_user_id,
)
from app.schemas.orders import (
    CancelOrderRequest,
    CreateOrderRequest,
    InitiatePaymentRequest,
    UpdateOrderStatusRequest,
)
from app.services.order_service import OrderService
from app.services.payment_service import PaymentService

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", status_code=201)
async def create_order(
    request: CreateOrderRequest,
    user_id: Optional[str] = Depends(get_current_user_id),
    service: OrderService = Depends(get_order_service),
):
    """
    Create an order.

    Signed-in callers own the order by user id; guests pass a session_id.
    """
    if user_id:
        request = request.model_copy(update={"session_id": None})
    elif not request.session_id:
        raise HTTPException(status_code=400, detail="session_id is required for guest checkout")

    order = await service.create_order(request, user_id=user_id)
    return {"status": "success", "order": order.to_dict()}


@router.post("/{order_id}/payment")
async def initiate_payment(
    order_id: uuid.UUID,
    request: InitiatePaymentRequest,
    service: PaymentService = Depends(get_payment_service),
):
    """Start payment with an explicit method: cod, razorpay or payment_link."""
    result = await service.initiate_payment(order_id, request.method)
    return {"status": "success", **result}


@router.get("/user/my-orders")
async def get_my_orders(
    user_id: str = Depends(require_user_id),
    service: OrderService = Depends(get_order_service),
):
    orders = await service.list_user_orders(user_id)
    return {"status": "success", "orders": [order.to_dict() for order in orders]}


@router.get("/guest/{session_id}")
async def get_guest_orders(
    session_id: str,
    service: OrderService = Depends(get_order_service),
):
    orders = await service.list_guest_orders(session_id)
    return {"status": "success", "orders": [order.to_dict() for order in orders]}


@router.get("/number/{order_number}")
async def get_order_by_number(
    order_number: str,
    service: OrderService = Depends(get_order_service),
):
    order = await service.get_order_by_number(order_number)
    return {"status": "success", "order": order.to_dict()}


@router.get("/{order_id}")
async def get_order(
    order_id: uuid.UUID,
    service: OrderService = Depends(get_order_service),
):
    order = await service.get_order(order_id)
    return {"status": "success", "order": order.to_dict()}


@router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: uuid.UUID,
    request: CancelOrderRequest,
    user_id: Optional[str] = Depends(get_current_user_id),
    service: OrderService = Depends(get_order_service),
):
    order = await service.cancel_order(
        order_id,
        reason=request.reason,
        user_id=user_id,
        session_id=request.session_id,
    )
    return {"status": "success", "order": order.to_dict()}


@router.patch("/{order_id}/status")
async def update_order_status(
    order_id: uuid.UUID,
    request: UpdateOrderStatusRequest,
    service: OrderService = Depends(get_order_service),
    _: str = Depends(get_admin_user),
):
    """Admin status change."""
    order = await service.update_order_status(order_id, request.status)
    logger.info(f"Admin set order {order.order_number} to {order.status}")
    return {"status": "success", "order": order.to_dict()}
