from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import settings
from app.database import get_db
from app.services.gateway import PaymentGateway, RazorpayGateway
from app.services.order_ledger import OrderLedger
from app.services.order_service import OrderService
from app.services.payment_ledger import PaymentLedger
from app.services.payment_service import PaymentService


async def get_admin_user(
    x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key"),
) -> str:
    """
    Validate the Admin Key header.
    Returns the key if valid, raises 401 otherwise.
    """
    if not x_admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing admin key",
        )

    if not settings.admin_api_key or x_admin_key != settings.admin_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin key",
        )

    return x_admin_key


async def get_current_user_id(
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> Optional[str]:
    """Authenticated user id, resolved upstream and forwarded as a header."""
    return x_user_id or None


async def require_user_id(
    user_id: Optional[str] = Depends(get_current_user_id),
) -> str:
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Login required",
        )
    return user_id


@lru_cache
def get_gateway() -> PaymentGateway:
    """Process-wide Razorpay client."""
    return RazorpayGateway()


def get_order_service(db: AsyncSession = Depends(get_db)) -> OrderService:
    return OrderService(OrderLedger(db))


def get_payment_service(
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_gateway),
) -> PaymentService:
    return PaymentService(PaymentLedger(db), OrderLedger(db), gateway)
