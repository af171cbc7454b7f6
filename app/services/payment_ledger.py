"""
Payment Ledger - payment records and their atomic status writes.

Every status change is one conditional UPDATE whose WHERE clause pins the
allowed source statuses, taken from the FSM transition table. Two requests
racing on the same payment therefore cannot both apply a transition: the
loser matches zero rows and re-reads the winner's result.
"""

import uuid
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import InvalidAmountError, InvalidStateError, NotFoundError
from app.fsm.machine import payment_sources
from app.fsm.states import PaymentStatus
from app.models.order import utcnow
from app.models.payment import Payment

logger = logging.getLogger(__name__)


class PaymentLedger:
    """Owns the payments table."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create(
        self,
        order_id: uuid.UUID,
        order_number: str,
        provider: str,
        amount: Decimal,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        method: Optional[str] = None,
        currency: str = "INR",
    ) -> Payment:
        """Create a pending payment record."""
        payment = Payment(
            order_id=order_id,
            order_number=order_number,
            user_id=user_id,
            session_id=session_id,
            provider=provider,
            amount=amount,
            currency=currency,
            method=method,
            status=PaymentStatus.PENDING.value,
        )
        self.db.add(payment)
        await self.db.flush()

        logger.info(f"Created {provider} payment {payment.id} for order {order_number}")
        return payment

    # --- Lookups -------------------------------------------------------------

    async def _get_one(self, *criteria) -> Optional[Payment]:
        # populate_existing so a conditional UPDATE issued earlier in this
        # session is reflected on objects already in the identity map
        result = await self.db.execute(
            select(Payment)
            .where(*criteria)
            .order_by(Payment.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return await self._get_one(Payment.id == payment_id)

    async def get_by_order_id(self, order_id: uuid.UUID) -> Optional[Payment]:
        return await self._get_one(Payment.order_id == order_id)

    async def get_by_gateway_order_id(self, gateway_order_id: str) -> Optional[Payment]:
        return await self._get_one(Payment.gateway_order_id == gateway_order_id)

    async def get_by_checkout_id(self, checkout_id: str) -> Optional[Payment]:
        return await self._get_one(Payment.checkout_id == checkout_id)

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        return await self._get_one(Payment.transaction_id == transaction_id)

    async def list_stale_pending(self, older_than: datetime) -> List[Payment]:
        """Pending payments untouched since ``older_than``."""
        result = await self.db.execute(
            select(Payment)
            .where(
                Payment.status == PaymentStatus.PENDING.value,
                Payment.updated_at < older_than,
            )
            .order_by(Payment.updated_at)
        )
        return list(result.scalars().all())

    async def _require(self, payment_id: uuid.UUID) -> Payment:
        payment = await self.get_by_id(payment_id)
        if not payment:
            raise NotFoundError("Payment not found")
        return payment

    # --- Writes --------------------------------------------------------------

    async def _transition(
        self,
        payment_id: uuid.UUID,
        target: PaymentStatus,
        values: Dict[str, Any],
    ) -> bool:
        """
        Move a payment to ``target`` if its current status allows it.

        Returns True when this call applied the write.
        """
        result = await self.db.execute(
            update(Payment)
            .where(
                Payment.id == payment_id,
                Payment.status.in_(payment_sources(target)),
            )
            .values(status=target.value, updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_gateway_order_id(self, payment_id: uuid.UUID, gateway_order_id: str) -> Payment:
        """Stamp the gateway order id. Write-once."""
        result = await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id, Payment.gateway_order_id.is_(None))
            .values(gateway_order_id=gateway_order_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        payment = await self._require(payment_id)

        if result.rowcount == 0 and payment.gateway_order_id != gateway_order_id:
            logger.error(
                f"Payment {payment_id} already bound to gateway order "
                f"{payment.gateway_order_id}, refusing {gateway_order_id}"
            )
            raise InvalidStateError("Payment is already linked to a different gateway order")
        return payment

    async def set_checkout(self, payment_id: uuid.UUID, checkout_id: str, checkout_url: str) -> Payment:
        """Store the hosted checkout session a customer can resume."""
        await self.db.execute(
            update(Payment)
            .where(Payment.id == payment_id)
            .values(checkout_id=checkout_id, checkout_url=checkout_url, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return await self._require(payment_id)

    async def mark_completed(
        self,
        payment_id: uuid.UUID,
        transaction_id: str,
        gateway_transaction_id: Optional[str] = None,
        method: Optional[str] = None,
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """
        Mark a payment completed.

        Already completed is not an error: the stored record is returned
        unchanged, whatever transaction details this call carried.
        """
        values: Dict[str, Any] = {
            "transaction_id": transaction_id,
            "completed_at": utcnow(),
        }
        if gateway_transaction_id is not None:
            values["gateway_transaction_id"] = gateway_transaction_id
        if method is not None:
            values["method"] = method
        if extra_metadata is not None:
            values["gateway_response"] = extra_metadata

        applied = await self._transition(payment_id, PaymentStatus.COMPLETED, values)
        payment = await self._require(payment_id)

        if applied:
            logger.info(f"Payment {payment_id} completed (txn {transaction_id})")
        elif payment.status == PaymentStatus.COMPLETED.value:
            logger.info(f"Payment {payment_id} already completed, keeping txn {payment.transaction_id}")
        else:
            raise InvalidStateError(f"Cannot complete a {payment.status} payment")
        return payment

    async def mark_failed(
        self,
        payment_id: uuid.UUID,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        failure_reason: Optional[str] = None,
        extra_metadata: Optional[Dict[str, Any]] = None,
    ) -> Payment:
        """Mark a payment failed. Re-failing a failed payment is allowed."""
        values: Dict[str, Any] = {
            "error_code": error_code,
            "error_message": error_message,
            "failure_reason": failure_reason,
            "failed_at": utcnow(),
        }
        if extra_metadata is not None:
            values["gateway_response"] = extra_metadata

        applied = await self._transition(payment_id, PaymentStatus.FAILED, values)
        payment = await self._require(payment_id)

        if not applied:
            raise InvalidStateError(f"Cannot fail a {payment.status} payment")

        logger.info(f"Payment {payment_id} failed: {error_code or failure_reason or 'unknown'}")
        return payment

    async def reset_to_pending(self, payment_id: uuid.UUID, drop_checkout_url: bool = False) -> Payment:
        """
        Put a failed payment back to pending for another attempt.

        ``drop_checkout_url`` forgets a hosted checkout the gateway no longer
        accepts; its checkout_id is kept so late events for it still resolve.
        """
        values: Dict[str, Any] = {"error_code": None, "error_message": None, "failure_reason": None}
        if drop_checkout_url:
            values["checkout_url"] = None

        applied = await self._transition(payment_id, PaymentStatus.PENDING, values)
        payment = await self._require(payment_id)

        if applied:
            logger.info(f"Payment {payment_id} reset to pending")
        elif payment.status != PaymentStatus.PENDING.value:
            raise InvalidStateError(f"Cannot retry a {payment.status} payment")
        return payment

    async def initiate_refund(
        self,
        payment_id: uuid.UUID,
        refund_amount: Decimal,
        refund_transaction_id: Optional[str] = None,
    ) -> Payment:
        """Record a full or partial refund of a completed payment."""
        payment = await self._require(payment_id)
        refund_amount = Decimal(refund_amount)
        if refund_amount <= 0 or refund_amount > payment.amount:
            raise InvalidAmountError("Refund amount must be positive and cannot exceed payment amount")

        applied = await self._transition(
            payment_id,
            PaymentStatus.REFUNDED,
            {
                "refund_amount": refund_amount,
                "refund_transaction_id": refund_transaction_id,
                "refunded_at": utcnow(),
            },
        )
        payment = await self._require(payment_id)

        if not applied:
            raise InvalidStateError(f"Cannot refund a {payment.status} payment")

        logger.info(f"Payment {payment_id} refunded {refund_amount}")
        return payment
