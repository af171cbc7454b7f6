"""
Normalized gateway events.

The webhook layer turns whatever the gateway posts into one of these models
before the payment service sees it; a payload that does not fit is rejected
at the boundary.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _PaymentEvent(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    checkout_id: Optional[str] = None
    transaction_id: Optional[str] = None
    order_number: Optional[str] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _require_identifier(self):
        if not (self.checkout_id or self.order_number or self.transaction_id):
            raise ValueError("event must carry checkout_id, order_number or transaction_id")
        return self


class PaymentSuccessEvent(_PaymentEvent):
    """A captured payment reported by the gateway."""

    transaction_id: str = Field(min_length=1)
    gateway_transaction_id: Optional[str] = None
    method: Optional[str] = None
    amount: Optional[Decimal] = Field(default=None, ge=0, decimal_places=2)


class PaymentFailureEvent(_PaymentEvent):
    """A failed or abandoned payment attempt reported by the gateway."""

    error_code: Optional[str] = None
    error_message: Optional[str] = None
    failure_reason: Optional[str] = None
