"""Pydantic schemas for requests and normalized gateway events."""

from app.schemas.events import PaymentSuccessEvent, PaymentFailureEvent

__all__ = ["PaymentSuccessEvent", "PaymentFailureEvent"]
