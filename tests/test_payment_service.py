"""
Tests for PaymentService - the order/payment state machine.
"""

import uuid
from decimal import Decimal

import pytest

from app.errors import (
    DuplicatePaymentError,
    GatewayIntegrationError,
    InvalidAmountError,
    InvalidSignatureError,
    InvalidStateError,
    NoCheckoutAvailableError,
    NotFoundError,
)
from app.fsm.states import CheckoutMethod, OrderStatus, PaymentStatus
from app.schemas.events import PaymentFailureEvent, PaymentSuccessEvent


# --- Cash on delivery --------------------------------------------------------

@pytest.mark.asyncio
async def test_cod_confirms_order(payment_service, order_ledger, make_order, assert_consistent):
    order = await make_order()

    payment = await payment_service.process_cod_payment(order.id)

    assert payment.provider == "cod"
    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.transaction_id == f"cod_{payment.id}"

    order = await order_ledger.get_by_id(order.id)
    assert order.status == OrderStatus.CONFIRMED.value
    assert order.payment_status == PaymentStatus.COMPLETED.value
    assert order.payment_id == payment.id
    await assert_consistent(payment.id)


@pytest.mark.asyncio
async def test_second_cod_is_duplicate(payment_service, order_ledger, make_order, gateway):
    order = await make_order()
    await payment_service.process_cod_payment(order.id)

    with pytest.raises(DuplicatePaymentError):
        await payment_service.process_cod_payment(order.id)

    order = await order_ledger.get_by_id(order.id)
    assert order.status == OrderStatus.CONFIRMED.value
    assert gateway.orders == []


@pytest.mark.asyncio
async def test_cod_rejected_when_gateway_payment_exists(payment_service, make_order):
    order = await make_order()
    await payment_service.initiate_gateway_payment(order.id)

    with pytest.raises(DuplicatePaymentError):
        await payment_service.process_cod_payment(order.id)


@pytest.mark.asyncio
async def test_cod_unknown_order(payment_service):
    with pytest.raises(NotFoundError):
        await payment_service.process_cod_payment(uuid.uuid4())


# --- Razorpay checkout -------------------------------------------------------

@pytest.mark.asyncio
async def test_initiate_gateway_payment(payment_service, payment_ledger, order_ledger, make_order, gateway):
    order = await make_order(total_amount=Decimal("1500.50"))

    checkout = await payment_service.initiate_gateway_payment(order.id)

    assert checkout.razorpay_order_id == "gw_1"
    assert checkout.amount == 150050
    assert checkout.currency == "INR"
    assert checkout.order_number == order.order_number
    assert checkout.notes == {"order_number": order.order_number}
    assert gateway.orders == [{
        "reference_id": str(order.id),
        "amount": 150050,
        "currency": "INR",
        "notes": {"order_number": order.order_number},
    }]

    payment = await payment_ledger.get_by_gateway_order_id("gw_1")
    assert str(payment.id) == checkout.payment_id
    assert payment.status == PaymentStatus.PENDING.value

    order = await order_ledger.get_by_id(order.id)
    assert order.status == OrderStatus.PAYMENT_PENDING.value
    assert order.payment_status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_initiate_twice_creates_one_remote_order(payment_service, make_order, gateway):
    order = await make_order()

    first = await payment_service.initiate_gateway_payment(order.id)
    second = await payment_service.initiate_gateway_payment(order.id)

    assert first.razorpay_order_id == second.razorpay_order_id == "gw_1"
    assert first.payment_id == second.payment_id
    assert len(gateway.orders) == 1


@pytest.mark.asyncio
async def test_gateway_failure_writes_nothing(payment_service, payment_ledger, order_ledger, make_order, gateway):
    order = await make_order()
    gateway.error = ConnectionError("connection reset")

    with pytest.raises(GatewayIntegrationError):
        await payment_service.initiate_gateway_payment(order.id)

    assert await payment_ledger.get_by_order_id(order.id) is None
    order = await order_ledger.get_by_id(order.id)
    assert order.status == OrderStatus.CREATED.value
    assert order.payment_id is None

    # The client may try again once the gateway is back
    gateway.error = None
    checkout = await payment_service.initiate_gateway_payment(order.id)
    assert checkout.razorpay_order_id == "gw_1"


@pytest.mark.asyncio
async def test_initiate_after_completion_is_duplicate(payment_service, make_order, gateway):
    order = await make_order()
    await payment_service.process_cod_payment(order.id)

    with pytest.raises(DuplicatePaymentError):
        await payment_service.initiate_gateway_payment(order.id)
    assert gateway.orders == []


@pytest.mark.asyncio
async def test_initiate_reuses_failed_payment(payment_service, payment_ledger, order_ledger, make_order, gateway):
    order = await make_order()
    checkout = await payment_service.initiate_gateway_payment(order.id)
    await payment_service.handle_payment_failure(
        PaymentFailureEvent(order_number=order.order_number, error_code="BAD_REQUEST_ERROR")
    )

    again = await payment_service.initiate_gateway_payment(order.id)

    assert again.payment_id == checkout.payment_id
    assert again.razorpay_order_id == "gw_1"
    assert len(gateway.orders) == 1
    payment = await payment_ledger.get_by_order_id(order.id)
    assert payment.status == PaymentStatus.PENDING.value
    assert (await order_ledger.get_by_id(order.id)).status == OrderStatus.PAYMENT_PENDING.value


@pytest.mark.asyncio
async def test_initiate_on_cancelled_order(payment_service, order_service, make_order):
    order = await make_order(session_id="s-1")
    await order_service.cancel_order(order.id, session_id="s-1")

    with pytest.raises(InvalidStateError):
        await payment_service.initiate_gateway_payment(order.id)


# --- Signature verification --------------------------------------------------

@pytest.mark.asyncio
async def test_verify_confirms_order(payment_service, order_ledger, make_order, gateway, assert_consistent):
    order = await make_order()
    await payment_service.initiate_gateway_payment(order.id)

    payment = await payment_service.verify_gateway_payment("gw_1", "pay_1", gateway.sign("gw_1", "pay_1"))

    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.transaction_id == "pay_1"
    assert payment.gateway_transaction_id == "gw_1"
    assert payment.method == "razorpay"
    assert payment.gateway_response == {"razorpay_signature": gateway.sign("gw_1", "pay_1")}
    assert (await order_ledger.get_by_id(order.id)).status == OrderStatus.CONFIRMED.value
    await assert_consistent(payment.id)


@pytest.mark.asyncio
async def test_verify_bad_signature_changes_nothing(payment_service, payment_ledger, order_ledger, make_order):
    order = await make_order()
    await payment_service.initiate_gateway_payment(order.id)

    with pytest.raises(InvalidSignatureError):
        await payment_service.verify_gateway_payment("gw_1", "pay_1", "forged")

    payment = await payment_ledger.get_by_gateway_order_id("gw_1")
    assert payment.status == PaymentStatus.PENDING.value
    assert (await order_ledger.get_by_id(order.id)).status == OrderStatus.PAYMENT_PENDING.value


@pytest.mark.asyncio
async def test_verify_unknown_gateway_order(payment_service, gateway):
    with pytest.raises(NotFoundError):
        await payment_service.verify_gateway_payment("gw_404", "pay_1", gateway.sign("gw_404", "pay_1"))


@pytest.mark.asyncio
async def test_verify_twice_returns_same_payment(payment_service, make_order, gateway):
    order = await make_order()
    await payment_service.initiate_gateway_payment(order.id)
    signature = gateway.sign("gw_1", "pay_1")

    first = await payment_service.verify_gateway_payment("gw_1", "pay_1", signature)
    completed_at = first.completed_at
    second = await payment_service.verify_gateway_payment("gw_1", "pay_1", signature)

    assert second.id == first.id
    assert second.completed_at == completed_at


@pytest.mark.asyncio
async def test_verify_adapter_error_is_wrapped(payment_service, gateway):
    gateway.error = RuntimeError("socket closed")

    with pytest.raises(GatewayIntegrationError):
        await payment_service.verify_gateway_payment("gw_1", "pay_1", "sig")


@pytest.mark.asyncio
async def test_webhook_and_verify_race(payment_service, order_ledger, make_order, gateway, assert_consistent):
    """Whichever path lands second sees completed and changes nothing."""
    order = await make_order(order_number="O7")
    await payment_service.initiate_gateway_payment(order.id)

    by_webhook = await payment_service.handle_payment_success(
        PaymentSuccessEvent(transaction_id="pay_7", gateway_transaction_id="gw_1", order_number="O7", method="upi")
    )
    by_client = await payment_service.verify_gateway_payment("gw_1", "pay_7", gateway.sign("gw_1", "pay_7"))

    assert by_client.id == by_webhook.id
    assert by_client.method == "upi"
    assert (await order_ledger.get_by_id(order.id)).status == OrderStatus.CONFIRMED.value
    await assert_consistent(by_client.id)


# --- Webhook success / failure -----------------------------------------------

@pytest.mark.asyncio
async def test_webhook_scenario(payment_service, payment_ledger, order_ledger, make_order, assert_consistent):
    """O1 for 1500.00 INR paid through the gateway, webhook delivered twice."""
    order = await make_order(order_number="O1", total_amount=Decimal("1500.00"))
    checkout = await payment_service.initiate_gateway_payment(order.id)
    assert checkout.razorpay_order_id == "gw_1"
    assert checkout.amount == 150000

    event = PaymentSuccessEvent(transaction_id="pay_9", order_number="O1")
    payment = await payment_service.handle_payment_success(event)

    assert payment.status == PaymentStatus.COMPLETED.value
    order = await order_ledger.get_by_id(order.id)
    assert order.status == OrderStatus.CONFIRMED.value
    assert order.payment_status == PaymentStatus.COMPLETED.value
    confirmed_at = order.updated_at
    completed_at = payment.completed_at

    duplicate = await payment_service.handle_payment_success(event)

    assert duplicate.id == payment.id
    assert duplicate.completed_at == completed_at
    order = await order_ledger.get_by_id(order.id)
    assert order.status == OrderStatus.CONFIRMED.value
    assert order.updated_at == confirmed_at
    await assert_consistent(payment.id)


@pytest.mark.asyncio
async def test_success_records_event_details(payment_service, make_order):
    order = await make_order(order_number="O2")
    await payment_service.initiate_gateway_payment(order.id)

    payment = await payment_service.handle_payment_success(PaymentSuccessEvent(
        order_number="O2",
        transaction_id="pay_2",
        gateway_transaction_id="gw_1",
        method="card",
        amount=Decimal("1500.00"),
        raw_payload={"event": "payment.captured"},
    ))

    assert payment.transaction_id == "pay_2"
    assert payment.gateway_transaction_id == "gw_1"
    assert payment.method == "card"
    assert payment.gateway_response == {"event": "payment.captured"}


@pytest.mark.asyncio
async def test_resolution_by_transaction_id(payment_service, make_order, gateway):
    order = await make_order()
    await payment_service.initiate_gateway_payment(order.id)
    await payment_service.verify_gateway_payment("gw_1", "pay_5", gateway.sign("gw_1", "pay_5"))

    payment = await payment_service.resolve_event_payment(PaymentSuccessEvent(transaction_id="pay_5"))
    assert payment.transaction_id == "pay_5"


@pytest.mark.asyncio
async def test_resolution_uses_only_highest_priority_identifier(payment_service, make_order):
    """A checkout id that misses is final even if the order number would match."""
    order = await make_order(order_number="O3")
    await payment_service.initiate_gateway_payment(order.id)

    with pytest.raises(NotFoundError):
        await payment_service.handle_payment_success(
            PaymentSuccessEvent(checkout_id="plink_unknown", order_number="O3", transaction_id="pay_3")
        )

    payment = await payment_service.resolve_event_payment(
        PaymentSuccessEvent(order_number="O3", transaction_id="pay_3")
    )
    assert payment.status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_success_for_unknown_order_number(payment_service):
    with pytest.raises(NotFoundError):
        await payment_service.handle_payment_success(
            PaymentSuccessEvent(order_number="NOPE", transaction_id="pay_1")
        )


@pytest.mark.asyncio
async def test_failure_marks_order_failed(payment_service, payment_ledger, order_ledger, make_order, assert_consistent):
    order = await make_order(order_number="O4")
    await payment_service.initiate_gateway_payment(order.id)

    event = PaymentFailureEvent(
        order_number="O4",
        transaction_id="pay_4",
        error_code="BAD_REQUEST_ERROR",
        error_message="Payment failed due to insufficient funds",
        failure_reason="payment_failed",
    )
    payment = await payment_service.handle_payment_failure(event)
    # Re-failing is harmless
    payment = await payment_service.handle_payment_failure(event)

    assert payment.status == PaymentStatus.FAILED.value
    assert payment.error_code == "BAD_REQUEST_ERROR"
    assert payment.error_message == "Payment failed due to insufficient funds"
    order = await order_ledger.get_by_id(order.id)
    assert order.status == OrderStatus.PAYMENT_FAILED.value
    assert order.payment_status == PaymentStatus.FAILED.value
    await assert_consistent(payment.id)


@pytest.mark.asyncio
async def test_success_after_failure(payment_service, order_ledger, make_order, assert_consistent):
    """A second attempt on the same gateway order can still succeed."""
    order = await make_order(order_number="O5")
    await payment_service.initiate_gateway_payment(order.id)
    await payment_service.handle_payment_failure(PaymentFailureEvent(order_number="O5", error_code="E"))

    payment = await payment_service.handle_payment_success(
        PaymentSuccessEvent(order_number="O5", transaction_id="pay_5b")
    )

    assert payment.status == PaymentStatus.COMPLETED.value
    assert (await order_ledger.get_by_id(order.id)).status == OrderStatus.CONFIRMED.value
    await assert_consistent(payment.id)


@pytest.mark.asyncio
async def test_late_failure_does_not_undo_completion(payment_service, order_ledger, make_order, assert_consistent):
    order = await make_order(order_number="O6")
    await payment_service.process_cod_payment(order.id)

    with pytest.raises(InvalidStateError):
        await payment_service.handle_payment_failure(PaymentFailureEvent(order_number="O6", error_code="LATE"))

    assert (await order_ledger.get_by_id(order.id)).status == OrderStatus.CONFIRMED.value
    payment = await payment_service.get_payment_for_order(order.id)
    await assert_consistent(payment.id)


@pytest.mark.asyncio
async def test_success_for_cancelled_order_changes_nothing(
    payment_service, payment_ledger, order_ledger, make_order
):
    """A cancelled order is never revived by a late gateway event."""
    order = await make_order(order_number="O7")
    payment = await payment_ledger.create(order.id, "O7", "razorpay", order.total_amount)
    await order_ledger.mark_cancelled(order.id, "changed my mind")

    with pytest.raises(InvalidStateError):
        await payment_service.handle_payment_success(
            PaymentSuccessEvent(order_number="O7", transaction_id="pay_7")
        )

    assert (await payment_ledger.get_by_id(payment.id)).status == PaymentStatus.PENDING.value
    order = await order_ledger.get_by_id(order.id)
    assert order.status == OrderStatus.CANCELLED.value
    assert order.cancel_reason == "changed my mind"


@pytest.mark.asyncio
async def test_failure_for_cancelled_order_changes_nothing(
    payment_service, payment_ledger, order_ledger, make_order
):
    order = await make_order(order_number="O7b")
    payment = await payment_ledger.create(order.id, "O7b", "razorpay", order.total_amount)
    await order_ledger.mark_cancelled(order.id, "changed my mind")

    with pytest.raises(InvalidStateError):
        await payment_service.handle_payment_failure(PaymentFailureEvent(order_number="O7b", error_code="E"))

    assert (await payment_ledger.get_by_id(payment.id)).status == PaymentStatus.PENDING.value
    assert (await order_ledger.get_by_id(order.id)).status == OrderStatus.CANCELLED.value


@pytest.mark.asyncio
async def test_failed_order_stays_payable(
    payment_service, order_service, order_ledger, make_order, assert_consistent
):
    order = await make_order(order_number="O7c", session_id="s-1")
    await payment_service.initiate_gateway_payment(order.id)
    await payment_service.handle_payment_failure(PaymentFailureEvent(order_number="O7c", error_code="E"))

    with pytest.raises(InvalidStateError):
        await order_service.cancel_order(order.id, session_id="s-1")

    # The order is still payable, so a later capture confirms it
    payment = await payment_service.handle_payment_success(
        PaymentSuccessEvent(order_number="O7c", transaction_id="pay_7c")
    )
    assert payment.status == PaymentStatus.COMPLETED.value
    assert (await order_ledger.get_by_id(order.id)).status == OrderStatus.CONFIRMED.value
    await assert_consistent(payment.id)



# --- Refunds -----------------------------------------------------------------

@pytest.mark.asyncio
async def test_refund(payment_service, order_ledger, make_order, assert_consistent):
    order = await make_order(total_amount=Decimal("1500.00"))
    payment = await payment_service.process_cod_payment(order.id)

    payment = await payment_service.initiate_refund(payment.id, Decimal("1500.00"), "rfnd_1")

    assert payment.status == PaymentStatus.REFUNDED.value
    assert payment.refund_amount == Decimal("1500.00")
    order = await order_ledger.get_by_id(order.id)
    assert order.status == OrderStatus.REFUNDED.value
    assert order.payment_status == PaymentStatus.REFUNDED.value
    await assert_consistent(payment.id)

    with pytest.raises(InvalidStateError):
        await payment_service.initiate_refund(payment.id, Decimal("1.00"))


@pytest.mark.asyncio
async def test_refund_above_amount_changes_nothing(payment_service, order_ledger, make_order):
    order = await make_order(total_amount=Decimal("1500.00"))
    payment = await payment_service.process_cod_payment(order.id)

    with pytest.raises(InvalidAmountError):
        await payment_service.initiate_refund(payment.id, Decimal("1500.01"))

    payment = await payment_service.get_payment(payment.id)
    assert payment.status == PaymentStatus.COMPLETED.value
    assert payment.refund_amount is None
    assert (await order_ledger.get_by_id(order.id)).status == OrderStatus.CONFIRMED.value


@pytest.mark.asyncio
async def test_refund_requires_completed_payment(payment_service, make_order):
    order = await make_order()
    checkout = await payment_service.initiate_gateway_payment(order.id)

    with pytest.raises(InvalidStateError):
        await payment_service.initiate_refund(uuid.UUID(checkout.payment_id), Decimal("10.00"))

    with pytest.raises(NotFoundError):
        await payment_service.initiate_refund(uuid.uuid4(), Decimal("10.00"))


@pytest.mark.asyncio
async def test_refund_must_be_positive(payment_service, make_order):
    order = await make_order()
    payment = await payment_service.process_cod_payment(order.id)

    with pytest.raises(InvalidAmountError):
        await payment_service.initiate_refund(payment.id, Decimal("0"))


# --- Payment links and retry -------------------------------------------------

@pytest.mark.asyncio
async def test_payment_link_flow(payment_service, order_ledger, make_order, gateway, assert_consistent):
    order = await make_order(order_number="O8", total_amount=Decimal("249.00"))

    checkout = await payment_service.initiate_payment_link(order.id)

    assert checkout.checkout_url == "https://rzp.io/i/link1"
    assert gateway.links[0]["amount"] == 24900
    assert gateway.links[0]["customer"] == {"contact": "9876543210", "name": "Asha Rao"}
    assert (await order_ledger.get_by_id(order.id)).status == OrderStatus.PAYMENT_PENDING.value

    # Reopening returns the stored link
    again = await payment_service.initiate_payment_link(order.id)
    assert again == checkout
    assert len(gateway.links) == 1

    payment = await payment_service.handle_payment_success(
        PaymentSuccessEvent(checkout_id="plink_1", transaction_id="pay_8", method="upi")
    )
    assert str(payment.id) == checkout.payment_id
    assert payment.status == PaymentStatus.COMPLETED.value
    await assert_consistent(payment.id)


@pytest.mark.asyncio
async def test_retry_returns_stored_checkout(payment_service, payment_ledger, order_ledger, make_order, assert_consistent):
    order = await make_order(order_number="O9")
    checkout = await payment_service.initiate_payment_link(order.id)
    await payment_service.handle_payment_failure(
        PaymentFailureEvent(checkout_id="plink_1", transaction_id="pay_x", error_code="BAD_REQUEST_ERROR")
    )
    assert (await order_ledger.get_by_id(order.id)).status == OrderStatus.PAYMENT_FAILED.value

    retry = await payment_service.retry_payment(order.id)

    assert retry.checkout_url == checkout.checkout_url
    assert retry.payment_id == checkout.payment_id
    payment = await payment_ledger.get_by_order_id(order.id)
    assert payment.status == PaymentStatus.PENDING.value
    order = await order_ledger.get_by_id(order.id)
    assert order.status == OrderStatus.PAYMENT_PENDING.value
    assert order.payment_status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_retry_without_checkout_url(payment_service, payment_ledger, order_ledger, make_order):
    order = await make_order(order_number="O10")
    await payment_service.initiate_gateway_payment(order.id)
    await payment_service.handle_payment_failure(PaymentFailureEvent(order_number="O10", error_code="E"))

    with pytest.raises(NoCheckoutAvailableError):
        await payment_service.retry_payment(order.id)

    # The attempt is reset even though there is no page to send the customer to
    payment = await payment_ledger.get_by_order_id(order.id)
    assert payment.status == PaymentStatus.PENDING.value
    order = await order_ledger.get_by_id(order.id)
    assert order.status == OrderStatus.PAYMENT_PENDING.value
    assert order.payment_status == PaymentStatus.PENDING.value


@pytest.mark.asyncio
async def test_retry_expired_link_needs_new_checkout(payment_service, payment_ledger, make_order, gateway):
    order = await make_order(order_number="O11")
    await payment_service.initiate_payment_link(order.id)
    await payment_service.handle_payment_failure(
        PaymentFailureEvent(checkout_id="plink_1", failure_reason="payment_link.expired")
    )

    with pytest.raises(NoCheckoutAvailableError):
        await payment_service.retry_payment(order.id)

    payment = await payment_ledger.get_by_order_id(order.id)
    assert payment.status == PaymentStatus.PENDING.value
    assert payment.checkout_url is None
    assert payment.checkout_id == "plink_1"

    fresh = await payment_service.initiate_payment_link(order.id)
    assert fresh.checkout_url == "https://rzp.io/i/link2"
    assert len(gateway.links) == 2


@pytest.mark.asyncio
async def test_retry_completed_payment(payment_service, make_order):
    order = await make_order()
    await payment_service.process_cod_payment(order.id)

    with pytest.raises(InvalidStateError):
        await payment_service.retry_payment(order.id)


@pytest.mark.asyncio
async def test_retry_without_payment(payment_service, make_order):
    order = await make_order()

    with pytest.raises(NotFoundError):
        await payment_service.retry_payment(order.id)


# --- Method dispatch ---------------------------------------------------------

@pytest.mark.asyncio
async def test_initiate_payment_dispatch(payment_service, make_order):
    cod_order = await make_order()
    result = await payment_service.initiate_payment(cod_order.id, CheckoutMethod.COD)
    assert result["method"] == "cod"
    assert result["payment"]["status"] == "completed"

    modal_order = await make_order()
    result = await payment_service.initiate_payment(modal_order.id, CheckoutMethod.RAZORPAY)
    assert result["razorpay_order_id"] == "gw_1"

    link_order = await make_order()
    result = await payment_service.initiate_payment(link_order.id, "payment_link")
    assert result["checkout_url"] == "https://rzp.io/i/link1"
