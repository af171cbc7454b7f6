"""
List payments stuck in pending.

A pending payment older than a few minutes usually means the customer closed
checkout, or a webhook never arrived. Check each one on the Razorpay dashboard
and either replay the webhook or let the customer retry.

Usage: python scripts/report_stale_payments.py [minutes]
"""
import asyncio
import os
import sys
from datetime import datetime, timedelta, timezone

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.database import get_db_context, close_db
from app.services.payment_ledger import PaymentLedger


async def report(minutes: int):
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)

    async with get_db_context() as db:
        stale = await PaymentLedger(db).list_stale_pending(cutoff)

        if not stale:
            print(f"No payments pending for more than {minutes} minutes")
            return

        print(f"{len(stale)} payment(s) pending for more than {minutes} minutes:")
        for payment in stale:
            print(
                f"  {payment.order_number}  payment={payment.id}  "
                f"amount={payment.amount:.2f}  gateway_order={payment.gateway_order_id or '-'}  "
                f"checkout={payment.checkout_id or '-'}  since={payment.updated_at:%Y-%m-%d %H:%M}"
            )

    await close_db()


if __name__ == "__main__":
    minutes = int(sys.argv[1]) if len(sys.argv) > 1 else 30
    asyncio.run(report(minutes))
