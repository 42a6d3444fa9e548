"""
Payment activities: debit and its compensation, refund.

Both are idempotent. A debit retried with the same idempotency token returns
the payment created by the first delivery; a second refund returns the
existing refund id.
"""

from __future__ import annotations

import uuid
from typing import Any

from durasaga.activities.models import Payment
from durasaga.core.exceptions import NonRetryableActivityError, TransientActivityError
from durasaga.core.logger import get_logger
from durasaga.core.types import ActivityInfo

logger = get_logger(__name__)

DEBIT_PAYMENT = "debitPayment"
REFUND_PAYMENT = "refundPayment"


class PaymentActivities:
    """
    In-memory payment service.

    Args:
        transient_failures: Number of debit attempts that fail with a
            retryable provider error before debits start succeeding
        refund_failures: Same for refunds
    """

    def __init__(self, transient_failures: int = 0, refund_failures: int = 0):
        self.payments: dict[str, Payment] = {}
        self._by_token: dict[str, str] = {}
        self._next_id = 1
        self._debit_failures_left = transient_failures
        self._refund_failures_left = refund_failures
        self.debit_attempts = 0
        self.refund_attempts = 0

    def handlers(self) -> dict[str, Any]:
        return {DEBIT_PAYMENT: self.debit_payment, REFUND_PAYMENT: self.refund_payment}

    async def debit_payment(self, order: dict[str, Any], info: ActivityInfo) -> str:
        """Charge ``price * quantity`` for the order. Returns the payment id."""
        self.debit_attempts += 1

        existing = self._by_token.get(info.idempotency_token)
        if existing is not None:
            logger.info(f"Debit for {info.idempotency_token} already applied as {existing}")
            return existing

        price, quantity = order.get("price"), order.get("quantity")
        if price is None or quantity is None or price <= 0 or quantity <= 0:
            msg = f"Invalid order data for order {order.get('order_id')}: price={price}, quantity={quantity}"
            raise NonRetryableActivityError(msg)

        if self._debit_failures_left > 0:
            self._debit_failures_left -= 1
            msg = "Payment provider unavailable"
            raise TransientActivityError(msg)

        payment = Payment(
            id=f"P{self._next_id}",
            order_id=order["order_id"],
            amount=price * quantity,
            external_id=str(uuid.uuid4()),
        )
        self._next_id += 1
        self.payments[payment.id] = payment
        self._by_token[info.idempotency_token] = payment.id
        logger.info(f"Debited {payment.amount} for order {payment.order_id} as {payment.id}")
        return payment.id

    async def refund_payment(self, payment_id: str, info: ActivityInfo) -> dict[str, Any]:
        """Refund a payment made by ``debit_payment``."""
        self.refund_attempts += 1

        payment = self.payments.get(payment_id)
        if payment is None:
            msg = f"Payment not found: {payment_id}"
            raise NonRetryableActivityError(msg)

        if not payment.refunded:
            if self._refund_failures_left > 0:
                self._refund_failures_left -= 1
                msg = "Refund provider unavailable"
                raise TransientActivityError(msg)
            payment.refunded = True
            payment.refund_id = str(uuid.uuid4())
            logger.info(f"Refunded payment {payment_id} ({payment.refund_id})")

        return {"payment_id": payment_id, "refund_id": payment.refund_id, "status": "refunded"}
