"""
Order fulfillment saga.

    debitPayment  (compensation: refundPayment)
    shipOrder     (no compensation)

Shipping is the irreversible last forward step: once it succeeds the saga
is complete, and if it fails only the payment has to be undone.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from durasaga.activities.models import Order
from durasaga.activities.payment import DEBIT_PAYMENT, REFUND_PAYMENT
from durasaga.activities.shipping import SHIP_ORDER
from durasaga.core.logger import get_logger
from durasaga.core.retry import RetryPolicy
from durasaga.saga.coordinator import SagaDefinition, SagaStep

if TYPE_CHECKING:
    from durasaga.core.engine import ExecutionHandle, WorkflowEngine

logger = get_logger(__name__)

ORDER_TASK_QUEUE = "ORDER_TASK_QUEUE"
PAYMENT_ACTIVITY_TASK_QUEUE = "PAYMENT_ACTIVITY_TASK_QUEUE"
SHIPPING_ACTIVITY_TASK_QUEUE = "SHIPPING_ACTIVITY_TASK_QUEUE"

ORDER_WORKFLOW = "OrderWorkflow"

DEFAULT_ORDER_RETRY_POLICY = RetryPolicy(
    max_attempts=3, initial_interval=2.0, backoff_coefficient=2.0
)
DEFAULT_ORDER_START_TO_CLOSE_TIMEOUT = 60.0


@dataclass(frozen=True)
class OrderInput:
    order_id: int
    product_id: int
    price: float
    quantity: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "product_id": self.product_id,
            "price": self.price,
            "quantity": self.quantity,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OrderInput:
        return cls(
            order_id=data["order_id"],
            product_id=data["product_id"],
            price=data["price"],
            quantity=data["quantity"],
        )


def build_execution_id(order_id: int | str, start_millis: int | None = None, prefix: str = "order") -> str:
    """``<prefix>-<orderId>-<startTimeMillis>``"""
    if start_millis is None:
        start_millis = int(time.time() * 1000)
    return f"{prefix}-{order_id}-{start_millis}"


def order_saga(
    retry_policy: RetryPolicy | None = None,
    start_to_close_timeout: float = DEFAULT_ORDER_START_TO_CLOSE_TIMEOUT,
    name: str = ORDER_WORKFLOW,
) -> SagaDefinition:
    """Build the order fulfillment saga definition."""
    policy = retry_policy or DEFAULT_ORDER_RETRY_POLICY
    return SagaDefinition(
        name,
        [
            SagaStep(
                name=DEBIT_PAYMENT,
                activity=DEBIT_PAYMENT,
                task_queue=PAYMENT_ACTIVITY_TASK_QUEUE,
                compensation=REFUND_PAYMENT,
                retry_policy=policy,
                compensation_retry_policy=policy,
                start_to_close_timeout=start_to_close_timeout,
            ),
            SagaStep(
                name=SHIP_ORDER,
                activity=SHIP_ORDER,
                task_queue=SHIPPING_ACTIVITY_TASK_QUEUE,
                retry_policy=policy,
                start_to_close_timeout=start_to_close_timeout,
            ),
        ],
    )


class OrderService:
    """
    Accepts orders and starts one OrderWorkflow execution per order.

    Orders are kept in memory; they belong to the order context, not to
    the engine.
    """

    def __init__(self, engine: WorkflowEngine, workflow_name: str = ORDER_WORKFLOW, prefix: str = "order"):
        self.engine = engine
        self.workflow_name = workflow_name
        self.prefix = prefix
        self.orders: dict[int, Order] = {}
        self._next_id = 1

    async def create_order(
        self,
        product_id: int,
        price: float,
        quantity: int,
        order_id: int | None = None,
        start_millis: int | None = None,
    ) -> ExecutionHandle:
        if order_id is None:
            order_id = self._next_id
        self._next_id = max(self._next_id, order_id + 1)

        order = Order(id=order_id, product_id=product_id, price=price, quantity=quantity)
        self.orders[order_id] = order

        execution_id = build_execution_id(order_id, start_millis, self.prefix)
        logger.info(f"Order {order_id} created, starting {self.workflow_name} as {execution_id}")
        return await self.engine.start(
            execution_id, self.workflow_name, order.to_input(), task_queue=ORDER_TASK_QUEUE
        )
