"""Saga coordinator and the order fulfillment saga."""

from durasaga.saga.coordinator import (
    ActivityInvoker,
    CompensationStatus,
    SagaCoordinator,
    SagaDefinition,
    SagaPhase,
    SagaResult,
    SagaRunState,
    SagaStep,
    derive_run_state,
)
from durasaga.saga.order import (
    DEFAULT_ORDER_RETRY_POLICY,
    ORDER_TASK_QUEUE,
    ORDER_WORKFLOW,
    PAYMENT_ACTIVITY_TASK_QUEUE,
    SHIPPING_ACTIVITY_TASK_QUEUE,
    OrderInput,
    OrderService,
    build_execution_id,
    order_saga,
)

__all__ = [
    "DEFAULT_ORDER_RETRY_POLICY",
    "ORDER_TASK_QUEUE",
    "ORDER_WORKFLOW",
    "PAYMENT_ACTIVITY_TASK_QUEUE",
    "SHIPPING_ACTIVITY_TASK_QUEUE",
    "ActivityInvoker",
    "CompensationStatus",
    "OrderInput",
    "OrderService",
    "SagaCoordinator",
    "SagaDefinition",
    "SagaPhase",
    "SagaResult",
    "SagaRunState",
    "SagaStep",
    "build_execution_id",
    "derive_run_state",
    "order_saga",
]
