# ============================================
# FILE: durasaga/__init__.py
# ============================================

"""
Durasaga - durable saga orchestration

A small workflow engine for multi-step transactions across independently
owned services:
- Append-only execution history with deterministic replay after a crash
- Activities dispatched through named task queues with at-least-once delivery
- Retry with exponential backoff per activity
- Reverse-order compensation of completed steps when a step fails terminally
- Memory and SQLite history storage, memory and Redis task queues
- Logging, Prometheus metrics and OpenTelemetry tracing via listeners

Usage:
    >>> from durasaga import ActivityDispatcher, ActivityWorker, WorkflowEngine
    >>> from durasaga.activities import PaymentActivities, ShippingActivities
    >>> from durasaga.saga import PAYMENT_ACTIVITY_TASK_QUEUE, OrderService, order_saga
    >>>
    >>> engine = WorkflowEngine()
    >>> engine.register(order_saga())
    >>> payments = ActivityWorker(
    ...     PAYMENT_ACTIVITY_TASK_QUEUE, PaymentActivities().handlers(), engine.dispatcher
    ... )
    >>> asyncio.create_task(payments.start())
    >>> handle = await OrderService(engine).create_order(product_id=1, price=10, quantity=2)
    >>> outcome = await handle.result()
"""

from durasaga.core import (
    ActivityError,
    ActivityInfo,
    AlreadyRunningError,
    DurasagaError,
    EngineConfig,
    EngineListener,
    ExecutionHandle,
    ExecutionIdReuseError,
    ExecutionNotFoundError,
    ExecutionStatus,
    FatalFailure,
    NonDeterminismError,
    NonRetryableActivityError,
    RetryableFailure,
    RetryPolicy,
    Success,
    TransientActivityError,
    WorkflowCancelledError,
    WorkflowContext,
    WorkflowEngine,
    WorkflowOutcome,
    configure,
    get_config,
    get_logger,
    set_logger,
)
from durasaga.dispatch import ActivityDispatcher, ActivityWorker, TaskQueueRegistry
from durasaga.saga import SagaDefinition, SagaResult, SagaStep

__version__ = "0.1.0"

__all__ = [
    "ActivityDispatcher",
    "ActivityError",
    "ActivityInfo",
    "ActivityWorker",
    "AlreadyRunningError",
    "DurasagaError",
    "EngineConfig",
    "EngineListener",
    "ExecutionHandle",
    "ExecutionIdReuseError",
    "ExecutionNotFoundError",
    "ExecutionStatus",
    "FatalFailure",
    "NonDeterminismError",
    "NonRetryableActivityError",
    "RetryPolicy",
    "RetryableFailure",
    "SagaDefinition",
    "SagaResult",
    "SagaStep",
    "Success",
    "TaskQueueRegistry",
    "TransientActivityError",
    "WorkflowCancelledError",
    "WorkflowContext",
    "WorkflowEngine",
    "WorkflowOutcome",
    "__version__",
    "configure",
    "get_config",
    "get_logger",
    "set_logger",
]
