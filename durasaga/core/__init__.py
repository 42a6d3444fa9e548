# ============================================
# FILE: durasaga/core/__init__.py
# ============================================
"""
Core module for Durasaga - the workflow engine and its building blocks.
"""

from durasaga.core.config import EngineConfig, configure, get_config
from durasaga.core.context import WorkflowContext
from durasaga.core.engine import (
    ExecutionDescription,
    ExecutionHandle,
    WorkflowDefinition,
    WorkflowEngine,
)
from durasaga.core.exceptions import (
    ActivityError,
    ActivityTimeoutError,
    AlreadyRunningError,
    CompensationError,
    DurasagaError,
    ExecutionIdReuseError,
    ExecutionNotFoundError,
    NonDeterminismError,
    NonRetryableActivityError,
    SagaStateError,
    TransientActivityError,
    UnknownWorkflowError,
    WorkflowCancelledError,
)
from durasaga.core.listeners import (
    EngineListener,
    LoggingEngineListener,
    MetricsEngineListener,
    TracingEngineListener,
)
from durasaga.core.logger import get_logger, set_logger
from durasaga.core.results import FatalFailure, RetryableFailure, StepResult, Success
from durasaga.core.retry import RetryDecision, RetryPolicy, evaluate_retry
from durasaga.core.types import (
    ActivityInfo,
    ActivityTask,
    Event,
    EventType,
    ExecutionStatus,
    TaskHandle,
    WorkflowExecution,
    WorkflowOutcome,
)

__all__ = [
    # Engine
    "ExecutionDescription",
    "ExecutionHandle",
    "WorkflowContext",
    "WorkflowDefinition",
    "WorkflowEngine",
    # Config
    "EngineConfig",
    "configure",
    "get_config",
    # Types
    "ActivityInfo",
    "ActivityTask",
    "Event",
    "EventType",
    "ExecutionStatus",
    "TaskHandle",
    "WorkflowExecution",
    "WorkflowOutcome",
    # Results and retry
    "FatalFailure",
    "RetryDecision",
    "RetryPolicy",
    "RetryableFailure",
    "StepResult",
    "Success",
    "evaluate_retry",
    # Listeners
    "EngineListener",
    "LoggingEngineListener",
    "MetricsEngineListener",
    "TracingEngineListener",
    # Logger
    "get_logger",
    "set_logger",
    # Exceptions
    "ActivityError",
    "ActivityTimeoutError",
    "AlreadyRunningError",
    "CompensationError",
    "DurasagaError",
    "ExecutionIdReuseError",
    "ExecutionNotFoundError",
    "NonDeterminismError",
    "NonRetryableActivityError",
    "SagaStateError",
    "TransientActivityError",
    "UnknownWorkflowError",
    "WorkflowCancelledError",
]
