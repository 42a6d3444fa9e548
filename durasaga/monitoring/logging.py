"""
Structured logging for workflow executions

Adds execution context (execution id, workflow name, activity, attempt) to
log records through a context variable, and offers a JSON formatter for
log shipping.
"""

import json
import logging
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from durasaga.core.types import ExecutionStatus

# Context variable for propagating execution context
execution_context: ContextVar[dict[str, Any]] = ContextVar("execution_context", default={})


class ExecutionJsonFormatter(logging.Formatter):
    """
    JSON formatter for engine logs with structured fields
    """

    # Fields to extract from log record if present
    _EXTRA_FIELDS = (
        "execution_id",
        "workflow",
        "activity_type",
        "task_id",
        "attempt",
        "duration_ms",
        "retry_delay",
        "error_type",
    )

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        context = execution_context.get({})
        for key in ("execution_id", "workflow", "activity_type"):
            if context.get(key):
                log_entry[key] = context[key]

        for field in self._EXTRA_FIELDS:
            if hasattr(record, field):
                log_entry[field] = getattr(record, field)

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry, default=str)


class ExecutionContextFilter(logging.Filter):
    """
    Logging filter that adds execution context to log records
    """

    def filter(self, record: logging.LogRecord) -> bool:
        context = execution_context.get({})
        if not hasattr(record, "execution_id"):
            record.execution_id = context.get("execution_id", "-")
        if not hasattr(record, "workflow"):
            record.workflow = context.get("workflow", "-")
        if not hasattr(record, "activity_type"):
            record.activity_type = context.get("activity_type", "")
        return True


class EngineLogger:
    """
    Execution-aware logger with one method per lifecycle event
    """

    def __init__(self, name: str = "durasaga"):
        self.logger = logging.getLogger(name)
        self.logger.addFilter(ExecutionContextFilter())

    def set_execution_context(
        self, execution_id: str, workflow: str | None = None, activity_type: str | None = None
    ) -> None:
        execution_context.set(
            {"execution_id": execution_id, "workflow": workflow, "activity_type": activity_type}
        )

    def clear_execution_context(self) -> None:
        execution_context.set({})

    def execution_started(self, execution_id: str, workflow: str) -> None:
        self.set_execution_context(execution_id, workflow)
        self.logger.info(
            f"Execution started: {workflow}",
            extra={"execution_id": execution_id, "workflow": workflow},
        )

    def execution_finished(
        self,
        execution_id: str,
        workflow: str,
        status: ExecutionStatus,
        duration_ms: float,
        failure: dict[str, Any] | None = None,
    ) -> None:
        log_level = logging.INFO if status == ExecutionStatus.COMPLETED else logging.ERROR
        message = f"Execution finished: {workflow} - Status: {status.value}"
        if failure and failure.get("cause"):
            message = f"{message} - Cause: {failure['cause'].get('message')}"
        self.logger.log(
            log_level,
            message,
            extra={
                "execution_id": execution_id,
                "workflow": workflow,
                "status": status.value,
                "duration_ms": duration_ms,
            },
        )

    def activity_scheduled(
        self, execution_id: str, activity_type: str, task_id: str, compensation: bool = False
    ) -> None:
        kind = "Compensation" if compensation else "Activity"
        log = self.logger.warning if compensation else self.logger.info
        log(
            f"{kind} scheduled: {activity_type}",
            extra={"execution_id": execution_id, "activity_type": activity_type, "task_id": task_id},
        )

    def activity_completed(
        self, execution_id: str, activity_type: str, attempt: int, compensation: bool = False
    ) -> None:
        kind = "Compensation" if compensation else "Activity"
        self.logger.info(
            f"{kind} completed: {activity_type}",
            extra={"execution_id": execution_id, "activity_type": activity_type, "attempt": attempt},
        )

    def attempt_failed(
        self, execution_id: str, activity_type: str, attempt: int, error: dict[str, Any], delay: float
    ) -> None:
        self.logger.warning(
            f"Attempt {attempt} of {activity_type} failed: {error.get('message')} "
            f"- retrying in {delay}s",
            extra={
                "execution_id": execution_id,
                "activity_type": activity_type,
                "attempt": attempt,
                "retry_delay": delay,
                "error_type": error.get("type"),
            },
        )

    def activity_failed(
        self, execution_id: str, activity_type: str, attempt: int, error: dict[str, Any]
    ) -> None:
        self.logger.error(
            f"Activity failed: {activity_type} - {error.get('message')}",
            extra={
                "execution_id": execution_id,
                "activity_type": activity_type,
                "attempt": attempt,
                "error_type": error.get("type"),
            },
        )

    def compensation_failed(
        self, execution_id: str, activity_type: str, attempt: int, error: dict[str, Any]
    ) -> None:
        """Compensation failures are left for an operator: logged as CRITICAL."""
        self.logger.critical(
            f"Compensation FAILED: {activity_type} - {error.get('message')}",
            extra={
                "execution_id": execution_id,
                "activity_type": activity_type,
                "attempt": attempt,
                "error_type": error.get("type"),
            },
        )

    def cancel_requested(self, execution_id: str, reason: str | None = None) -> None:
        self.logger.warning(
            f"Cancellation requested{': ' + reason if reason else ''}",
            extra={"execution_id": execution_id},
        )


def setup_engine_logging(
    log_level: str = "INFO", json_format: bool = True, include_console: bool = True
) -> EngineLogger:
    """
    Set up structured logging for the engine

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_format: Use JSON formatting for structured logs
        include_console: Include console handler

    Returns:
        Configured EngineLogger instance
    """
    root_logger = logging.getLogger("durasaga")
    root_logger.setLevel(getattr(logging, log_level.upper()))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    if include_console:
        console_handler = logging.StreamHandler()
        console_handler.addFilter(ExecutionContextFilter())

        if json_format:
            console_handler.setFormatter(ExecutionJsonFormatter())
        else:
            console_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - [%(execution_id)s] - %(message)s"
                )
            )

        root_logger.addHandler(console_handler)

    return EngineLogger("durasaga.engine")
