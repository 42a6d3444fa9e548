# ============================================
# FILE: durasaga/monitoring/metrics.py
# ============================================

"""
In-process metrics for workflow executions
"""

from typing import Any

from durasaga.core.types import ExecutionStatus


class EngineMetrics:
    """Collect and expose engine metrics"""

    def __init__(self):
        self.metrics = {
            "total_executed": 0,
            "total_successful": 0,
            "total_failed": 0,
            "average_execution_time": 0.0,
            "activity_attempts": 0,
            "activity_retries": 0,
            "activity_failures": 0,
            "compensations_run": 0,
            "compensations_failed": 0,
            "by_workflow": {},
        }

    def record_execution(self, workflow: str, status: ExecutionStatus, duration: float):
        """Record a finished execution"""
        self.metrics["total_executed"] += 1
        if status == ExecutionStatus.COMPLETED:
            self.metrics["total_successful"] += 1
        elif status == ExecutionStatus.FAILED:
            self.metrics["total_failed"] += 1
        self._update_average_time(duration)
        self._update_workflow_stats(workflow, status)

    def record_attempt(self, retried: bool = False) -> None:
        self.metrics["activity_attempts"] += 1
        if retried:
            self.metrics["activity_retries"] += 1

    def record_activity_failure(self) -> None:
        self.metrics["activity_failures"] += 1

    def record_compensation(self, failed: bool = False) -> None:
        self.metrics["compensations_run"] += 1
        if failed:
            self.metrics["compensations_failed"] += 1

    def _update_average_time(self, duration: float) -> None:
        total_time = self.metrics["average_execution_time"] * (self.metrics["total_executed"] - 1)
        self.metrics["average_execution_time"] = (total_time + duration) / self.metrics[
            "total_executed"
        ]

    def _update_workflow_stats(self, workflow: str, status: ExecutionStatus) -> None:
        stats = self.metrics["by_workflow"].setdefault(
            workflow, {"count": 0, "success": 0, "failed": 0}
        )
        stats["count"] += 1
        if status == ExecutionStatus.COMPLETED:
            stats["success"] += 1
        else:
            stats["failed"] += 1

    def get_metrics(self) -> dict[str, Any]:
        """Get all metrics"""
        success_rate = (
            self.metrics["total_successful"] / self.metrics["total_executed"] * 100
            if self.metrics["total_executed"] > 0
            else 0
        )

        return {
            **self.metrics,
            "success_rate": f"{success_rate:.2f}%",
        }
