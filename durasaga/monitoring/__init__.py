"""Observability: structured logging, metrics and tracing."""

from durasaga.monitoring.logging import (
    EngineLogger,
    ExecutionContextFilter,
    ExecutionJsonFormatter,
    setup_engine_logging,
)
from durasaga.monitoring.metrics import EngineMetrics
from durasaga.monitoring.prometheus import PrometheusMetrics, start_metrics_server
from durasaga.monitoring.tracing import EngineTracer, setup_tracing

__all__ = [
    "EngineLogger",
    "EngineMetrics",
    "EngineTracer",
    "ExecutionContextFilter",
    "ExecutionJsonFormatter",
    "PrometheusMetrics",
    "setup_engine_logging",
    "setup_tracing",
    "start_metrics_server",
]
