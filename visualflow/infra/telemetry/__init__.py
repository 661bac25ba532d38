"""
Telemetry Layer
===============

Structured logging and Prometheus metrics for the orchestration engine.

Usage:
    from visualflow.infra.telemetry import get_logger, get_metrics

    logger = get_logger(__name__)
    logger.info("stage_completed", stage_id="initial-analysis", duration_ms=42.3)
    get_metrics().record_attempt(service_type="text_generation", outcome="success")
"""

from visualflow.infra.telemetry.logger import (
    StructuredLogger,
    bind_execution_context,
    clear_execution_context,
    get_logger,
    setup_logging,
)
from visualflow.infra.telemetry.metrics import MetricsCollector, get_metrics

__all__ = [
    "MetricsCollector",
    "StructuredLogger",
    "bind_execution_context",
    "clear_execution_context",
    "get_logger",
    "get_metrics",
    "setup_logging",
]
