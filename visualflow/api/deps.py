"""
Shared API Dependencies
========================

Accessors for the long-lived objects the lifespan stores on ``app.state``.

Usage:
    from ..deps import get_lifecycle, get_storage
"""

from fastapi import Request

from visualflow.core.storage import PipelineStorage
from visualflow.infra.health import HealthMonitor
from visualflow.orchestration.lifecycle import ExecutionLifecycleManager

__all__ = [
    "get_health_monitor",
    "get_lifecycle",
    "get_storage",
]


def get_storage(request: Request) -> PipelineStorage:
    return request.app.state.storage


def get_lifecycle(request: Request) -> ExecutionLifecycleManager:
    return request.app.state.lifecycle


def get_health_monitor(request: Request) -> HealthMonitor:
    return request.app.state.health_monitor
