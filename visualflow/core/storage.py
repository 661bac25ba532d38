"""
Pipeline Storage - Interface and In-Memory Backend.

Storage for the three persisted collections the orchestration engine uses:
- Pipeline configurations (with single-default enforcement)
- Service registry entries
- Pipeline execution records

Every collection generates its own ids. Backends hand out copies, so a caller
mutating a returned model never changes stored state.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, TypeVar

from pydantic import BaseModel

from visualflow.core.exceptions import (
    ConfigurationNotFoundError,
    ExecutionNotFoundError,
    ServiceNotFoundError,
)
from visualflow.core.types import ExecutionStatus, HealthStatus, ServiceType
from visualflow.orchestration.models import (
    PerformanceMetrics,
    PipelineConfiguration,
    PipelineConfigurationCreate,
    PipelineExecution,
    ServiceRegistryCreate,
    ServiceRegistryEntry,
    utcnow,
    validate_stage_graph,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_IMMUTABLE_FIELDS = frozenset({"id", "created_at"})


def new_id() -> str:
    return str(uuid.uuid4())


def apply_updates(model: M, updates: Mapping[str, Any], stamp: bool = True) -> M:
    """Return a re-validated copy of ``model`` with ``updates`` merged in.

    ``updates`` is keyed by snake_case field name. ``id`` and ``created_at``
    are never overwritten.
    """
    data = model.model_dump()
    data.update({k: v for k, v in updates.items() if k not in _IMMUTABLE_FIELDS})
    if stamp and "updated_at" in type(model).model_fields:
        data["updated_at"] = utcnow()
    return type(model).model_validate(data)


def sort_by_priority(services: list[ServiceRegistryEntry]) -> list[ServiceRegistryEntry]:
    return sorted(services, key=lambda s: s.priority, reverse=True)


# =============================================================================
# ABSTRACT STORAGE INTERFACE
# =============================================================================


class PipelineStorage(ABC):
    """Abstract storage interface consumed by the orchestration core.

    Individual operations must be atomic; the core never holds a transaction
    across calls.
    """

    # ── Pipeline configurations ──────────────────────────────────────────────

    @abstractmethod
    async def create_pipeline_configuration(
        self, config: PipelineConfigurationCreate
    ) -> PipelineConfiguration:
        """Persist a new configuration. A new default clears every other default."""

    @abstractmethod
    async def get_pipeline_configuration(self, config_id: str) -> PipelineConfiguration | None:
        pass

    @abstractmethod
    async def list_pipeline_configurations(
        self, active_only: bool = False
    ) -> list[PipelineConfiguration]:
        pass

    @abstractmethod
    async def get_default_pipeline_configuration(self) -> PipelineConfiguration | None:
        """First configuration that is both default and active."""

    @abstractmethod
    async def get_user_pipeline_configurations(self, user_id: str) -> list[PipelineConfiguration]:
        pass

    @abstractmethod
    async def update_pipeline_configuration(
        self, config_id: str, updates: Mapping[str, Any]
    ) -> PipelineConfiguration:
        """Partial-field merge. Raises ConfigurationNotFoundError for unknown ids."""

    @abstractmethod
    async def delete_pipeline_configuration(self, config_id: str) -> bool:
        """Hard delete. Returns False when nothing was removed."""

    # ── Service registry ─────────────────────────────────────────────────────

    @abstractmethod
    async def create_service(self, service: ServiceRegistryCreate) -> ServiceRegistryEntry:
        pass

    @abstractmethod
    async def get_service(self, service_id: str) -> ServiceRegistryEntry | None:
        pass

    @abstractmethod
    async def list_services(self, active_only: bool = False) -> list[ServiceRegistryEntry]:
        """All entries, highest priority first."""

    @abstractmethod
    async def get_services_by_provider(self, provider_id: str) -> list[ServiceRegistryEntry]:
        pass

    @abstractmethod
    async def get_services_by_type(self, service_type: ServiceType) -> list[ServiceRegistryEntry]:
        """Active entries of one service type, highest priority first."""

    @abstractmethod
    async def update_service(
        self, service_id: str, updates: Mapping[str, Any]
    ) -> ServiceRegistryEntry:
        """Partial-field merge. Raises ServiceNotFoundError for unknown ids."""

    @abstractmethod
    async def update_service_health(
        self,
        service_id: str,
        status: HealthStatus,
        performance_metrics: PerformanceMetrics | None = None,
    ) -> ServiceRegistryEntry:
        """Set health status and stamp ``last_health_check``."""

    # ── Pipeline executions ──────────────────────────────────────────────────

    @abstractmethod
    async def create_pipeline_execution(
        self,
        pipeline_id: str,
        input_data: Any,
        execution_metrics: dict[str, Any] | None = None,
    ) -> PipelineExecution:
        """Create a record in ``pending`` status."""

    @abstractmethod
    async def get_pipeline_execution(self, execution_id: str) -> PipelineExecution | None:
        pass

    @abstractmethod
    async def update_pipeline_execution(
        self, execution_id: str, updates: Mapping[str, Any]
    ) -> PipelineExecution:
        pass

    @abstractmethod
    async def list_pipeline_executions(
        self, pipeline_id: str | None = None
    ) -> list[PipelineExecution]:
        """Executions, newest first, optionally for one pipeline."""

    # ── Execution transitions (shared by all backends) ───────────────────────

    async def mark_execution_running(self, execution_id: str) -> PipelineExecution:
        return await self.update_pipeline_execution(
            execution_id, {"status": ExecutionStatus.RUNNING}
        )

    async def complete_pipeline_execution(
        self,
        execution_id: str,
        output_data: dict[str, Any],
        execution_metrics: dict[str, Any],
    ) -> PipelineExecution:
        return await self._terminate(
            execution_id,
            {
                "status": ExecutionStatus.COMPLETED,
                "output_data": output_data,
                "execution_metrics": execution_metrics,
            },
        )

    async def fail_pipeline_execution(
        self,
        execution_id: str,
        error: dict[str, Any],
        execution_metrics: dict[str, Any] | None = None,
    ) -> PipelineExecution:
        updates: dict[str, Any] = {"status": ExecutionStatus.FAILED, "error": error}
        if execution_metrics is not None:
            updates["execution_metrics"] = execution_metrics
        return await self._terminate(execution_id, updates)

    async def _terminate(
        self, execution_id: str, updates: dict[str, Any]
    ) -> PipelineExecution:
        current = await self.get_pipeline_execution(execution_id)
        if current is None:
            raise ExecutionNotFoundError(execution_id)
        if current.status.is_terminal:
            # An execution terminates exactly once; later writes are dropped.
            logger.warning(
                "Ignoring terminal write for execution %s already %s",
                execution_id,
                current.status,
            )
            return current
        updates["completed_at"] = utcnow()
        return await self.update_pipeline_execution(execution_id, updates)

    async def close(self) -> None:
        """Release backend resources."""


# =============================================================================
# IN-MEMORY BACKEND
# =============================================================================


class InMemoryPipelineStorage(PipelineStorage):
    """Dict-per-collection storage for development and tests."""

    def __init__(self):
        self._configurations: dict[str, PipelineConfiguration] = {}
        self._services: dict[str, ServiceRegistryEntry] = {}
        self._executions: dict[str, PipelineExecution] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(model: M | None) -> M | None:
        return model.model_copy(deep=True) if model is not None else None

    def _clear_defaults(self, keep_id: str) -> None:
        now = utcnow()
        for config_id, config in self._configurations.items():
            if config_id != keep_id and config.is_default:
                self._configurations[config_id] = apply_updates(
                    config, {"is_default": False, "updated_at": now}, stamp=False
                )

    # ── Pipeline configurations ──────────────────────────────────────────────

    async def create_pipeline_configuration(
        self, config: PipelineConfigurationCreate
    ) -> PipelineConfiguration:
        validate_stage_graph(config.stages)
        async with self._lock:
            created = PipelineConfiguration.model_validate(
                {**config.model_dump(), "id": new_id()}
            )
            self._configurations[created.id] = created
            if created.is_default:
                self._clear_defaults(created.id)
            return self._copy(created)

    async def get_pipeline_configuration(self, config_id: str) -> PipelineConfiguration | None:
        async with self._lock:
            return self._copy(self._configurations.get(config_id))

    async def list_pipeline_configurations(
        self, active_only: bool = False
    ) -> list[PipelineConfiguration]:
        async with self._lock:
            return [
                self._copy(c)
                for c in self._configurations.values()
                if c.is_active or not active_only
            ]

    async def get_default_pipeline_configuration(self) -> PipelineConfiguration | None:
        async with self._lock:
            for config in self._configurations.values():
                if config.is_default and config.is_active:
                    return self._copy(config)
            return None

    async def get_user_pipeline_configurations(self, user_id: str) -> list[PipelineConfiguration]:
        async with self._lock:
            return [
                self._copy(c)
                for c in self._configurations.values()
                if c.owning_user_id == user_id
            ]

    async def update_pipeline_configuration(
        self, config_id: str, updates: Mapping[str, Any]
    ) -> PipelineConfiguration:
        async with self._lock:
            current = self._configurations.get(config_id)
            if current is None:
                raise ConfigurationNotFoundError(config_id)
            merged = apply_updates(current, updates)
            validate_stage_graph(merged.stages)
            self._configurations[config_id] = merged
            if updates.get("is_default"):
                self._clear_defaults(config_id)
            return self._copy(merged)

    async def delete_pipeline_configuration(self, config_id: str) -> bool:
        async with self._lock:
            return self._configurations.pop(config_id, None) is not None

    # ── Service registry ─────────────────────────────────────────────────────

    async def create_service(self, service: ServiceRegistryCreate) -> ServiceRegistryEntry:
        async with self._lock:
            entry = ServiceRegistryEntry.model_validate(
                {**service.model_dump(), "id": new_id()}
            )
            self._services[entry.id] = entry
            return self._copy(entry)

    async def get_service(self, service_id: str) -> ServiceRegistryEntry | None:
        async with self._lock:
            return self._copy(self._services.get(service_id))

    async def list_services(self, active_only: bool = False) -> list[ServiceRegistryEntry]:
        async with self._lock:
            matches = [s for s in self._services.values() if s.is_active or not active_only]
            return [self._copy(s) for s in sort_by_priority(matches)]

    async def get_services_by_provider(self, provider_id: str) -> list[ServiceRegistryEntry]:
        async with self._lock:
            return [
                self._copy(s) for s in self._services.values() if s.provider_id == provider_id
            ]

    async def get_services_by_type(self, service_type: ServiceType) -> list[ServiceRegistryEntry]:
        async with self._lock:
            matches = [
                s
                for s in self._services.values()
                if s.service_type == service_type and s.is_active
            ]
            return [self._copy(s) for s in sort_by_priority(matches)]

    async def update_service(
        self, service_id: str, updates: Mapping[str, Any]
    ) -> ServiceRegistryEntry:
        async with self._lock:
            current = self._services.get(service_id)
            if current is None:
                raise ServiceNotFoundError(service_id)
            merged = apply_updates(current, updates)
            self._services[service_id] = merged
            return self._copy(merged)

    async def update_service_health(
        self,
        service_id: str,
        status: HealthStatus,
        performance_metrics: PerformanceMetrics | None = None,
    ) -> ServiceRegistryEntry:
        updates: dict[str, Any] = {"health_status": status, "last_health_check": utcnow()}
        if performance_metrics is not None:
            updates["performance_metrics"] = performance_metrics
        return await self.update_service(service_id, updates)

    # ── Pipeline executions ──────────────────────────────────────────────────

    async def create_pipeline_execution(
        self,
        pipeline_id: str,
        input_data: Any,
        execution_metrics: dict[str, Any] | None = None,
    ) -> PipelineExecution:
        async with self._lock:
            execution = PipelineExecution(
                id=new_id(),
                pipeline_id=pipeline_id,
                status=ExecutionStatus.PENDING,
                input_data=input_data,
                execution_metrics=execution_metrics or {},
            )
            self._executions[execution.id] = execution
            return self._copy(execution)

    async def get_pipeline_execution(self, execution_id: str) -> PipelineExecution | None:
        async with self._lock:
            return self._copy(self._executions.get(execution_id))

    async def update_pipeline_execution(
        self, execution_id: str, updates: Mapping[str, Any]
    ) -> PipelineExecution:
        async with self._lock:
            current = self._executions.get(execution_id)
            if current is None:
                raise ExecutionNotFoundError(execution_id)
            merged = apply_updates(current, updates)
            self._executions[execution_id] = merged
            return self._copy(merged)

    async def list_pipeline_executions(
        self, pipeline_id: str | None = None
    ) -> list[PipelineExecution]:
        async with self._lock:
            matches = [
                e
                for e in self._executions.values()
                if pipeline_id is None or e.pipeline_id == pipeline_id
            ]
            matches.sort(key=lambda e: e.started_at, reverse=True)
            return [self._copy(e) for e in matches]


__all__ = [
    "InMemoryPipelineStorage",
    "PipelineStorage",
    "apply_updates",
    "new_id",
    "sort_by_priority",
]
