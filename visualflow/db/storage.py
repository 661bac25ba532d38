"""
SQLAlchemy-backed PipelineStorage.

Each operation runs in its own transaction. Rows are converted to the
pydantic models at the boundary, so callers never hold ORM instances.
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import select, update

from visualflow.core.exceptions import (
    ConfigurationNotFoundError,
    ExecutionNotFoundError,
    ServiceNotFoundError,
)
from visualflow.core.storage import PipelineStorage, apply_updates, new_id
from visualflow.core.types import ExecutionStatus, HealthStatus, ServiceType
from visualflow.db.database import Database
from visualflow.db.models import (
    PipelineConfigurationRecord,
    PipelineExecutionRecord,
    ServiceRegistryRecord,
)
from visualflow.infra.telemetry import get_logger
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

logger = get_logger(__name__)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; everything is stored as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


# ── Row <-> model conversion ─────────────────────────────────────────────────

def _config_values(config: PipelineConfiguration) -> dict[str, Any]:
    doc = config.to_document()
    return {
        "id": config.id,
        "name": config.name,
        "description": config.description,
        "is_default": config.is_default,
        "is_active": config.is_active,
        "owning_user_id": config.owning_user_id,
        "stages": doc["stages"],
        "routing_rules": doc["routingRules"],
        "fallback_config": doc["fallbackConfig"],
        "performance_metrics": doc["performanceMetrics"],
        "created_at": config.created_at,
        "updated_at": config.updated_at,
    }


def _config_from_row(row: PipelineConfigurationRecord) -> PipelineConfiguration:
    return PipelineConfiguration.model_validate(
        {
            "id": row.id,
            "name": row.name,
            "description": row.description,
            "is_default": row.is_default,
            "is_active": row.is_active,
            "owning_user_id": row.owning_user_id,
            "stages": row.stages or [],
            "routing_rules": row.routing_rules or {},
            "fallback_config": row.fallback_config or {},
            "performance_metrics": row.performance_metrics,
            "created_at": _aware(row.created_at),
            "updated_at": _aware(row.updated_at),
        }
    )


def _service_values(service: ServiceRegistryEntry) -> dict[str, Any]:
    doc = service.to_document()
    return {
        "id": service.id,
        "provider_id": service.provider_id,
        "service_name": service.service_name,
        "service_type": service.service_type.value,
        "api_version": service.api_version,
        "capabilities": list(service.capabilities),
        "endpoint": service.endpoint,
        "is_active": service.is_active,
        "priority": service.priority,
        "health_status": service.health_status.value,
        "last_health_check": service.last_health_check,
        "performance_metrics": doc["performanceMetrics"],
        "created_at": service.created_at,
        "updated_at": service.updated_at,
    }


def _service_from_row(row: ServiceRegistryRecord) -> ServiceRegistryEntry:
    return ServiceRegistryEntry.model_validate(
        {
            "id": row.id,
            "provider_id": row.provider_id,
            "service_name": row.service_name,
            "service_type": row.service_type,
            "api_version": row.api_version,
            "capabilities": row.capabilities or [],
            "endpoint": row.endpoint,
            "is_active": row.is_active,
            "priority": row.priority,
            "health_status": row.health_status,
            "last_health_check": _aware(row.last_health_check),
            "performance_metrics": row.performance_metrics,
            "created_at": _aware(row.created_at),
            "updated_at": _aware(row.updated_at),
        }
    )


def _execution_values(execution: PipelineExecution) -> dict[str, Any]:
    doc = execution.to_document()
    return {
        "id": execution.id,
        "pipeline_id": execution.pipeline_id,
        "status": execution.status.value,
        "input_data": doc["inputData"],
        "output_data": doc["outputData"],
        "error": doc["error"],
        "execution_metrics": doc["executionMetrics"],
        "started_at": execution.started_at,
        "completed_at": execution.completed_at,
    }


def _execution_from_row(row: PipelineExecutionRecord) -> PipelineExecution:
    return PipelineExecution.model_validate(
        {
            "id": row.id,
            "pipeline_id": row.pipeline_id,
            "status": row.status,
            "input_data": row.input_data,
            "output_data": row.output_data,
            "error": row.error,
            "execution_metrics": row.execution_metrics or {},
            "started_at": _aware(row.started_at),
            "completed_at": _aware(row.completed_at),
        }
    )


class SQLAlchemyPipelineStorage(PipelineStorage):
    """PipelineStorage over any async SQLAlchemy database."""

    def __init__(self, database: Database | None = None):
        self.database = database or Database()

    async def init_schema(self) -> None:
        await self.database.init_schema()
        logger.info("database_schema_ready", url=self.database.engine.url.render_as_string())

    async def close(self) -> None:
        await self.database.dispose()

    # ── Pipeline configurations ──────────────────────────────────────────────

    async def create_pipeline_configuration(
        self, config: PipelineConfigurationCreate
    ) -> PipelineConfiguration:
        validate_stage_graph(config.stages)
        created = PipelineConfiguration.model_validate({**config.model_dump(), "id": new_id()})
        async with self.database.session() as session:
            if created.is_default:
                await self._clear_defaults(session, created.id)
            session.add(PipelineConfigurationRecord(**_config_values(created)))
        return created

    async def get_pipeline_configuration(self, config_id: str) -> PipelineConfiguration | None:
        async with self.database.session() as session:
            row = await session.get(PipelineConfigurationRecord, config_id)
            return _config_from_row(row) if row else None

    async def list_pipeline_configurations(
        self, active_only: bool = False
    ) -> list[PipelineConfiguration]:
        stmt = select(PipelineConfigurationRecord).order_by(PipelineConfigurationRecord.created_at)
        if active_only:
            stmt = stmt.where(PipelineConfigurationRecord.is_active.is_(True))
        async with self.database.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_config_from_row(r) for r in rows]

    async def get_default_pipeline_configuration(self) -> PipelineConfiguration | None:
        stmt = (
            select(PipelineConfigurationRecord)
            .where(
                PipelineConfigurationRecord.is_default.is_(True),
                PipelineConfigurationRecord.is_active.is_(True),
            )
            .order_by(PipelineConfigurationRecord.created_at)
            .limit(1)
        )
        async with self.database.session() as session:
            row = (await session.execute(stmt)).scalars().first()
            return _config_from_row(row) if row else None

    async def get_user_pipeline_configurations(self, user_id: str) -> list[PipelineConfiguration]:
        stmt = (
            select(PipelineConfigurationRecord)
            .where(PipelineConfigurationRecord.owning_user_id == user_id)
            .order_by(PipelineConfigurationRecord.created_at)
        )
        async with self.database.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_config_from_row(r) for r in rows]

    async def update_pipeline_configuration(
        self, config_id: str, updates: Mapping[str, Any]
    ) -> PipelineConfiguration:
        async with self.database.session() as session:
            row = await session.get(PipelineConfigurationRecord, config_id)
            if row is None:
                raise ConfigurationNotFoundError(config_id)
            merged = apply_updates(_config_from_row(row), updates)
            validate_stage_graph(merged.stages)
            if updates.get("is_default"):
                await self._clear_defaults(session, config_id)
            for key, value in _config_values(merged).items():
                setattr(row, key, value)
        return merged

    async def delete_pipeline_configuration(self, config_id: str) -> bool:
        async with self.database.session() as session:
            row = await session.get(PipelineConfigurationRecord, config_id)
            if row is None:
                return False
            await session.delete(row)
            return True

    @staticmethod
    async def _clear_defaults(session, keep_id: str) -> None:
        await session.execute(
            update(PipelineConfigurationRecord)
            .where(
                PipelineConfigurationRecord.id != keep_id,
                PipelineConfigurationRecord.is_default.is_(True),
            )
            .values(is_default=False, updated_at=utcnow())
        )

    # ── Service registry ─────────────────────────────────────────────────────

    async def create_service(self, service: ServiceRegistryCreate) -> ServiceRegistryEntry:
        entry = ServiceRegistryEntry.model_validate({**service.model_dump(), "id": new_id()})
        async with self.database.session() as session:
            session.add(ServiceRegistryRecord(**_service_values(entry)))
        return entry

    async def get_service(self, service_id: str) -> ServiceRegistryEntry | None:
        async with self.database.session() as session:
            row = await session.get(ServiceRegistryRecord, service_id)
            return _service_from_row(row) if row else None

    async def list_services(self, active_only: bool = False) -> list[ServiceRegistryEntry]:
        stmt = select(ServiceRegistryRecord).order_by(
            ServiceRegistryRecord.priority.desc(), ServiceRegistryRecord.created_at
        )
        if active_only:
            stmt = stmt.where(ServiceRegistryRecord.is_active.is_(True))
        async with self.database.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_service_from_row(r) for r in rows]

    async def get_services_by_provider(self, provider_id: str) -> list[ServiceRegistryEntry]:
        stmt = (
            select(ServiceRegistryRecord)
            .where(ServiceRegistryRecord.provider_id == provider_id)
            .order_by(ServiceRegistryRecord.created_at)
        )
        async with self.database.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_service_from_row(r) for r in rows]

    async def get_services_by_type(self, service_type: ServiceType) -> list[ServiceRegistryEntry]:
        stmt = (
            select(ServiceRegistryRecord)
            .where(
                ServiceRegistryRecord.service_type == ServiceType(service_type).value,
                ServiceRegistryRecord.is_active.is_(True),
            )
            .order_by(ServiceRegistryRecord.priority.desc(), ServiceRegistryRecord.created_at)
        )
        async with self.database.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_service_from_row(r) for r in rows]

    async def update_service(
        self, service_id: str, updates: Mapping[str, Any]
    ) -> ServiceRegistryEntry:
        async with self.database.session() as session:
            row = await session.get(ServiceRegistryRecord, service_id)
            if row is None:
                raise ServiceNotFoundError(service_id)
            merged = apply_updates(_service_from_row(row), updates)
            for key, value in _service_values(merged).items():
                setattr(row, key, value)
        return merged

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
        execution = PipelineExecution(
            id=new_id(),
            pipeline_id=pipeline_id,
            status=ExecutionStatus.PENDING,
            input_data=input_data,
            execution_metrics=execution_metrics or {},
        )
        async with self.database.session() as session:
            session.add(PipelineExecutionRecord(**_execution_values(execution)))
        return execution

    async def get_pipeline_execution(self, execution_id: str) -> PipelineExecution | None:
        async with self.database.session() as session:
            row = await session.get(PipelineExecutionRecord, execution_id)
            return _execution_from_row(row) if row else None

    async def update_pipeline_execution(
        self, execution_id: str, updates: Mapping[str, Any]
    ) -> PipelineExecution:
        async with self.database.session() as session:
            row = await session.get(PipelineExecutionRecord, execution_id)
            if row is None:
                raise ExecutionNotFoundError(execution_id)
            merged = apply_updates(_execution_from_row(row), updates)
            for key, value in _execution_values(merged).items():
                setattr(row, key, value)
        return merged

    async def list_pipeline_executions(
        self, pipeline_id: str | None = None
    ) -> list[PipelineExecution]:
        stmt = select(PipelineExecutionRecord).order_by(PipelineExecutionRecord.started_at.desc())
        if pipeline_id is not None:
            stmt = stmt.where(PipelineExecutionRecord.pipeline_id == pipeline_id)
        async with self.database.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_execution_from_row(r) for r in rows]
