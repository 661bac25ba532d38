"""
Pipeline Data Model
====================

Pydantic schemas for everything the orchestration engine persists or consumes:

- PipelineStage (embedded value type) and its input / fallback / retry specs
- PipelineConfiguration (stages + routing rules + fallback config)
- ServiceRegistryEntry (backend service metadata and health)
- PipelineExecution (persisted run record)

Python attributes are snake_case; JSON uses camelCase aliases so stored
documents and API payloads keep the established field names.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_serializer
from pydantic.alias_generators import to_camel

from visualflow.core.exceptions import ConfigurationValidationError
from visualflow.core.types import ExecutionStatus, FallbackType, HealthStatus, ServiceType


def utcnow() -> datetime:
    return datetime.now(UTC)


class _Schema(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_document(self) -> dict[str, Any]:
        """JSON-safe camelCase dump, the shape stored and served over HTTP."""
        return self.model_dump(mode="json", by_alias=True)


# ── Stage ────────────────────────────────────────────────────────────────────

class StageInputSpec(_Schema):
    """Where a stage reads its input from.

    ``from_stage`` (JSON ``from``) names an earlier stage whose output is used.
    ``default`` is only considered declared when it was explicitly provided,
    so an explicit ``null`` default is distinguishable from no default.
    """

    type: str = "any"
    from_stage: str | None = Field(default=None, alias="from")
    default: Any = None

    @property
    def has_default(self) -> bool:
        return "default" in self.model_fields_set

    @model_serializer(mode="wrap")
    def _omit_undeclared_default(self, handler):
        data = handler(self)
        if not self.has_default:
            data.pop("default", None)
        return data


class StageOutputSpec(_Schema):
    type: str = "any"


class FallbackStrategy(_Schema):
    type: FallbackType = FallbackType.ALTERNATIVE_SERVICE
    services: list[str] = Field(default_factory=list)
    threshold: float | None = None
    max_attempts: int | None = Field(default=None, ge=1)


class RetryPolicy(_Schema):
    """Same-service retry with exponential backoff."""

    max_attempts: int = Field(default=1, ge=1)
    initial_delay_ms: float = Field(default=100.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_delay_ms: float = Field(default=10_000.0, ge=0)


class PipelineStage(_Schema):
    id: str = Field(..., min_length=1)
    name: str
    description: str | None = None
    service_type: ServiceType
    required: bool = True
    input: StageInputSpec | None = None
    output: StageOutputSpec | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    fallback_strategy: FallbackStrategy | None = None
    timeout: int | None = Field(default=None, ge=0, description="Per-call deadline in ms")
    retry_config: RetryPolicy | None = None

    @property
    def source_stage(self) -> str | None:
        return self.input.from_stage if self.input else None


# ── Configuration ────────────────────────────────────────────────────────────

class SelectionCriteria(_Schema):
    priority: int | None = None
    quality_factor: float | None = Field(default=None, ge=0, le=1)
    speed_factor: float | None = Field(default=None, ge=0, le=1)
    cost_factor: float | None = Field(default=None, ge=0, le=1)


class RoutingRules(_Schema):
    preferred_providers: dict[str, list[str]] = Field(default_factory=dict)
    selection_criteria: dict[str, SelectionCriteria] = Field(default_factory=dict)


class FallbackConfig(_Schema):
    global_max_attempts: int | None = Field(default=None, ge=1)
    fallback_providers: dict[str, list[str]] = Field(default_factory=dict)


class PipelineConfigurationCreate(_Schema):
    name: str = Field(..., min_length=1)
    description: str | None = None
    is_default: bool = False
    is_active: bool = True
    owning_user_id: str | None = None
    stages: list[PipelineStage] = Field(default_factory=list)
    routing_rules: RoutingRules = Field(default_factory=RoutingRules)
    fallback_config: FallbackConfig = Field(default_factory=FallbackConfig)


class PipelineConfigurationUpdate(_Schema):
    """Partial update; only fields that were sent are merged."""

    name: str | None = None
    description: str | None = None
    is_default: bool | None = None
    is_active: bool | None = None
    owning_user_id: str | None = None
    stages: list[PipelineStage] | None = None
    routing_rules: RoutingRules | None = None
    fallback_config: FallbackConfig | None = None


class PipelineConfiguration(PipelineConfigurationCreate):
    id: str
    performance_metrics: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def get_stage(self, stage_id: str) -> PipelineStage | None:
        return next((s for s in self.stages if s.id == stage_id), None)


def validate_stage_graph(stages: list[PipelineStage]) -> None:
    """Check stage ids are unique and ``input.from`` points at an earlier stage.

    Unknown or forward references are accepted only when the stage declares
    ``input.default``; such a stage always falls back to its default.
    """
    seen: set[str] = set()
    for stage in stages:
        if stage.id in seen:
            raise ConfigurationValidationError(f"Duplicate stage id: {stage.id}")
        source = stage.source_stage
        if source is not None:
            if source == stage.id:
                raise ConfigurationValidationError(
                    f"Stage '{stage.id}' cannot read its own output"
                )
            if source not in seen and not stage.input.has_default:
                raise ConfigurationValidationError(
                    f"Stage '{stage.id}' reads from unknown or later stage '{source}'"
                )
        seen.add(stage.id)


# ── Service Registry ─────────────────────────────────────────────────────────

class PerformanceMetrics(_Schema):
    avg_response_time: float = 0.0
    success_rate: float = Field(default=1.0, ge=0, le=1)
    total_calls: int = Field(default=0, ge=0)


class ServiceRegistryCreate(_Schema):
    provider_id: str = Field(..., min_length=1)
    service_name: str = Field(..., min_length=1)
    service_type: ServiceType
    api_version: str | None = None
    capabilities: list[str] = Field(default_factory=list)
    endpoint: str | None = None
    is_active: bool = True
    priority: int = 0


class ServiceRegistryUpdate(_Schema):
    provider_id: str | None = None
    service_name: str | None = None
    service_type: ServiceType | None = None
    api_version: str | None = None
    capabilities: list[str] | None = None
    endpoint: str | None = None
    is_active: bool | None = None
    priority: int | None = None


class ServiceRegistryEntry(ServiceRegistryCreate):
    id: str
    health_status: HealthStatus = HealthStatus.UNKNOWN
    last_health_check: datetime | None = None
    performance_metrics: PerformanceMetrics | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def descriptor(self) -> str:
        """``{providerId}/{serviceName}``, the key used in ``servicesUsed``."""
        return f"{self.provider_id}/{self.service_name}"


# ── Execution ────────────────────────────────────────────────────────────────

class PipelineExecution(_Schema):
    id: str
    pipeline_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    input_data: Any = None
    output_data: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    execution_metrics: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None
