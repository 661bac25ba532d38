"""Request bodies that are specific to the HTTP surface."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from visualflow.core.types import HealthStatus
from visualflow.orchestration.models import PerformanceMetrics


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExecuteOptions(_Request):
    force_sync: bool = False
    priority: int = 0
    user_id: str | None = None
    deadline_s: float | None = Field(default=None, gt=0)


class ExecuteRequest(_Request):
    pipeline_id: str | None = None
    input: Any = None
    options: ExecuteOptions = Field(default_factory=ExecuteOptions)


class HealthUpdateRequest(_Request):
    status: HealthStatus | None = None
    performance_metrics: PerformanceMetrics | None = None
