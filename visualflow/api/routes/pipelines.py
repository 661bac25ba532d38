"""
Pipeline Configuration API Routes
=================================

Endpoints:
- GET    /pipelines          - List configurations (activeOnly, userId filters)
- POST   /pipelines          - Create a configuration
- POST   /pipelines/execute  - Run a pipeline (sync with options.forceSync)
- GET    /pipelines/{id}     - Fetch one configuration
- PUT    /pipelines/{id}     - Partial update
- DELETE /pipelines/{id}     - Delete
"""

from typing import Any

from fastapi import APIRouter, Depends, Query, status

from visualflow.core.exceptions import ConfigurationNotFoundError, InvalidRequestError
from visualflow.core.storage import PipelineStorage
from visualflow.orchestration.lifecycle import ExecutionLifecycleManager
from visualflow.orchestration.models import (
    PipelineConfigurationCreate,
    PipelineConfigurationUpdate,
)

from ..deps import get_lifecycle, get_storage
from ..schemas import ExecuteRequest

router = APIRouter(prefix="/pipelines", tags=["pipelines"])


@router.get("")
async def list_pipelines(
    active_only: bool = Query(False, alias="activeOnly"),
    user_id: str | None = Query(None, alias="userId"),
    storage: PipelineStorage = Depends(get_storage),
) -> list[dict[str, Any]]:
    if user_id:
        configs = await storage.get_user_pipeline_configurations(user_id)
        if active_only:
            configs = [c for c in configs if c.is_active]
    else:
        configs = await storage.list_pipeline_configurations(active_only=active_only)
    return [c.to_document() for c in configs]


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_pipeline(
    body: PipelineConfigurationCreate,
    storage: PipelineStorage = Depends(get_storage),
) -> dict[str, Any]:
    config = await storage.create_pipeline_configuration(body)
    return config.to_document()


@router.post("/execute")
async def execute_pipeline(
    body: ExecuteRequest,
    lifecycle: ExecutionLifecycleManager = Depends(get_lifecycle),
) -> dict[str, Any]:
    """Start an execution; synchronous runs return ``result`` or ``error``."""
    if body.input is None or body.input == "":
        raise InvalidRequestError("Input is required")
    run = await lifecycle.run_pipeline(
        body.pipeline_id,
        body.input,
        force_sync=body.options.force_sync,
        user_id=body.options.user_id,
        priority=body.options.priority,
        deadline_s=body.options.deadline_s,
    )
    return run.to_dict()


@router.get("/{pipeline_id}")
async def get_pipeline(
    pipeline_id: str,
    storage: PipelineStorage = Depends(get_storage),
) -> dict[str, Any]:
    config = await storage.get_pipeline_configuration(pipeline_id)
    if config is None:
        raise ConfigurationNotFoundError(pipeline_id)
    return config.to_document()


@router.put("/{pipeline_id}")
async def update_pipeline(
    pipeline_id: str,
    body: PipelineConfigurationUpdate,
    storage: PipelineStorage = Depends(get_storage),
) -> dict[str, Any]:
    config = await storage.update_pipeline_configuration(
        pipeline_id, body.model_dump(exclude_unset=True)
    )
    return config.to_document()


@router.delete("/{pipeline_id}")
async def delete_pipeline(
    pipeline_id: str,
    storage: PipelineStorage = Depends(get_storage),
) -> dict[str, bool]:
    if not await storage.delete_pipeline_configuration(pipeline_id):
        raise ConfigurationNotFoundError(pipeline_id)
    return {"success": True}
