"""
Pipeline Execution API Routes
=============================

Endpoints:
- GET  /pipeline-executions?pipelineId=  - Executions of one pipeline, newest first
- GET  /pipeline-executions/{id}         - Status snapshot (status, output, error, metrics)
- POST /pipeline-executions/{id}/cancel  - Cancel an in-flight execution
"""

from typing import Any

from fastapi import APIRouter, Depends, Query

from visualflow.core.exceptions import InvalidRequestError
from visualflow.core.storage import PipelineStorage
from visualflow.orchestration.lifecycle import ExecutionLifecycleManager

from ..deps import get_lifecycle, get_storage

router = APIRouter(prefix="/pipeline-executions", tags=["executions"])


@router.get("")
async def list_executions(
    pipeline_id: str | None = Query(None, alias="pipelineId"),
    storage: PipelineStorage = Depends(get_storage),
) -> list[dict[str, Any]]:
    if not pipeline_id:
        raise InvalidRequestError("Pipeline ID is required")
    executions = await storage.list_pipeline_executions(pipeline_id)
    return [e.to_document() for e in executions]


@router.get("/{execution_id}")
async def get_execution_status(
    execution_id: str,
    lifecycle: ExecutionLifecycleManager = Depends(get_lifecycle),
) -> dict[str, Any]:
    snapshot = await lifecycle.get_pipeline_execution_status(execution_id)
    return snapshot.to_dict()


@router.post("/{execution_id}/cancel")
async def cancel_execution(
    execution_id: str,
    lifecycle: ExecutionLifecycleManager = Depends(get_lifecycle),
) -> dict[str, Any]:
    cancelled = await lifecycle.cancel_execution(execution_id)
    return {"executionId": execution_id, "cancelled": cancelled}
