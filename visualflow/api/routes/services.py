"""
Service Registry API Routes
===========================

Endpoints:
- GET  /services                 - All entries, highest priority first (activeOnly filter)
- POST /services                 - Register a service
- POST /services/health-check    - Probe every active service now
- GET  /services/by-type/{type}  - Active entries of one service type
- PUT  /services/{id}            - Partial update
- PUT  /services/{id}/health     - Record a health status
"""

from typing import Any

from fastapi import APIRouter, Depends, Query, status

from visualflow.core.exceptions import InvalidRequestError
from visualflow.core.storage import PipelineStorage
from visualflow.core.types import ServiceType
from visualflow.infra.health import HealthMonitor
from visualflow.orchestration.models import ServiceRegistryCreate, ServiceRegistryUpdate

from ..deps import get_health_monitor, get_storage
from ..schemas import HealthUpdateRequest

router = APIRouter(prefix="/services", tags=["services"])


@router.get("")
async def list_services(
    active_only: bool = Query(False, alias="activeOnly"),
    storage: PipelineStorage = Depends(get_storage),
) -> list[dict[str, Any]]:
    services = await storage.list_services(active_only=active_only)
    return [s.to_document() for s in services]


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_service(
    body: ServiceRegistryCreate,
    storage: PipelineStorage = Depends(get_storage),
) -> dict[str, Any]:
    service = await storage.create_service(body)
    return service.to_document()


@router.post("/health-check")
async def run_health_check(
    monitor: HealthMonitor = Depends(get_health_monitor),
) -> dict[str, Any]:
    health = await monitor.check_services()
    return health.to_dict()


@router.get("/by-type/{service_type}")
async def services_by_type(
    service_type: ServiceType,
    storage: PipelineStorage = Depends(get_storage),
) -> list[dict[str, Any]]:
    services = await storage.get_services_by_type(service_type)
    return [s.to_document() for s in services]


@router.put("/{service_id}")
async def update_service(
    service_id: str,
    body: ServiceRegistryUpdate,
    storage: PipelineStorage = Depends(get_storage),
) -> dict[str, Any]:
    service = await storage.update_service(service_id, body.model_dump(exclude_unset=True))
    return service.to_document()


@router.put("/{service_id}/health")
async def update_service_health(
    service_id: str,
    body: HealthUpdateRequest,
    storage: PipelineStorage = Depends(get_storage),
) -> dict[str, Any]:
    if body.status is None:
        raise InvalidRequestError("Status is required")
    service = await storage.update_service_health(
        service_id, body.status, body.performance_metrics
    )
    return service.to_document()
