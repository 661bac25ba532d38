"""
Stage Router
============

Selects the ordered list of registry entries a stage should try.

Ordering:
  - Only active entries of the stage's service type are considered
  - With a preferred-provider list for that type: preferred providers first,
    in list order (stable among equals), then everyone else by priority desc
  - Without one: priority desc

Optional filters:
  - ``alternative-service`` fallback with named services restricts candidates
  - ``exclude_unhealthy`` drops entries whose last health check failed

Routing never writes to storage.
"""

from __future__ import annotations

from collections.abc import Sequence

from visualflow.core.config import settings
from visualflow.core.storage import PipelineStorage
from visualflow.core.types import FallbackType, HealthStatus
from visualflow.infra.telemetry import get_logger
from visualflow.orchestration.models import (
    PipelineConfiguration,
    PipelineStage,
    ServiceRegistryEntry,
)

logger = get_logger(__name__)


def order_candidates(
    services: Sequence[ServiceRegistryEntry],
    preferred_providers: Sequence[str] | None = None,
) -> list[ServiceRegistryEntry]:
    """Order candidates by provider preference, then descending priority."""
    if not preferred_providers:
        return sorted(services, key=lambda s: -s.priority)

    rank = {}
    for index, provider in enumerate(preferred_providers):
        rank.setdefault(provider, index)

    def sort_key(service: ServiceRegistryEntry) -> tuple[int, int]:
        if service.provider_id in rank:
            return (0, rank[service.provider_id])
        return (1, -service.priority)

    return sorted(services, key=sort_key)


class StageRouter:
    """Builds the candidate list for a stage from the service registry."""

    def __init__(self, storage: PipelineStorage, exclude_unhealthy: bool | None = None):
        self._storage = storage
        self._exclude_unhealthy = (
            settings.ROUTER_EXCLUDE_UNHEALTHY if exclude_unhealthy is None else exclude_unhealthy
        )

    async def select_services(
        self, stage: PipelineStage, config: PipelineConfiguration
    ) -> list[ServiceRegistryEntry]:
        """Return the services to try for ``stage``, best first. May be empty."""
        services = await self._storage.get_services_by_type(stage.service_type)
        if not services:
            return []

        strategy = stage.fallback_strategy
        if strategy and strategy.type == FallbackType.ALTERNATIVE_SERVICE and strategy.services:
            allowed = set(strategy.services)
            services = [s for s in services if s.service_name in allowed]

        if self._exclude_unhealthy:
            services = [s for s in services if s.health_status != HealthStatus.UNHEALTHY]

        preferred = config.routing_rules.preferred_providers.get(stage.service_type.value)
        candidates = order_candidates(services, preferred)

        logger.debug(
            "services_selected",
            stage_id=stage.id,
            service_type=stage.service_type.value,
            candidates=[s.descriptor for s in candidates],
        )
        return candidates
