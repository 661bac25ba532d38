"""
Health Monitor - Service Registry Probes
========================================

Out-of-band writer of registry health. Each active service is probed
concurrently; the outcome is written back to the registry:

  - healthy:   probe succeeded within the latency budget
  - degraded:  probe succeeded but slower than ``HEALTH_DEGRADED_LATENCY_MS``
  - unhealthy: probe raised or timed out

Every probe also folds into the entry's rolling ``performanceMetrics``
(avgResponseTime, successRate, totalCalls).

Also provides the aggregate application health reported at ``/health``.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from visualflow.core.config import settings
from visualflow.core.storage import PipelineStorage
from visualflow.core.types import HealthStatus
from visualflow.infra.telemetry import get_logger
from visualflow.orchestration.models import PerformanceMetrics, ServiceRegistryEntry

logger = get_logger(__name__)

ServiceProbe = Callable[[ServiceRegistryEntry], Awaitable[Any]]


@dataclass
class HealthCheck:
    """Result of a single health check."""

    name: str
    status: HealthStatus
    latency_ms: float = 0.0
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class SystemHealth:
    """Aggregate health across checks."""

    status: HealthStatus
    checks: list[HealthCheck]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "checks": [
                {
                    "name": c.name,
                    "status": c.status.value,
                    "latency_ms": round(c.latency_ms, 2),
                    "message": c.message,
                    "details": c.details,
                }
                for c in self.checks
            ],
        }


def aggregate_status(checks: list[HealthCheck]) -> HealthStatus:
    statuses = {c.status for c in checks}
    if HealthStatus.UNHEALTHY in statuses:
        return HealthStatus.UNHEALTHY
    if HealthStatus.DEGRADED in statuses:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


def rolling_metrics(
    previous: PerformanceMetrics | None, latency_ms: float, success: bool
) -> PerformanceMetrics:
    prev = previous or PerformanceMetrics(success_rate=0.0)
    total = prev.total_calls + 1
    return PerformanceMetrics(
        avg_response_time=(prev.avg_response_time * prev.total_calls + latency_ms) / total,
        success_rate=(prev.success_rate * prev.total_calls + (1.0 if success else 0.0)) / total,
        total_calls=total,
    )


async def http_endpoint_probe(entry: ServiceRegistryEntry) -> int:
    """GET the entry's endpoint; any non-2xx/3xx response is a failure."""
    async with httpx.AsyncClient(timeout=10, follow_redirects=True) as client:
        response = await client.get(entry.endpoint)
        response.raise_for_status()
        return response.status_code


class HealthMonitor:
    """
    Probes registry entries and records their health.

    Usage:
        monitor = HealthMonitor(storage)
        health = await monitor.check_services()   # one sweep
        monitor.start()                            # periodic sweeps
        await monitor.stop()
    """

    def __init__(
        self,
        storage: PipelineStorage,
        probe: ServiceProbe | None = None,
        *,
        degraded_latency_ms: float | None = None,
        probe_timeout_s: float = 10.0,
        interval_s: float | None = None,
    ) -> None:
        self._storage = storage
        self._probe = probe
        self._degraded_latency_ms = degraded_latency_ms or settings.HEALTH_DEGRADED_LATENCY_MS
        self._probe_timeout_s = probe_timeout_s
        self._interval_s = interval_s or settings.HEALTH_CHECK_INTERVAL_S
        self._task: asyncio.Task[None] | None = None
        self.last_sweep: SystemHealth | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def probe_service(self, entry: ServiceRegistryEntry) -> HealthCheck:
        """Probe one entry and persist the outcome."""
        if self._probe is None and not entry.endpoint:
            return HealthCheck(
                name=entry.descriptor,
                status=HealthStatus.UNKNOWN,
                message="No endpoint configured",
            )

        probe = self._probe or http_endpoint_probe
        start = time.monotonic()
        try:
            await asyncio.wait_for(probe(entry), timeout=self._probe_timeout_s)
        except TimeoutError:
            check = HealthCheck(
                name=entry.descriptor,
                status=HealthStatus.UNHEALTHY,
                message="Health probe timed out",
            )
        except Exception as exc:  # probe failures are the signal being measured
            check = HealthCheck(
                name=entry.descriptor,
                status=HealthStatus.UNHEALTHY,
                message=str(exc) or type(exc).__name__,
            )
        else:
            check = HealthCheck(name=entry.descriptor, status=HealthStatus.HEALTHY)
        check.latency_ms = (time.monotonic() - start) * 1000
        if check.status == HealthStatus.HEALTHY and check.latency_ms > self._degraded_latency_ms:
            check.status = HealthStatus.DEGRADED
            check.message = f"Slow response ({check.latency_ms:.0f}ms)"

        metrics = rolling_metrics(
            entry.performance_metrics,
            check.latency_ms,
            success=check.status != HealthStatus.UNHEALTHY,
        )
        await self._storage.update_service_health(entry.id, check.status, metrics)
        check.details = {"service_id": entry.id, **metrics.to_document()}

        log = logger.warning if check.status == HealthStatus.UNHEALTHY else logger.info
        log(
            "service_health_checked",
            service=entry.descriptor,
            status=check.status.value,
            latency_ms=round(check.latency_ms, 2),
        )
        return check

    async def check_services(self) -> SystemHealth:
        """Probe every active service concurrently."""
        services = await self._storage.list_services(active_only=True)
        results = await asyncio.gather(
            *(self.probe_service(s) for s in services), return_exceptions=True
        )
        checks = []
        for entry, result in zip(services, results, strict=True):
            if isinstance(result, HealthCheck):
                checks.append(result)
                continue
            if not isinstance(result, Exception):
                raise result
            logger.error("service_health_check_failed", service=entry.descriptor, exc=result)
            checks.append(
                HealthCheck(
                    name=entry.descriptor,
                    status=HealthStatus.UNHEALTHY,
                    message=str(result) or type(result).__name__,
                )
            )
        probed = [c for c in checks if c.status != HealthStatus.UNKNOWN]
        self.last_sweep = SystemHealth(status=aggregate_status(probed), checks=checks)
        return self.last_sweep

    def start(self) -> None:
        """Run ``check_services`` every interval in a background task."""
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="registry-health-monitor")
        logger.info("health_monitor_started", interval_s=self._interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("health_monitor_stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.check_services()
            except Exception as exc:  # keep sweeping after storage hiccups
                logger.error("health_sweep_failed", exc=exc)
            await asyncio.sleep(self._interval_s)


async def check_storage(storage: PipelineStorage) -> HealthCheck:
    """Storage round trip used by the application health endpoint."""
    start = time.monotonic()
    try:
        await storage.list_services(active_only=True)
    except Exception as exc:  # reported as unhealthy
        return HealthCheck(
            name="storage",
            status=HealthStatus.UNHEALTHY,
            latency_ms=(time.monotonic() - start) * 1000,
            message=str(exc),
        )
    return HealthCheck(
        name="storage",
        status=HealthStatus.HEALTHY,
        latency_ms=(time.monotonic() - start) * 1000,
    )
