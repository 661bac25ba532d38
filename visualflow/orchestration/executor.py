"""
Stage Executor
==============

Produces one stage's output by trying candidate services in order.

Attempt budget:
  - ``fallbackStrategy.maxAttempts`` when set
  - else ``fallbackConfig.globalMaxAttempts``
  - else 1

Each attempt consumes one candidate ("try next service"). A stage with
``retryConfig`` retries the same candidate with exponential backoff before
moving on; every try still counts against the budget.

Each service call is bounded by ``stage.timeout`` (ms, falling back to the
configured default); expiry is a failed attempt.

The executor never raises for stage failures; they come back as
``StageExecutionResult(success=False, error=...)``. Only cancellation of the
whole execution propagates.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any

from visualflow.core.config import settings
from visualflow.core.exceptions import (
    AllServicesFailedError,
    ExecutionCancelledError,
    NoServicesAvailableError,
    PipelineError,
    ServiceTimeoutError,
    compute_retry_delay,
)
from visualflow.core.types import FallbackType
from visualflow.infra.telemetry import MetricsCollector, get_logger, get_metrics
from visualflow.orchestration.cache import StageResultCache
from visualflow.orchestration.context import StageExecutionResult
from visualflow.orchestration.invokers import ServiceInvoker
from visualflow.orchestration.models import (
    PipelineConfiguration,
    PipelineStage,
    ServiceRegistryEntry,
)
from visualflow.orchestration.router import StageRouter
from visualflow.utils.cancellation import CancellationToken

logger = get_logger(__name__)

CACHE_SERVICE = "cache"


def resolve_max_attempts(stage: PipelineStage, config: PipelineConfiguration) -> int:
    strategy = stage.fallback_strategy
    if strategy is not None and strategy.max_attempts:
        return strategy.max_attempts
    return config.fallback_config.global_max_attempts or 1


class StageExecutor:
    """Runs a single stage against the services chosen by the router."""

    def __init__(
        self,
        router: StageRouter,
        invoker: ServiceInvoker,
        *,
        cache: StageResultCache | None = None,
        default_timeout_ms: int | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self._router = router
        self._invoker = invoker
        self._cache = cache or StageResultCache()
        self._default_timeout_ms = (
            settings.STAGE_DEFAULT_TIMEOUT_MS if default_timeout_ms is None else default_timeout_ms
        )
        self._metrics = metrics or get_metrics()

    @property
    def cache(self) -> StageResultCache:
        return self._cache

    async def execute_stage(
        self,
        stage: PipelineStage,
        stage_input: Any,
        config: PipelineConfiguration,
        token: CancellationToken | None = None,
    ) -> StageExecutionResult:
        started = time.perf_counter()
        log = logger.bind(stage_id=stage.id, service_type=stage.service_type.value)

        try:
            candidates = await self._router.select_services(stage, config)
        except ExecutionCancelledError:
            raise
        except Exception as exc:  # registry read failures fail the stage only
            error = PipelineError(
                f"Service registry lookup failed: {exc}",
                stage=stage.id,
                original_error=exc,
                error_code="REGISTRY_ERROR",
            )
            log.error("service_registry_lookup_failed", exc=exc)
            return self._finish(stage, stage_input, started, StageExecutionResult(False, error=error))

        if not candidates:
            error = NoServicesAvailableError(stage.id, stage.service_type.value)
            log.warning("no_services_available")
            return self._finish(stage, stage_input, started, StageExecutionResult(False, error=error))

        max_attempts = resolve_max_attempts(stage, config)
        tries_per_service = stage.retry_config.max_attempts if stage.retry_config else 1
        attempts = 0
        last_error: PipelineError | None = None

        for service in candidates:
            for try_number in range(1, tries_per_service + 1):
                if attempts >= max_attempts:
                    break
                if try_number > 1:
                    await self._backoff(stage, try_number - 1, token)
                attempts += 1

                try:
                    output = await self._invoke(stage, stage_input, service, token)
                except ExecutionCancelledError:
                    raise
                except ServiceTimeoutError as exc:
                    last_error = exc
                    self._metrics.record_attempt(
                        service_type=stage.service_type.value, outcome="timeout"
                    )
                except Exception as exc:  # adapter errors are opaque
                    last_error = PipelineError(
                        str(exc) or type(exc).__name__,
                        stage=stage.id,
                        original_error=exc,
                        context={"service": service.descriptor},
                        error_code="SERVICE_ERROR",
                    )
                    self._metrics.record_attempt(
                        service_type=stage.service_type.value, outcome="error"
                    )
                else:
                    self._metrics.record_attempt(
                        service_type=stage.service_type.value, outcome="success"
                    )
                    self._cache.put(stage.id, stage_input, output)
                    result = StageExecutionResult(
                        success=True,
                        output=output,
                        service_used=service.descriptor,
                        attempts=attempts,
                        provider=service.provider_id,
                        model=service.service_name,
                    )
                    return self._finish(stage, stage_input, started, result)

                log.warning(
                    "service_attempt_failed",
                    service=service.descriptor,
                    attempt=attempts,
                    max_attempts=max_attempts,
                    error=last_error.detail,
                )
            if attempts >= max_attempts:
                break

        error = last_error or AllServicesFailedError(stage.id, attempts)
        return self._finish(
            stage, stage_input, started, StageExecutionResult(False, error=error, attempts=attempts)
        )

    # ── Internal ─────────────────────────────────────────────────────

    async def _invoke(
        self,
        stage: PipelineStage,
        stage_input: Any,
        service: ServiceRegistryEntry,
        token: CancellationToken | None,
    ) -> Any:
        timeout_ms = stage.timeout if stage.timeout is not None else self._default_timeout_ms
        call = self._invoker(stage, stage_input, service)
        if timeout_ms:
            call = asyncio.wait_for(call, timeout=timeout_ms / 1000)
        try:
            if token is not None:
                return await token.run(call, stage=stage.id)
            return await call
        except TimeoutError as exc:
            raise ServiceTimeoutError(stage.id, service.descriptor, timeout_ms or 0) from exc

    async def _backoff(
        self, stage: PipelineStage, retry_number: int, token: CancellationToken | None
    ) -> None:
        policy = stage.retry_config
        delay = compute_retry_delay(
            policy.initial_delay_ms, policy.backoff_multiplier, policy.max_delay_ms, retry_number
        )
        if token is not None:
            await token.run(asyncio.sleep(delay), stage=stage.id)
        else:
            await asyncio.sleep(delay)

    def _finish(
        self,
        stage: PipelineStage,
        stage_input: Any,
        started: float,
        result: StageExecutionResult,
    ) -> StageExecutionResult:
        if not result.success:
            result = self._serve_from_cache(stage, stage_input, result)

        result.duration_ms = (time.perf_counter() - started) * 1000
        if result.service_used == CACHE_SERVICE:
            outcome = "cache"
        else:
            outcome = "success" if result.success else "failure"
        self._metrics.record_stage(
            service_type=stage.service_type.value,
            outcome=outcome,
            duration_s=result.duration_ms / 1000,
        )
        return result

    def _serve_from_cache(
        self, stage: PipelineStage, stage_input: Any, failed: StageExecutionResult
    ) -> StageExecutionResult:
        strategy = stage.fallback_strategy
        if strategy is None or strategy.type != FallbackType.CACHE:
            return failed
        if (stage.id, stage_input) not in self._cache:
            return failed

        logger.info(
            "stage_served_from_cache",
            stage_id=stage.id,
            error=failed.error_message,
        )
        return StageExecutionResult(
            success=True,
            output=self._cache.get(stage.id, stage_input),
            service_used=CACHE_SERVICE,
            attempts=failed.attempts,
        )
