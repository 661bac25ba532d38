"""
Execution Lifecycle Manager
===========================

Bridge between callers (HTTP routes, scripts) and the pipeline executor.

Owns the persisted PipelineExecution records:

    pending ──(run starts)──► running ──► completed
                                     └──► failed

Entry points:
  - initialize_pipeline_system(): install the default configuration once
  - run_pipeline(): synchronous (force_sync) or background execution
  - get_pipeline_execution_status(): snapshot of the persisted record
  - cancel_execution(): stop an in-flight run at its next suspension point

Every failure, including failures of background runs, is written to the
execution record; nothing escapes the background path unpersisted.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any

from visualflow.core.config import settings
from visualflow.core.exceptions import (
    ConfigurationNotFoundError,
    ExecutionCancelledError,
    ExecutionNotFoundError,
    PipelineError,
    RequiredStageFailedError,
)
from visualflow.core.storage import PipelineStorage
from visualflow.core.types import ExecutionStatus
from visualflow.infra.telemetry import (
    MetricsCollector,
    bind_execution_context,
    clear_execution_context,
    get_logger,
    get_metrics,
)
from visualflow.orchestration.cache import StageResultCache
from visualflow.orchestration.defaults import build_default_configuration
from visualflow.orchestration.executor import StageExecutor
from visualflow.orchestration.invokers import ServiceInvoker, SimulatedServiceInvoker
from visualflow.orchestration.models import PipelineConfiguration, utcnow
from visualflow.orchestration.pipeline import PipelineExecutor
from visualflow.orchestration.router import StageRouter
from visualflow.utils.cancellation import CancellationToken

logger = get_logger(__name__)


@dataclass(slots=True)
class PipelineRunResult:
    """What ``run_pipeline`` hands back.

    Synchronous runs set exactly one of ``result`` / ``error``; background
    runs set neither and must be polled.
    """

    execution_id: str
    result: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"executionId": self.execution_id}
        if self.result is not None:
            data["result"] = self.result
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass(slots=True)
class ExecutionStatusSnapshot:
    status: ExecutionStatus
    output: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    metrics: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def error_record(exc: Exception) -> dict[str, Any]:
    """Persisted shape of an execution failure."""
    if isinstance(exc, PipelineError):
        record: dict[str, Any] = {
            "message": exc.detail,
            "error_code": exc.error_code,
            "timestamp": exc.timestamp,
        }
        if exc.stage != "unknown":
            record["stage_id"] = exc.stage
        if isinstance(exc, RequiredStageFailedError):
            record["stage_name"] = exc.stage_name
        return record
    return {
        "message": str(exc) or type(exc).__name__,
        "error_code": "INTERNAL_ERROR",
        "timestamp": utcnow().isoformat(),
    }


def failure_metrics(exc: Exception) -> dict[str, Any] | None:
    """Partial progress captured by the pipeline executor, if any."""
    if not isinstance(exc, PipelineError) or "metrics" not in exc.context:
        return None
    return {
        **exc.context["metrics"],
        "partialOutput": exc.context.get("output", {}),
        "errors": exc.context.get("errors", {}),
    }


class ExecutionLifecycleManager:
    """Creates, runs and tracks pipeline executions."""

    def __init__(
        self,
        storage: PipelineStorage,
        invoker: ServiceInvoker | None = None,
        *,
        cache: StageResultCache | None = None,
        stage_timeout_ms: int | None = None,
        concurrent_stages: bool | None = None,
        exclude_unhealthy: bool | None = None,
        default_deadline_s: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        self.storage = storage
        self._metrics = metrics or get_metrics()
        self.router = StageRouter(storage, exclude_unhealthy=exclude_unhealthy)
        self.stage_executor = StageExecutor(
            self.router,
            invoker or SimulatedServiceInvoker(),
            cache=cache,
            default_timeout_ms=stage_timeout_ms,
            metrics=self._metrics,
        )
        self.pipeline_executor = PipelineExecutor(
            self.stage_executor, concurrent_stages=concurrent_stages
        )
        self._default_deadline_s = (
            settings.EXECUTION_DEADLINE_S if default_deadline_s is None else default_deadline_s
        )

        self._tasks: dict[str, asyncio.Task[PipelineRunResult]] = {}
        self._tokens: dict[str, CancellationToken] = {}

    @property
    def active_executions(self) -> int:
        return len(self._tokens)

    # ── Public API ───────────────────────────────────────────────────

    async def initialize_pipeline_system(self) -> bool:
        """Ensure a default configuration exists. Idempotent."""
        logger.info("pipeline_system_initializing")
        try:
            default = await self.storage.get_default_pipeline_configuration()
            if default is None:
                created = await self.storage.create_pipeline_configuration(
                    build_default_configuration(settings.SYSTEM_USER_ID)
                )
                logger.info("default_configuration_created", pipeline_id=created.id)
        except Exception as exc:  # reported through the boolean contract
            logger.error("pipeline_system_initialization_failed", exc=exc)
            return False
        return True

    async def run_pipeline(
        self,
        pipeline_config_id: str | None = None,
        input_data: Any = None,
        *,
        force_sync: bool = False,
        user_id: str | None = None,
        priority: int = 0,
        deadline_s: float | None = None,
    ) -> PipelineRunResult:
        """
        Start an execution of ``pipeline_config_id`` (or the default configuration).

        Raises:
            ConfigurationNotFoundError: no configuration could be resolved
        """
        config = await self._resolve_configuration(pipeline_config_id)
        execution = await self.storage.create_pipeline_execution(
            config.id,
            input_data,
            {
                "startTime": utcnow().isoformat(),
                "priority": priority,
                "userId": user_id,
                "forceSync": force_sync,
            },
        )
        token = CancellationToken(deadline_s or self._default_deadline_s)
        self._tokens[execution.id] = token
        logger.info(
            "execution_created",
            execution_id=execution.id,
            pipeline_id=config.id,
            force_sync=force_sync,
        )

        if force_sync:
            return await self._execute(config, execution.id, input_data, token)

        task = asyncio.create_task(
            self._run_in_background(config, execution.id, input_data, token),
            name=f"pipeline-{execution.id}",
        )
        self._tasks[execution.id] = task
        task.add_done_callback(lambda _t, eid=execution.id: self._tasks.pop(eid, None))
        return PipelineRunResult(execution_id=execution.id)

    async def get_pipeline_execution_status(self, execution_id: str) -> ExecutionStatusSnapshot:
        execution = await self.storage.get_pipeline_execution(execution_id)
        if execution is None:
            raise ExecutionNotFoundError(execution_id)
        return ExecutionStatusSnapshot(
            status=execution.status,
            output=execution.output_data,
            error=execution.error,
            metrics=execution.execution_metrics,
        )

    async def cancel_execution(
        self, execution_id: str, reason: str = "Execution cancelled by request"
    ) -> bool:
        """Request cancellation. False when the run is not in flight here."""
        if await self.storage.get_pipeline_execution(execution_id) is None:
            raise ExecutionNotFoundError(execution_id)
        token = self._tokens.get(execution_id)
        if token is None:
            return False
        token.cancel(reason)
        logger.info("execution_cancel_requested", execution_id=execution_id, reason=reason)
        return True

    async def wait_for_execution(
        self, execution_id: str, timeout: float | None = None
    ) -> ExecutionStatusSnapshot:
        """Await a background run (if still running) and return its status."""
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return await self.get_pipeline_execution_status(execution_id)

    async def shutdown(self, reason: str = "Service shutting down") -> None:
        """Cancel in-flight runs and wait for their failure records to be written."""
        for token in list(self._tokens.values()):
            token.cancel(reason)
        tasks = list(self._tasks.values())
        if tasks:
            logger.info("lifecycle_shutdown", pending=len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Internal ─────────────────────────────────────────────────────

    async def _resolve_configuration(self, config_id: str | None) -> PipelineConfiguration:
        if config_id:
            config = await self.storage.get_pipeline_configuration(config_id)
        else:
            config = await self.storage.get_default_pipeline_configuration()
        if config is None:
            raise ConfigurationNotFoundError(config_id)
        return config

    async def _run_in_background(
        self,
        config: PipelineConfiguration,
        execution_id: str,
        input_data: Any,
        token: CancellationToken,
    ) -> PipelineRunResult:
        try:
            return await self._execute(config, execution_id, input_data, token)
        except Exception as exc:  # detached task: report, never raise
            logger.error("background_execution_crashed", exc=exc, execution_id=execution_id)
            return PipelineRunResult(execution_id=execution_id, error=str(exc))

    async def _execute(
        self,
        config: PipelineConfiguration,
        execution_id: str,
        input_data: Any,
        token: CancellationToken,
    ) -> PipelineRunResult:
        bind_execution_context(execution_id=execution_id, pipeline_id=config.id)
        self._metrics.execution_started()
        status = ExecutionStatus.FAILED
        try:
            await self.storage.mark_execution_running(execution_id)
            logger.info("execution_started", stage_count=len(config.stages))

            context = await self.pipeline_executor.execute(config, execution_id, input_data, token)

            metrics = await self._merged_metrics(execution_id, context.metrics)
            await self.storage.complete_pipeline_execution(execution_id, context.output, metrics)
            status = ExecutionStatus.COMPLETED
            logger.info("execution_completed", total_duration_ms=context.metrics["totalDuration"])
            return PipelineRunResult(execution_id=execution_id, result=context.output)

        except asyncio.CancelledError:
            cancelled = ExecutionCancelledError("Execution task cancelled")
            await self._persist_failure(execution_id, error_record(cancelled), None)
            raise
        except Exception as exc:  # every failure is recorded on the execution
            if isinstance(exc, PipelineError) and exc.error_code == "EXECUTION_CANCELLED":
                logger.warning("execution_cancelled", reason=exc.detail)
            elif isinstance(exc, PipelineError):
                logger.error("execution_failed", error=exc.detail, error_code=exc.error_code)
            else:
                logger.error("execution_failed", exc=exc)
            await self._persist_failure(execution_id, error_record(exc), failure_metrics(exc))
            return PipelineRunResult(
                execution_id=execution_id,
                error=exc.detail if isinstance(exc, PipelineError) else str(exc),
            )
        finally:
            self._metrics.execution_finished(status.value)
            self._tokens.pop(execution_id, None)
            clear_execution_context()

    async def _persist_failure(
        self,
        execution_id: str,
        record: dict[str, Any],
        metrics: dict[str, Any] | None,
    ) -> None:
        merged = None
        if metrics is not None:
            merged = await self._merged_metrics(execution_id, metrics)
        await self.storage.fail_pipeline_execution(execution_id, record, merged)

    async def _merged_metrics(self, execution_id: str, metrics: dict[str, Any]) -> dict[str, Any]:
        """Run metrics layered over the request header written at creation."""
        current = await self.storage.get_pipeline_execution(execution_id)
        return {**(current.execution_metrics if current else {}), **metrics}
