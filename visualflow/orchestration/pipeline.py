"""
Pipeline Executor
=================

Drives a pipeline configuration end to end against one shared context.

Per stage: resolve input → run the stage executor → record the outcome.
A failed optional stage is recorded in ``errors`` and skipped; a failed
required stage aborts the run with RequiredStageFailedError carrying the
partial context.

Scheduling:
  - sequential (default): stages run strictly in declared order
  - concurrent (opt-in): a stage starts once the earlier stage it reads from
    has settled; stages reading only the pipeline input start immediately.
    A required failure cancels every unfinished stage.
"""

from __future__ import annotations

import asyncio
from typing import Any

from visualflow.core.config import settings
from visualflow.core.exceptions import (
    ExecutionCancelledError,
    RequiredStageFailedError,
    StageInputUnresolvedError,
)
from visualflow.infra.telemetry import bind_execution_context, get_logger
from visualflow.orchestration.context import (
    PipelineContext,
    StageExecutionResult,
    resolve_stage_input,
)
from visualflow.orchestration.executor import StageExecutor
from visualflow.orchestration.models import PipelineConfiguration, PipelineStage
from visualflow.utils.cancellation import CancellationToken

logger = get_logger(__name__)


class PipelineExecutor:
    """Runs every stage of a configuration and accumulates a PipelineContext."""

    def __init__(self, stage_executor: StageExecutor, concurrent_stages: bool | None = None):
        self._stage_executor = stage_executor
        self.concurrent_stages = (
            settings.PIPELINE_CONCURRENT_STAGES if concurrent_stages is None else concurrent_stages
        )

    async def execute(
        self,
        config: PipelineConfiguration,
        execution_id: str,
        pipeline_input: Any,
        token: CancellationToken | None = None,
    ) -> PipelineContext:
        """Run all stages; returns the finished context.

        Raises:
            RequiredStageFailedError: a required stage failed
            ExecutionCancelledError: the token was cancelled mid-run
        """
        context = PipelineContext(
            pipeline_id=config.id,
            execution_id=execution_id,
            input=pipeline_input,
        )
        try:
            if self.concurrent_stages:
                await self._run_concurrent(config, context, token)
            else:
                for stage in config.stages:
                    if token is not None:
                        token.raise_if_cancelled(stage.id)
                    await self._run_stage(stage, config, context, token)
        except ExecutionCancelledError as exc:
            context.finish()
            exc.context.update(context.snapshot())
            raise

        context.finish()
        logger.info(
            "pipeline_stages_finished",
            stages_succeeded=len(context.output),
            stages_failed=len(context.errors),
            total_duration_ms=context.metrics["totalDuration"],
        )
        return context

    async def _run_stage(
        self,
        stage: PipelineStage,
        config: PipelineConfiguration,
        context: PipelineContext,
        token: CancellationToken | None,
    ) -> None:
        context.current_stage = stage.id
        bind_execution_context(stage_id=stage.id)
        logger.info("stage_started", stage_id=stage.id, service_type=stage.service_type.value)

        try:
            stage_input = resolve_stage_input(stage, context)
        except StageInputUnresolvedError as exc:
            result = StageExecutionResult(success=False, error=exc)
        else:
            result = await self._stage_executor.execute_stage(stage, stage_input, config, token)

        if result.success:
            context.record_success(stage, result)
            logger.info(
                "stage_completed",
                stage_id=stage.id,
                service_used=result.service_used,
                attempts=result.attempts,
                duration_ms=round(result.duration_ms, 2),
            )
            return

        context.record_failure(stage, result.error)
        if not stage.required:
            logger.warning("optional_stage_skipped", stage_id=stage.id, error=result.error_message)
            return

        logger.error("required_stage_failed", stage_id=stage.id, error=result.error_message)
        context.finish()
        raise RequiredStageFailedError(
            stage.id,
            stage.name,
            result.error_message,
            context=context.snapshot(),
            original_error=result.error,
        )

    async def _run_concurrent(
        self,
        config: PipelineConfiguration,
        context: PipelineContext,
        token: CancellationToken | None,
    ) -> None:
        settled = {stage.id: asyncio.Event() for stage in config.stages}
        position = {stage.id: index for index, stage in enumerate(config.stages)}

        async def run(index: int, stage: PipelineStage) -> None:
            source = stage.source_stage
            # Only earlier stages are waited on; later references resolve to the default.
            if source in position and position[source] < index:
                await settled[source].wait()
            try:
                if token is not None:
                    token.raise_if_cancelled(stage.id)
                await self._run_stage(stage, config, context, token)
            finally:
                settled[stage.id].set()

        tasks = [
            asyncio.create_task(run(index, stage), name=f"stage-{stage.id}")
            for index, stage in enumerate(config.stages)
        ]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
