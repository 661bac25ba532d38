"""
Pipeline Executor - Unit Tests
==============================

Stage ordering, input wiring, optional/required failure handling,
cancellation between stages and the opt-in concurrent scheduler.
"""

import asyncio

import pytest

from visualflow.core.exceptions import (
    ExecutionCancelledError,
    RequiredStageFailedError,
    StageInputUnresolvedError,
)
from visualflow.infra.telemetry import MetricsCollector
from visualflow.orchestration.context import PipelineContext, resolve_stage_input
from visualflow.orchestration.executor import StageExecutor
from visualflow.orchestration.models import PipelineStage
from visualflow.orchestration.pipeline import PipelineExecutor
from visualflow.orchestration.router import StageRouter
from visualflow.utils.cancellation import CancellationToken

from .factories import ScriptedInvoker, config, service_create, stage, storage_with_services


async def _pipeline(invoker, *services, concurrent=False):
    storage = await storage_with_services(*services)
    stage_executor = StageExecutor(
        StageRouter(storage), invoker, default_timeout_ms=0, metrics=MetricsCollector()
    )
    return PipelineExecutor(stage_executor, concurrent_stages=concurrent)


class StageInvoker:
    """Fails or echoes per stage id, records the start/end of every call."""

    def __init__(self, failing=(), delay_s=0.0):
        self.failing = set(failing)
        self.delay_s = delay_s
        self.events: list[tuple[str, str]] = []
        self.inputs: dict[str, object] = {}

    async def __call__(self, stage_, stage_input, service):
        self.events.append(("start", stage_.id))
        self.inputs[stage_.id] = stage_input
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        self.events.append(("end", stage_.id))
        if stage_.id in self.failing:
            raise RuntimeError(f"{stage_.id} failed")
        return f"out:{stage_.id}"


# ── Input resolution ────────────────────────────────────────────────────────


class TestResolveStageInput:
    def setup_method(self):
        self.context = PipelineContext(pipeline_id="p", execution_id="e", input="original")

    def test_no_source_uses_pipeline_input(self):
        s1 = PipelineStage.model_validate(stage("s1"))
        assert resolve_stage_input(s1, self.context) == "original"

    def test_source_output_is_passed_exactly(self):
        payload = {"nested": [1, 2, 3]}
        self.context.output["s1"] = payload
        s2 = PipelineStage.model_validate(stage("s2", source="s1"))
        assert resolve_stage_input(s2, self.context) is payload

    def test_default_when_source_missing(self):
        s2 = PipelineStage.model_validate(stage("s2", source="missing-stage", default={"d": 1}))
        assert resolve_stage_input(s2, self.context) == {"d": 1}

    def test_explicit_null_default_is_a_default(self):
        s2 = PipelineStage.model_validate(stage("s2", source="missing-stage", default=None))
        assert resolve_stage_input(s2, self.context) is None

    def test_missing_without_default_raises(self):
        s2 = PipelineStage.model_validate(stage("s2", source="missing-stage"))
        with pytest.raises(StageInputUnresolvedError) as exc_info:
            resolve_stage_input(s2, self.context)
        assert exc_info.value.error_code == "STAGE_INPUT_UNRESOLVED"
        assert "missing-stage" in exc_info.value.detail


# ── Sequential execution ────────────────────────────────────────────────────


class TestSequentialPipeline:
    @pytest.mark.asyncio
    async def test_stages_run_strictly_in_order(self):
        invoker = StageInvoker(delay_s=0.01)
        executor = await _pipeline(invoker, service_create("a"))
        cfg = config([stage("s1"), stage("s2"), stage("s3")])

        context = await executor.execute(cfg, "exec-1", "in")

        assert invoker.events == [
            ("start", "s1"), ("end", "s1"),
            ("start", "s2"), ("end", "s2"),
            ("start", "s3"), ("end", "s3"),
        ]
        assert list(context.output) == ["s1", "s2", "s3"]

    @pytest.mark.asyncio
    async def test_input_wiring(self):
        invoker = StageInvoker()
        executor = await _pipeline(invoker, service_create("a"))
        cfg = config([stage("s1"), stage("s2", source="s1")])

        await executor.execute(cfg, "exec-1", "in")

        assert invoker.inputs == {"s1": "in", "s2": "out:s1"}

    @pytest.mark.asyncio
    async def test_default_fallback_for_missing_stage(self):
        invoker = StageInvoker()
        executor = await _pipeline(invoker, service_create("a"))
        cfg = config([stage("s1"), stage("s2", source="missing-stage", default="D")])

        await executor.execute(cfg, "exec-1", "in")

        assert invoker.inputs["s2"] == "D"

    @pytest.mark.asyncio
    async def test_metrics_and_services_used(self):
        executor = await _pipeline(StageInvoker(), service_create("a", "model-a"))
        cfg = config([stage("s1"), stage("s2")])

        context = await executor.execute(cfg, "exec-1", "in")

        assert context.metrics["servicesUsed"] == {"a/model-a": 2}
        assert set(context.metrics["stageResults"]) == {"s1", "s2"}
        assert context.metrics["stageResults"]["s1"]["provider"] == "a"
        assert context.metrics["stageResults"]["s1"]["attempts"] == 1
        assert "totalDuration" in context.metrics
        assert "endTime" in context.metrics
        assert context.errors == {}

    @pytest.mark.asyncio
    async def test_optional_stage_failure_continues(self):
        invoker = StageInvoker(failing={"s2"})
        executor = await _pipeline(invoker, service_create("a"))
        cfg = config([stage("s1"), stage("s2", required=False), stage("s3")])

        context = await executor.execute(cfg, "exec-1", "in")

        assert "s2" not in context.output
        assert context.errors["s2"]["message"] == "s2 failed"
        assert context.errors["s2"]["error_code"] == "SERVICE_ERROR"
        assert "timestamp" in context.errors["s2"]
        assert "s3" in context.output

    @pytest.mark.asyncio
    async def test_registry_error_on_optional_stage_is_recorded(self):
        storage = await storage_with_services(service_create("a"))

        async def unavailable(service_type):
            raise ConnectionError("registry unavailable")

        storage.get_services_by_type = unavailable
        stage_executor = StageExecutor(
            StageRouter(storage), StageInvoker(), default_timeout_ms=0, metrics=MetricsCollector()
        )
        executor = PipelineExecutor(stage_executor)
        cfg = config([stage("opt", required=False)])

        context = await executor.execute(cfg, "exec-1", "in")

        assert context.output == {}
        assert context.errors["opt"]["error_code"] == "REGISTRY_ERROR"
        assert "registry unavailable" in context.errors["opt"]["message"]

    @pytest.mark.asyncio
    async def test_optional_stage_with_failed_source_is_unresolved(self):
        invoker = StageInvoker(failing={"s1"})
        executor = await _pipeline(invoker, service_create("a"))
        cfg = config([stage("s1", required=False), stage("s2", source="s1", required=False)])

        context = await executor.execute(cfg, "exec-1", "in")

        assert context.errors["s2"]["error_code"] == "STAGE_INPUT_UNRESOLVED"
        assert [s for _, s in invoker.events] == ["s1", "s1"]

    @pytest.mark.asyncio
    async def test_required_stage_failure_aborts(self):
        invoker = StageInvoker(failing={"s2"})
        executor = await _pipeline(invoker, service_create("a"))
        cfg = config([stage("s1"), stage("s2"), stage("s3")])

        with pytest.raises(RequiredStageFailedError) as exc_info:
            await executor.execute(cfg, "exec-1", "in")

        error = exc_info.value
        assert error.detail == "s2 failed"
        assert error.stage == "s2"
        assert error.stage_name == "S2"
        assert error.context["output"] == {"s1": "out:s1"}
        assert "s2" in error.context["errors"]
        assert ("start", "s3") not in invoker.events

    @pytest.mark.asyncio
    async def test_required_stage_without_services(self):
        executor = await _pipeline(StageInvoker())
        cfg = config([stage("s1")])

        with pytest.raises(RequiredStageFailedError) as exc_info:
            await executor.execute(cfg, "exec-1", "in")

        assert exc_info.value.detail == "No services available for stage type: text_generation"

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_before_next_stage(self):
        token = CancellationToken()
        invoker = StageInvoker()

        async def cancelling(stage_, stage_input, service):
            result = await invoker(stage_, stage_input, service)
            token.cancel("user asked")
            return result

        executor = await _pipeline(cancelling, service_create("a"))
        cfg = config([stage("s1"), stage("s2")])

        with pytest.raises(ExecutionCancelledError) as exc_info:
            await executor.execute(cfg, "exec-1", "in", token)

        assert exc_info.value.detail == "user asked"
        assert exc_info.value.stage == "s2"
        assert exc_info.value.context["output"] == {"s1": "out:s1"}
        assert ("start", "s2") not in invoker.events


# ── Concurrent execution ────────────────────────────────────────────────────


class TestConcurrentPipeline:
    @pytest.mark.asyncio
    async def test_independent_stages_overlap(self):
        invoker = StageInvoker(delay_s=0.05)
        executor = await _pipeline(invoker, service_create("a"), concurrent=True)
        cfg = config([stage("s1"), stage("s2")])

        context = await executor.execute(cfg, "exec-1", "in")

        assert invoker.events[:2] == [("start", "s1"), ("start", "s2")]
        assert set(context.output) == {"s1", "s2"}

    @pytest.mark.asyncio
    async def test_dependent_stage_waits_for_source(self):
        invoker = StageInvoker(delay_s=0.02)
        executor = await _pipeline(invoker, service_create("a"), concurrent=True)
        cfg = config([stage("s1"), stage("s2", source="s1")])

        await executor.execute(cfg, "exec-1", "in")

        assert invoker.events.index(("end", "s1")) < invoker.events.index(("start", "s2"))
        assert invoker.inputs["s2"] == "out:s1"

    @pytest.mark.asyncio
    async def test_required_failure_cancels_others(self):
        async def invoker(stage_, stage_input, service):
            if stage_.id == "fails":
                raise RuntimeError("nope")
            await asyncio.sleep(5)
            return "late"

        executor = await _pipeline(invoker, service_create("a"), concurrent=True)
        cfg = config([stage("fails"), stage("slow", required=False)])

        with pytest.raises(RequiredStageFailedError) as exc_info:
            await asyncio.wait_for(executor.execute(cfg, "exec-1", "in"), timeout=2)

        assert exc_info.value.stage == "fails"
