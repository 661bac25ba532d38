"""
Execution Context
=================

Working state of one pipeline run and the result shape returned by the
stage executor. A context is owned by exactly one execution and is never
shared; the persisted ``outputData`` / ``executionMetrics`` are derived
from it when the run settles.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from visualflow.core.exceptions import PipelineError, StageInputUnresolvedError
from visualflow.orchestration.models import PipelineStage, utcnow


@dataclass(slots=True)
class StageExecutionResult:
    """Outcome of one stage after all of its attempts."""

    success: bool
    output: Any = None
    error: PipelineError | None = None
    service_used: str | None = None
    duration_ms: float = 0.0
    attempts: int = 0
    provider: str | None = None
    model: str | None = None

    @property
    def error_message(self) -> str | None:
        return self.error.detail if self.error else None

    def metrics(self) -> dict[str, Any]:
        return {
            "duration": round(self.duration_ms, 2),
            "attempts": self.attempts,
            "provider": self.provider,
            "model": self.model,
            "serviceUsed": self.service_used,
        }


@dataclass
class PipelineContext:
    """Mutable per-execution state: outputs, errors and metrics by stage id."""

    pipeline_id: str
    execution_id: str
    input: Any
    output: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, dict[str, Any]] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    current_stage: str | None = None
    _started: float = field(default_factory=time.perf_counter, repr=False)

    def __post_init__(self) -> None:
        self.metrics.setdefault("stageResults", {})
        self.metrics.setdefault("servicesUsed", {})
        self.metrics.setdefault("startTime", utcnow().isoformat())

    def record_success(self, stage: PipelineStage, result: StageExecutionResult) -> None:
        self.output[stage.id] = result.output
        self.metrics["stageResults"][stage.id] = result.metrics()
        if result.service_used:
            used = self.metrics["servicesUsed"]
            used[result.service_used] = used.get(result.service_used, 0) + 1

    def record_failure(self, stage: PipelineStage, error: PipelineError) -> None:
        self.errors[stage.id] = {
            "message": error.detail,
            "error_code": error.error_code,
            "timestamp": error.timestamp,
        }

    def finish(self) -> dict[str, Any]:
        """Stamp end time and total duration; returns the metrics mapping."""
        self.metrics["totalDuration"] = round((time.perf_counter() - self._started) * 1000, 2)
        self.metrics["endTime"] = utcnow().isoformat()
        self.current_stage = None
        return self.metrics

    def snapshot(self) -> dict[str, Any]:
        """Copy of the partial state, kept for diagnostics when a run aborts."""
        return {
            "output": dict(self.output),
            "errors": {k: dict(v) for k, v in self.errors.items()},
            "metrics": {
                **self.metrics,
                "stageResults": dict(self.metrics["stageResults"]),
                "servicesUsed": dict(self.metrics["servicesUsed"]),
            },
        }


def resolve_stage_input(stage: PipelineStage, context: PipelineContext) -> Any:
    """
    Pick the input a stage runs with.

    - no ``input.from``: the pipeline's original input
    - ``from`` source present in ``context.output``: exactly that output
    - source absent but ``default`` declared: the default
    - otherwise StageInputUnresolvedError
    """
    source = stage.source_stage
    if source is None:
        return context.input
    if source in context.output:
        return context.output[source]
    if stage.input.has_default:
        return stage.input.default
    raise StageInputUnresolvedError(stage.id, source)
