"""Custom exception classes for VisualFlow.

Includes:
- Base exception carrying an HTTP status and machine-readable error code
- Caller-facing lookup/validation errors (raised before any execution starts)
- Stage-level pipeline errors with stage/context metadata
- Backoff delay computation for same-service retries
"""

from datetime import UTC, datetime
from typing import Any


class VisualFlowException(Exception):
    """Base exception for all VisualFlow errors."""

    def __init__(
        self, detail: str, status_code: int = 500, error_code: str = "INTERNAL_ERROR"
    ):
        self.detail = detail
        self.status_code = status_code
        self.error_code = error_code
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(detail)

    def to_dict(self):
        """Convert exception to dictionary for API response."""
        return {
            "error": self.error_code,
            "detail": self.detail,
            "status_code": self.status_code,
            "timestamp": self.timestamp,
        }


class ConfigurationNotFoundError(VisualFlowException):
    """Raised when no pipeline configuration can be resolved."""

    def __init__(self, pipeline_id: str | None = None):
        super().__init__(
            detail="Pipeline configuration not found",
            status_code=404,
            error_code="CONFIGURATION_NOT_FOUND",
        )
        self.pipeline_id = pipeline_id


class ExecutionNotFoundError(VisualFlowException):
    """Raised when an execution id is unknown."""

    def __init__(self, execution_id: str):
        super().__init__(
            detail="Pipeline execution not found",
            status_code=404,
            error_code="EXECUTION_NOT_FOUND",
        )
        self.execution_id = execution_id


class ServiceNotFoundError(VisualFlowException):
    """Raised when a service registry entry is unknown."""

    def __init__(self, service_id: str):
        super().__init__(
            detail=f"Service registry entry {service_id} not found",
            status_code=404,
            error_code="SERVICE_NOT_FOUND",
        )
        self.service_id = service_id


class ConfigurationValidationError(VisualFlowException):
    """Raised when a pipeline configuration's stage graph is invalid."""

    def __init__(self, detail: str):
        super().__init__(detail=detail, status_code=422, error_code="INVALID_CONFIGURATION")


class InvalidRequestError(VisualFlowException):
    """Raised for a malformed API request (missing input, missing status)."""

    def __init__(self, detail: str):
        super().__init__(detail=detail, status_code=400, error_code="INVALID_REQUEST")


# =============================================================================
# PIPELINE EXCEPTIONS
# =============================================================================


class PipelineError(VisualFlowException):
    """Base exception for stage-level errors with stage metadata."""

    def __init__(
        self,
        detail: str,
        stage: str = "unknown",
        original_error: Exception | None = None,
        context: dict[str, Any] | None = None,
        retryable: bool = True,
        error_code: str | None = None,
    ):
        super().__init__(
            detail=detail,
            status_code=500,
            error_code=error_code or "PIPELINE_STAGE_ERROR",
        )
        self.stage = stage
        self.original_error = original_error
        self.context = context or {}
        self.retryable = retryable

    def to_dict(self):
        base = super().to_dict()
        base.update(
            {
                "stage": self.stage,
                "retryable": self.retryable,
            }
        )
        return base


class StageInputUnresolvedError(PipelineError):
    """A stage's ``input.from`` source produced no output and no default exists."""

    def __init__(self, stage_id: str, source_stage_id: str):
        super().__init__(
            detail=f"Stage input source not found: {source_stage_id}",
            stage=stage_id,
            context={"from": source_stage_id},
            retryable=False,
            error_code="STAGE_INPUT_UNRESOLVED",
        )


class NoServicesAvailableError(PipelineError):
    """The router returned no candidates for a stage's service type."""

    def __init__(self, stage_id: str, service_type: str):
        super().__init__(
            detail=f"No services available for stage type: {service_type}",
            stage=stage_id,
            context={"service_type": service_type},
            retryable=False,
            error_code="NO_SERVICES_AVAILABLE",
        )


class AllServicesFailedError(PipelineError):
    """Every attempted service failed without raising anything to report."""

    def __init__(self, stage_id: str, attempts: int = 0):
        super().__init__(
            detail=f"All services failed for stage: {stage_id}",
            stage=stage_id,
            context={"attempts": attempts},
            error_code="ALL_SERVICES_FAILED",
        )


class ServiceTimeoutError(PipelineError):
    """A single service call exceeded its deadline."""

    def __init__(self, stage_id: str, service: str, timeout_ms: float):
        super().__init__(
            detail=f"Service {service} timed out after {timeout_ms:.0f}ms",
            stage=stage_id,
            context={"service": service, "timeout_ms": timeout_ms},
            error_code="SERVICE_TIMEOUT",
        )


class RequiredStageFailedError(PipelineError):
    """A required stage failed; fatal to the whole execution.

    ``detail`` is the underlying stage error so callers see the root cause.
    ``context`` holds the partial output, metrics and errors accumulated so far.
    """

    def __init__(
        self,
        stage_id: str,
        stage_name: str,
        detail: str,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ):
        super().__init__(
            detail=detail,
            stage=stage_id,
            original_error=original_error,
            context=context,
            retryable=False,
            error_code="REQUIRED_STAGE_FAILED",
        )
        self.stage_name = stage_name


class ExecutionCancelledError(PipelineError):
    """The execution was cancelled or ran past its deadline."""

    def __init__(self, reason: str = "Execution cancelled", stage: str = "unknown"):
        super().__init__(
            detail=reason,
            stage=stage,
            retryable=False,
            error_code="EXECUTION_CANCELLED",
        )


# =============================================================================
# RETRY DELAY
# =============================================================================


def compute_retry_delay(
    initial_delay_ms: float,
    backoff_multiplier: float,
    max_delay_ms: float,
    attempt: int,
) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based) of the same service."""
    delay_ms = min(
        initial_delay_ms * (backoff_multiplier ** (attempt - 1)),
        max_delay_ms,
    )
    return max(delay_ms, 0.0) / 1000.0
