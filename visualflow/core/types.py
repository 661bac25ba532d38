"""
Canonical Type Definitions
===========================

Single source of truth for the enums shared across the orchestration engine.

This module defines:
- ServiceType: capability a registry entry provides and a stage consumes
- FallbackType: per-stage fallback strategy
- ExecutionStatus: lifecycle of a persisted pipeline execution
- HealthStatus: last known health of a registry entry
"""

from enum import StrEnum

__all__ = [
    "ExecutionStatus",
    "FallbackType",
    "HealthStatus",
    "ServiceType",
]

class ServiceType(StrEnum):
    """Service types used for stage routing and registry matching."""

    TEXT_GENERATION = "text_generation"
    IMAGE_GENERATION = "image_generation"
    VIDEO_GENERATION = "video_generation"
    EMBEDDINGS = "embeddings"
    AUDIO_GENERATION = "audio_generation"
    AUDIO_TRANSCRIPTION = "audio_transcription"
    LANGUAGE_UNDERSTANDING = "language_understanding"
    SEARCH = "search"

class FallbackType(StrEnum):
    """How a stage behaves once its first candidate service fails."""

    ALTERNATIVE_SERVICE = "alternative-service"
    SIMPLIFIED_PROMPT = "simplified-prompt"
    CACHE = "cache"
    LOCAL_MODEL = "local-model"
    NONE = "none"

class ExecutionStatus(StrEnum):
    """Pipeline execution states. COMPLETED and FAILED are terminal."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)

class HealthStatus(StrEnum):
    """Registry entry health, written by out-of-band health checks."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
