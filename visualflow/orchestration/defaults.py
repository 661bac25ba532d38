"""Built-in "thought-to-visual" pipeline installed when no default exists."""

from __future__ import annotations

from visualflow.core.config import settings
from visualflow.core.types import ServiceType
from visualflow.orchestration.models import PipelineConfigurationCreate

DEFAULT_PIPELINE_NAME = "Default Pipeline"
DEFAULT_PIPELINE_DESCRIPTION = "Default pipeline configuration for thought-to-visual processing"

TEXT = ServiceType.TEXT_GENERATION.value
IMAGE = ServiceType.IMAGE_GENERATION.value
VIDEO = ServiceType.VIDEO_GENERATION.value


def _stage(stage_id, name, description, service_type, source=None, required=True, fallback=None):
    stage = {
        "id": stage_id,
        "name": name,
        "description": description,
        "serviceType": service_type,
        "required": required,
        "input": {"type": "json", "from": source} if source else {"type": "string"},
        "output": {"type": "json"},
    }
    if fallback:
        stage["fallbackStrategy"] = fallback
    return stage


DEFAULT_STAGES = [
    _stage(
        "initial-analysis", "Initial Analysis",
        "Analyze input content for core concepts and themes", TEXT,
        fallback={"type": "alternative-service", "maxAttempts": 3},
    ),
    _stage(
        "pattern-recognition", "Pattern Recognition",
        "Identify patterns and structures in the content", TEXT,
        source="initial-analysis",
        fallback={"type": "alternative-service", "maxAttempts": 2},
    ),
    _stage(
        "visual-concept-generation", "Visual Concept Generation",
        "Generate visual concepts from patterns", TEXT,
        source="pattern-recognition",
    ),
    _stage(
        "storyboard-creation", "Storyboard Creation",
        "Create storyboard from visual concepts", TEXT,
        source="visual-concept-generation",
    ),
    _stage(
        "scene-visualization", "Scene Visualization",
        "Generate visual representations of each scene", IMAGE,
        source="storyboard-creation",
        fallback={"type": "alternative-service", "maxAttempts": 3},
    ),
    _stage(
        "scene-transition", "Scene Transition Design",
        "Design transitions between scenes", TEXT,
        source="storyboard-creation", required=False,
    ),
    _stage(
        "video-generation", "Video Generation",
        "Generate videos for scenes", VIDEO,
        source="scene-visualization", required=False,
        fallback={"type": "none"},
    ),
]

DEFAULT_ROUTING_RULES = {
    "preferredProviders": {
        TEXT: ["anthropic", "openai", "mistral", "perplexity"],
        IMAGE: ["openai", "deepinfra"],
        VIDEO: ["runway", "deepinfra"],
    },
    "selectionCriteria": {
        TEXT: {"qualityFactor": 0.7, "speedFactor": 0.2, "costFactor": 0.1},
        IMAGE: {"qualityFactor": 0.8, "speedFactor": 0.1, "costFactor": 0.1},
        VIDEO: {"qualityFactor": 0.9, "speedFactor": 0.05, "costFactor": 0.05},
    },
}

DEFAULT_FALLBACK_CONFIG = {
    "globalMaxAttempts": 3,
    "fallbackProviders": {
        TEXT: ["together", "local"],
        IMAGE: ["stability", "local"],
        VIDEO: ["deepinfra"],
    },
}


def build_default_configuration(owner_id: str | None = None) -> PipelineConfigurationCreate:
    return PipelineConfigurationCreate.model_validate(
        {
            "name": DEFAULT_PIPELINE_NAME,
            "description": DEFAULT_PIPELINE_DESCRIPTION,
            "isDefault": True,
            "isActive": True,
            "owningUserId": owner_id or settings.SYSTEM_USER_ID,
            "stages": DEFAULT_STAGES,
            "routingRules": DEFAULT_ROUTING_RULES,
            "fallbackConfig": DEFAULT_FALLBACK_CONFIG,
        }
    )
