"""
Service invocation contract.

The orchestration core calls a backend through one async callable:
``invoker(stage, stage_input, service) -> output``. It resolves with an
opaque payload or raises; nothing about the payload shape is assumed.

``SimulatedServiceInvoker`` returns placeholder payloads per service type so
the engine runs end to end without provider adapters.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

from visualflow.core.types import ServiceType
from visualflow.orchestration.models import PipelineStage, ServiceRegistryEntry

ServiceInvoker = Callable[[PipelineStage, Any, ServiceRegistryEntry], Awaitable[Any]]


def summarize_input(stage_input: Any, limit: int = 50) -> str:
    text = stage_input if isinstance(stage_input, str) else json.dumps(stage_input, default=str)
    return text[:limit] + "..."


class SimulatedServiceInvoker:
    """Placeholder backend: sleeps briefly, then returns a canned payload."""

    def __init__(self, delay_s: float = 0.1):
        self.delay_s = delay_s

    async def __call__(
        self, stage: PipelineStage, stage_input: Any, service: ServiceRegistryEntry
    ) -> dict[str, Any]:
        if self.delay_s:
            await asyncio.sleep(self.delay_s)

        if stage.service_type == ServiceType.TEXT_GENERATION:
            return {
                "generated_text": f"Simulated text generation for stage: {stage.name}",
                "input_summary": summarize_input(stage_input),
            }
        if stage.service_type == ServiceType.IMAGE_GENERATION:
            return {
                "image_urls": [
                    f"https://placeholder.com/generated-image-1-{stage.id}.png",
                    f"https://placeholder.com/generated-image-2-{stage.id}.png",
                ],
                "prompts": ["Simulated image prompt 1", "Simulated image prompt 2"],
            }
        if stage.service_type == ServiceType.VIDEO_GENERATION:
            return {
                "video_urls": [f"https://placeholder.com/generated-video-{stage.id}.mp4"],
                "prompt": "Simulated video prompt",
            }
        return {"result": "Simulated generic output"}
