"""
VisualFlow - Pipeline Orchestration Engine
===========================================

Runs configurable multi-stage "thought-to-visual" pipelines, routing each
stage to one of several interchangeable AI service backends with per-stage
fallback, retry budgets, deadlines and execution metrics.

Usage:
    from visualflow import ExecutionLifecycleManager, InMemoryPipelineStorage

    manager = ExecutionLifecycleManager(InMemoryPipelineStorage())
    await manager.initialize_pipeline_system()
    run = await manager.run_pipeline(None, "a thought", force_sync=True)
"""

from visualflow.core.storage import InMemoryPipelineStorage, PipelineStorage
from visualflow.orchestration.lifecycle import ExecutionLifecycleManager

__version__ = "1.0.0"

__all__ = [
    "ExecutionLifecycleManager",
    "InMemoryPipelineStorage",
    "PipelineStorage",
    "__version__",
]
