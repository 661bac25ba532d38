"""
Pipeline orchestration engine: data model, routing, stage and pipeline
execution, and the execution lifecycle.
"""
