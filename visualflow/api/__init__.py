"""HTTP surface (FastAPI) over the orchestration engine."""
