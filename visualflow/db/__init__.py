"""SQLAlchemy persistence for the orchestration engine."""

from visualflow.db.database import Base, Database
from visualflow.db.storage import SQLAlchemyPipelineStorage

__all__ = ["Base", "Database", "SQLAlchemyPipelineStorage"]
