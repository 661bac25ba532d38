"""
ORM tables for configurations, the service registry and executions.

Nested structures (stages, routing rules, metrics) are stored as JSON
documents in their camelCase wire shape.
"""

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text

from visualflow.db.database import Base


class PipelineConfigurationRecord(Base):
    """Declarative pipeline definition."""

    __tablename__ = "pipeline_configurations"

    id = Column(String(36), primary_key=True)
    name = Column(String(200), nullable=False)
    description = Column(Text)
    is_default = Column(Boolean, nullable=False, default=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    owning_user_id = Column(String(100), index=True)
    stages = Column(JSON, nullable=False, default=list)
    routing_rules = Column(JSON, nullable=False, default=dict)
    fallback_config = Column(JSON, nullable=False, default=dict)
    performance_metrics = Column(JSON)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class ServiceRegistryRecord(Base):
    """Backend service metadata and last known health."""

    __tablename__ = "service_registry"

    id = Column(String(36), primary_key=True)
    provider_id = Column(String(100), nullable=False, index=True)
    service_name = Column(String(200), nullable=False)
    service_type = Column(String(50), nullable=False, index=True)
    api_version = Column(String(50))
    capabilities = Column(JSON, nullable=False, default=list)
    endpoint = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)
    health_status = Column(String(20), nullable=False, default="unknown")
    last_health_check = Column(DateTime(timezone=True))
    performance_metrics = Column(JSON)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_service_type_active", "service_type", "is_active"),
    )


class PipelineExecutionRecord(Base):
    """One run of a pipeline. ``pipeline_id`` is kept after the configuration is deleted."""

    __tablename__ = "pipeline_executions"

    id = Column(String(36), primary_key=True)
    pipeline_id = Column(String(36), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    input_data = Column(JSON)
    output_data = Column(JSON)
    error = Column(JSON)
    execution_metrics = Column(JSON, nullable=False, default=dict)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        Index("idx_pipeline_started", "pipeline_id", "started_at"),
    )
