"""
Pipeline Storage - Unit Tests
=============================

Every test runs against both backends: the in-memory store and the
SQLAlchemy store on an in-memory aiosqlite database.
"""

import asyncio

import pytest

from visualflow.core.exceptions import (
    ConfigurationNotFoundError,
    ConfigurationValidationError,
    ExecutionNotFoundError,
    ServiceNotFoundError,
)
from visualflow.core.storage import InMemoryPipelineStorage
from visualflow.core.types import ExecutionStatus, HealthStatus, ServiceType
from visualflow.db import Database, SQLAlchemyPipelineStorage
from visualflow.orchestration.models import PerformanceMetrics

from .factories import config_create, service_create, stage

BACKENDS = ["memory", "sqlalchemy"]


async def _storage(backend):
    if backend == "memory":
        return InMemoryPipelineStorage()
    storage = SQLAlchemyPipelineStorage(Database("sqlite+aiosqlite:///:memory:", echo=False))
    await storage.init_schema()
    return storage


# ── Pipeline configurations ─────────────────────────────────────────────────


class TestConfigurations:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_create_and_get(self, backend):
        storage = await _storage(backend)
        created = await storage.create_pipeline_configuration(
            config_create(
                [stage("s1"), stage("s2", source="s1")],
                preferred={"text_generation": ["anthropic"]},
                global_max_attempts=3,
                owner="user-1",
            )
        )

        fetched = await storage.get_pipeline_configuration(created.id)

        assert fetched.id == created.id
        assert fetched.owning_user_id == "user-1"
        assert [s.id for s in fetched.stages] == ["s1", "s2"]
        assert fetched.stages[1].source_stage == "s1"
        assert fetched.routing_rules.preferred_providers == {"text_generation": ["anthropic"]}
        assert fetched.fallback_config.global_max_attempts == 3
        assert fetched.created_at == created.created_at
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_ids_are_unique(self, backend):
        storage = await _storage(backend)
        a = await storage.create_pipeline_configuration(config_create([stage("s1")]))
        b = await storage.create_pipeline_configuration(config_create([stage("s1")]))
        service = await storage.create_service(service_create("p"))
        assert len({a.id, b.id, service.id}) == 3
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_default_uniqueness(self, backend):
        storage = await _storage(backend)
        a = await storage.create_pipeline_configuration(
            config_create([stage("s1")], name="A", is_default=True)
        )
        b = await storage.create_pipeline_configuration(
            config_create([stage("s1")], name="B", is_default=True)
        )

        default = await storage.get_default_pipeline_configuration()
        a_now = await storage.get_pipeline_configuration(a.id)

        assert default.id == b.id
        assert a_now.is_default is False
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_update_to_default_clears_others(self, backend):
        storage = await _storage(backend)
        a = await storage.create_pipeline_configuration(
            config_create([stage("s1")], name="A", is_default=True)
        )
        b = await storage.create_pipeline_configuration(config_create([stage("s1")], name="B"))

        await storage.update_pipeline_configuration(b.id, {"is_default": True})

        assert (await storage.get_default_pipeline_configuration()).id == b.id
        assert (await storage.get_pipeline_configuration(a.id)).is_default is False
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_inactive_default_is_not_returned(self, backend):
        storage = await _storage(backend)
        await storage.create_pipeline_configuration(
            config_create([stage("s1")], is_default=True, is_active=False)
        )
        assert await storage.get_default_pipeline_configuration() is None
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_list_and_filters(self, backend):
        storage = await _storage(backend)
        await storage.create_pipeline_configuration(config_create([stage("s1")], owner="u1"))
        await storage.create_pipeline_configuration(
            config_create([stage("s1")], owner="u1", is_active=False)
        )
        await storage.create_pipeline_configuration(config_create([stage("s1")], owner="u2"))

        assert len(await storage.list_pipeline_configurations()) == 3
        assert len(await storage.list_pipeline_configurations(active_only=True)) == 2
        assert len(await storage.get_user_pipeline_configurations("u1")) == 2
        assert await storage.get_user_pipeline_configurations("nobody") == []
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_partial_update_keeps_identity(self, backend):
        storage = await _storage(backend)
        created = await storage.create_pipeline_configuration(config_create([stage("s1")]))
        await asyncio.sleep(0.001)

        updated = await storage.update_pipeline_configuration(
            created.id, {"name": "Renamed", "id": "hijack", "created_at": None}
        )

        assert updated.id == created.id
        assert updated.name == "Renamed"
        assert updated.created_at == created.created_at
        assert updated.updated_at > created.updated_at
        assert [s.id for s in updated.stages] == ["s1"]
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_update_missing_configuration(self, backend):
        storage = await _storage(backend)
        with pytest.raises(ConfigurationNotFoundError):
            await storage.update_pipeline_configuration("missing", {"name": "x"})
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_delete(self, backend):
        storage = await _storage(backend)
        created = await storage.create_pipeline_configuration(config_create([stage("s1")]))

        assert await storage.delete_pipeline_configuration(created.id) is True
        assert await storage.delete_pipeline_configuration(created.id) is False
        assert await storage.get_pipeline_configuration(created.id) is None
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_rejects_forward_reference_without_default(self, backend):
        storage = await _storage(backend)
        with pytest.raises(ConfigurationValidationError):
            await storage.create_pipeline_configuration(
                config_create([stage("s1", source="s2"), stage("s2")])
            )
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_declared_default_survives_round_trip(self, backend):
        storage = await _storage(backend)
        created = await storage.create_pipeline_configuration(
            config_create([stage("s1", source="missing-stage", default=None), stage("s2")])
        )

        fetched = await storage.get_pipeline_configuration(created.id)

        assert fetched.stages[0].input.has_default
        assert fetched.stages[0].input.default is None
        assert fetched.stages[1].input is None
        await storage.close()


# ── Service registry ────────────────────────────────────────────────────────


class TestServiceRegistry:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_by_type_active_priority_desc(self, backend):
        storage = await _storage(backend)
        await storage.create_service(service_create("low", priority=1))
        await storage.create_service(service_create("high", priority=9))
        await storage.create_service(service_create("off", priority=50, active=False))
        await storage.create_service(service_create("img", service_type="image_generation"))

        services = await storage.get_services_by_type(ServiceType.TEXT_GENERATION)

        assert [s.provider_id for s in services] == ["high", "low"]
        assert len(await storage.list_services()) == 4
        assert len(await storage.list_services(active_only=True)) == 3
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_by_provider(self, backend):
        storage = await _storage(backend)
        await storage.create_service(service_create("openai", "gpt"))
        await storage.create_service(service_create("openai", "dall-e", "image_generation"))
        await storage.create_service(service_create("anthropic"))

        names = {s.service_name for s in await storage.get_services_by_provider("openai")}
        assert names == {"gpt", "dall-e"}
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_update_and_health(self, backend):
        storage = await _storage(backend)
        service = await storage.create_service(service_create("p"))
        assert service.health_status == HealthStatus.UNKNOWN

        updated = await storage.update_service(service.id, {"priority": 7})
        healthy = await storage.update_service_health(
            service.id,
            HealthStatus.DEGRADED,
            PerformanceMetrics(avg_response_time=120.0, success_rate=0.5, total_calls=2),
        )

        assert updated.priority == 7
        assert healthy.health_status == HealthStatus.DEGRADED
        assert healthy.last_health_check is not None
        assert healthy.performance_metrics.total_calls == 2
        fetched = await storage.get_service(service.id)
        assert fetched.priority == 7
        assert fetched.performance_metrics.avg_response_time == 120.0
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_update_missing_service(self, backend):
        storage = await _storage(backend)
        with pytest.raises(ServiceNotFoundError):
            await storage.update_service_health("missing", HealthStatus.HEALTHY)
        await storage.close()


# ── Executions ──────────────────────────────────────────────────────────────


class TestExecutions:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_lifecycle_transitions(self, backend):
        storage = await _storage(backend)
        execution = await storage.create_pipeline_execution("p1", {"text": "in"}, {"priority": 1})
        assert execution.status == ExecutionStatus.PENDING
        assert execution.completed_at is None

        running = await storage.mark_execution_running(execution.id)
        assert running.status == ExecutionStatus.RUNNING

        done = await storage.complete_pipeline_execution(
            execution.id, {"s1": "out"}, {"totalDuration": 5}
        )
        assert done.status == ExecutionStatus.COMPLETED
        assert done.output_data == {"s1": "out"}
        assert done.execution_metrics == {"totalDuration": 5}
        assert done.completed_at is not None
        assert done.input_data == {"text": "in"}
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_terminal_write_happens_once(self, backend):
        storage = await _storage(backend)
        execution = await storage.create_pipeline_execution("p1", "in")
        failed = await storage.fail_pipeline_execution(
            execution.id, {"message": "boom", "error_code": "X"}
        )

        again = await storage.complete_pipeline_execution(execution.id, {"s1": "late"}, {})

        assert again.status == ExecutionStatus.FAILED
        assert again.output_data is None
        assert again.error == {"message": "boom", "error_code": "X"}
        assert again.completed_at == failed.completed_at
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_fail_keeps_metrics_unless_given(self, backend):
        storage = await _storage(backend)
        execution = await storage.create_pipeline_execution("p1", "in", {"priority": 2})

        failed = await storage.fail_pipeline_execution(execution.id, {"message": "x"})

        assert failed.execution_metrics == {"priority": 2}
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_list_newest_first(self, backend):
        storage = await _storage(backend)
        first = await storage.create_pipeline_execution("p1", "a")
        await asyncio.sleep(0.002)
        second = await storage.create_pipeline_execution("p1", "b")
        await storage.create_pipeline_execution("p2", "c")

        executions = await storage.list_pipeline_executions("p1")

        assert [e.id for e in executions] == [second.id, first.id]
        assert len(await storage.list_pipeline_executions()) == 3
        await storage.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("backend", BACKENDS)
    async def test_missing_execution(self, backend):
        storage = await _storage(backend)
        assert await storage.get_pipeline_execution("missing") is None
        with pytest.raises(ExecutionNotFoundError):
            await storage.mark_execution_running("missing")
        await storage.close()


class TestInMemoryIsolation:
    @pytest.mark.asyncio
    async def test_returned_models_are_copies(self):
        storage = InMemoryPipelineStorage()
        created = await storage.create_pipeline_configuration(config_create([stage("s1")]))

        created.stages.clear()
        created.name = "mutated"

        fetched = await storage.get_pipeline_configuration(created.id)
        assert fetched.name == "Test Pipeline"
        assert len(fetched.stages) == 1
