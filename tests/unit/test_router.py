"""
Stage Router - Unit Tests
=========================

Candidate ordering (preferred providers, priority), service-type and
active filtering, named-service restriction and unhealthy exclusion.
"""

import pytest

from visualflow.core.types import HealthStatus
from visualflow.orchestration.models import PipelineStage
from visualflow.orchestration.router import StageRouter, order_candidates

from .factories import config, service_create, stage, storage_with_services


def _providers(services):
    return [s.provider_id for s in services]


class TestOrderCandidates:
    async def _entries(self, *services):
        storage = await storage_with_services(*services)
        return await storage.list_services()

    @pytest.mark.asyncio
    async def test_priority_descending_without_preferences(self):
        entries = await self._entries(
            service_create("a", priority=1),
            service_create("b", priority=5),
            service_create("c", priority=3),
        )
        assert _providers(order_candidates(entries)) == ["b", "c", "a"]

    @pytest.mark.asyncio
    async def test_preferred_provider_beats_priority(self):
        entries = await self._entries(
            service_create("A", priority=1),
            service_create("B", priority=5),
        )
        assert _providers(order_candidates(entries, ["A"])) == ["A", "B"]

    @pytest.mark.asyncio
    async def test_preferred_list_order_then_remaining_by_priority(self):
        entries = await self._entries(
            service_create("x", priority=9),
            service_create("p2", priority=0),
            service_create("y", priority=4),
            service_create("p1", priority=0),
        )
        ordered = order_candidates(entries, ["p1", "p2"])
        assert _providers(ordered) == ["p1", "p2", "x", "y"]

    @pytest.mark.asyncio
    async def test_same_preferred_provider_keeps_relative_order(self):
        entries = await self._entries(
            service_create("p", "first", priority=2),
            service_create("p", "second", priority=1),
            service_create("q", priority=10),
        )
        ordered = order_candidates(entries, ["p"])
        assert [s.service_name for s in ordered] == ["first", "second", "q-model"]


class TestStageRouter:
    @pytest.mark.asyncio
    async def test_routing_preference_over_priority(self):
        storage = await storage_with_services(
            service_create("A", priority=1),
            service_create("B", priority=5),
        )
        cfg = config([stage("s1")], preferred={"text_generation": ["A"]})
        router = StageRouter(storage, exclude_unhealthy=False)

        selected = await router.select_services(cfg.stages[0], cfg)

        assert _providers(selected) == ["A", "B"]

    @pytest.mark.asyncio
    async def test_preferred_b_orders_before_a(self):
        storage = await storage_with_services(
            service_create("A", priority=1),
            service_create("B", priority=5),
        )
        cfg = config([stage("s1")], preferred={"text_generation": ["B"]})
        selected = await StageRouter(storage).select_services(cfg.stages[0], cfg)
        assert _providers(selected) == ["B", "A"]

    @pytest.mark.asyncio
    async def test_only_active_services_of_the_stage_type(self):
        storage = await storage_with_services(
            service_create("text", service_type="text_generation"),
            service_create("image", service_type="image_generation"),
            service_create("off", service_type="text_generation", active=False),
        )
        cfg = config([stage("s1")])
        selected = await StageRouter(storage).select_services(cfg.stages[0], cfg)
        assert _providers(selected) == ["text"]

    @pytest.mark.asyncio
    async def test_empty_registry_returns_empty_list(self):
        storage = await storage_with_services()
        cfg = config([stage("s1")])
        assert await StageRouter(storage).select_services(cfg.stages[0], cfg) == []

    @pytest.mark.asyncio
    async def test_preferences_for_other_type_are_ignored(self):
        storage = await storage_with_services(
            service_create("A", priority=1),
            service_create("B", priority=5),
        )
        cfg = config([stage("s1")], preferred={"image_generation": ["A"]})
        selected = await StageRouter(storage).select_services(cfg.stages[0], cfg)
        assert _providers(selected) == ["B", "A"]

    @pytest.mark.asyncio
    async def test_named_alternative_services_restrict_candidates(self):
        storage = await storage_with_services(
            service_create("a", "keep-me", priority=1),
            service_create("b", "drop-me", priority=9),
        )
        cfg = config(
            [stage("s1", fallback={"type": "alternative-service", "services": ["keep-me"]})]
        )
        selected = await StageRouter(storage).select_services(cfg.stages[0], cfg)
        assert [s.service_name for s in selected] == ["keep-me"]

    @pytest.mark.asyncio
    async def test_exclude_unhealthy(self):
        storage = await storage_with_services(
            service_create("sick", priority=9),
            service_create("fine", priority=1),
        )
        sick = (await storage.get_services_by_provider("sick"))[0]
        await storage.update_service_health(sick.id, HealthStatus.UNHEALTHY)
        cfg = config([stage("s1")])

        including = await StageRouter(storage, exclude_unhealthy=False).select_services(
            cfg.stages[0], cfg
        )
        excluding = await StageRouter(storage, exclude_unhealthy=True).select_services(
            cfg.stages[0], cfg
        )

        assert _providers(including) == ["sick", "fine"]
        assert _providers(excluding) == ["fine"]

    @pytest.mark.asyncio
    async def test_routing_does_not_mutate_registry(self):
        storage = await storage_with_services(service_create("a"))
        before = [s.to_document() for s in await storage.list_services()]
        cfg = config([stage("s1")])
        await StageRouter(storage).select_services(PipelineStage.model_validate(stage("s1")), cfg)
        after = [s.to_document() for s in await storage.list_services()]
        assert before == after
