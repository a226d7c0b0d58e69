"""Tests for provider selection and the health state machine."""

import pytest

from socratic_gateway.core.llm.models import ProviderStatus
from socratic_gateway.core.llm.registry import ProviderRegistry


@pytest.fixture
def registry(make_provider, logger):
    return ProviderRegistry(
        [
            make_provider("b-secondary", priority=2),
            make_provider("a-primary", priority=1),
            make_provider("c-tertiary", priority=3),
        ],
        failure_threshold=3,
        logger=logger,
    )


class TestSelection:
    def test_primary_is_lowest_priority_value(self, registry):
        assert registry.select_primary().id == "a-primary"

    def test_ties_are_broken_by_id(self, make_provider, logger):
        registry = ProviderRegistry(
            [make_provider("zeta", priority=1), make_provider("alpha", priority=1)], logger=logger
        )

        assert registry.select_primary().id == "alpha"
        assert registry.select_fallback("alpha").id == "zeta"

    def test_fallback_excludes_given_ids(self, registry):
        assert registry.select_fallback("a-primary").id == "b-secondary"
        assert registry.select_fallback(["a-primary", "b-secondary"]).id == "c-tertiary"
        assert registry.select_fallback(["a-primary", "b-secondary", "c-tertiary"]) is None

    def test_down_and_disabled_providers_are_skipped(self, make_provider, logger):
        registry = ProviderRegistry(
            [
                make_provider("one", priority=1, status=ProviderStatus.DOWN),
                make_provider("two", priority=2, enabled=False),
                make_provider("three", priority=3, status=ProviderStatus.DEGRADED),
            ],
            logger=logger,
        )

        assert registry.select_primary().id == "three"
        assert registry.select_fallback("three") is None

    def test_empty_registry(self, logger):
        registry = ProviderRegistry(logger=logger)

        assert registry.select_primary() is None
        assert registry.select_fallback("anything") is None
        assert len(registry) == 0

    def test_duplicate_ids_are_rejected(self, make_provider):
        with pytest.raises(ValueError, match="Duplicate provider id"):
            ProviderRegistry([make_provider("x"), make_provider("x")])

    def test_list_providers_is_in_selection_order(self, registry):
        assert [p.id for p in registry.list_providers()] == [
            "a-primary",
            "b-secondary",
            "c-tertiary",
        ]


class TestStateMachine:
    def test_failures_degrade_then_take_down(self, registry):
        assert registry.mark_failed("a-primary") is ProviderStatus.DEGRADED
        assert registry.mark_failed("a-primary") is ProviderStatus.DEGRADED
        assert registry.mark_failed("a-primary") is ProviderStatus.DOWN

        provider = registry.get_provider("a-primary")
        assert provider.consecutive_failures == 3
        assert provider.needs_probe is True
        assert registry.select_primary().id == "b-secondary"

    def test_success_promotes_degraded(self, registry):
        registry.mark_failed("a-primary")

        assert registry.mark_succeeded("a-primary") is ProviderStatus.HEALTHY
        assert registry.get_provider("a-primary").consecutive_failures == 0

    def test_success_does_not_revive_down(self, registry):
        for _ in range(3):
            registry.mark_failed("a-primary")

        assert registry.mark_succeeded("a-primary") is ProviderStatus.DOWN
        assert registry.select_primary().id == "b-secondary"

    def test_success_resets_counter_so_threshold_restarts(self, registry):
        registry.mark_failed("a-primary")
        registry.mark_failed("a-primary")
        registry.mark_succeeded("a-primary")
        registry.mark_failed("a-primary")
        registry.mark_failed("a-primary")

        assert registry.get_provider("a-primary").status is ProviderStatus.DEGRADED

    def test_unknown_ids_are_ignored(self, registry):
        assert registry.mark_failed("ghost") is None
        assert registry.mark_succeeded("ghost") is None

    def test_going_down_is_logged_as_error(self, registry, logger):
        for _ in range(3):
            registry.mark_failed("a-primary")

        assert any("down" in msg for msg in logger.messages("error"))


class TestHealthCheck:
    async def test_successful_probe_revives_down_provider(self, registry):
        for _ in range(3):
            registry.mark_failed("a-primary")

        async def probe(provider):
            return True

        statuses = await registry.perform_health_check(probe)

        assert statuses["a-primary"] is ProviderStatus.HEALTHY
        provider = registry.get_provider("a-primary")
        assert provider.needs_probe is False
        assert provider.last_health_check is not None
        assert registry.select_primary().id == "a-primary"

    async def test_failed_or_raising_probe_counts_as_failure(self, registry):
        async def probe(provider):
            if provider.id == "b-secondary":
                raise RuntimeError("boom")
            return provider.id != "a-primary"

        statuses = await registry.perform_health_check(probe)

        assert statuses == {
            "a-primary": ProviderStatus.DEGRADED,
            "b-secondary": ProviderStatus.DEGRADED,
            "c-tertiary": ProviderStatus.HEALTHY,
        }
        assert registry.get_provider("a-primary").last_health_check is not None

    async def test_disabled_providers_are_not_probed(self, make_provider, logger):
        seen = []

        async def probe(provider):
            seen.append(provider.id)
            return True

        registry = ProviderRegistry(
            [make_provider("on"), make_provider("off", enabled=False)], probe=probe, logger=logger
        )

        await registry.perform_health_check()

        assert seen == ["on"]

    async def test_missing_probe_is_an_error(self, registry):
        with pytest.raises(RuntimeError, match="No health probe"):
            await registry.perform_health_check()

    async def test_probe_pending_only_touches_flagged_providers(self, registry):
        for _ in range(3):
            registry.mark_failed("a-primary")
        registry.mark_failed("c-tertiary")
        seen = []

        async def probe(provider):
            seen.append(provider.id)
            return True

        assert [p.id for p in registry.pending_probes()] == ["a-primary", "c-tertiary"]

        statuses = await registry.probe_pending(probe)

        assert sorted(seen) == ["a-primary", "c-tertiary"]
        assert statuses == {
            "a-primary": ProviderStatus.HEALTHY,
            "c-tertiary": ProviderStatus.HEALTHY,
        }
        assert registry.pending_probes() == []
        assert registry.select_primary().id == "a-primary"

    async def test_failed_pending_probe_keeps_provider_flagged(self, registry):
        for _ in range(3):
            registry.mark_failed("a-primary")

        async def probe(provider):
            return False

        statuses = await registry.probe_pending(probe)

        assert statuses == {"a-primary": ProviderStatus.DOWN}
        assert [p.id for p in registry.pending_probes()] == ["a-primary"]

    def test_can_probe(self, registry, make_provider, logger):
        async def probe(provider):
            return True

        assert registry.can_probe is False
        assert ProviderRegistry([make_provider()], probe=probe, logger=logger).can_probe is True


def test_status_snapshot(registry):
    registry.mark_failed("b-secondary")

    snapshot = registry.status_snapshot()

    assert [entry["id"] for entry in snapshot] == ["a-primary", "b-secondary", "c-tertiary"]
    assert snapshot[1]["status"] == "degraded"
    assert snapshot[1]["consecutive_failures"] == 1
    assert snapshot[0]["last_health_check"] is None
