import asyncio
import gc
from typing import Awaitable, Callable

import pytest

from quotawatch.definitions import ProviderCatalog, ProviderDefinition
from quotawatch.models import (
    DetailType,
    PlanType,
    ProviderConfig,
    ProviderUsage,
    ProviderUsageDetail,
    WindowKind,
)
from quotawatch.orchestrator import ProviderNotFoundError, RefreshOrchestrator
from quotawatch.provider.base import PartialResultCallback
from quotawatch.provider.registry import GENERIC_DEFINITIONS

Behavior = Callable[[ProviderConfig], Awaitable[list[ProviderUsage]]]


class FakeProvider:
    """
    A provider whose fetch behavior is supplied by the test. Counts
    calls and peak concurrency.
    """

    def __init__(
        self,
        definition: "ProviderDefinition",
        behavior: "Behavior | None" = None,
    ) -> "None":
        self._definition = definition
        self._behavior = behavior
        self.calls = 0
        self.active = 0
        self.peak = 0
        self.closed = False

    @property
    def provider_id(self) -> "str":
        return self._definition.provider_id

    @property
    def definition(self) -> "ProviderDefinition":
        return self._definition

    def can_handle(self, provider_id: "str") -> "bool":
        return self._definition.handles_provider_id(provider_id)

    async def close(self) -> "None":
        self.closed = True

    async def fetch_usage(
        self,
        config: "ProviderConfig",
        on_partial: "PartialResultCallback | None" = None,
    ) -> "list[ProviderUsage]":
        self.calls += 1
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if self._behavior is not None:
                return await self._behavior(config)
            await asyncio.sleep(0)
            return [
                ProviderUsage(
                    provider_id=config.provider_id,
                    requests_used=1.0,
                    requests_available=10.0,
                    requests_percentage=10.0,
                )
            ]
        finally:
            self.active -= 1


def _define(provider_id: "str", **kwargs: "object") -> "ProviderDefinition":
    values: "dict[str, object]" = {
        "provider_id": provider_id,
        "display_name": provider_id.title(),
    }
    values.update(kwargs)
    return ProviderDefinition(**values)  # type: ignore[arg-type]


def _loader(*configs: "ProviderConfig") -> "Callable[[], Awaitable[list[ProviderConfig]]]":
    async def load() -> "list[ProviderConfig]":
        load.calls += 1  # type: ignore[attr-defined]
        return [c.clone() for c in configs]

    load.calls = 0  # type: ignore[attr-defined]
    return load


def _config(provider_id: "str", **kwargs: "object") -> "ProviderConfig":
    return ProviderConfig(provider_id=provider_id, api_key="key", **kwargs)  # type: ignore[arg-type]


class TestRefreshCoalescing:
    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self) -> "None":
        gate = asyncio.Event()

        async def slow(config: "ProviderConfig") -> "list[ProviderUsage]":
            await gate.wait()
            return [ProviderUsage(provider_id=config.provider_id)]

        provider = FakeProvider(_define("alpha"), slow)
        orchestrator = RefreshOrchestrator([provider], _loader(_config("alpha")))

        callers = [asyncio.create_task(orchestrator.refresh_all()) for _ in range(5)]
        await asyncio.sleep(0.01)
        gate.set()
        results = await asyncio.gather(*callers)

        assert provider.calls == 1
        assert all(r == results[0] for r in results)
        assert len(results[0]) == 1

    @pytest.mark.asyncio
    async def test_cached_result_without_force(self) -> "None":
        provider = FakeProvider(_define("alpha"))
        orchestrator = RefreshOrchestrator([provider], _loader(_config("alpha")))

        first = await orchestrator.refresh_all()
        second = await orchestrator.refresh_all(force_refresh=False)

        assert provider.calls == 1
        assert second == first

    @pytest.mark.asyncio
    async def test_forced_refresh_after_completion_runs_again(self) -> "None":
        provider = FakeProvider(_define("alpha"))
        orchestrator = RefreshOrchestrator([provider], _loader(_config("alpha")))

        await orchestrator.refresh_all()
        await orchestrator.refresh_all(force_refresh=True)

        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_last_usages_is_a_snapshot(self) -> "None":
        provider = FakeProvider(_define("alpha"))
        orchestrator = RefreshOrchestrator([provider], _loader(_config("alpha")))

        result = await orchestrator.refresh_all()
        result.clear()

        assert isinstance(orchestrator.last_usages, tuple)
        assert len(orchestrator.last_usages) == 1

    @pytest.mark.asyncio
    async def test_failed_refresh_does_not_stick(self) -> "None":
        attempts = 0

        async def load() -> "list[ProviderConfig]":
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise OSError("config unreadable")
            return [_config("alpha")]

        provider = FakeProvider(_define("alpha"))
        orchestrator = RefreshOrchestrator([provider], load)

        with pytest.raises(OSError, match="config unreadable"):
            await orchestrator.refresh_all()

        assert not orchestrator._refresh_lock.locked()
        result = await orchestrator.refresh_all()

        assert attempts == 2
        assert [u.provider_id for u in result] == ["alpha"]
        assert provider.calls == 1

    @pytest.mark.parametrize(
        "limits",
        [{"max_concurrency": 0}, {"provider_timeout": 0.0}, {"provider_timeout": -1.0}],
    )
    def test_non_positive_limits_are_rejected(self, limits: "dict[str, float]") -> "None":
        with pytest.raises(ValueError):
            RefreshOrchestrator([], _loader(), **limits)  # type: ignore[arg-type]


class TestFailureIsolation:
    @pytest.mark.asyncio
    async def test_failing_provider_does_not_block_others(self) -> "None":
        async def boom(config: "ProviderConfig") -> "list[ProviderUsage]":
            raise RuntimeError("connection reset")

        good = FakeProvider(_define("good"))
        bad = FakeProvider(_define("bad"), boom)
        orchestrator = RefreshOrchestrator(
            [good, bad], _loader(_config("good"), _config("bad"))
        )
        partials: "list[ProviderUsage]" = []

        results = await orchestrator.refresh_all(on_partial=partials.append)
        by_id = {u.provider_id: u for u in results}

        assert by_id["good"].is_available
        assert by_id["bad"].is_available
        assert by_id["bad"].http_status == 500
        assert by_id["bad"].description == "[Error] connection reset"
        assert {u.provider_id for u in partials} == {"good", "bad"}

    @pytest.mark.asyncio
    async def test_failure_propagates_without_callback(self) -> "None":
        async def boom(config: "ProviderConfig") -> "list[ProviderUsage]":
            raise RuntimeError("connection reset")

        orchestrator = RefreshOrchestrator(
            [FakeProvider(_define("bad"), boom)], _loader(_config("bad"))
        )

        with pytest.raises(RuntimeError, match="connection reset"):
            await orchestrator.get_single_provider_usage("bad")

    @pytest.mark.asyncio
    async def test_misconfiguration_is_an_unavailable_record(self) -> "None":
        async def missing_key(config: "ProviderConfig") -> "list[ProviderUsage]":
            raise ValueError("API Key missing")

        orchestrator = RefreshOrchestrator(
            [FakeProvider(_define("alpha", is_quota_based=True), missing_key)],
            _loader(_config("alpha")),
        )

        # no callback: misconfiguration still does not raise
        (usage,) = await orchestrator.get_single_provider_usage("alpha")

        assert not usage.is_available
        assert usage.description == "API Key missing"
        assert usage.is_quota_based
        assert usage.provider_name == "Alpha"

    @pytest.mark.asyncio
    async def test_timeout_yields_504_and_swallows_late_error(self) -> "None":
        loop = asyncio.get_running_loop()
        unhandled: "list[dict[str, object]]" = []
        loop.set_exception_handler(lambda _loop, context: unhandled.append(context))
        release = asyncio.Event()
        finished = asyncio.Event()

        async def hang(config: "ProviderConfig") -> "list[ProviderUsage]":
            try:
                await release.wait()
                raise RuntimeError("late failure")
            finally:
                finished.set()

        slow = FakeProvider(_define("slow"), hang)
        fast = FakeProvider(_define("fast"))
        orchestrator = RefreshOrchestrator(
            [slow, fast],
            _loader(_config("slow", auth_source="Env: SLOW"), _config("fast")),
            provider_timeout=0.05,
        )

        results = await orchestrator.refresh_all(on_partial=lambda u: None)
        by_id = {u.provider_id: u for u in results}

        assert not by_id["slow"].is_available
        assert by_id["slow"].http_status == 504
        assert by_id["slow"].description.startswith("[Error] Timeout")
        assert by_id["slow"].auth_source == "Env: SLOW"
        assert by_id["fast"].is_available

        # the abandoned fetch fails later; nobody may see that as unhandled
        release.set()
        await finished.wait()
        await asyncio.sleep(0)
        gc.collect()
        await asyncio.sleep(0)
        assert unhandled == []

    @pytest.mark.asyncio
    async def test_missing_integration(self) -> "None":
        orchestrator = RefreshOrchestrator(
            [FakeProvider(_define("alpha"))],
            _loader(_config("alpha"), _config("mystery")),
        )

        results = await orchestrator.refresh_all()
        mystery = next(u for u in results if u.provider_id == "mystery")

        assert not mystery.is_available
        assert mystery.description == "Usage unknown (provider integration missing)"
        assert mystery.usage_unit == "Status"
        assert mystery.provider_name == "mystery"
        assert mystery.plan_type is PlanType.USAGE

    @pytest.mark.asyncio
    async def test_missing_integration_uses_catalog(self) -> "None":
        alpha = FakeProvider(_define("alpha"))
        orchestrator = RefreshOrchestrator(
            [alpha],
            _loader(_config("github"), _config("gemini-cli")),
            catalog=ProviderCatalog([alpha.definition, *GENERIC_DEFINITIONS]),
        )

        results = {u.provider_id: u for u in await orchestrator.refresh_all()}

        assert results["github"].provider_name == "GitHub"
        assert results["github"].plan_type is PlanType.CODING
        # no definition at all: the id classifier still spots a coding plan
        assert results["gemini-cli"].provider_name == "gemini-cli"
        assert results["gemini-cli"].is_quota_based


class TestConcurrencyGate:
    @pytest.mark.asyncio
    async def test_fetches_are_bounded(self) -> "None":
        in_flight = 0
        peak = 0

        async def tracked(config: "ProviderConfig") -> "list[ProviderUsage]":
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            in_flight -= 1
            return [ProviderUsage(provider_id=config.provider_id)]

        ids = [f"p{i}" for i in range(8)]
        providers = [FakeProvider(_define(i), tracked) for i in ids]
        orchestrator = RefreshOrchestrator(
            providers, _loader(*(_config(i) for i in ids)), max_concurrency=3
        )

        results = await orchestrator.refresh_all()

        assert len(results) == 8
        assert peak == 3


class TestStamping:
    @pytest.mark.asyncio
    async def test_adapter_name_wins_and_auth_source_is_stamped(self) -> "None":
        async def named(config: "ProviderConfig") -> "list[ProviderUsage]":
            return [
                ProviderUsage(provider_id="alpha", provider_name="Alpha Pro"),
                ProviderUsage(provider_id="alpha.child", provider_name="alpha.child"),
                ProviderUsage(provider_id="alpha.mini", provider_name=""),
            ]

        definition = _define(
            "alpha",
            supports_child_ids=True,
            display_name_overrides={"alpha.child": "Alpha Child"},
        )
        orchestrator = RefreshOrchestrator(
            [FakeProvider(definition, named)],
            _loader(_config("alpha", auth_source="Env: ALPHA_KEY")),
        )

        results = await orchestrator.refresh_all()
        names = {u.provider_id: u.provider_name for u in results}

        assert names == {
            "alpha": "Alpha Pro",
            "alpha.child": "Alpha Child",
            "alpha.mini": "alpha.mini",
        }
        assert all(u.auth_source == "Env: ALPHA_KEY" for u in results)
        assert all(u.response_latency_ms >= 0 for u in results)

    @pytest.mark.asyncio
    async def test_contract_violations_are_dropped(self) -> "None":
        async def sloppy(config: "ProviderConfig") -> "list[ProviderUsage]":
            return [
                ProviderUsage(
                    provider_id="alpha",
                    details=(
                        ProviderUsageDetail(name="ok", detail_type=DetailType.CREDIT),
                        ProviderUsageDetail(name="untyped"),
                        ProviderUsageDetail(
                            name="window",
                            detail_type=DetailType.QUOTA_WINDOW,
                            window_kind=WindowKind.NONE,
                        ),
                    ),
                )
            ]

        orchestrator = RefreshOrchestrator(
            [FakeProvider(_define("alpha"), sloppy)], _loader(_config("alpha"))
        )

        (usage,) = await orchestrator.refresh_all()

        assert usage.details is not None
        assert [d.name for d in usage.details] == ["ok"]


class TestConfigs:
    @pytest.mark.asyncio
    async def test_configs_are_cached(self) -> "None":
        loader = _loader(_config("alpha"))
        orchestrator = RefreshOrchestrator([], loader)

        await orchestrator.get_configs()
        await orchestrator.get_configs()
        assert loader.calls == 1  # type: ignore[attr-defined]

        await orchestrator.get_configs(force_refresh=True)
        assert loader.calls == 2  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_concurrent_loads_are_collapsed(self) -> "None":
        loader = _loader(_config("alpha"))
        orchestrator = RefreshOrchestrator([], loader)

        await asyncio.gather(*(orchestrator.get_configs() for _ in range(5)))
        assert loader.calls == 1  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_cache_expires(self) -> "None":
        loader = _loader(_config("alpha"))
        orchestrator = RefreshOrchestrator([], loader, config_cache_seconds=0.0)

        await orchestrator.get_configs()
        await orchestrator.get_configs()
        assert loader.calls == 2  # type: ignore[attr-defined]

    @pytest.mark.asyncio
    async def test_auto_included_provider_is_injected(self) -> "None":
        local = FakeProvider(_define("local", auto_include=True))
        orchestrator = RefreshOrchestrator(
            [FakeProvider(_define("alpha")), local], _loader(_config("alpha"))
        )

        results = await orchestrator.refresh_all()

        assert {u.provider_id for u in results} == {"alpha", "local"}
        assert local.calls == 1

    @pytest.mark.asyncio
    async def test_override_configs_skip_injection_and_are_cloned(self) -> "None":
        seen: "list[ProviderConfig]" = []

        async def record(config: "ProviderConfig") -> "list[ProviderUsage]":
            seen.append(config)
            return [ProviderUsage(provider_id=config.provider_id)]

        local = FakeProvider(_define("local", auto_include=True))
        override = _config("alpha")
        orchestrator = RefreshOrchestrator(
            [FakeProvider(_define("alpha"), record), local], _loader()
        )

        results = await orchestrator.refresh_all(override_configs=[override])

        assert [u.provider_id for u in results] == ["alpha"]
        assert local.calls == 0
        assert seen[0] is not override

    @pytest.mark.asyncio
    async def test_include_ids_filter(self) -> "None":
        alpha = FakeProvider(_define("alpha"))
        beta = FakeProvider(_define("beta"))
        orchestrator = RefreshOrchestrator(
            [alpha, beta], _loader(_config("alpha"), _config("beta"))
        )

        results = await orchestrator.refresh_all(include_ids=["BETA"])

        assert [u.provider_id for u in results] == ["beta"]
        assert alpha.calls == 0


class TestSingleProvider:
    @pytest.mark.asyncio
    async def test_unknown_provider(self) -> "None":
        orchestrator = RefreshOrchestrator([FakeProvider(_define("alpha"))], _loader())

        with pytest.raises(ProviderNotFoundError):
            await orchestrator.get_single_provider_usage("nobody")

    @pytest.mark.asyncio
    async def test_auto_included_fallback(self) -> "None":
        local = FakeProvider(
            _define("local", auto_include=True, plan_type=PlanType.CODING)
        )
        orchestrator = RefreshOrchestrator([local], _loader())

        (usage,) = await orchestrator.get_single_provider_usage("local")

        assert usage.provider_id == "local"
        assert local.calls == 1

    @pytest.mark.asyncio
    async def test_bypasses_coalescing(self) -> "None":
        provider = FakeProvider(_define("alpha"))
        orchestrator = RefreshOrchestrator([provider], _loader(_config("alpha")))

        await orchestrator.refresh_all()
        await orchestrator.get_single_provider_usage("ALPHA")

        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_close_closes_providers(self) -> "None":
        provider = FakeProvider(_define("alpha"))
        orchestrator = RefreshOrchestrator([provider], _loader())

        await orchestrator.close()

        assert provider.closed
