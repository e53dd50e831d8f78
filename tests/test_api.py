from datetime import timedelta
from pathlib import Path
from typing import AsyncIterator

import httpx
import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from quotawatch.api import ApiServices, create_app
from quotawatch.collector import Collector
from quotawatch.config import Settings
from quotawatch.config_store import JsonConfigStore
from quotawatch.definitions import ProviderDefinition
from quotawatch.metrics import MetricsUpdater
from quotawatch.models import ProviderConfig, ProviderUsage, ResetEvent, utc_now
from quotawatch.orchestrator import RefreshOrchestrator
from quotawatch.provider.base import PartialResultCallback
from quotawatch.store import UsageStore


class StaticProvider:
    """
    A mock provider that reports a fixed 25% usage.
    """

    def __init__(self, provider_id: "str") -> "None":
        self._definition = ProviderDefinition(
            provider_id=provider_id, display_name=provider_id.title()
        )

    @property
    def provider_id(self) -> "str":
        return self._definition.provider_id

    @property
    def definition(self) -> "ProviderDefinition":
        return self._definition

    def can_handle(self, provider_id: "str") -> "bool":
        return self._definition.handles_provider_id(provider_id)

    async def close(self) -> "None":
        pass

    async def fetch_usage(
        self,
        config: "ProviderConfig",
        on_partial: "PartialResultCallback | None" = None,
    ) -> "list[ProviderUsage]":
        return [
            ProviderUsage(
                provider_id=config.provider_id,
                requests_used=25.0,
                requests_available=100.0,
                requests_percentage=25.0,
            )
        ]


class RecordingNotifier:
    def __init__(self) -> "None":
        self.sent: "list[str]" = []

    def notify(
        self,
        title: "str",
        message: "str",
        action: "str | None" = None,
        argument: "str | None" = None,
    ) -> "None":
        self.sent.append(title)


@pytest_asyncio.fixture()
async def services(
    data_dir: "Path", registry: "CollectorRegistry"
) -> "AsyncIterator[ApiServices]":
    settings = Settings(data_dir=data_dir, port=5123)
    config_store = JsonConfigStore(
        settings.config_path,
        environ={"OPENROUTER_API_KEY": "sk-or"},
        codex_auth_path=data_dir / "missing-auth.json",
    )
    orchestrator = RefreshOrchestrator(
        [StaticProvider("openrouter"), StaticProvider("minimax")],
        config_store.load_configs,
    )
    notifier = RecordingNotifier()
    async with UsageStore(settings.database_path) as store:
        collector = Collector(
            orchestrator=orchestrator,
            store=store,
            config_store=config_store,
            metrics_updater=MetricsUpdater(registry=registry),
            notifier=notifier,
        )
        yield ApiServices(
            orchestrator=orchestrator,
            store=store,
            config_store=config_store,
            collector=collector,
            notifier=notifier,
            settings=settings,
            port=settings.port,
        )


@pytest_asyncio.fixture()
async def client(
    services: "ApiServices", registry: "CollectorRegistry"
) -> "AsyncIterator[httpx.AsyncClient]":
    app = create_app(services, registry=registry)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://testserver",
    ) as c:
        yield c


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client: "httpx.AsyncClient") -> "None":
        resp = await client.get("/api/health")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["port"] == 5123
        assert body["api_contract_version"] == "1"
        assert body["agent_version"]

    @pytest.mark.asyncio
    async def test_diagnostics(self, client: "httpx.AsyncClient") -> "None":
        resp = await client.get("/api/diagnostics")

        assert resp.status_code == 200
        body = resp.json()
        assert body["refresh_telemetry"]["refresh_count"] == 0
        assert {"path": "/api/health", "methods": ["GET"]} in body["routes"]
        assert body["memory_mb"] > 0


class TestUsage:
    @pytest.mark.asyncio
    async def test_empty_usage(self, client: "httpx.AsyncClient") -> "None":
        resp = await client.get("/api/usage")
        assert resp.status_code == 200
        assert resp.json() == []

    @pytest.mark.asyncio
    async def test_refresh_then_usage(
        self, client: "httpx.AsyncClient", services: "ApiServices"
    ) -> "None":
        await services.config_store.save_config(
            ProviderConfig(provider_id="openrouter", api_key="k")
        )

        resp = await client.post("/api/refresh")
        assert resp.json() == {"status": "refreshed"}

        usage = (await client.get("/api/usage")).json()
        assert [u["provider_id"] for u in usage] == ["openrouter"]
        assert usage[0]["provider_name"] == "Openrouter"
        assert usage[0]["requests_percentage"] == 25.0

        single = await client.get("/api/usage/OPENROUTER")
        assert single.status_code == 200
        assert single.json()["plan_type"] == "usage"

        assert (await client.get("/api/usage/unknown")).status_code == 404

        history = (await client.get("/api/history/openrouter", params={"limit": 5})).json()
        assert len(history) == 1
        assert len((await client.get("/api/history")).json()) == 1

    @pytest.mark.asyncio
    async def test_falls_back_to_last_refresh(
        self, client: "httpx.AsyncClient", services: "ApiServices"
    ) -> "None":
        await services.config_store.save_config(
            ProviderConfig(provider_id="minimax", api_key="k")
        )
        await services.orchestrator.refresh_all()

        usage = (await client.get("/api/usage")).json()

        assert [u["provider_id"] for u in usage] == ["minimax"]

    @pytest.mark.asyncio
    async def test_forecast_and_reliability(
        self, client: "httpx.AsyncClient", services: "ApiServices"
    ) -> "None":
        now = utc_now()
        await services.store.append_history(
            [
                ProviderUsage(
                    provider_id="openrouter",
                    requests_used=used,
                    requests_available=100.0,
                    fetched_at=now - timedelta(hours=hours),
                )
                for hours, used in ((24, 10.0), (12, 20.0), (0, 34.0))
            ]
        )

        forecast = (await client.get("/api/usage/openrouter/forecast")).json()
        assert forecast["is_available"]
        assert forecast["burn_rate_per_day"] == pytest.approx(24.0)
        assert forecast["sample_count"] == 3

        reliability = (await client.get("/api/usage/openrouter/reliability")).json()
        assert reliability["sample_count"] == 3
        assert reliability["failure_count"] == 0

        missing = (await client.get("/api/usage/nobody/forecast")).json()
        assert not missing["is_available"]

        assert (await client.get("/api/usage/openrouter/forecast?days=0")).status_code == 422

    @pytest.mark.asyncio
    async def test_resets(self, client: "httpx.AsyncClient", services: "ApiServices") -> "None":
        await services.store.store_reset_event(
            ResetEvent(
                provider_id="openrouter",
                provider_name="OpenRouter",
                previous_usage=90.0,
                new_usage=1.0,
            )
        )

        events = (await client.get("/api/resets/openrouter")).json()

        assert len(events) == 1
        assert events[0]["reset_type"] == "Automatic"


class TestRefresh:
    @pytest.mark.asyncio
    async def test_in_progress(
        self, client: "httpx.AsyncClient", services: "ApiServices"
    ) -> "None":
        async with services.collector._tick_lock:
            resp = await client.post("/api/refresh")
        assert resp.json() == {"status": "in_progress"}

    @pytest.mark.asyncio
    async def test_scan_keys(self, client: "httpx.AsyncClient", services: "ApiServices") -> "None":
        resp = await client.post("/api/scan-keys")

        body = resp.json()
        assert body["discovered"] == 1
        assert body["configs"][0]["auth_source"] == "Env: OPENROUTER_API_KEY"
        # the background refresh ran with the new key
        assert await services.store.latest_usage("openrouter") is not None


class TestConfig:
    @pytest.mark.asyncio
    async def test_save_list_delete(self, client: "httpx.AsyncClient") -> "None":
        resp = await client.post(
            "/api/config",
            json={"provider_id": "minimax", "api_key": "k", "plan_type": "coding"},
        )
        assert resp.json() == {"status": "saved"}

        configs = (await client.get("/api/config")).json()
        assert [c["provider_id"] for c in configs] == ["minimax"]
        assert configs[0]["plan_type"] == "coding"

        assert (await client.delete("/api/config/minimax")).json() == {"status": "removed"}
        assert (await client.delete("/api/config/minimax")).status_code == 404

    @pytest.mark.asyncio
    async def test_invalid_config(self, client: "httpx.AsyncClient") -> "None":
        resp = await client.post("/api/config", json={"provider_id": ""})
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_preferences(self, client: "httpx.AsyncClient") -> "None":
        default = (await client.get("/api/preferences")).json()
        assert default == {"enable_notifications": False, "notification_threshold": 90.0}

        await client.post(
            "/api/preferences",
            json={"enable_notifications": True, "notification_threshold": 70},
        )
        saved = (await client.get("/api/preferences")).json()
        assert saved == {"enable_notifications": True, "notification_threshold": 70.0}

        bad = await client.post("/api/preferences", json={"notification_threshold": 150})
        assert bad.status_code == 422

    @pytest.mark.asyncio
    async def test_notification(
        self, client: "httpx.AsyncClient", services: "ApiServices"
    ) -> "None":
        resp = await client.post("/api/notifications/test")

        assert resp.json() == {"status": "sent"}
        assert services.notifier.sent == ["Test Notification"]  # type: ignore[attr-defined]


class TestMetricsEndpoint:
    @pytest.mark.asyncio
    async def test_metrics_are_exposed(
        self, client: "httpx.AsyncClient", services: "ApiServices"
    ) -> "None":
        await services.config_store.save_config(
            ProviderConfig(provider_id="openrouter", api_key="k")
        )
        await client.post("/api/refresh")

        resp = await client.get("/metrics/")

        assert resp.status_code == 200
        assert 'quotawatch_provider_used_percent{provider="openrouter"} 25.0' in resp.text
