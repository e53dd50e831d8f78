import asyncio
import os
import platform
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Literal

import psutil
import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.routing import APIRoute
from prometheus_client import REGISTRY, CollectorRegistry, make_asgi_app
from pydantic import BaseModel, ConfigDict, Field

from quotawatch.collector import Collector
from quotawatch.config import Settings
from quotawatch.config_store import JsonConfigStore
from quotawatch.models import (
    DetailType,
    PlanType,
    Preferences,
    ProviderConfig,
    WindowKind,
    utc_now,
)
from quotawatch.notifications import Notifier
from quotawatch.orchestrator import RefreshOrchestrator
from quotawatch.store import UsageStore
from quotawatch.usage_math import (
    calculate_burn_rate_forecast,
    calculate_reliability_snapshot,
)
from quotawatch.version import API_CONTRACT_VERSION, agent_version

logger = structlog.get_logger()

ANALYTICS_WINDOW = timedelta(days=7)


@dataclass
class ApiServices:
    """
    everything the routes need, owned by the process entry point and
    handed to create_app.
    """

    orchestrator: "RefreshOrchestrator"
    store: "UsageStore"
    config_store: "JsonConfigStore"
    collector: "Collector"
    notifier: "Notifier"
    settings: "Settings"
    port: "int" = 0
    started_at: "datetime" = field(default_factory=utc_now)


class _FromAttributes(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class UsageDetailResponse(_FromAttributes):
    name: str
    model_name: str
    group_name: str
    used: str
    description: str
    next_reset_time: datetime | None
    detail_type: DetailType
    window_kind: WindowKind


class UsageResponse(_FromAttributes):
    provider_id: str
    provider_name: str
    account_name: str
    requests_used: float
    requests_available: float
    requests_percentage: float
    plan_type: PlanType
    usage_unit: str
    is_quota_based: bool
    display_as_fraction: bool
    is_available: bool
    description: str
    auth_source: str
    fetched_at: datetime
    response_latency_ms: float
    http_status: int
    details: list[UsageDetailResponse] | None
    next_reset_time: datetime | None


class ForecastResponse(_FromAttributes):
    is_available: bool
    reason: str | None
    burn_rate_per_day: float
    remaining_units: float
    days_until_exhausted: float
    estimated_exhaustion_utc: datetime | None
    sample_count: int


class ReliabilityResponse(_FromAttributes):
    is_available: bool
    reason: str | None
    sample_count: int
    success_count: int
    failure_count: int
    failure_rate_percent: float
    average_sync_interval_minutes: float
    last_successful_sync_utc: datetime | None
    last_seen_utc: datetime | None


class ResetEventResponse(_FromAttributes):
    provider_id: str
    provider_name: str
    previous_usage: float
    new_usage: float
    reset_type: str
    timestamp: datetime


class TelemetryResponse(_FromAttributes):
    refresh_count: int
    refresh_success_count: int
    refresh_failure_count: int
    error_rate_percent: float
    average_latency_ms: float
    last_latency_ms: float
    last_refresh_completed_utc: datetime | None
    last_error: str | None


class HealthResponse(BaseModel):
    status: Literal["healthy"] = "healthy"
    timestamp: datetime
    port: int
    process_id: int
    agent_version: str
    api_contract_version: str = API_CONTRACT_VERSION


class RouteInfo(BaseModel):
    path: str
    methods: list[str]


class DiagnosticsResponse(BaseModel):
    port: int
    process_id: int
    working_dir: str
    started_at: datetime
    uptime_seconds: float
    python_version: str
    os: str
    agent_version: str
    routes: list[RouteInfo]
    refresh_telemetry: TelemetryResponse
    memory_mb: float
    cpu_percent: float


class ConfigBody(_FromAttributes):
    provider_id: str = Field(min_length=1)
    api_key: str = ""
    config_type: str = "pay-as-you-go"
    base_url: str | None = None
    show_in_tray: bool = True
    enable_notifications: bool = True
    enabled_sub_trays: list[str] = Field(default_factory=list)
    description: str | None = None
    auth_source: str = ""
    plan_type: PlanType = PlanType.USAGE

    def to_config(self) -> "ProviderConfig":
        return ProviderConfig(
            provider_id=self.provider_id.strip(),
            api_key=self.api_key,
            config_type=self.config_type,
            base_url=self.base_url,
            show_in_tray=self.show_in_tray,
            enable_notifications=self.enable_notifications,
            enabled_sub_trays=list(self.enabled_sub_trays),
            description=self.description,
            auth_source=self.auth_source,
            plan_type=self.plan_type,
        )


class PreferencesBody(_FromAttributes):
    enable_notifications: bool = False
    notification_threshold: float = Field(default=90.0, ge=0.0, le=100.0)


class StatusResponse(BaseModel):
    status: str


class ScanKeysResponse(BaseModel):
    discovered: int
    configs: list[ConfigBody]


def get_services(request: "Request") -> "ApiServices":
    return request.app.state.services


router = APIRouter(prefix="/api")


@router.get("/health", response_model=HealthResponse)
async def health(services: "ApiServices" = Depends(get_services)) -> "HealthResponse":
    return HealthResponse(
        timestamp=utc_now(),
        port=services.port,
        process_id=os.getpid(),
        agent_version=agent_version(),
    )


@router.get("/diagnostics", response_model=DiagnosticsResponse)
async def diagnostics(
    request: "Request",
    services: "ApiServices" = Depends(get_services),
) -> "DiagnosticsResponse":
    process = psutil.Process()
    routes = [
        RouteInfo(path=r.path, methods=sorted(r.methods))
        for r in request.app.routes
        if isinstance(r, APIRoute) and r.path.startswith("/api/")
    ]
    return DiagnosticsResponse(
        port=services.port,
        process_id=os.getpid(),
        working_dir=os.getcwd(),
        started_at=services.started_at,
        uptime_seconds=(utc_now() - services.started_at).total_seconds(),
        python_version=platform.python_version(),
        os=platform.platform(),
        agent_version=agent_version(),
        routes=routes,
        refresh_telemetry=TelemetryResponse.model_validate(
            services.collector.telemetry()
        ),
        memory_mb=round(process.memory_info().rss / 1024 / 1024, 2),
        # non-blocking, compares against the previous call
        cpu_percent=process.cpu_percent(interval=None),
    )


@router.get("/usage", response_model=list[UsageResponse])
async def get_usage(
    services: "ApiServices" = Depends(get_services),
) -> "list[UsageResponse]":
    usages = await services.store.latest_usages()
    if not usages:
        # nothing persisted yet, serve whatever the last refresh produced
        usages = list(services.orchestrator.last_usages)
    return [UsageResponse.model_validate(u) for u in usages]


@router.get("/usage/{provider_id}", response_model=UsageResponse)
async def get_provider_usage(
    provider_id: "str",
    services: "ApiServices" = Depends(get_services),
) -> "UsageResponse":
    usage = await services.store.latest_usage(provider_id)
    if usage is None:
        raise HTTPException(status_code=404, detail=f"No usage for '{provider_id}'")
    return UsageResponse.model_validate(usage)


@router.get("/usage/{provider_id}/forecast", response_model=ForecastResponse)
async def get_forecast(
    provider_id: "str",
    days: "int" = Query(default=7, ge=1, le=90),
    services: "ApiServices" = Depends(get_services),
) -> "ForecastResponse":
    history = await services.store.history_window_for_provider(
        provider_id, utc_now() - timedelta(days=days)
    )
    forecast = calculate_burn_rate_forecast(
        history, drop_ratio=services.settings.reset_drop_ratio
    )
    return ForecastResponse.model_validate(forecast)


@router.get("/usage/{provider_id}/reliability", response_model=ReliabilityResponse)
async def get_reliability(
    provider_id: "str",
    days: "int" = Query(default=7, ge=1, le=90),
    services: "ApiServices" = Depends(get_services),
) -> "ReliabilityResponse":
    history = await services.store.history_window_for_provider(
        provider_id, utc_now() - timedelta(days=days)
    )
    return ReliabilityResponse.model_validate(calculate_reliability_snapshot(history))


@router.get("/history", response_model=list[UsageResponse])
async def get_history(
    limit: "int" = Query(default=100, ge=1, le=10000),
    services: "ApiServices" = Depends(get_services),
) -> "list[UsageResponse]":
    return [UsageResponse.model_validate(u) for u in await services.store.history(limit)]


@router.get("/history/{provider_id}", response_model=list[UsageResponse])
async def get_provider_history(
    provider_id: "str",
    limit: "int" = Query(default=100, ge=1, le=10000),
    services: "ApiServices" = Depends(get_services),
) -> "list[UsageResponse]":
    usages = await services.store.history_for_provider(provider_id, limit)
    return [UsageResponse.model_validate(u) for u in usages]


@router.get("/resets/{provider_id}", response_model=list[ResetEventResponse])
async def get_resets(
    provider_id: "str",
    limit: "int" = Query(default=50, ge=1, le=1000),
    services: "ApiServices" = Depends(get_services),
) -> "list[ResetEventResponse]":
    events = await services.store.reset_events(provider_id, limit)
    return [ResetEventResponse.model_validate(e) for e in events]


@router.post("/refresh", response_model=StatusResponse)
async def refresh(services: "ApiServices" = Depends(get_services)) -> "StatusResponse":
    if services.collector.is_refreshing:
        return StatusResponse(status="in_progress")
    ok = await services.collector.trigger_refresh()
    return StatusResponse(status="refreshed" if ok else "failed")


@router.post("/scan-keys", response_model=ScanKeysResponse)
async def scan_keys(
    background: "BackgroundTasks",
    services: "ApiServices" = Depends(get_services),
) -> "ScanKeysResponse":
    discovered = await services.config_store.scan_for_keys()
    if discovered:
        background.add_task(services.collector.trigger_refresh, force_all=True)
    return ScanKeysResponse(
        discovered=len(discovered),
        configs=[ConfigBody.model_validate(c) for c in discovered],
    )


@router.get("/config", response_model=list[ConfigBody])
async def get_configs(
    services: "ApiServices" = Depends(get_services),
) -> "list[ConfigBody]":
    configs = await services.config_store.load_configs()
    return [ConfigBody.model_validate(c) for c in configs]


@router.post("/config", response_model=StatusResponse)
async def save_config(
    body: "ConfigBody",
    services: "ApiServices" = Depends(get_services),
) -> "StatusResponse":
    await services.config_store.save_config(body.to_config())
    await services.orchestrator.get_configs(force_refresh=True)
    return StatusResponse(status="saved")


@router.delete("/config/{provider_id}", response_model=StatusResponse)
async def delete_config(
    provider_id: "str",
    services: "ApiServices" = Depends(get_services),
) -> "StatusResponse":
    if not await services.config_store.remove_config(provider_id):
        raise HTTPException(status_code=404, detail=f"No config for '{provider_id}'")
    await services.orchestrator.get_configs(force_refresh=True)
    return StatusResponse(status="removed")


@router.get("/preferences", response_model=PreferencesBody)
async def get_preferences(
    services: "ApiServices" = Depends(get_services),
) -> "PreferencesBody":
    return PreferencesBody.model_validate(await services.config_store.load_preferences())


@router.post("/preferences", response_model=StatusResponse)
async def save_preferences(
    body: "PreferencesBody",
    services: "ApiServices" = Depends(get_services),
) -> "StatusResponse":
    await services.config_store.save_preferences(
        Preferences(
            enable_notifications=body.enable_notifications,
            notification_threshold=body.notification_threshold,
        )
    )
    return StatusResponse(status="saved")


@router.post("/notifications/test", response_model=StatusResponse)
async def test_notification(
    services: "ApiServices" = Depends(get_services),
) -> "StatusResponse":
    # delivery may block (OS toasts), keep it off the event loop
    await asyncio.to_thread(
        services.notifier.notify,
        "Test Notification",
        "Notifications are working.",
        "openDashboard",
        None,
    )
    return StatusResponse(status="sent")


def create_app(
    services: "ApiServices",
    registry: "CollectorRegistry" = REGISTRY,
) -> "FastAPI":
    app = FastAPI(
        title="quotawatch",
        version=agent_version(),
        docs_url=None,
        redoc_url=None,
    )
    app.state.services = services
    # local dashboards are served from other ports
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)
    app.mount("/metrics", make_asgi_app(registry=registry))
    return app
