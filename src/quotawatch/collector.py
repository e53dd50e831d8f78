import asyncio
import time
from datetime import datetime, timedelta
from typing import Callable, Collection, Iterable

import structlog

from quotawatch.config_store import JsonConfigStore
from quotawatch.metrics import MetricsUpdater
from quotawatch.models import (
    Preferences,
    ProviderConfig,
    ProviderUsage,
    RefreshTelemetry,
    ResetEvent,
    utc_now,
)
from quotawatch.notifications import Notifier
from quotawatch.orchestrator import RefreshOrchestrator
from quotawatch.store import UsageStore
from quotawatch.usage_math import effective_used_percent, is_quota_reset_between

logger = structlog.get_logger()

ErrorReporter = Callable[[str], None]

# errored samples between two good ones are skipped within this window
RESET_LOOKBACK_SAMPLES = 10


def is_usage_for_provider(config_id: "str", usage_id: "str") -> "bool":
    """
    true for the config's own id and for its child ids ("codex" owns
    "codex.spark").
    """
    config_id = config_id.lower()
    usage_id = usage_id.lower()
    return usage_id == config_id or usage_id.startswith(config_id + ".")


def _is_empty_placeholder(usage: "ProviderUsage") -> "bool":
    # errored fetches (timeouts) stay, they feed the reliability numbers
    return (
        not usage.is_available
        and usage.http_status < 400
        and usage.requests_used == 0
        and usage.requests_available == 0
        and usage.requests_percentage == 0
    )


class Collector:
    """
    Collector is responsible for the periodic refresh of every active
    provider. Each tick asks the orchestrator for fresh usage, stores
    the samples, detects quota resets, raises usage alerts, prunes old
    data and updates the metrics. The loop runs until stop() is called,
    sleeping for the configured interval between ticks.

    Ticks never overlap: a tick requested while one is running is
    skipped.
    """

    def __init__(
        self,
        orchestrator: "RefreshOrchestrator",
        store: "UsageStore",
        config_store: "JsonConfigStore",
        metrics_updater: "MetricsUpdater",
        notifier: "Notifier",
        refresh_interval_seconds: "int" = 300,
        reset_threshold_percent: "float" = 20.0,
        history_retention: "timedelta" = timedelta(days=90),
        report_error: "ErrorReporter | None" = None,
    ) -> "None":
        self._orchestrator = orchestrator
        self._store = store
        self._config_store = config_store
        self._metrics = metrics_updater
        self._notifier = notifier
        self._interval = refresh_interval_seconds
        self._reset_threshold = reset_threshold_percent
        self._history_retention = history_retention
        self._report_error = report_error
        self._stop_event: "asyncio.Event" = asyncio.Event()
        self._tick_lock: "asyncio.Lock" = asyncio.Lock()

        self._refresh_count = 0
        self._failure_count = 0
        self._total_latency_ms = 0.0
        self._last_latency_ms = 0.0
        self._last_completed: "datetime | None" = None
        self._last_error: "str | None" = None

    @property
    def is_refreshing(self) -> "bool":
        return self._tick_lock.locked()

    def stop(self) -> "None":
        """
        signals the collector loop to stop after the current tick.
        """
        self._stop_event.set()

    async def close(self) -> "None":
        """
        closes all provider sessions.
        """
        await self._orchestrator.close()

    async def run(self) -> "None":
        """
        runs the refresh loop. Runs until stop() is called.
        """
        await self._startup_refresh()

        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass
            if self._stop_event.is_set():
                break

            await self.trigger_refresh()

    async def _startup_refresh(self) -> "None":
        if await self._store.is_history_empty():
            # first start: pick up keys from the environment and fetch
            # everything once
            logger.info("first_start_detected")
            try:
                await self._config_store.scan_for_keys()
            except (OSError, ValueError) as exc:
                logger.warning("key_scan_failed", error=str(exc))
            await self.trigger_refresh(force_all=True)
            return

        # providers with stored history are served from the store until
        # the first regular tick; only keyless ones are fetched now
        auto_ids = [
            d.provider_id for d in self._orchestrator.definitions if d.auto_include
        ]
        if auto_ids:
            await self.trigger_refresh(include_ids=auto_ids)

    async def trigger_refresh(
        self,
        force_all: "bool" = False,
        include_ids: "Collection[str] | None" = None,
    ) -> "bool":
        """
        runs one refresh tick. Returns False when the tick was skipped
        because another one is running, or when it failed.
        """
        if self._tick_lock.locked():
            logger.info("refresh_skipped", reason="already_running")
            return False

        async with self._tick_lock:
            started = time.monotonic()
            try:
                count = await self._refresh(force_all, include_ids)
            except Exception as exc:
                logger.exception("refresh_failed")
                self._record_telemetry(time.monotonic() - started, str(exc))
                self._metrics.inc_refresh_failure()
                if self._report_error is not None:
                    self._report_error(f"Refresh failed: {exc}")
                return False

            duration = time.monotonic() - started
            self._record_telemetry(duration, None)
            self._metrics.observe_refresh_duration(duration)
            self._metrics.set_last_refresh_success(time.time())
            logger.info("refresh_done", count=count, duration_seconds=round(duration, 3))
            return True

    def active_configs(
        self,
        configs: "Iterable[ProviderConfig]",
        force_all: "bool" = False,
    ) -> "list[ProviderConfig]":
        """
        configs worth fetching: those with credentials, the always
        included providers and their children, or all when forced.
        Always included providers without a stored config are added.
        """
        auto_ids = [
            d.provider_id for d in self._orchestrator.definitions if d.auto_include
        ]
        active = [
            c
            for c in configs
            if force_all
            or c.api_key
            or any(is_usage_for_provider(a, c.provider_id) for a in auto_ids)
        ]

        stored = {c.provider_id.lower() for c in active}
        for definition in self._orchestrator.definitions:
            if definition.auto_include and definition.provider_id.lower() not in stored:
                active.append(
                    ProviderConfig(
                        provider_id=definition.provider_id,
                        config_type=definition.default_config_type,
                        plan_type=definition.plan_type,
                    )
                )
        return active

    def _belongs_to_active(self, active_ids: "set[str]", usage_id: "str") -> "bool":
        if any(is_usage_for_provider(a, usage_id) for a in active_ids):
            return True
        # aliases: a config stored as "openai" yields "codex.*" records
        return any(
            d.handles_provider_id(a) and d.handles_provider_id(usage_id)
            for d in self._orchestrator.definitions
            for a in active_ids
        )

    async def _refresh(
        self,
        force_all: "bool",
        include_ids: "Collection[str] | None",
    ) -> "int":
        configs = await self._orchestrator.get_configs(force_refresh=True)
        active = self.active_configs(configs, force_all)

        if include_ids:
            included = {i.lower() for i in include_ids}
            active = [c for c in active if c.provider_id.lower() in included]

        if not active:
            logger.debug("refresh_no_active_providers")
            await self._store.prune(self._history_retention)
            return 0

        logger.info("refresh_started", providers=len(active))
        active_ids = {c.provider_id.lower() for c in active}

        # a scheduled tick always fetches; the orchestrator still joins
        # it with a refresh already in flight
        usages = await self._orchestrator.refresh_all(
            force_refresh=True,
            on_partial=self._on_partial_result,
            override_configs=active,
        )
        kept = [
            u
            for u in usages
            if self._belongs_to_active(active_ids, u.provider_id)
            and not _is_empty_placeholder(u)
        ]

        await self._register_dynamic_providers(kept, active_ids)
        await self._store.append_history(kept)
        for usage in kept:
            if usage.raw_json:
                await self._store.store_raw_snapshot(
                    usage.provider_id, usage.raw_json, usage.http_status
                )
            self._metrics.update_usage(usage)

        await self.detect_reset_events(kept)
        prefs = await self._config_store.load_preferences()
        self.check_usage_alerts(kept, prefs, configs)
        await self._store.prune(self._history_retention)
        return len(kept)

    def _on_partial_result(self, usage: "ProviderUsage") -> "None":
        logger.debug(
            "provider_result",
            provider=usage.provider_id,
            available=usage.is_available,
            description=usage.description,
        )

    async def _register_dynamic_providers(
        self,
        usages: "Iterable[ProviderUsage]",
        active_ids: "set[str]",
    ) -> "None":
        for usage in usages:
            if usage.provider_id.lower() not in active_ids:
                logger.info("dynamic_provider_registered", provider=usage.provider_id)
                active_ids.add(usage.provider_id.lower())
            await self._store.store_provider(
                usage.provider_id,
                provider_name=usage.provider_name,
                auth_source=usage.auth_source,
                account_name=usage.account_name,
                config_type="quota-based" if usage.is_quota_based else "pay-as-you-go",
            )

    async def detect_reset_events(
        self, usages: "Iterable[ProviderUsage]"
    ) -> "list[ResetEvent]":
        """
        compares the two newest successful samples of every available
        provider and records a reset when usage fell sharply. Failures
        are logged and never fail the tick.
        """
        events: "list[ResetEvent]" = []
        try:
            for usage in usages:
                if not usage.is_available or usage.http_status >= 400:
                    continue
                history = [
                    h
                    for h in await self._store.history_for_provider(
                        usage.provider_id, RESET_LOOKBACK_SAMPLES
                    )
                    if h.is_available and h.http_status < 400
                ]
                if len(history) < 2:
                    continue
                latest, previous = history[0], history[1]
                if not is_quota_reset_between(previous, latest, self._reset_threshold):
                    continue

                event = ResetEvent(
                    provider_id=usage.provider_id,
                    provider_name=usage.provider_name,
                    previous_usage=previous.requests_percentage,
                    new_usage=latest.requests_percentage,
                )
                await self._store.store_reset_event(event)
                events.append(event)
                logger.info("quota_reset_detected", provider=usage.provider_id)
        except Exception as exc:
            logger.warning("reset_detection_failed", error=str(exc))
        return events

    def check_usage_alerts(
        self,
        usages: "Iterable[ProviderUsage]",
        prefs: "Preferences",
        configs: "Iterable[ProviderConfig]",
    ) -> "int":
        """
        notifies for every available provider whose used percentage
        reached the threshold. Returns the number of notifications.
        """
        if not prefs.enable_notifications:
            return 0

        configs = list(configs)
        sent = 0
        for usage in usages:
            if not usage.is_available:
                continue
            config = next(
                (c for c in configs if is_usage_for_provider(c.provider_id, usage.provider_id)),
                None,
            )
            if config is not None and not config.enable_notifications:
                continue

            used = effective_used_percent(usage)
            if used >= prefs.notification_threshold:
                self._notifier.notify(
                    usage.friendly_name(),
                    f"Usage reached {used:.1f}%",
                    "openDashboard",
                    usage.provider_id,
                )
                sent += 1
        return sent

    def _record_telemetry(self, duration_seconds: "float", error: "str | None") -> "None":
        latency_ms = max(duration_seconds, 0.0) * 1000.0
        self._refresh_count += 1
        self._total_latency_ms += latency_ms
        self._last_latency_ms = latency_ms
        if error is not None:
            self._failure_count += 1
        self._last_completed = utc_now()
        self._last_error = error

    def telemetry(self) -> "RefreshTelemetry":
        count = self._refresh_count
        return RefreshTelemetry(
            refresh_count=count,
            refresh_success_count=max(count - self._failure_count, 0),
            refresh_failure_count=self._failure_count,
            error_rate_percent=(self._failure_count / count * 100.0) if count else 0.0,
            average_latency_ms=(self._total_latency_ms / count) if count else 0.0,
            last_latency_ms=self._last_latency_ms,
            last_refresh_completed_utc=self._last_completed,
            last_error=self._last_error,
        )
