from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from quotawatch.models import ProviderUsage
from quotawatch.usage_math import effective_used_percent


class MetricsUpdater:
    """
    exposes the state of the refresh loop and the latest usage of every
    provider as Prometheus metrics.
     - refresh_duration_seconds: duration of whole refresh ticks.
     - refresh_failures_total: ticks that raised.
     - provider_fetch_errors_total: errored or unavailable records,
     labeled by provider.
     - provider_used_percent / provider_available: latest sample per
     provider; used percent is normalized so quota-based providers
     report consumption too.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._refresh_duration: "Histogram" = Histogram(
            "quotawatch_refresh_duration_seconds",
            "Duration of refresh ticks",
            registry=registry,
        )
        self._refresh_failures: "Counter" = Counter(
            "quotawatch_refresh_failures_total",
            "Total number of refresh ticks that failed",
            registry=registry,
        )
        self._provider_errors: "Counter" = Counter(
            "quotawatch_provider_fetch_errors_total",
            "Total number of failed provider fetches by provider",
            ["provider"],
            registry=registry,
        )
        self._last_refresh_success: "Gauge" = Gauge(
            "quotawatch_last_refresh_success_timestamp_seconds",
            "Unix timestamp of the last successful refresh",
            registry=registry,
        )
        self._used_percent: "Gauge" = Gauge(
            "quotawatch_provider_used_percent",
            "Latest used percentage per provider",
            ["provider"],
            registry=registry,
        )
        self._available: "Gauge" = Gauge(
            "quotawatch_provider_available",
            "1 if the latest fetch of the provider succeeded, else 0",
            ["provider"],
            registry=registry,
        )

    def update_usage(self, usage: "ProviderUsage") -> "None":
        provider = usage.provider_id
        self._available.labels(provider=provider).set(1 if usage.is_available else 0)
        if usage.is_available:
            self._used_percent.labels(provider=provider).set(
                effective_used_percent(usage)
            )
        if not usage.is_available or usage.http_status >= 400:
            self._provider_errors.labels(provider=provider).inc()

    def observe_refresh_duration(self, duration_seconds: "float") -> "None":
        self._refresh_duration.observe(duration_seconds)

    def inc_refresh_failure(self) -> "None":
        self._refresh_failures.inc()

    def set_last_refresh_success(self, timestamp: "float") -> "None":
        self._last_refresh_success.set(timestamp)
