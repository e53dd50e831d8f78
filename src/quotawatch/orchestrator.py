import asyncio
import dataclasses
import time
from typing import Awaitable, Callable, Collection, Sequence

import structlog

from quotawatch.definitions import (
    ProviderCatalog,
    ProviderDefinition,
    is_coding_plan_provider,
)
from quotawatch.models import (
    PlanType,
    ProviderConfig,
    ProviderUsage,
    detail_contract_violations,
)
from quotawatch.provider.base import PartialResultCallback, UsageProvider

logger = structlog.get_logger()

DEFAULT_MAX_CONCURRENCY = 6
DEFAULT_PROVIDER_TIMEOUT_SECONDS = 25.0
CONFIG_CACHE_SECONDS = 5.0

ConfigLoader = Callable[[], Awaitable[Sequence[ProviderConfig]]]


class ProviderNotFoundError(LookupError):
    """
    raised when a provider id has neither a stored config nor an
    always-included definition.
    """


@dataclasses.dataclass(frozen=True, slots=True)
class _Defaults:
    is_quota_based: "bool"
    plan_type: "PlanType"
    display_name: "str"


def _observe_abandoned(task: "asyncio.Task[object]") -> "None":
    # retrieve the result of a task nobody awaits anymore so a late
    # exception is never reported as unretrieved
    if not task.cancelled():
        task.exception()


class RefreshOrchestrator:
    """
    RefreshOrchestrator fans a refresh out to every configured provider
    and merges the results into one flat list of ProviderUsage.

    - at most one full refresh runs at a time; concurrent callers join
      the in-flight one and share its result.
    - provider calls are bounded by a semaphore and each one has its own
      timeout; a slow or failing provider only contributes an error
      record for itself.
    - stored configs are cached for a few seconds.

    The refresh lock and the config lock are never held together.
    """

    def __init__(
        self,
        providers: "Sequence[UsageProvider]",
        load_configs: "ConfigLoader",
        max_concurrency: "int" = DEFAULT_MAX_CONCURRENCY,
        provider_timeout: "float" = DEFAULT_PROVIDER_TIMEOUT_SECONDS,
        config_cache_seconds: "float" = CONFIG_CACHE_SECONDS,
        catalog: "ProviderCatalog | None" = None,
    ) -> "None":
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {max_concurrency}")
        if not provider_timeout > 0:
            raise ValueError(f"provider_timeout must be positive, got {provider_timeout}")

        self._providers: "list[UsageProvider]" = list(providers)
        self._load_configs = load_configs
        self._provider_timeout = provider_timeout
        self._config_cache_seconds = config_cache_seconds
        # also knows providers without an adapter, for names and defaults
        self._catalog = (
            catalog
            if catalog is not None
            else ProviderCatalog(p.definition for p in self._providers)
        )

        self._last_usages: "list[ProviderUsage]" = []
        self._last_configs: "list[ProviderConfig] | None" = None
        self._last_config_load: "float" = 0.0

        self._refresh_task: "asyncio.Task[list[ProviderUsage]] | None" = None
        self._refresh_lock: "asyncio.Lock" = asyncio.Lock()
        self._config_lock: "asyncio.Lock" = asyncio.Lock()
        self._http_gate: "asyncio.Semaphore" = asyncio.Semaphore(max_concurrency)

    @property
    def providers(self) -> "list[UsageProvider]":
        return list(self._providers)

    @property
    def definitions(self) -> "list[ProviderDefinition]":
        return [p.definition for p in self._providers]

    @property
    def last_usages(self) -> "tuple[ProviderUsage, ...]":
        return tuple(self._last_usages)

    @property
    def last_configs(self) -> "tuple[ProviderConfig, ...] | None":
        if self._last_configs is None:
            return None
        return tuple(c.clone() for c in self._last_configs)

    async def close(self) -> "None":
        """
        closes every provider's session.
        """
        for p in self._providers:
            await p.close()

    def _configs_fresh(self) -> "bool":
        return (
            self._last_configs is not None
            and time.monotonic() - self._last_config_load < self._config_cache_seconds
        )

    async def get_configs(self, force_refresh: "bool" = False) -> "list[ProviderConfig]":
        if not force_refresh and self._configs_fresh():
            logger.debug("using_cached_configs")
            return list(self._last_configs or [])

        async with self._config_lock:
            # re-check: another caller may have reloaded while we waited
            if not force_refresh and self._configs_fresh():
                return list(self._last_configs or [])

            logger.debug("loading_configs")
            configs = list(await self._load_configs())
            self._last_configs = configs
            self._last_config_load = time.monotonic()
            return list(configs)

    async def refresh_all(
        self,
        force_refresh: "bool" = True,
        on_partial: "PartialResultCallback | None" = None,
        include_ids: "Collection[str] | None" = None,
        override_configs: "Collection[ProviderConfig] | None" = None,
    ) -> "list[ProviderUsage]":
        """
        returns the usage of every provider. Joins a refresh that is
        already running instead of starting a second one; returns the
        cached result without work when force_refresh is False and one
        exists.
        """
        async with self._refresh_lock:
            task = self._refresh_task
            if task is not None and not task.done():
                logger.debug("joining_inflight_refresh")
            elif not force_refresh and self._last_usages:
                return list(self._last_usages)
            else:
                task = asyncio.create_task(
                    self._refresh(on_partial, include_ids, override_configs)
                )
                self._refresh_task = task

        # shield: a cancelled caller must not cancel the refresh the
        # other callers are waiting on
        return list(await asyncio.shield(task))

    async def _refresh(
        self,
        on_partial: "PartialResultCallback | None",
        include_ids: "Collection[str] | None",
        override_configs: "Collection[ProviderConfig] | None",
    ) -> "list[ProviderUsage]":
        if override_configs is not None:
            configs = [c.clone() for c in override_configs]
        else:
            configs = await self.get_configs(force_refresh=True)
            configs.extend(self._auto_include_configs(configs))

        if include_ids:
            included = {i.lower() for i in include_ids}
            configs = [c for c in configs if c.provider_id.lower() in included]

        logger.debug("refresh_started", providers=len(configs))
        nested = await asyncio.gather(
            *(self._fetch_provider(config, on_partial) for config in configs)
        )
        results = [usage for usages in nested for usage in usages]

        self._last_usages = results
        return list(results)

    def _auto_include_configs(
        self, configs: "list[ProviderConfig]"
    ) -> "list[ProviderConfig]":
        """
        synthesizes a keyless config for every always-included provider
        that has none stored yet.
        """
        stored = {c.provider_id.lower() for c in configs}
        return [
            ProviderConfig(
                provider_id=d.provider_id,
                config_type=d.default_config_type,
                plan_type=d.plan_type,
            )
            for d in self.definitions
            if d.auto_include and d.provider_id.lower() not in stored
        ]

    async def get_single_provider_usage(self, provider_id: "str") -> "list[ProviderUsage]":
        """
        fetches one provider outside of the coalesced full refresh.
        Errors propagate to the caller.
        """
        configs = await self.get_configs(force_refresh=False)
        config = next(
            (c for c in configs if c.provider_id.lower() == provider_id.lower()),
            None,
        )

        if config is None:
            definition = next(
                (
                    d
                    for d in self.definitions
                    if d.auto_include and d.handles_provider_id(provider_id)
                ),
                None,
            )
            if definition is None:
                raise ProviderNotFoundError(
                    f"Provider '{provider_id}' not found in configuration."
                )
            config = ProviderConfig(
                provider_id=provider_id,
                config_type=definition.default_config_type,
                plan_type=definition.plan_type,
            )

        return await self._fetch_provider(config, None)

    def _find_provider(self, provider_id: "str") -> "UsageProvider | None":
        return next(
            (p for p in self._providers if p.definition.handles_provider_id(provider_id)),
            None,
        )

    def _resolve_defaults(
        self,
        provider_id: "str",
        provider: "UsageProvider | None",
    ) -> "_Defaults":
        definition = provider.definition if provider is not None else None
        if definition is None:
            definition = self._catalog.find(provider_id)

        if definition is not None:
            return _Defaults(
                is_quota_based=definition.is_quota_based,
                plan_type=definition.plan_type,
                display_name=definition.resolve_display_name(provider_id)
                or definition.display_name,
            )

        logger.warning("provider_metadata_missing", provider=provider_id)
        coding = is_coding_plan_provider(provider_id)
        return _Defaults(
            is_quota_based=coding,
            plan_type=PlanType.CODING if coding else PlanType.USAGE,
            display_name=provider_id,
        )

    @staticmethod
    def _resolve_display_name(
        definition: "ProviderDefinition",
        usage: "ProviderUsage",
    ) -> "str":
        # the adapter's own name wins over anything derived from the id
        name = usage.provider_name
        if name and name.strip() and name != usage.provider_id:
            return name
        return definition.resolve_display_name(usage.provider_id) or usage.provider_id

    async def _fetch_provider(
        self,
        config: "ProviderConfig",
        on_partial: "PartialResultCallback | None",
    ) -> "list[ProviderUsage]":
        provider = self._find_provider(config.provider_id)
        defaults = self._resolve_defaults(config.provider_id, provider)

        if provider is None:
            usage = ProviderUsage(
                provider_id=config.provider_id,
                provider_name=defaults.display_name,
                description="Usage unknown (provider integration missing)",
                is_available=False,
                usage_unit="Status",
                is_quota_based=defaults.is_quota_based,
                plan_type=defaults.plan_type,
            )
            if on_partial is not None:
                on_partial(usage)
            return [usage]

        def _error_usage(description: "str", **kwargs: "object") -> "ProviderUsage":
            return ProviderUsage(
                provider_id=config.provider_id,
                provider_name=defaults.display_name,
                description=description,
                is_quota_based=defaults.is_quota_based,
                plan_type=defaults.plan_type,
                auth_source=config.auth_source,
                response_latency_ms=(time.monotonic() - started) * 1000.0,
                **kwargs,  # type: ignore[arg-type]
            )

        async with self._http_gate:
            started = time.monotonic()
            logger.debug("provider_fetch_started", provider=config.provider_id)
            fetch = asyncio.ensure_future(provider.fetch_usage(config, on_partial))
            try:
                done, _ = await asyncio.wait({fetch}, timeout=self._provider_timeout)
                if fetch not in done:
                    logger.warning(
                        "provider_timeout",
                        provider=config.provider_id,
                        timeout_seconds=self._provider_timeout,
                    )
                    # abandoned, not cancelled: the call may not support
                    # cancellation, its outcome is observed and dropped
                    fetch.add_done_callback(_observe_abandoned)
                    usage = _error_usage(
                        f"[Error] Timeout after {self._provider_timeout:.0f}s",
                        is_available=False,
                        http_status=504,
                    )
                    if on_partial is not None:
                        on_partial(usage)
                    return [usage]

                usages = list(fetch.result())

            except ValueError as exc:
                logger.warning(
                    "provider_misconfigured",
                    provider=config.provider_id,
                    error=str(exc),
                )
                usage = _error_usage(str(exc), is_available=False)
                if on_partial is not None:
                    on_partial(usage)
                return [usage]

            except Exception as exc:
                logger.exception("provider_fetch_failed", provider=config.provider_id)
                usage = _error_usage(
                    f"[Error] {exc}", is_available=True, http_status=500
                )
                if on_partial is None:
                    # synchronous callers (e.g. a CLI check) want the failure
                    raise
                on_partial(usage)
                return [usage]

            latency_ms = (time.monotonic() - started) * 1000.0
            results: "list[ProviderUsage]" = []
            for usage in usages:
                usage = self._enforce_detail_contract(usage)
                usage = dataclasses.replace(
                    usage,
                    provider_name=self._resolve_display_name(provider.definition, usage),
                    auth_source=config.auth_source or usage.auth_source,
                    response_latency_ms=latency_ms,
                )
                if on_partial is not None:
                    on_partial(usage)
                results.append(usage)

            logger.debug(
                "provider_fetch_done", provider=config.provider_id, count=len(results)
            )
            return results

    @staticmethod
    def _enforce_detail_contract(usage: "ProviderUsage") -> "ProviderUsage":
        violations = detail_contract_violations(usage)
        if not violations:
            return usage

        logger.error(
            "provider_detail_contract_violation",
            provider=usage.provider_id,
            violations=violations,
        )
        valid = tuple(d for d in usage.details or () if d.is_contract_valid())
        return dataclasses.replace(usage, details=valid)
