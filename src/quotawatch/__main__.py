import asyncio
import os
import sys
from datetime import timedelta
from pathlib import Path

import structlog
import uvicorn
from pydantic import TypeAdapter

from quotawatch import discovery
from quotawatch.api import ApiServices, UsageResponse, create_app
from quotawatch.cli import parse_args
from quotawatch.collector import Collector
from quotawatch.config import Settings
from quotawatch.config_store import JsonConfigStore
from quotawatch.logging import setup_logging
from quotawatch.metrics import MetricsUpdater
from quotawatch.notifications import create_notifier
from quotawatch.orchestrator import ProviderNotFoundError, RefreshOrchestrator
from quotawatch.provider.registry import build_catalog, build_providers
from quotawatch.store import UsageStore

logger = structlog.get_logger()

_BIND_WAIT_SECONDS = 10.0


def _build_orchestrator(
    settings: "Settings", config_store: "JsonConfigStore"
) -> "RefreshOrchestrator":
    providers = build_providers()
    for p in providers:
        logger.debug("provider_registered", provider=p.provider_id)
    return RefreshOrchestrator(
        providers,
        config_store.load_configs,
        max_concurrency=settings.max_concurrency,
        provider_timeout=settings.provider_timeout,
        catalog=build_catalog(providers),
    )


async def _check(settings: "Settings", provider_id: "str") -> "int":
    """
    fetches one provider once and prints the result. Failures propagate
    out of the orchestrator here and turn into exit code 1.
    """
    config_store = JsonConfigStore(settings.config_path)
    orchestrator = _build_orchestrator(settings, config_store)
    try:
        usages = await orchestrator.get_single_provider_usage(provider_id)
    except ProviderNotFoundError as exc:
        print(str(exc), file=sys.stderr)
        return 1
    except Exception:
        logger.exception("check_failed", provider=provider_id)
        return 1
    finally:
        await orchestrator.close()

    adapter = TypeAdapter(list[UsageResponse])
    payload = [UsageResponse.model_validate(u) for u in usages]
    print(adapter.dump_json(payload, indent=2).decode())
    return 0


async def _wait_for_bind(
    server: "uvicorn.Server", serve_task: "asyncio.Task[None]"
) -> "bool":
    loop = asyncio.get_running_loop()
    deadline = loop.time() + _BIND_WAIT_SECONDS
    while not server.started:
        if serve_task.done() or loop.time() >= deadline:
            return False
        await asyncio.sleep(0.05)
    return True


async def _serve(settings: "Settings") -> "None":
    info_path = settings.monitor_info_path
    lock = discovery.StartupLock(settings.lock_path)
    if not lock.acquire():
        raise SystemExit("another quotawatch instance is starting")

    try:
        existing = await discovery.get_and_validate_monitor_info(info_path)
        if existing is not None:
            logger.info(
                "already_running", port=existing.port, pid=existing.process_id
            )
            return

        port = discovery.find_available_port(settings.port)
        config_store = JsonConfigStore(settings.config_path)
        orchestrator = _build_orchestrator(settings, config_store)
        notifier = create_notifier(settings.notifier)

        async with UsageStore(settings.database_path) as store:
            collector = Collector(
                orchestrator,
                store,
                config_store,
                MetricsUpdater(),
                notifier,
                refresh_interval_seconds=settings.refresh_interval,
                reset_threshold_percent=settings.reset_threshold_percent,
                history_retention=timedelta(days=settings.history_retention_days),
                report_error=lambda message: discovery.report_error(info_path, message),
            )
            services = ApiServices(
                orchestrator=orchestrator,
                store=store,
                config_store=config_store,
                collector=collector,
                notifier=notifier,
                settings=settings,
                port=port,
            )
            server = uvicorn.Server(
                uvicorn.Config(
                    create_app(services),
                    host="127.0.0.1",
                    port=port,
                    log_config=None,
                )
            )

            serve_task = asyncio.create_task(server.serve())
            if not await _wait_for_bind(server, serve_task):
                discovery.report_startup_failure(
                    info_path, f"could not bind port {port}", settings.debug
                )
                lock.release()
                server.should_exit = True
                await serve_task
                await orchestrator.close()
                raise SystemExit(f"could not bind port {port}")

            # published only once the listener accepts connections
            discovery.save_monitor_info(
                info_path, discovery.MonitorInfo(port=port, debug_mode=settings.debug)
            )
            lock.release()
            logger.info("api_server_started", port=port)

            collector_task = asyncio.create_task(collector.run())
            try:
                # uvicorn handles SIGINT/SIGTERM and returns
                await serve_task
            finally:
                logger.info("shutting_down")
                collector.stop()
                await collector_task
                await collector.close()
                _unpublish(info_path)
                logger.info("shutdown_complete")
    finally:
        lock.release()


def _unpublish(info_path: "Path") -> "None":
    info = discovery.load_monitor_info(info_path)
    if info is not None and info.process_id == os.getpid():
        info_path.unlink(missing_ok=True)


def main() -> "None":
    settings, check_id = parse_args()
    setup_logging(
        settings.effective_log_level,
        None if check_id else settings.log_path,
    )

    if check_id:
        raise SystemExit(asyncio.run(_check(settings, check_id)))

    asyncio.run(_serve(settings))


if __name__ == "__main__":
    main()
