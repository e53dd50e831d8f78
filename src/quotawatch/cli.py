import argparse
from pathlib import Path

from quotawatch.config import Settings, positive_float, positive_int


def parse_args(argv: "list[str] | None" = None) -> "tuple[Settings, str | None]":
    """
    returns the settings (environment first, flags override) and the
    provider id of a one-shot --check, if any.
    """
    parser = argparse.ArgumentParser(
        prog="quotawatch",
        description="Local monitor of AI provider usage and quotas",
    )
    parser.add_argument(
        "--data-dir",
        dest="data_dir",
        type=Path,
        default=None,
        help="Directory for config, database and logs",
    )
    parser.add_argument(
        "--port",
        dest="port",
        type=int,
        default=None,
        help="Preferred API port (default: 5000)",
    )
    parser.add_argument(
        "--refresh.interval",
        dest="refresh_interval",
        type=positive_int,
        default=None,
        help="Refresh interval in seconds (default: 300)",
    )
    parser.add_argument(
        "--provider.timeout",
        dest="provider_timeout",
        type=positive_float,
        default=None,
        help="Per-provider fetch timeout in seconds (default: 25)",
    )
    parser.add_argument(
        "--provider.concurrency",
        dest="max_concurrency",
        type=positive_int,
        default=None,
        help="Maximum simultaneous provider fetches (default: 6)",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="info",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Debug mode, forces debug logging",
    )
    parser.add_argument(
        "--check",
        metavar="PROVIDER_ID",
        default=None,
        help="Fetch one provider, print the result as JSON and exit",
    )

    args = parser.parse_args(argv)
    settings = Settings.from_env()
    for name in ("data_dir", "port", "refresh_interval", "provider_timeout", "max_concurrency"):
        value = getattr(args, name)
        if value is not None:
            setattr(settings, name, value)
    settings.log_level = args.log_level
    settings.debug = args.debug
    return settings, args.check
