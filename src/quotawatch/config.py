import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, TypeVar

T = TypeVar("T")


def default_data_dir() -> "Path":
    base = os.environ.get("XDG_DATA_HOME")
    root = Path(base) if base else Path.home() / ".local" / "share"
    return root / "quotawatch"


def _env(
    environ: "Mapping[str, str]",
    name: "str",
    convert: "Callable[[str], T]",
    default: "T",
) -> "T":
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return convert(raw)
    except ValueError as exc:
        raise ValueError(f"invalid value for {name}: {raw!r}") from exc


def positive_int(raw: "str") -> "int":
    value = int(raw)
    if value <= 0:
        raise ValueError(f"expected a positive integer, got {value}")
    return value


def positive_float(raw: "str") -> "float":
    value = float(raw)
    if not value > 0:
        raise ValueError(f"expected a positive number, got {value}")
    return value


@dataclass
class Settings:
    data_dir: "Path" = field(default_factory=default_data_dir)
    # preferred API port, the next free one is used when taken
    port: "int" = 5000
    # seconds between background refresh ticks
    refresh_interval: "int" = 300
    # per-provider fetch timeout in seconds
    provider_timeout: "float" = 25.0
    # simultaneous provider fetches
    max_concurrency: "int" = 6
    # a usage drop of this share of the capacity starts a new cycle
    reset_drop_ratio: "float" = 0.2
    history_retention_days: "int" = 90
    log_level: "str" = "info"
    debug: "bool" = False
    # "noop" or "log"
    notifier: "str" = "noop"

    @classmethod
    def from_env(cls, environ: "Mapping[str, str] | None" = None) -> "Settings":
        env = environ if environ is not None else os.environ
        defaults = cls()
        return cls(
            data_dir=_env(env, "QUOTAWATCH_DATA_DIR", Path, defaults.data_dir),
            port=_env(env, "QUOTAWATCH_PORT", int, defaults.port),
            refresh_interval=_env(
                env, "QUOTAWATCH_REFRESH_INTERVAL", positive_int, defaults.refresh_interval
            ),
            provider_timeout=_env(
                env, "QUOTAWATCH_PROVIDER_TIMEOUT", positive_float, defaults.provider_timeout
            ),
            max_concurrency=_env(
                env, "QUOTAWATCH_MAX_CONCURRENCY", positive_int, defaults.max_concurrency
            ),
            reset_drop_ratio=_env(
                env, "QUOTAWATCH_RESET_DROP_RATIO", float, defaults.reset_drop_ratio
            ),
            history_retention_days=_env(
                env, "QUOTAWATCH_HISTORY_DAYS", int, defaults.history_retention_days
            ),
            notifier=_env(env, "QUOTAWATCH_NOTIFIER", str, defaults.notifier),
        )

    @property
    def effective_log_level(self) -> "str":
        return "debug" if self.debug else self.log_level

    @property
    def reset_threshold_percent(self) -> "float":
        """
        the drop ratio expressed in percentage points, used to flag
        reset events between two consecutive samples.
        """
        return self.reset_drop_ratio * 100.0

    @property
    def config_path(self) -> "Path":
        return self.data_dir / "providers.json"

    @property
    def database_path(self) -> "Path":
        return self.data_dir / "usage.db"

    @property
    def monitor_info_path(self) -> "Path":
        return self.data_dir / "monitor.json"

    @property
    def lock_path(self) -> "Path":
        return self.data_dir / "monitor.lock"

    @property
    def log_path(self) -> "Path":
        return self.data_dir / "logs" / "quotawatch.log"
