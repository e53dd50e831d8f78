import getpass
import json
import os
import platform
import socket
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import httpx
import psutil
import structlog

from quotawatch.models import utc_now

logger = structlog.get_logger()

HEALTH_PROBE_TIMEOUT_SECONDS = 0.5
PORT_BIND_ATTEMPTS = 10
PORT_RETRY_DELAY_SECONDS = 0.1
FALLBACK_PORTS = range(5001, 5011)
STARTUP_LOCK_TIMEOUT_SECONDS = 10.0


def _user_name() -> "str":
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return ""


@dataclass
class MonitorInfo:
    """
    MonitorInfo is what a running instance publishes so other local
    processes can find it. It is written only once the API listener is
    bound.
    """

    port: "int" = 0
    process_id: "int" = field(default_factory=os.getpid)
    started_at: "str" = field(default_factory=lambda: utc_now().isoformat())
    debug_mode: "bool" = False
    machine_name: "str" = field(default_factory=platform.node)
    user_name: "str" = field(default_factory=_user_name)
    errors: "list[str]" = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: "dict[str, Any]") -> "MonitorInfo":
        return cls(
            port=int(data.get("port", 0)),
            process_id=int(data.get("process_id", 0)),
            started_at=str(data.get("started_at", "")),
            debug_mode=bool(data.get("debug_mode", False)),
            machine_name=str(data.get("machine_name", "")),
            user_name=str(data.get("user_name", "")),
            errors=[str(e) for e in data.get("errors") or []],
        )


def save_monitor_info(path: "Path", info: "MonitorInfo") -> "None":
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(asdict(info), indent=2), encoding="utf-8")
    os.replace(tmp, path)


def load_monitor_info(path: "Path") -> "MonitorInfo | None":
    if not path.is_file():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return MonitorInfo.from_dict(data)
    except (OSError, ValueError, TypeError, AttributeError) as exc:
        logger.warning("monitor_info_unreadable", path=str(path), error=str(exc))
        return None


def report_error(path: "Path", message: "str") -> "None":
    """
    appends a timestamped error to the published metadata, creating it
    when missing.
    """
    info = load_monitor_info(path) or MonitorInfo()
    info.errors.append(f"[{utc_now().isoformat()}] {message}")
    try:
        save_monitor_info(path, info)
    except OSError as exc:
        logger.warning("monitor_error_report_failed", error=str(exc))


def report_startup_failure(path: "Path", reason: "str", debug: "bool" = False) -> "None":
    info = MonitorInfo(
        port=0,
        debug_mode=debug,
        errors=[f"Startup status: failed: {reason}"],
    )
    save_monitor_info(path, info)


def invalidate_monitor_info(path: "Path") -> "Path | None":
    """
    moves stale metadata aside as monitor.json.stale.<unix-ts>. Returns
    the backup path, or None when there was nothing to move.
    """
    if not path.exists():
        return None
    backup = path.with_name(f"{path.name}.stale.{int(time.time())}")
    os.replace(path, backup)
    logger.info("monitor_info_invalidated", backup=str(backup))
    return backup


def is_process_alive(pid: "int") -> "bool":
    if pid <= 0 or not psutil.pid_exists(pid):
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


async def check_health(
    port: "int",
    client: "httpx.AsyncClient | None" = None,
) -> "bool":
    url = f"http://127.0.0.1:{port}/api/health"
    owned = client is None
    http = client or httpx.AsyncClient(timeout=HEALTH_PROBE_TIMEOUT_SECONDS)
    try:
        resp = await http.get(url, timeout=HEALTH_PROBE_TIMEOUT_SECONDS)
        return resp.status_code == 200
    except httpx.HTTPError:
        return False
    finally:
        if owned:
            await http.aclose()


async def get_and_validate_monitor_info(
    path: "Path",
    client: "httpx.AsyncClient | None" = None,
) -> "MonitorInfo | None":
    """
    returns the published metadata only if it describes a live, healthy
    instance. Anything else is invalidated and None is returned.
    """
    info = load_monitor_info(path)
    if info is None:
        return None

    if info.port <= 0:
        logger.info("monitor_info_stale", reason="no_port")
    elif not is_process_alive(info.process_id):
        logger.info("monitor_info_stale", reason="process_dead", pid=info.process_id)
    elif not await check_health(info.port, client):
        logger.info("monitor_info_stale", reason="health_check_failed", port=info.port)
    else:
        return info

    invalidate_monitor_info(path)
    return None


def _can_bind(port: "int", host: "str") -> "bool":
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return False
    return True


def find_available_port(
    preferred: "int" = 5000,
    host: "str" = "127.0.0.1",
    attempts: "int" = PORT_BIND_ATTEMPTS,
    retry_delay: "float" = PORT_RETRY_DELAY_SECONDS,
    fallback_ports: "range" = FALLBACK_PORTS,
) -> "int":
    """
    retries the preferred port a few times (a previous instance may be
    releasing it), then scans the fallback range, then lets the OS pick.
    """
    for attempt in range(attempts):
        if _can_bind(preferred, host):
            return preferred
        logger.debug("port_busy", port=preferred, attempt=attempt + 1)
        if attempt + 1 < attempts:
            time.sleep(retry_delay)

    for port in fallback_ports:
        if port != preferred and _can_bind(port, host):
            logger.info("port_fallback", preferred=preferred, port=port)
            return port

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        port = sock.getsockname()[1]
    logger.info("port_fallback", preferred=preferred, port=port)
    return port


class StartupLock:
    """
    StartupLock keeps two instances from starting at the same time. The
    lock file holds the owner's pid; a lock whose owner is gone is taken
    over.
    """

    def __init__(
        self,
        path: "Path",
        timeout_seconds: "float" = STARTUP_LOCK_TIMEOUT_SECONDS,
        poll_interval: "float" = 0.1,
    ) -> "None":
        self._path = path
        self._timeout = timeout_seconds
        self._poll_interval = poll_interval
        self._held = False

    @property
    def held(self) -> "bool":
        return self._held

    def _try_create(self) -> "bool":
        try:
            fd = os.open(self._path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(str(os.getpid()))
        return True

    def _owner_pid(self) -> "int":
        try:
            return int(self._path.read_text(encoding="utf-8").strip() or 0)
        except (OSError, ValueError):
            return 0

    def acquire(self) -> "bool":
        self._path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self._timeout

        while True:
            if self._try_create():
                self._held = True
                return True

            owner = self._owner_pid()
            if not is_process_alive(owner):
                logger.info("startup_lock_takeover", stale_pid=owner)
                self._path.unlink(missing_ok=True)
                continue

            if time.monotonic() >= deadline:
                logger.warning("startup_lock_timeout", owner_pid=owner)
                return False
            time.sleep(self._poll_interval)

    def release(self) -> "None":
        if not self._held:
            return
        self._held = False
        if self._owner_pid() == os.getpid():
            self._path.unlink(missing_ok=True)

    def __enter__(self) -> "StartupLock":
        if not self.acquire():
            raise TimeoutError(f"startup lock {self._path} is held by another process")
        return self

    def __exit__(self, *exc_info: "object") -> "None":
        self.release()
