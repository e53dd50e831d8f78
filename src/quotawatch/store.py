import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Iterable, Sequence

import aiosqlite
import structlog

from quotawatch.models import (
    DetailType,
    PlanType,
    ProviderUsage,
    ProviderUsageDetail,
    ResetEvent,
    WindowKind,
    as_utc,
    utc_now,
)

logger = structlog.get_logger()

DEFAULT_HISTORY_RETENTION = timedelta(days=90)
DEFAULT_RAW_RETENTION = timedelta(hours=24)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS providers (
    provider_id TEXT PRIMARY KEY COLLATE NOCASE,
    provider_name TEXT NOT NULL DEFAULT '',
    auth_source TEXT NOT NULL DEFAULT '',
    account_name TEXT NOT NULL DEFAULT '',
    config_type TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS provider_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    provider_id TEXT NOT NULL COLLATE NOCASE,
    provider_name TEXT NOT NULL DEFAULT '',
    account_name TEXT NOT NULL DEFAULT '',
    requests_used REAL NOT NULL DEFAULT 0,
    requests_available REAL NOT NULL DEFAULT 0,
    requests_percentage REAL NOT NULL DEFAULT 0,
    plan_type TEXT NOT NULL DEFAULT 'usage',
    usage_unit TEXT NOT NULL DEFAULT '',
    is_quota_based INTEGER NOT NULL DEFAULT 0,
    display_as_fraction INTEGER NOT NULL DEFAULT 0,
    is_available INTEGER NOT NULL DEFAULT 1,
    description TEXT NOT NULL DEFAULT '',
    auth_source TEXT NOT NULL DEFAULT '',
    fetched_at TEXT NOT NULL,
    response_latency_ms REAL NOT NULL DEFAULT 0,
    http_status INTEGER NOT NULL DEFAULT 200,
    details_json TEXT,
    next_reset_time TEXT
);

CREATE INDEX IF NOT EXISTS idx_history_provider_time
    ON provider_history (provider_id, fetched_at);

CREATE TABLE IF NOT EXISTS raw_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    provider_id TEXT NOT NULL,
    raw_json TEXT NOT NULL,
    http_status INTEGER NOT NULL DEFAULT 200,
    fetched_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS reset_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    provider_id TEXT NOT NULL COLLATE NOCASE,
    provider_name TEXT NOT NULL DEFAULT '',
    previous_usage REAL NOT NULL,
    new_usage REAL NOT NULL,
    reset_type TEXT NOT NULL DEFAULT 'Automatic',
    timestamp TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_resets_provider_time
    ON reset_events (provider_id, timestamp);
"""

_HISTORY_COLUMNS = (
    "provider_id, provider_name, account_name, requests_used, "
    "requests_available, requests_percentage, plan_type, usage_unit, "
    "is_quota_based, display_as_fraction, is_available, description, "
    "auth_source, fetched_at, response_latency_ms, http_status, "
    "details_json, next_reset_time"
)


def _ts(value: "datetime") -> "str":
    # fixed width so text comparison orders like time
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _ts_or_none(value: "datetime | None") -> "str | None":
    return _ts(value) if value is not None else None


def _parse_ts(value: "str | None") -> "datetime | None":
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


def _details_to_json(details: "Sequence[ProviderUsageDetail] | None") -> "str | None":
    if details is None:
        return None
    return json.dumps(
        [
            {
                "name": d.name,
                "model_name": d.model_name,
                "group_name": d.group_name,
                "used": d.used,
                "description": d.description,
                "next_reset_time": _ts_or_none(d.next_reset_time),
                "detail_type": d.detail_type.value,
                "window_kind": d.window_kind.value,
            }
            for d in details
        ]
    )


def _details_from_json(value: "str | None") -> "tuple[ProviderUsageDetail, ...] | None":
    if value is None:
        return None
    return tuple(
        ProviderUsageDetail(
            name=item.get("name", ""),
            model_name=item.get("model_name", ""),
            group_name=item.get("group_name", ""),
            used=item.get("used", ""),
            description=item.get("description", ""),
            next_reset_time=_parse_ts(item.get("next_reset_time")),
            detail_type=DetailType(item.get("detail_type", DetailType.UNKNOWN.value)),
            window_kind=WindowKind(item.get("window_kind", WindowKind.NONE.value)),
        )
        for item in json.loads(value)
    )


def _history_params(usage: "ProviderUsage") -> "tuple[Any, ...]":
    return (
        usage.provider_id,
        usage.provider_name,
        usage.account_name,
        usage.requests_used,
        usage.requests_available,
        usage.requests_percentage,
        usage.plan_type.value,
        usage.usage_unit,
        int(usage.is_quota_based),
        int(usage.display_as_fraction),
        int(usage.is_available),
        usage.description,
        usage.auth_source,
        _ts(usage.fetched_at),
        usage.response_latency_ms,
        usage.http_status,
        _details_to_json(usage.details),
        _ts_or_none(usage.next_reset_time),
    )


def _usage_from_row(row: "aiosqlite.Row") -> "ProviderUsage":
    return ProviderUsage(
        provider_id=row["provider_id"],
        provider_name=row["provider_name"],
        account_name=row["account_name"],
        requests_used=row["requests_used"],
        requests_available=row["requests_available"],
        requests_percentage=row["requests_percentage"],
        plan_type=PlanType(row["plan_type"]),
        usage_unit=row["usage_unit"],
        is_quota_based=bool(row["is_quota_based"]),
        display_as_fraction=bool(row["display_as_fraction"]),
        is_available=bool(row["is_available"]),
        description=row["description"],
        auth_source=row["auth_source"],
        fetched_at=_parse_ts(row["fetched_at"]) or utc_now(),
        response_latency_ms=row["response_latency_ms"],
        http_status=row["http_status"],
        details=_details_from_json(row["details_json"]),
        next_reset_time=_parse_ts(row["next_reset_time"]),
    )


def _reset_from_row(row: "aiosqlite.Row") -> "ResetEvent":
    return ResetEvent(
        provider_id=row["provider_id"],
        provider_name=row["provider_name"],
        previous_usage=row["previous_usage"],
        new_usage=row["new_usage"],
        reset_type=row["reset_type"],
        timestamp=_parse_ts(row["timestamp"]) or utc_now(),
    )


class UsageStore:
    """
    UsageStore persists the usage time series in SQLite.

    - provider_history is append-only; rows are written in fetch order
      and read back ordered by fetched_at.
    - raw_snapshots keeps raw provider payloads for a short time, for
      diagnostics.
    - reset_events records detected quota refills.

    The connection runs in autocommit mode with WAL journaling so API
    reads do not block the collector's writes.
    """

    def __init__(self, db_path: "Path") -> "None":
        self._db_path = db_path
        self._connection: "aiosqlite.Connection | None" = None

    async def connect(self) -> "None":
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self._db_path, isolation_level=None)
        self._connection.row_factory = aiosqlite.Row

        cursor = await self._connection.execute("PRAGMA journal_mode = WAL")
        result = await cursor.fetchone()
        if result is None or result[0].lower() != "wal":
            raise RuntimeError(
                f"failed to set WAL journal mode, got {result[0] if result else None}"
            )
        await self._connection.execute("PRAGMA busy_timeout = 5000")
        logger.debug("store_connected", path=str(self._db_path))

    async def close(self) -> "None":
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    async def __aenter__(self) -> "UsageStore":
        await self.connect()
        await self.ensure_schema()
        return self

    async def __aexit__(self, *exc_info: "object") -> "None":
        await self.close()

    @property
    def connection(self) -> "aiosqlite.Connection":
        if self._connection is None:
            raise RuntimeError("store not connected, call connect() first")
        return self._connection

    async def ensure_schema(self) -> "None":
        await self.connection.executescript(_SCHEMA)

    async def _fetch_all(
        self, sql: "str", parameters: "Sequence[Any]" = ()
    ) -> "list[aiosqlite.Row]":
        cursor = await self.connection.execute(sql, parameters)
        rows = await cursor.fetchall()
        return list(rows)

    async def store_provider(
        self,
        provider_id: "str",
        provider_name: "str" = "",
        auth_source: "str" = "",
        account_name: "str" = "",
        config_type: "str" = "",
    ) -> "None":
        """
        upserts the providers row. Blank values never overwrite stored
        ones.
        """
        await self.connection.execute(
            """
            INSERT INTO providers
                (provider_id, provider_name, auth_source, account_name,
                 config_type, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (provider_id) DO UPDATE SET
                provider_name = CASE WHEN excluded.provider_name != ''
                    THEN excluded.provider_name ELSE provider_name END,
                auth_source = CASE WHEN excluded.auth_source != ''
                    THEN excluded.auth_source ELSE auth_source END,
                account_name = CASE WHEN excluded.account_name != ''
                    THEN excluded.account_name ELSE account_name END,
                config_type = CASE WHEN excluded.config_type != ''
                    THEN excluded.config_type ELSE config_type END,
                updated_at = excluded.updated_at
            """,
            (
                provider_id,
                provider_name,
                auth_source,
                account_name,
                config_type,
                _ts(utc_now()),
            ),
        )

    async def known_provider_ids(self) -> "set[str]":
        rows = await self._fetch_all("SELECT provider_id FROM providers")
        return {row["provider_id"].lower() for row in rows}

    async def append_history(self, usages: "Iterable[ProviderUsage]") -> "int":
        params = [_history_params(u) for u in usages]
        if not params:
            return 0

        placeholders = ", ".join("?" * len(params[0]))
        await self.connection.executemany(
            f"INSERT INTO provider_history ({_HISTORY_COLUMNS}) VALUES ({placeholders})",
            params,
        )
        logger.debug("history_appended", count=len(params))
        return len(params)

    async def latest_usages(self) -> "list[ProviderUsage]":
        """
        returns the newest sample of every provider, ordered by name.
        """
        rows = await self._fetch_all(
            """
            SELECT h.* FROM provider_history h
            JOIN (
                SELECT provider_id, MAX(id) AS max_id
                FROM provider_history GROUP BY provider_id
            ) latest ON h.id = latest.max_id
            ORDER BY h.provider_name COLLATE NOCASE, h.provider_id
            """
        )
        return [_usage_from_row(r) for r in rows]

    async def latest_usage(self, provider_id: "str") -> "ProviderUsage | None":
        rows = await self._fetch_all(
            """
            SELECT * FROM provider_history
            WHERE provider_id = ? COLLATE NOCASE
            ORDER BY id DESC LIMIT 1
            """,
            (provider_id,),
        )
        return _usage_from_row(rows[0]) if rows else None

    async def history(self, limit: "int" = 100) -> "list[ProviderUsage]":
        rows = await self._fetch_all(
            "SELECT * FROM provider_history ORDER BY fetched_at DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [_usage_from_row(r) for r in rows]

    async def history_for_provider(
        self, provider_id: "str", limit: "int" = 100
    ) -> "list[ProviderUsage]":
        """
        returns the newest samples of one provider, newest first.
        """
        rows = await self._fetch_all(
            """
            SELECT * FROM provider_history
            WHERE provider_id = ? COLLATE NOCASE
            ORDER BY fetched_at DESC, id DESC LIMIT ?
            """,
            (provider_id, limit),
        )
        return [_usage_from_row(r) for r in rows]

    async def history_window_for_provider(
        self, provider_id: "str", since: "datetime"
    ) -> "list[ProviderUsage]":
        """
        returns the samples of one provider fetched at or after since,
        oldest first, as the usage math expects them.
        """
        rows = await self._fetch_all(
            """
            SELECT * FROM provider_history
            WHERE provider_id = ? COLLATE NOCASE AND fetched_at >= ?
            ORDER BY fetched_at ASC, id ASC
            """,
            (provider_id, _ts(since)),
        )
        return [_usage_from_row(r) for r in rows]

    async def store_raw_snapshot(
        self, provider_id: "str", raw_json: "str", http_status: "int" = 200
    ) -> "None":
        await self.connection.execute(
            """
            INSERT INTO raw_snapshots (provider_id, raw_json, http_status, fetched_at)
            VALUES (?, ?, ?, ?)
            """,
            (provider_id, raw_json, http_status, _ts(utc_now())),
        )

    async def raw_snapshot_count(self) -> "int":
        rows = await self._fetch_all("SELECT COUNT(*) AS n FROM raw_snapshots")
        return int(rows[0]["n"])

    async def store_reset_event(self, event: "ResetEvent") -> "None":
        await self.connection.execute(
            """
            INSERT INTO reset_events
                (provider_id, provider_name, previous_usage, new_usage,
                 reset_type, timestamp)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                event.provider_id,
                event.provider_name,
                event.previous_usage,
                event.new_usage,
                event.reset_type,
                _ts(event.timestamp),
            ),
        )

    async def reset_events(
        self, provider_id: "str", limit: "int" = 50
    ) -> "list[ResetEvent]":
        rows = await self._fetch_all(
            """
            SELECT * FROM reset_events
            WHERE provider_id = ? COLLATE NOCASE
            ORDER BY timestamp DESC, id DESC LIMIT ?
            """,
            (provider_id, limit),
        )
        return [_reset_from_row(r) for r in rows]

    async def prune(
        self,
        history_retention: "timedelta" = DEFAULT_HISTORY_RETENTION,
        raw_retention: "timedelta" = DEFAULT_RAW_RETENTION,
    ) -> "int":
        """
        deletes history and reset events older than the history
        retention, and raw snapshots older than their own window.
        Returns the number of deleted rows.
        """
        now = utc_now()
        history_cursor = await self.connection.execute(
            "DELETE FROM provider_history WHERE fetched_at < ?",
            (_ts(now - history_retention),),
        )
        raw_cursor = await self.connection.execute(
            "DELETE FROM raw_snapshots WHERE fetched_at < ?",
            (_ts(now - raw_retention),),
        )
        reset_cursor = await self.connection.execute(
            "DELETE FROM reset_events WHERE timestamp < ?",
            (_ts(now - history_retention),),
        )
        deleted = sum(
            max(c.rowcount, 0) for c in (history_cursor, raw_cursor, reset_cursor)
        )
        if deleted:
            logger.info("store_pruned", deleted=deleted)
        return deleted

    async def is_history_empty(self) -> "bool":
        rows = await self._fetch_all("SELECT 1 FROM provider_history LIMIT 1")
        return not rows
