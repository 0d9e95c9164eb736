"""
SQLite backend for fastapi-pulse.
====================================

Stores endpoints and the webhook delivery log in a local SQLite database
using ``aiosqlite`` for non-blocking async I/O.

  - WAL journal mode (``PRAGMA journal_mode=WAL``) — the probe loop writes
    status rows while the API reads them.
  - Lazy init — the database is created and migrated on the first operation,
    so setup() does not need to be async.
  - Status writes are a single ``UPDATE ... WHERE id = ?``; a deleted endpoint
    simply matches zero rows.

Requires::

    pip install aiosqlite
"""
from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

import structlog

from fastapi_pulse.exceptions import StorageError
from fastapi_pulse.schema import (
    Endpoint,
    EndpointCreate,
    EndpointStatus,
    EndpointUpdate,
    ProbeOutcome,
    WebhookDelivery,
)

if TYPE_CHECKING:
    from fastapi_pulse.config import PulseConfig

logger = structlog.get_logger(__name__)


def _build_ddl(prefix: str) -> str:
    return f"""
CREATE TABLE IF NOT EXISTS {prefix}_endpoints (
    id                TEXT     PRIMARY KEY,
    url               TEXT     NOT NULL,
    method            TEXT     NOT NULL DEFAULT 'GET',
    interval_seconds  INTEGER  NOT NULL DEFAULT 60 CHECK (interval_seconds >= 5),
    webhook_url       TEXT,
    enabled           INTEGER  NOT NULL DEFAULT 1,
    last_status       TEXT     NOT NULL DEFAULT 'unknown',
    last_status_code  INTEGER,
    last_latency_ms   INTEGER,
    last_checked_at   DATETIME,
    last_error        TEXT,
    created_at        DATETIME NOT NULL,
    updated_at        DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_{prefix}_endpoints_enabled ON {prefix}_endpoints(enabled);

CREATE TABLE IF NOT EXISTS {prefix}_webhook_deliveries (
    id           TEXT     PRIMARY KEY,
    endpoint_id  TEXT     NOT NULL,
    target_url   TEXT     NOT NULL,
    success      INTEGER  NOT NULL,
    status_code  INTEGER,
    response_ms  INTEGER,
    error        TEXT,
    sent_at      DATETIME NOT NULL,
    payload      TEXT
);

CREATE INDEX IF NOT EXISTS idx_{prefix}_deliveries_endpoint ON {prefix}_webhook_deliveries(endpoint_id, sent_at DESC);
CREATE INDEX IF NOT EXISTS idx_{prefix}_deliveries_sent_at  ON {prefix}_webhook_deliveries(sent_at);
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value is not None else None


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def _row_to_endpoint(row: Any) -> Endpoint:
    return Endpoint(
        id=row["id"],
        url=row["url"],
        method=row["method"],
        interval_seconds=row["interval_seconds"],
        webhook_url=row["webhook_url"],
        enabled=bool(row["enabled"]),
        last_status=EndpointStatus(row["last_status"]),
        last_status_code=row["last_status_code"],
        last_latency_ms=row["last_latency_ms"],
        last_checked_at=_parse_ts(row["last_checked_at"]),
        last_error=row["last_error"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_delivery(row: Any) -> WebhookDelivery:
    payload = row["payload"]
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except (json.JSONDecodeError, ValueError):
            payload = None
    return WebhookDelivery(
        id=row["id"],
        endpoint_id=row["endpoint_id"],
        target_url=row["target_url"],
        success=bool(row["success"]),
        status_code=row["status_code"],
        response_ms=row["response_ms"],
        error=row["error"],
        sent_at=_parse_ts(row["sent_at"]),
        payload=payload,
    )


class SQLiteStorage:
    """
    ``PulseStorageProtocol`` implementation backed by a local SQLite file.

    Suitable for:
      - Development / local environments.
      - Single-process deployments without a PostgreSQL instance.
    """

    def __init__(self, config: "PulseConfig") -> None:
        self._config = config
        self._db: Any = None  # aiosqlite.Connection, set on first use
        self._init_lock = asyncio.Lock()
        self._last_retention_at: Optional[datetime] = None  # throttle for flush()

    @property
    def _endpoints(self) -> str:
        return f"{self._config.table_prefix}_endpoints"

    @property
    def _deliveries(self) -> str:
        return f"{self._config.table_prefix}_webhook_deliveries"

    # ── Lazy init ─────────────────────────────────────────────────────────

    async def _ensure_db(self) -> Any:
        """Open the database and run DDL migrations if not already done."""
        if self._db is not None:
            return self._db

        async with self._init_lock:
            if self._db is not None:
                return self._db

            try:
                import aiosqlite
            except ImportError as exc:
                raise ImportError(
                    "aiosqlite is required for the SQLite storage backend. "
                    "Install it with: pip install aiosqlite"
                ) from exc

            db = await aiosqlite.connect(self._config.sqlite_path)
            db.row_factory = aiosqlite.Row
            await db.executescript(_build_ddl(self._config.table_prefix))
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute("PRAGMA synchronous=NORMAL")
            await db.commit()
            self._db = db
            logger.debug("sqlite_storage_ready", path=self._config.sqlite_path)

        return self._db

    # ── Endpoint registry ─────────────────────────────────────────────────

    async def list_endpoints(
        self,
        *,
        enabled: Optional[bool] = None,
        status: Optional[EndpointStatus] = None,
    ) -> list[Endpoint]:
        db = await self._ensure_db()

        clauses: list[str] = []
        params: list[Any] = []
        if enabled is not None:
            clauses.append("enabled = ?")
            params.append(1 if enabled else 0)
        if status is not None:
            clauses.append("last_status = ?")
            params.append(EndpointStatus(status).value)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""

        rows = await db.execute_fetchall(
            f"SELECT * FROM {self._endpoints} {where} ORDER BY created_at ASC",
            params,
        )
        return [_row_to_endpoint(row) for row in rows]

    async def list_enabled_endpoints(self) -> list[Endpoint]:
        return await self.list_endpoints(enabled=True)

    async def get_endpoint(self, endpoint_id: str) -> Optional[Endpoint]:
        db = await self._ensure_db()
        rows = await db.execute_fetchall(
            f"SELECT * FROM {self._endpoints} WHERE id = ?", (endpoint_id,)
        )
        return _row_to_endpoint(rows[0]) if rows else None

    async def create_endpoint(self, data: EndpointCreate) -> Endpoint:
        db = await self._ensure_db()
        now = datetime.now(tz=timezone.utc)
        endpoint_id = str(uuid.uuid4())
        await db.execute(
            f"""
            INSERT INTO {self._endpoints} (
                id, url, method, interval_seconds, webhook_url, enabled,
                last_status, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                endpoint_id,
                data.url,
                data.method,
                data.interval_seconds,
                data.webhook_url,
                1 if data.enabled else 0,
                EndpointStatus.UNKNOWN.value,
                _ts(now),
                _ts(now),
            ),
        )
        await db.commit()
        created = await self.get_endpoint(endpoint_id)
        if created is None:
            raise StorageError("Endpoint vanished right after insert", endpoint_id=endpoint_id)
        return created

    async def update_endpoint(
        self, endpoint_id: str, data: EndpointUpdate
    ) -> Optional[Endpoint]:
        changes = data.changes()
        if not changes:
            return await self.get_endpoint(endpoint_id)

        if "enabled" in changes:
            changes["enabled"] = 1 if changes["enabled"] else 0
        changes["updated_at"] = _ts(datetime.now(tz=timezone.utc))

        # Column names come from the EndpointUpdate model, never from input keys.
        assignments = ", ".join(f"{col} = ?" for col in changes)
        db = await self._ensure_db()
        cur = await db.execute(
            f"UPDATE {self._endpoints} SET {assignments} WHERE id = ?",
            [*changes.values(), endpoint_id],
        )
        await db.commit()
        if cur.rowcount == 0:
            return None
        return await self.get_endpoint(endpoint_id)

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        db = await self._ensure_db()
        cur = await db.execute(
            f"DELETE FROM {self._endpoints} WHERE id = ?", (endpoint_id,)
        )
        await db.execute(
            f"DELETE FROM {self._deliveries} WHERE endpoint_id = ?", (endpoint_id,)
        )
        await db.commit()
        return cur.rowcount > 0

    # ── Result sink ───────────────────────────────────────────────────────

    async def update_endpoint_status(
        self, endpoint_id: str, outcome: ProbeOutcome
    ) -> bool:
        db = await self._ensure_db()
        cur = await db.execute(
            f"""
            UPDATE {self._endpoints}
            SET last_status = ?, last_status_code = ?, last_latency_ms = ?,
                last_checked_at = ?, last_error = ?
            WHERE id = ?
            """,
            (
                outcome.status.value,
                outcome.status_code,
                outcome.latency_ms,
                _ts(outcome.observed_at),
                outcome.error,
                endpoint_id,
            ),
        )
        await db.commit()
        return cur.rowcount > 0

    # ── Webhook delivery log ──────────────────────────────────────────────

    async def record_delivery(self, delivery: WebhookDelivery) -> None:
        """
        INSERT one delivery row. Never raises. Rows for an endpoint deleted
        meanwhile are not inserted.
        """
        try:
            db = await self._ensure_db()
            await db.execute(
                f"""
                INSERT INTO {self._deliveries} (
                    id, endpoint_id, target_url, success, status_code,
                    response_ms, error, sent_at, payload
                )
                SELECT ?, ?, ?, ?, ?, ?, ?, ?, ?
                WHERE EXISTS (SELECT 1 FROM {self._endpoints} WHERE id = ?)
                """,
                (
                    delivery.id,
                    delivery.endpoint_id,
                    delivery.target_url,
                    1 if delivery.success else 0,
                    delivery.status_code,
                    delivery.response_ms,
                    delivery.error,
                    _ts(delivery.sent_at),
                    json.dumps(delivery.payload, default=str) if delivery.payload is not None else None,
                    delivery.endpoint_id,
                ),
            )
            await db.commit()
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "delivery_log_write_failed",
                endpoint_id=delivery.endpoint_id,
                error=str(exc),
            )

    async def list_deliveries(
        self, endpoint_id: str, *, limit: int = 50
    ) -> list[WebhookDelivery]:
        db = await self._ensure_db()
        rows = await db.execute_fetchall(
            f"""
            SELECT * FROM {self._deliveries}
            WHERE endpoint_id = ?
            ORDER BY sent_at DESC
            LIMIT ?
            """,
            (endpoint_id, limit),
        )
        return [_row_to_delivery(row) for row in rows]

    # ── Maintenance ───────────────────────────────────────────────────────

    async def flush(self) -> None:
        """
        Delete delivery rows older than ``delivery_retention_hours`` and keep
        at most ``delivery_max_entries`` rows.

        Called every worker cycle, but the DELETEs run at most once every
        ``retention_check_interval_minutes``.
        """
        config = self._config
        interval = config.retention_check_interval_minutes
        now = datetime.now(tz=timezone.utc)

        if interval > 0 and self._last_retention_at is not None:
            elapsed = (now - self._last_retention_at).total_seconds() / 60
            if elapsed < interval:
                return

        try:
            db = await self._ensure_db()
            cutoff = _ts(now - timedelta(hours=config.delivery_retention_hours))
            await db.execute(f"DELETE FROM {self._deliveries} WHERE sent_at < ?", (cutoff,))
            await db.execute(
                f"""
                DELETE FROM {self._deliveries}
                WHERE id NOT IN (
                    SELECT id FROM {self._deliveries} ORDER BY sent_at DESC LIMIT ?
                )
                """,
                (config.delivery_max_entries,),
            )
            await db.commit()
            self._last_retention_at = now
        except Exception as exc:  # noqa: BLE001
            logger.warning("delivery_retention_failed", error=str(exc))

    async def health(self) -> tuple[bool, str]:
        """Execute a lightweight SELECT 1 to verify the database is reachable."""
        try:
            db = await self._ensure_db()
            await db.execute("SELECT 1")
            return True, ""
        except Exception as exc:  # noqa: BLE001
            return False, str(exc)

    async def close(self) -> None:
        """Close the SQLite connection."""
        if self._db is not None:
            try:
                await self._db.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("sqlite_close_failed", error=str(exc))
            self._db = None
