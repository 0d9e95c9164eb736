"""
PostgreSQL backend for fastapi-pulse.
======================================

Implements :class:`~fastapi_pulse.storage.base.PulseStorageProtocol` backed
by a PostgreSQL database using ``asyncpg`` for non-blocking async I/O.

Design decisions
----------------
* **Connection pool** — ``asyncpg.create_pool()`` (min=1, max=10) so probe
  results for many endpoints never queue behind a single connection.
* **Conditional status writes** — ``update_endpoint_status()`` is one
  ``UPDATE ... WHERE id = $n``; the command tag tells whether a row matched.
* **Lazy init** — the pool and DDL migrations run on the first operation so
  startup remains fast.
* **Cascade** — ``webhook_deliveries.endpoint_id`` references the endpoints
  table with ``ON DELETE CASCADE``.

Requires::

    pip install asyncpg
    # or: pip install 'fastapi-pulse[postgresql]'
"""
from __future__ import annotations

import asyncio
import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

import structlog

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


# ── Schema ────────────────────────────────────────────────────────────────────

def _build_ddl(prefix: str) -> str:
    """Generate CREATE TABLE + indexes DDL for the given table prefix."""
    return f"""
CREATE TABLE IF NOT EXISTS {prefix}_endpoints (
    id                TEXT         PRIMARY KEY,
    url               TEXT         NOT NULL,
    method            TEXT         NOT NULL DEFAULT 'GET',
    interval_seconds  INTEGER      NOT NULL DEFAULT 60 CHECK (interval_seconds >= 5),
    webhook_url       TEXT,
    enabled           BOOLEAN      NOT NULL DEFAULT TRUE,
    last_status       TEXT         NOT NULL DEFAULT 'unknown',
    last_status_code  INTEGER,
    last_latency_ms   INTEGER,
    last_checked_at   TIMESTAMPTZ,
    last_error        TEXT,
    created_at        TIMESTAMPTZ  NOT NULL DEFAULT now(),
    updated_at        TIMESTAMPTZ  NOT NULL DEFAULT now()
);

CREATE INDEX IF NOT EXISTS idx_{prefix}_endpoints_enabled ON {prefix}_endpoints (enabled);

CREATE TABLE IF NOT EXISTS {prefix}_webhook_deliveries (
    id           TEXT         PRIMARY KEY,
    endpoint_id  TEXT         NOT NULL REFERENCES {prefix}_endpoints(id) ON DELETE CASCADE,
    target_url   TEXT         NOT NULL,
    success      BOOLEAN      NOT NULL,
    status_code  INTEGER,
    response_ms  INTEGER,
    error        TEXT,
    sent_at      TIMESTAMPTZ  NOT NULL,
    payload      JSONB
);

CREATE INDEX IF NOT EXISTS idx_{prefix}_deliveries_endpoint ON {prefix}_webhook_deliveries (endpoint_id, sent_at DESC);
CREATE INDEX IF NOT EXISTS idx_{prefix}_deliveries_sent_at  ON {prefix}_webhook_deliveries (sent_at);
"""


def _affected(command_tag: str) -> int:
    """asyncpg returns the command tag, e.g. ``"UPDATE 1"`` / ``"DELETE 0"``."""
    try:
        return int(command_tag.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


def _record_to_endpoint(row: Any) -> Endpoint:
    return Endpoint(
        id=row["id"],
        url=row["url"],
        method=row["method"],
        interval_seconds=row["interval_seconds"],
        webhook_url=row["webhook_url"],
        enabled=row["enabled"],
        last_status=EndpointStatus(row["last_status"]),
        last_status_code=row["last_status_code"],
        last_latency_ms=row["last_latency_ms"],
        last_checked_at=row["last_checked_at"],
        last_error=row["last_error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _record_to_delivery(row: Any) -> WebhookDelivery:
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
        success=row["success"],
        status_code=row["status_code"],
        response_ms=row["response_ms"],
        error=row["error"],
        sent_at=row["sent_at"],
        payload=payload,
    )


# ── Backend ───────────────────────────────────────────────────────────────────

class PostgreSQLStorage:
    """
    ``PulseStorageProtocol`` implementation backed by PostgreSQL via asyncpg.

    Suitable for:
      - Production deployments that already run PostgreSQL.
      - Setups where the API and other tools edit endpoints in the same
        database; the worker's poll tick picks those changes up.
    """

    def __init__(self, config: "PulseConfig") -> None:
        self._config = config
        self._pool: Any = None  # asyncpg.Pool, created on first use
        self._init_lock = asyncio.Lock()
        self._last_retention_at: Optional[datetime] = None  # throttle for flush()

    @property
    def _endpoints(self) -> str:
        """Resolved table name — safe: config-controlled, validated by PulseConfig."""
        return f"{self._config.table_prefix}_endpoints"

    @property
    def _deliveries(self) -> str:
        return f"{self._config.table_prefix}_webhook_deliveries"

    # ── Lazy pool init ────────────────────────────────────────────────────────

    async def _ensure_pool(self) -> Any:
        """Create the asyncpg connection pool and run DDL migrations on first call."""
        if self._pool is not None:
            return self._pool

        async with self._init_lock:
            if self._pool is not None:
                return self._pool

            try:
                import asyncpg
            except ImportError as exc:
                raise ImportError(
                    "asyncpg is required for the PostgreSQL storage backend. "
                    "Install it with: pip install 'fastapi-pulse[postgresql]'"
                ) from exc

            pool = await asyncpg.create_pool(
                dsn=self._config.pg_dsn,
                min_size=1,
                max_size=10,
                command_timeout=30,
            )
            async with pool.acquire() as conn:
                await conn.execute(_build_ddl(self._config.table_prefix))
            self._pool = pool
            logger.debug("pg_storage_ready", prefix=self._config.table_prefix)

        return self._pool

    # ── Endpoint registry ─────────────────────────────────────────────────────

    async def list_endpoints(
        self,
        *,
        enabled: Optional[bool] = None,
        status: Optional[EndpointStatus] = None,
    ) -> list[Endpoint]:
        pool = await self._ensure_pool()

        clauses: list[str] = []
        params: list[Any] = []
        if enabled is not None:
            params.append(enabled)
            clauses.append(f"enabled = ${len(params)}")
        if status is not None:
            params.append(EndpointStatus(status).value)
            clauses.append(f"last_status = ${len(params)}")
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""

        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM {self._endpoints} {where} ORDER BY created_at ASC",
                *params,
            )
        return [_record_to_endpoint(row) for row in rows]

    async def list_enabled_endpoints(self) -> list[Endpoint]:
        return await self.list_endpoints(enabled=True)

    async def get_endpoint(self, endpoint_id: str) -> Optional[Endpoint]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT * FROM {self._endpoints} WHERE id = $1", endpoint_id
            )
        return _record_to_endpoint(row) if row else None

    async def create_endpoint(self, data: EndpointCreate) -> Endpoint:
        pool = await self._ensure_pool()
        now = datetime.now(tz=timezone.utc)
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                INSERT INTO {self._endpoints} (
                    id, url, method, interval_seconds, webhook_url, enabled,
                    last_status, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $8)
                RETURNING *
                """,
                str(uuid.uuid4()),
                data.url,
                data.method,
                data.interval_seconds,
                data.webhook_url,
                data.enabled,
                EndpointStatus.UNKNOWN.value,
                now,
            )
        return _record_to_endpoint(row)

    async def update_endpoint(
        self, endpoint_id: str, data: EndpointUpdate
    ) -> Optional[Endpoint]:
        changes = data.changes()
        if not changes:
            return await self.get_endpoint(endpoint_id)
        changes["updated_at"] = datetime.now(tz=timezone.utc)

        # Column names come from the EndpointUpdate model, never from input keys.
        assignments = ", ".join(
            f"{col} = ${idx}" for idx, col in enumerate(changes, start=1)
        )
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE {self._endpoints} SET {assignments}
                WHERE id = ${len(changes) + 1}
                RETURNING *
                """,
                *changes.values(),
                endpoint_id,
            )
        return _record_to_endpoint(row) if row else None

    async def delete_endpoint(self, endpoint_id: str) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            tag = await conn.execute(
                f"DELETE FROM {self._endpoints} WHERE id = $1", endpoint_id
            )
        return _affected(tag) > 0

    # ── Result sink ───────────────────────────────────────────────────────────

    async def update_endpoint_status(
        self, endpoint_id: str, outcome: ProbeOutcome
    ) -> bool:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            tag = await conn.execute(
                f"""
                UPDATE {self._endpoints}
                SET last_status = $1, last_status_code = $2, last_latency_ms = $3,
                    last_checked_at = $4, last_error = $5
                WHERE id = $6
                """,
                outcome.status.value,
                outcome.status_code,
                outcome.latency_ms,
                outcome.observed_at,
                outcome.error,
                endpoint_id,
            )
        return _affected(tag) > 0

    # ── Webhook delivery log ──────────────────────────────────────────────────

    async def record_delivery(self, delivery: WebhookDelivery) -> None:
        """
        INSERT one delivery row. Never raises — a row for an endpoint deleted
        meanwhile fails the foreign key and is dropped.
        """
        try:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO {self._deliveries} (
                        id, endpoint_id, target_url, success, status_code,
                        response_ms, error, sent_at, payload
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
                    """,
                    delivery.id,
                    delivery.endpoint_id,
                    delivery.target_url,
                    delivery.success,
                    delivery.status_code,
                    delivery.response_ms,
                    delivery.error,
                    delivery.sent_at,
                    json.dumps(delivery.payload, default=str) if delivery.payload is not None else None,
                )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "delivery_log_write_failed",
                endpoint_id=delivery.endpoint_id,
                error=str(exc),
            )

    async def list_deliveries(
        self, endpoint_id: str, *, limit: int = 50
    ) -> list[WebhookDelivery]:
        pool = await self._ensure_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT * FROM {self._deliveries}
                WHERE endpoint_id = $1
                ORDER BY sent_at DESC
                LIMIT $2
                """,
                endpoint_id,
                limit,
            )
        return [_record_to_delivery(row) for row in rows]

    # ── Maintenance ───────────────────────────────────────────────────────────

    async def flush(self) -> None:
        """
        Apply delivery-log retention. Called every worker cycle, but the
        DELETEs run at most once every ``retention_check_interval_minutes``.

        Steps:
          1. Delete deliveries older than ``delivery_retention_hours``.
          2. Delete the oldest rows exceeding ``delivery_max_entries``.
        """
        config = self._config
        interval = config.retention_check_interval_minutes
        now = datetime.now(tz=timezone.utc)

        if interval > 0 and self._last_retention_at is not None:
            elapsed = (now - self._last_retention_at).total_seconds() / 60
            if elapsed < interval:
                return

        try:
            pool = await self._ensure_pool()
            cutoff = now - timedelta(hours=config.delivery_retention_hours)
            async with pool.acquire() as conn:
                await conn.execute(
                    f"DELETE FROM {self._deliveries} WHERE sent_at < $1", cutoff
                )
                await conn.execute(
                    f"""
                    DELETE FROM {self._deliveries}
                    WHERE id NOT IN (
                        SELECT id FROM {self._deliveries}
                        ORDER BY sent_at DESC
                        LIMIT $1
                    )
                    """,
                    config.delivery_max_entries,
                )
            self._last_retention_at = now
        except Exception as exc:  # noqa: BLE001
            logger.warning("delivery_retention_failed", error=str(exc))

    async def health(self) -> tuple[bool, str]:
        """Execute ``SELECT 1`` to verify the pool is reachable."""
        try:
            pool = await self._ensure_pool()
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True, ""
        except Exception as exc:  # noqa: BLE001
            return False, str(exc)

    async def close(self) -> None:
        """Close all connections in the pool."""
        if self._pool is not None:
            try:
                await self._pool.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("pg_pool_close_failed", error=str(exc))
            self._pool = None
