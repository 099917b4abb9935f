from __future__ import annotations

from datetime import datetime, timezone
import json
import sqlite3

from chat_gateway.core.errors import ConcurrentUpdateError, NotFoundError, ValidationError
from chat_gateway.core.models import (
    ConnectionRecord,
    ConnectionSettings,
    ConnectionStats,
    ConnectionStatus,
)
from chat_gateway.core.sqlite import SQLiteStore

_COLUMNS = """
    connection_id, tenant_id, name, phone_number, plan, status, status_reason, is_active, is_default,
    settings, stats, credential_blob, credential_expires_at, last_heartbeat, last_message_sent,
    last_message_received, last_connected_at, created_at, updated_at, version
"""


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse(value: object) -> datetime | None:
    return datetime.fromisoformat(str(value)) if value else None


class ConnectionStore(SQLiteStore):
    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS connections (
                    connection_id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    phone_number TEXT,
                    plan TEXT NOT NULL,
                    status TEXT NOT NULL,
                    status_reason TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    is_default INTEGER NOT NULL DEFAULT 0,
                    settings TEXT NOT NULL,
                    stats TEXT NOT NULL,
                    credential_blob TEXT,
                    credential_expires_at TEXT,
                    last_heartbeat TEXT,
                    last_message_sent TEXT,
                    last_message_received TEXT,
                    last_connected_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_conn_tenant ON connections(tenant_id, is_active)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_conn_status ON connections(status, last_heartbeat)")

    def create(self, record: ConnectionRecord) -> ConnectionRecord:
        if self.get(record.connection_id) is not None:
            raise ValidationError(f"connection '{record.connection_id}' already exists")
        with self._conn() as conn:
            conn.execute(
                f"INSERT INTO connections({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._to_row(record),
            )
        return record

    def get(self, connection_id: str) -> ConnectionRecord | None:
        with self._conn() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM connections WHERE connection_id = ? LIMIT 1",
                (connection_id,),
            ).fetchone()
        return self._to_record(row) if row else None

    def require(self, connection_id: str) -> ConnectionRecord:
        record = self.get(connection_id)
        if record is None:
            raise NotFoundError(f"connection '{connection_id}' not found", connection_id=connection_id)
        return record

    def list_by_tenant(self, tenant_id: str, include_inactive: bool = False, limit: int = 100) -> list[ConnectionRecord]:
        sql = f"SELECT {_COLUMNS} FROM connections WHERE tenant_id = ?"
        params: list[str | int] = [tenant_id]
        if not include_inactive:
            sql += " AND is_active = 1"
        sql += " ORDER BY is_default DESC, created_at DESC LIMIT ?"
        params.append(max(1, min(limit, 1000)))
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._to_record(row) for row in rows]

    def list_all(self, active_only: bool = False, statuses: list[ConnectionStatus] | None = None) -> list[ConnectionRecord]:
        sql = f"SELECT {_COLUMNS} FROM connections"
        conditions: list[str] = []
        params: list[str] = []
        if active_only:
            conditions.append("is_active = 1")
        if statuses:
            conditions.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(s.value for s in statuses)
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY created_at ASC"
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._to_record(row) for row in rows]

    def save(self, record: ConnectionRecord) -> ConnectionRecord:
        """Write the whole record if nobody else wrote it since it was read."""
        now = datetime.now(timezone.utc)
        updated = record.model_copy(update={"updated_at": now, "version": record.version + 1})
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE connections
                SET name = ?, phone_number = ?, plan = ?, status = ?, status_reason = ?, is_active = ?,
                    is_default = ?, settings = ?, stats = ?, credential_blob = ?, credential_expires_at = ?,
                    last_heartbeat = ?, last_message_sent = ?, last_message_received = ?, last_connected_at = ?,
                    updated_at = ?, version = ?
                WHERE connection_id = ? AND version = ?
                """,
                (
                    updated.name,
                    updated.phone_number,
                    updated.plan,
                    updated.status.value,
                    updated.status_reason,
                    int(updated.is_active),
                    int(updated.is_default),
                    updated.settings.model_dump_json(),
                    updated.stats.model_dump_json(),
                    updated.credential_blob,
                    _iso(updated.credential_expires_at),
                    _iso(updated.last_heartbeat),
                    _iso(updated.last_message_sent),
                    _iso(updated.last_message_received),
                    _iso(updated.last_connected_at),
                    _iso(updated.updated_at),
                    updated.version,
                    record.connection_id,
                    record.version,
                ),
            )
            if cur.rowcount == 0:
                raise ConcurrentUpdateError(
                    f"connection '{record.connection_id}' changed concurrently",
                    connection_id=record.connection_id,
                )
        return updated

    def update_status(
        self,
        connection_id: str,
        status: ConnectionStatus,
        reason: str | None,
        expected_version: int,
    ) -> int:
        now = datetime.now(timezone.utc).isoformat()
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE connections
                SET status = ?, status_reason = ?, updated_at = ?, version = version + 1
                WHERE connection_id = ? AND version = ?
                """,
                (status.value, reason, now, connection_id, expected_version),
            )
            if cur.rowcount == 0:
                raise ConcurrentUpdateError(
                    f"connection '{connection_id}' changed concurrently",
                    connection_id=connection_id,
                )
        return expected_version + 1

    def set_default(self, tenant_id: str, connection_id: str) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._conn() as conn:
            conn.execute(
                "UPDATE connections SET is_default = 0, updated_at = ?, version = version + 1 "
                "WHERE tenant_id = ? AND connection_id != ? AND is_default = 1",
                (now, tenant_id, connection_id),
            )
            cur = conn.execute(
                "UPDATE connections SET is_default = 1, updated_at = ?, version = version + 1 "
                "WHERE tenant_id = ? AND connection_id = ? AND is_active = 1",
                (now, tenant_id, connection_id),
            )
            if cur.rowcount == 0:
                raise NotFoundError(f"connection '{connection_id}' not found", connection_id=connection_id)

    def delete(self, connection_id: str, hard: bool = False) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        with self._conn() as conn:
            if hard:
                cur = conn.execute("DELETE FROM connections WHERE connection_id = ?", (connection_id,))
            else:
                cur = conn.execute(
                    """
                    UPDATE connections
                    SET is_active = 0, is_default = 0, status = ?, credential_blob = NULL,
                        credential_expires_at = NULL, updated_at = ?, version = version + 1
                    WHERE connection_id = ?
                    """,
                    (ConnectionStatus.DISCONNECTED.value, now, connection_id),
                )
        return cur.rowcount > 0

    def count_by_status(self, active_only: bool = True) -> dict[str, int]:
        sql = "SELECT status, COUNT(*) AS n FROM connections"
        if active_only:
            sql += " WHERE is_active = 1"
        sql += " GROUP BY status"
        with self._conn() as conn:
            rows = conn.execute(sql).fetchall()
        return {str(row["status"]): int(row["n"]) for row in rows}

    def top_tenants(self, limit: int = 10) -> list[dict[str, int | str]]:
        with self._conn() as conn:
            rows = conn.execute(
                """
                SELECT tenant_id, COUNT(*) AS n FROM connections
                WHERE is_active = 1
                GROUP BY tenant_id
                ORDER BY n DESC, tenant_id ASC
                LIMIT ?
                """,
                (max(1, limit),),
            ).fetchall()
        return [{"tenant_id": str(row["tenant_id"]), "count": int(row["n"])} for row in rows]

    def _to_row(self, record: ConnectionRecord) -> tuple:
        return (
            record.connection_id,
            record.tenant_id,
            record.name,
            record.phone_number,
            record.plan,
            record.status.value,
            record.status_reason,
            int(record.is_active),
            int(record.is_default),
            record.settings.model_dump_json(),
            record.stats.model_dump_json(),
            record.credential_blob,
            _iso(record.credential_expires_at),
            _iso(record.last_heartbeat),
            _iso(record.last_message_sent),
            _iso(record.last_message_received),
            _iso(record.last_connected_at),
            _iso(record.created_at),
            _iso(record.updated_at),
            record.version,
        )

    def _to_record(self, row: sqlite3.Row) -> ConnectionRecord:
        return ConnectionRecord(
            connection_id=str(row["connection_id"]),
            tenant_id=str(row["tenant_id"]),
            name=str(row["name"]),
            phone_number=str(row["phone_number"]) if row["phone_number"] else None,
            plan=str(row["plan"]),
            status=ConnectionStatus(str(row["status"])),
            status_reason=str(row["status_reason"]) if row["status_reason"] else None,
            is_active=bool(row["is_active"]),
            is_default=bool(row["is_default"]),
            settings=ConnectionSettings.model_validate(json.loads(str(row["settings"]))),
            stats=ConnectionStats.model_validate(json.loads(str(row["stats"]))),
            credential_blob=str(row["credential_blob"]) if row["credential_blob"] else None,
            credential_expires_at=_parse(row["credential_expires_at"]),
            last_heartbeat=_parse(row["last_heartbeat"]),
            last_message_sent=_parse(row["last_message_sent"]),
            last_message_received=_parse(row["last_message_received"]),
            last_connected_at=_parse(row["last_connected_at"]),
            created_at=datetime.fromisoformat(str(row["created_at"])),
            updated_at=datetime.fromisoformat(str(row["updated_at"])),
            version=int(row["version"]),
        )
