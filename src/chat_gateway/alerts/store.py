from __future__ import annotations

from datetime import datetime
import json
import sqlite3

from chat_gateway.core.models import (
    AlertDispatchStatus,
    AlertLogEntry,
    AlertRecord,
    AlertSeverity,
    AlertType,
    ChannelOutcome,
)
from chat_gateway.core.sqlite import SQLiteStore


class AlertStore(SQLiteStore):
    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alert_records (
                    dedupe_key TEXT PRIMARY KEY,
                    alert_type TEXT NOT NULL,
                    last_sent_at TEXT,
                    last_attempt_at TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alert_dispatch_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT NOT NULL,
                    dedupe_key TEXT NOT NULL,
                    alert_type TEXT NOT NULL,
                    severity TEXT NOT NULL,
                    title TEXT NOT NULL,
                    status TEXT NOT NULL,
                    outcomes TEXT NOT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_alert_log_created ON alert_dispatch_log(created_at DESC)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_alert_record_attempt ON alert_records(last_attempt_at)")

    def get_record(self, dedupe_key: str) -> AlertRecord | None:
        with self._conn() as conn:
            row = conn.execute(
                """
                SELECT dedupe_key, alert_type, last_sent_at, last_attempt_at, attempts
                FROM alert_records
                WHERE dedupe_key = ?
                LIMIT 1
                """,
                (dedupe_key,),
            ).fetchone()
        return self._to_record(row) if row else None

    def record_attempt(self, dedupe_key: str, alert_type: AlertType, at: datetime, sent: bool) -> AlertRecord:
        """Upsert the record for ``dedupe_key``; ``last_sent_at`` moves only when ``sent``."""
        stamp = at.isoformat()
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO alert_records(dedupe_key, alert_type, last_sent_at, last_attempt_at, attempts)
                VALUES (?, ?, ?, ?, 1)
                ON CONFLICT(dedupe_key) DO UPDATE SET
                    last_attempt_at = excluded.last_attempt_at,
                    last_sent_at = COALESCE(excluded.last_sent_at, alert_records.last_sent_at),
                    attempts = alert_records.attempts + 1
                """,
                (dedupe_key, alert_type.value, stamp if sent else None, stamp),
            )
            row = conn.execute(
                """
                SELECT dedupe_key, alert_type, last_sent_at, last_attempt_at, attempts
                FROM alert_records
                WHERE dedupe_key = ?
                """,
                (dedupe_key,),
            ).fetchone()
        return self._to_record(row)

    def log_dispatch(
        self,
        *,
        at: datetime,
        dedupe_key: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        title: str,
        status: AlertDispatchStatus,
        outcomes: list[ChannelOutcome],
    ) -> int:
        with self._conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO alert_dispatch_log(created_at, dedupe_key, alert_type, severity, title, status, outcomes)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    at.isoformat(),
                    dedupe_key,
                    alert_type.value,
                    severity.value,
                    title,
                    status.value,
                    json.dumps([o.model_dump() for o in outcomes], ensure_ascii=False),
                ),
            )
            return int(cur.lastrowid)

    def list_log(
        self,
        limit: int = 100,
        alert_type: AlertType | None = None,
        since: datetime | None = None,
    ) -> list[AlertLogEntry]:
        sql = "SELECT id, created_at, dedupe_key, alert_type, severity, title, status, outcomes FROM alert_dispatch_log"
        conditions: list[str] = []
        params: list[str | int] = []
        if alert_type is not None:
            conditions.append("alert_type = ?")
            params.append(alert_type.value)
        if since is not None:
            conditions.append("created_at >= ?")
            params.append(since.isoformat())
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, min(limit, 1000)))
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._to_log(row) for row in rows]

    def count_sent_since(self, since: datetime | None = None) -> int:
        sql = "SELECT COUNT(*) AS n FROM alert_dispatch_log WHERE status = ?"
        params: list[str] = [AlertDispatchStatus.SENT.value]
        if since is not None:
            sql += " AND created_at >= ?"
            params.append(since.isoformat())
        with self._conn() as conn:
            row = conn.execute(sql, params).fetchone()
        return int(row["n"]) if row else 0

    def prune(self, older_than: datetime) -> tuple[int, int]:
        """Delete records last attempted, and log rows written, before ``older_than``."""
        cutoff = older_than.isoformat()
        with self._conn() as conn:
            records = conn.execute("DELETE FROM alert_records WHERE last_attempt_at < ?", (cutoff,)).rowcount
            logs = conn.execute("DELETE FROM alert_dispatch_log WHERE created_at < ?", (cutoff,)).rowcount
        return records, logs

    def _to_record(self, row: sqlite3.Row) -> AlertRecord:
        return AlertRecord(
            dedupe_key=str(row["dedupe_key"]),
            alert_type=AlertType(str(row["alert_type"])),
            last_sent_at=datetime.fromisoformat(str(row["last_sent_at"])) if row["last_sent_at"] else None,
            last_attempt_at=datetime.fromisoformat(str(row["last_attempt_at"])),
            attempts=int(row["attempts"]),
        )

    def _to_log(self, row: sqlite3.Row) -> AlertLogEntry:
        return AlertLogEntry(
            id=int(row["id"]),
            created_at=datetime.fromisoformat(str(row["created_at"])),
            dedupe_key=str(row["dedupe_key"]),
            alert_type=AlertType(str(row["alert_type"])),
            severity=AlertSeverity(str(row["severity"])),
            title=str(row["title"]),
            status=AlertDispatchStatus(str(row["status"])),
            outcomes=[ChannelOutcome.model_validate(o) for o in json.loads(str(row["outcomes"]))],
        )
