from __future__ import annotations

from datetime import datetime, timezone
import json
import sqlite3

from chat_gateway.core.errors import IllegalTransition, NotFoundError
from chat_gateway.core.models import (
    TERMINAL_JOB_STATES,
    DeliveryJob,
    JobPriority,
    JobState,
    MessagePayload,
    RecipientDelivery,
)
from chat_gateway.core.sqlite import SQLiteStore

PRIORITY_RANK = {JobPriority.HIGH: 0, JobPriority.NORMAL: 1, JobPriority.LOW: 2}

_COLUMNS = """
    job_id, connection_id, payload, deliveries, priority, priority_rank, state, attempts, max_attempts,
    scheduled_at, created_at, updated_at, started_at, finished_at, last_error, metadata
"""
_TERMINAL = tuple(s.value for s in TERMINAL_JOB_STATES)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class JobStore(SQLiteStore):
    def _init_schema(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS delivery_jobs (
                    job_id TEXT PRIMARY KEY,
                    connection_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    deliveries TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    priority_rank INTEGER NOT NULL,
                    state TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL,
                    scheduled_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT,
                    last_error TEXT,
                    metadata TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_job_due ON delivery_jobs(state, priority_rank, scheduled_at)"
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_job_conn_state ON delivery_jobs(connection_id, state)")

    def add(self, job: DeliveryJob) -> DeliveryJob:
        with self._conn() as conn:
            conn.execute(
                f"INSERT INTO delivery_jobs({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._to_row(job),
            )
        return job

    def get(self, job_id: str) -> DeliveryJob | None:
        with self._conn() as conn:
            row = conn.execute(
                f"SELECT {_COLUMNS} FROM delivery_jobs WHERE job_id = ? LIMIT 1",
                (job_id,),
            ).fetchone()
        return self._to_job(row) if row else None

    def require(self, job_id: str) -> DeliveryJob:
        job = self.get(job_id)
        if job is None:
            raise NotFoundError(f"job '{job_id}' not found", job_id=job_id)
        return job

    def save(self, job: DeliveryJob) -> DeliveryJob:
        """Persist a job unless the stored copy already reached a terminal state."""
        updated = job.model_copy(update={"updated_at": datetime.now(timezone.utc)})
        with self._conn() as conn:
            cur = conn.execute(
                f"""
                UPDATE delivery_jobs
                SET deliveries = ?, state = ?, attempts = ?, scheduled_at = ?, updated_at = ?,
                    started_at = ?, finished_at = ?, last_error = ?, metadata = ?
                WHERE job_id = ? AND state NOT IN ({', '.join('?' for _ in _TERMINAL)})
                """,
                (
                    json.dumps([d.model_dump(mode="json") for d in updated.deliveries], ensure_ascii=False),
                    updated.state.value,
                    updated.attempts,
                    _iso(updated.scheduled_at),
                    _iso(updated.updated_at),
                    _iso(updated.started_at),
                    _iso(updated.finished_at),
                    updated.last_error,
                    json.dumps(updated.metadata, ensure_ascii=False),
                    updated.job_id,
                    *_TERMINAL,
                ),
            )
            if cur.rowcount == 0:
                raise IllegalTransition(f"job '{job.job_id}' is terminal or missing", job_id=job.job_id)
        return updated

    def claim_due(
        self,
        now: datetime,
        limit: int,
        exclude_connections: set[str] | None = None,
    ) -> list[DeliveryJob]:
        """Move up to ``limit`` due queued jobs to active, at most one per connection."""
        if limit <= 0:
            return []
        excluded = sorted(set(exclude_connections or ()))
        skip = ""
        params: list[object] = [JobState.QUEUED.value, now.isoformat()]
        if excluded:
            skip = f"AND connection_id NOT IN ({', '.join('?' for _ in excluded)})"
            params.extend(excluded)
        params.append(limit)
        with self._conn() as conn:
            # Head-of-line job per connection, so one backlog cannot hide the others.
            rows = conn.execute(
                f"""
                SELECT {_COLUMNS} FROM (
                    SELECT {_COLUMNS}, ROW_NUMBER() OVER (
                        PARTITION BY connection_id
                        ORDER BY priority_rank ASC, scheduled_at ASC, created_at ASC
                    ) AS position
                    FROM delivery_jobs
                    WHERE state = ? AND scheduled_at <= ? {skip}
                )
                WHERE position = 1
                ORDER BY priority_rank ASC, scheduled_at ASC, created_at ASC
                LIMIT ?
                """,
                params,
            ).fetchall()
            claimed: list[DeliveryJob] = []
            for row in rows:
                job = self._to_job(row)
                cur = conn.execute(
                    "UPDATE delivery_jobs SET state = ?, started_at = ?, updated_at = ? WHERE job_id = ? AND state = ?",
                    (JobState.ACTIVE.value, now.isoformat(), now.isoformat(), job.job_id, JobState.QUEUED.value),
                )
                if cur.rowcount == 0:
                    continue
                claimed.append(job.model_copy(update={"state": JobState.ACTIVE, "started_at": now, "updated_at": now}))
        return claimed

    def requeue_active(self) -> int:
        now = datetime.now(timezone.utc).isoformat()
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE delivery_jobs SET state = ?, updated_at = ? WHERE state = ?",
                (JobState.QUEUED.value, now, JobState.ACTIVE.value),
            )
        return cur.rowcount

    def list_by_state(
        self,
        connection_id: str | None = None,
        states: list[JobState] | None = None,
        limit: int = 200,
    ) -> list[DeliveryJob]:
        sql = f"SELECT {_COLUMNS} FROM delivery_jobs"
        conditions: list[str] = []
        params: list[str | int] = []
        if connection_id is not None:
            conditions.append("connection_id = ?")
            params.append(connection_id)
        if states:
            conditions.append(f"state IN ({', '.join('?' for _ in states)})")
            params.extend(s.value for s in states)
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY priority_rank ASC, scheduled_at ASC LIMIT ?"
        params.append(max(1, min(limit, 5000)))
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._to_job(row) for row in rows]

    def count_by_state(self, connection_id: str | None = None) -> dict[str, int]:
        sql = "SELECT state, COUNT(*) AS n FROM delivery_jobs"
        params: list[str] = []
        if connection_id is not None:
            sql += " WHERE connection_id = ?"
            params.append(connection_id)
        sql += " GROUP BY state"
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        counts = {state.value: 0 for state in JobState}
        counts.update({str(row["state"]): int(row["n"]) for row in rows})
        return counts

    def remove_failed(self, connection_id: str) -> int:
        with self._conn() as conn:
            cur = conn.execute(
                "DELETE FROM delivery_jobs WHERE connection_id = ? AND state = ?",
                (connection_id, JobState.FAILED.value),
            )
        return cur.rowcount

    def open_job_ages_ms(self, now: datetime) -> list[float]:
        """Ages of due waiting and active jobs, measured from when each became due."""
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT scheduled_at FROM delivery_jobs WHERE state IN (?, ?) AND scheduled_at <= ?",
                (JobState.QUEUED.value, JobState.ACTIVE.value, now.isoformat()),
            ).fetchall()
        return [
            max(0.0, (now - datetime.fromisoformat(str(row["scheduled_at"]))).total_seconds() * 1000.0)
            for row in rows
        ]

    def _to_row(self, job: DeliveryJob) -> tuple:
        return (
            job.job_id,
            job.connection_id,
            job.payload.model_dump_json(),
            json.dumps([d.model_dump(mode="json") for d in job.deliveries], ensure_ascii=False),
            job.priority.value,
            PRIORITY_RANK[job.priority],
            job.state.value,
            job.attempts,
            job.max_attempts,
            _iso(job.scheduled_at),
            _iso(job.created_at),
            _iso(job.updated_at),
            _iso(job.started_at),
            _iso(job.finished_at),
            job.last_error,
            json.dumps(job.metadata, ensure_ascii=False),
        )

    def _to_job(self, row: sqlite3.Row) -> DeliveryJob:
        return DeliveryJob(
            job_id=str(row["job_id"]),
            connection_id=str(row["connection_id"]),
            payload=MessagePayload.model_validate_json(str(row["payload"])),
            deliveries=[RecipientDelivery.model_validate(d) for d in json.loads(str(row["deliveries"]))],
            priority=JobPriority(str(row["priority"])),
            state=JobState(str(row["state"])),
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            scheduled_at=datetime.fromisoformat(str(row["scheduled_at"])),
            created_at=datetime.fromisoformat(str(row["created_at"])),
            updated_at=datetime.fromisoformat(str(row["updated_at"])),
            started_at=datetime.fromisoformat(str(row["started_at"])) if row["started_at"] else None,
            finished_at=datetime.fromisoformat(str(row["finished_at"])) if row["finished_at"] else None,
            last_error=str(row["last_error"]) if row["last_error"] else None,
            metadata=dict(json.loads(str(row["metadata"]))),
        )
