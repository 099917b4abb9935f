from __future__ import annotations

from contextlib import contextmanager
import logging
from pathlib import Path
import sqlite3
import time
from typing import Iterator

from chat_gateway.core.errors import StorageError

logger = logging.getLogger(__name__)


class SQLiteStore:
    """Shared plumbing for the sqlite-backed stores.

    Every public store method opens a short-lived connection; sqlite errors are logged
    and re-raised as ``StorageError`` so the current operation fails without retry.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self) -> None:
        raise NotImplementedError

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn: sqlite3.Connection | None = None
        try:
            conn = sqlite3.connect(self.db_path, timeout=5.0)
            conn.row_factory = sqlite3.Row
            with conn:
                yield conn
        except sqlite3.Error as exc:
            logger.error("sqlite operation failed on %s: %s", self.db_path.name, exc)
            raise StorageError(f"storage operation failed: {exc}") from exc
        finally:
            if conn is not None:
                conn.close()

    def ping(self) -> float:
        """Round-trip a trivial query and return its latency in milliseconds."""
        started = time.perf_counter()
        with self._conn() as conn:
            conn.execute("SELECT 1").fetchone()
        return (time.perf_counter() - started) * 1000.0
