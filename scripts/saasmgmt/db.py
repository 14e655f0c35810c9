"""Database helpers: connection pool, JSONB document upserts, sync-run tracking."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator, Optional, Sequence

import psycopg2
import psycopg2.extras
import psycopg2.pool

from scripts.saasmgmt.config import DatabaseConfig

logger = logging.getLogger("saasmgmt.db")

SCHEMA_PATH = Path(__file__).with_name("schema.sql")


def rows_to_dicts(cur) -> list[dict[str, Any]]:
    cols = [d[0] for d in cur.description]
    return [dict(zip(cols, row)) for row in cur.fetchall()]


class Database:
    """Thin wrapper around a ThreadedConnectionPool with upsert helpers."""

    def __init__(self, config: DatabaseConfig) -> None:
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=config.min_connections,
            maxconn=config.max_connections,
            dsn=config.url,
        )

    def close(self) -> None:
        self._pool.closeall()

    @contextmanager
    def connection(self) -> Generator:
        conn = self._pool.getconn()
        try:
            yield conn
        finally:
            self._pool.putconn(conn)

    @contextmanager
    def transaction(self) -> Generator:
        """Yield a cursor inside an auto-commit/rollback transaction."""
        with self.connection() as conn:
            try:
                with conn.cursor() as cur:
                    yield cur
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def fetch_all(self, sql: str, params: Any = None) -> list[dict[str, Any]]:
        with self.transaction() as cur:
            cur.execute(sql, params)
            return rows_to_dicts(cur)

    def fetch_one(self, sql: str, params: Any = None) -> Optional[dict[str, Any]]:
        rows = self.fetch_all(sql, params)
        return rows[0] if rows else None

    def apply_schema(self) -> None:
        with self.transaction() as cur:
            cur.execute(SCHEMA_PATH.read_text())
        logger.info("Applied schema from %s", SCHEMA_PATH.name)

    def upsert_batch(
        self,
        cur,
        table: str,
        columns: list[str],
        rows: Sequence[tuple],
        conflict_columns: list[str],
        update_columns: list[str],
    ) -> int:
        """Bulk upsert using execute_values with ON CONFLICT DO UPDATE.

        Returns the number of rows affected.
        """
        if not rows:
            return 0

        col_list = ", ".join(columns)
        conflict_list = ", ".join(conflict_columns)
        set_clauses = ", ".join(f"{c} = EXCLUDED.{c}" for c in update_columns)
        set_clauses += ", updated_at = NOW()"

        sql = (
            f"INSERT INTO {table} ({col_list}) VALUES %s "
            f"ON CONFLICT ({conflict_list}) DO UPDATE SET {set_clauses}"
        )
        psycopg2.extras.execute_values(cur, sql, rows, page_size=500)
        return cur.rowcount

    # ------------------------------------------------------------------
    # Sync run tracking
    # ------------------------------------------------------------------

    def record_run_start(
        self,
        company_id: str,
        app_type: str,
        connection_id: Optional[str] = None,
    ) -> str:
        """Insert a sync_runs row with status RUNNING. Returns the run id."""
        run_id = str(uuid.uuid4())
        with self.transaction() as cur:
            cur.execute(
                """INSERT INTO sync_runs (id, company_id, app_type, connection_id, status)
                   VALUES (%s, %s, %s, %s, 'RUNNING')""",
                (run_id, company_id, app_type, connection_id),
            )
        return run_id

    def record_run_end(
        self,
        run_id: str,
        status: str,
        records_upserted: int = 0,
        error_message: Optional[str] = None,
    ) -> None:
        with self.transaction() as cur:
            cur.execute(
                """UPDATE sync_runs
                   SET status = %s,
                       finished_at = NOW(),
                       records_upserted = %s,
                       error_message = %s
                   WHERE id = %s""",
                (status, records_upserted, error_message, run_id),
            )

    def get_recent_runs(
        self,
        company_id: str,
        app_type: Optional[str] = None,
        limit: int = 10,
    ) -> list[dict[str, Any]]:
        """Fetch recent sync runs for status display."""
        sql = (
            "SELECT id, app_type, status, started_at, finished_at, "
            "records_upserted, error_message FROM sync_runs WHERE company_id = %s"
        )
        params: list[Any] = [company_id]
        if app_type:
            sql += " AND app_type = %s"
            params.append(app_type)
        sql += " ORDER BY started_at DESC LIMIT %s"
        params.append(limit)
        return self.fetch_all(sql, params)
