from __future__ import annotations

import logging
from pathlib import Path
from types import TracebackType

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


class Database:
    """PostgreSQL database wrapper using psycopg3.

    API workers and scheduler processes each hold their own pool. Every
    statement issued through ``execute`` runs in its own short transaction.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10) -> None:
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: ConnectionPool | None = None
        self._conn: psycopg.Connection | None = None

    def connect(self, pooled: bool = True) -> None:
        """Open a connection pool, or a single connection for one-shot commands."""
        if pooled:
            self._pool = ConnectionPool(
                self._dsn,
                min_size=self._min_size,
                max_size=self._max_size,
                kwargs={"row_factory": dict_row},
                open=True,
            )
            self._pool.wait()
            logger.info("Connection pool established (max %d)", self._max_size)
        else:
            self._conn = psycopg.connect(self._dsn, row_factory=dict_row)
            logger.info("Single connection established")

    def close(self) -> None:
        """Close the connection pool or single connection."""
        if self._pool is not None:
            self._pool.close()
            self._pool = None
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _get_connection(self) -> psycopg.Connection:
        if self._pool is not None:
            return self._pool.getconn()
        if self._conn is not None:
            return self._conn
        raise RuntimeError("Database not connected. Call connect() first.")

    def _put_connection(self, conn: psycopg.Connection) -> None:
        if self._pool is not None:
            self._pool.putconn(conn)

    def execute(self, query: str, params: tuple | list | None = None) -> list[dict]:
        """Execute a query and return rows as dicts."""
        conn = self._get_connection()
        try:
            with conn.cursor() as cur:
                try:
                    cur.execute(query, params)
                    rows = cur.fetchall() if cur.description is not None else []
                except Exception:
                    conn.rollback()
                    raise
                conn.commit()
                return [dict(row) for row in rows]
        finally:
            self._put_connection(conn)

    def execute_one(self, query: str, params: tuple | list | None = None) -> dict | None:
        """Execute a query and return the first row, or None."""
        rows = self.execute(query, params)
        return rows[0] if rows else None

    def execute_many(self, query: str, params_seq: list[tuple]) -> int:
        """Batch execute a query in one transaction, return affected row count."""
        conn = self._get_connection()
        try:
            with conn.cursor() as cur:
                count = 0
                try:
                    for params in params_seq:
                        cur.execute(query, params)
                        count += cur.rowcount if cur.rowcount >= 0 else 0
                except Exception:
                    conn.rollback()
                    raise
                conn.commit()
                return count
        finally:
            self._put_connection(conn)

    def run_migrations(self, migrations_dir: str | Path = MIGRATIONS_DIR) -> list[str]:
        """Run SQL migration files in order, tracking applied migrations.

        Returns the filenames applied by this call.
        """
        conn = self._get_connection()
        applied_now: list[str] = []
        try:
            with conn.cursor() as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS _migrations (
                        filename TEXT PRIMARY KEY,
                        applied_at TIMESTAMPTZ DEFAULT NOW()
                    )
                """)
                conn.commit()

                cur.execute("SELECT filename FROM _migrations ORDER BY filename")
                applied = {row["filename"] for row in cur.fetchall()}

                for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
                    if sql_file.name in applied:
                        logger.debug("Skipping already applied migration: %s", sql_file.name)
                        continue

                    logger.info("Applying migration: %s", sql_file.name)
                    cur.execute(sql_file.read_text())
                    cur.execute(
                        "INSERT INTO _migrations (filename) VALUES (%s)",
                        (sql_file.name,),
                    )
                    conn.commit()
                    applied_now.append(sql_file.name)
        finally:
            self._put_connection(conn)
        return applied_now

    def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            result = self.execute("SELECT 1 AS ok")
            return len(result) > 0 and result[0].get("ok") == 1
        except Exception:
            logger.exception("Health check failed")
            return False

    def __enter__(self) -> Database:
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
