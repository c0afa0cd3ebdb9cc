from __future__ import annotations

import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from stockcast.registry.db import MIGRATIONS_DIR, Database


def _mock_connection(cursor: MagicMock) -> MagicMock:
    cursor.__enter__ = MagicMock(return_value=cursor)
    cursor.__exit__ = MagicMock(return_value=False)
    conn = MagicMock()
    conn.cursor.return_value = cursor
    return conn


class TestDatabaseInit:
    def test_stores_dsn(self) -> None:
        db = Database("postgresql://u:p@localhost:5432/testdb")
        assert db._dsn == "postgresql://u:p@localhost:5432/testdb"

    def test_not_connected_by_default(self) -> None:
        db = Database("postgresql://u:p@localhost:5432/testdb")
        assert db._pool is None
        assert db._conn is None


class TestDatabaseExecute:
    def test_execute_returns_dicts(self) -> None:
        db = Database("postgresql://u:p@localhost:5432/testdb")

        mock_cursor = MagicMock()
        mock_cursor.description = [("id",), ("user_id",)]
        mock_cursor.fetchall.return_value = [
            {"id": 1, "user_id": "alice"},
            {"id": 2, "user_id": "bob"},
        ]
        mock_conn = _mock_connection(mock_cursor)
        db._conn = mock_conn

        result = db.execute("SELECT id, user_id FROM stockcast.predictions")
        assert result == [{"id": 1, "user_id": "alice"}, {"id": 2, "user_id": "bob"}]
        mock_conn.commit.assert_called_once()

    def test_execute_no_results(self) -> None:
        db = Database("postgresql://u:p@localhost:5432/testdb")

        mock_cursor = MagicMock()
        mock_cursor.description = None
        db._conn = _mock_connection(mock_cursor)

        result = db.execute("INSERT INTO stockcast.instruments (instrument_id) VALUES (%s)", ("AAPL",))
        assert result == []

    def test_execute_rolls_back_on_error(self) -> None:
        db = Database("postgresql://u:p@localhost:5432/testdb")

        mock_cursor = MagicMock()
        mock_cursor.execute.side_effect = RuntimeError("boom")
        mock_conn = _mock_connection(mock_cursor)
        db._conn = mock_conn

        with pytest.raises(RuntimeError, match="boom"):
            db.execute("UPDATE stockcast.predictions SET status = 'evaluated'")
        mock_conn.rollback.assert_called_once()
        mock_conn.commit.assert_not_called()

    def test_execute_one_returns_first_row_or_none(self) -> None:
        db = Database("postgresql://u:p@localhost:5432/testdb")

        mock_cursor = MagicMock()
        mock_cursor.description = [("id",)]
        mock_cursor.fetchall.return_value = []
        db._conn = _mock_connection(mock_cursor)

        assert db.execute_one("SELECT id FROM stockcast.predictions WHERE id = %s", (1,)) is None

        mock_cursor.fetchall.return_value = [{"id": 7}, {"id": 8}]
        assert db.execute_one("SELECT id FROM stockcast.predictions") == {"id": 7}

    def test_execute_raises_when_not_connected(self) -> None:
        db = Database("postgresql://u:p@localhost:5432/testdb")
        with pytest.raises(RuntimeError, match="not connected"):
            db.execute("SELECT 1")

    def test_pooled_connection_is_returned(self) -> None:
        db = Database("postgresql://u:p@localhost:5432/testdb")

        mock_cursor = MagicMock()
        mock_cursor.description = None
        mock_conn = _mock_connection(mock_cursor)
        pool = MagicMock()
        pool.getconn.return_value = mock_conn
        db._pool = pool

        db.execute("SELECT 1")
        pool.putconn.assert_called_once_with(mock_conn)


class TestDatabaseExecuteMany:
    def test_execute_many_returns_count(self) -> None:
        db = Database("postgresql://u:p@localhost:5432/testdb")

        mock_cursor = MagicMock()
        mock_cursor.rowcount = 1
        db._conn = _mock_connection(mock_cursor)

        count = db.execute_many(
            "INSERT INTO stockcast.instruments (instrument_id) VALUES (%s)",
            [("AAPL",), ("GOOG",), ("MSFT",)],
        )
        assert count == 3


class TestMigrationRunner:
    def test_finds_and_runs_sql_files(self) -> None:
        db = Database("postgresql://u:p@localhost:5432/testdb")

        with tempfile.TemporaryDirectory() as tmpdir:
            (Path(tmpdir) / "001_create_table.sql").write_text("CREATE TABLE test (id INT);")
            (Path(tmpdir) / "002_add_column.sql").write_text("ALTER TABLE test ADD COLUMN name TEXT;")

            mock_cursor = MagicMock()
            mock_cursor.fetchall.return_value = []
            db._conn = _mock_connection(mock_cursor)

            applied = db.run_migrations(tmpdir)

            calls = mock_cursor.execute.call_args_list
            assert "_migrations" in str(calls[0])
            assert "SELECT filename" in str(calls[1])
            assert len(calls) == 6  # CREATE + SELECT + 2*(SQL + INSERT)
            assert applied == ["001_create_table.sql", "002_add_column.sql"]

    def test_skips_applied_migrations(self) -> None:
        db = Database("postgresql://u:p@localhost:5432/testdb")

        with tempfile.TemporaryDirectory() as tmpdir:
            (Path(tmpdir) / "001_create_table.sql").write_text("CREATE TABLE test (id INT);")
            (Path(tmpdir) / "002_add_column.sql").write_text("ALTER TABLE test ADD COLUMN name TEXT;")

            mock_cursor = MagicMock()
            mock_cursor.fetchall.return_value = [{"filename": "001_create_table.sql"}]
            db._conn = _mock_connection(mock_cursor)

            applied = db.run_migrations(tmpdir)

            assert len(mock_cursor.execute.call_args_list) == 4
            assert applied == ["002_add_column.sql"]


class TestShippedMigrations:
    def test_migrations_are_ordered(self) -> None:
        names = sorted(p.name for p in MIGRATIONS_DIR.glob("*.sql"))
        assert names == [
            "001_predictions.sql",
            "002_reputation.sql",
            "003_notifications.sql",
        ]

    def test_one_pending_per_user_instrument_index(self) -> None:
        sql = (MIGRATIONS_DIR / "001_predictions.sql").read_text()
        assert "CREATE UNIQUE INDEX IF NOT EXISTS uq_predictions_one_pending" in sql
        assert "WHERE status = 'pending'" in sql

    def test_target_date_uses_fixed_durations(self) -> None:
        sql = (MIGRATIONS_DIR / "001_predictions.sql").read_text()
        for interval in ("'1 hour'", "'24 hours'", "'168 hours'", "'720 hours'"):
            assert interval in sql

    def test_ledger_and_outbox_keyed_by_prediction(self) -> None:
        assert "prediction_id BIGINT PRIMARY KEY" in (MIGRATIONS_DIR / "002_reputation.sql").read_text()
        assert "prediction_id BIGINT NOT NULL UNIQUE" in (
            MIGRATIONS_DIR / "003_notifications.sql"
        ).read_text()


class TestHealthCheck:
    def test_healthy(self) -> None:
        db = Database("postgresql://u:p@localhost:5432/testdb")

        mock_cursor = MagicMock()
        mock_cursor.description = [("ok",)]
        mock_cursor.fetchall.return_value = [{"ok": 1}]
        db._conn = _mock_connection(mock_cursor)

        assert db.health_check() is True

    def test_unhealthy(self) -> None:
        db = Database("postgresql://u:p@localhost:5432/testdb")
        assert db.health_check() is False


class TestConnect:
    @patch("stockcast.registry.db.ConnectionPool")
    def test_context_manager_uses_pool(self, mock_pool_cls: MagicMock) -> None:
        pool = MagicMock()
        mock_pool_cls.return_value = pool

        with Database("postgresql://u:p@localhost:5432/testdb", max_size=4) as db:
            assert db._pool is pool
            assert mock_pool_cls.call_args.kwargs["max_size"] == 4

        pool.close.assert_called_once()

    @patch("stockcast.registry.db.psycopg")
    def test_single_connection(self, mock_psycopg: MagicMock) -> None:
        mock_conn = MagicMock()
        mock_psycopg.connect.return_value = mock_conn

        db = Database("postgresql://u:p@localhost:5432/testdb")
        db.connect(pooled=False)
        assert db._conn is mock_conn
        db.close()
        mock_conn.close.assert_called_once()
        assert db._conn is None
