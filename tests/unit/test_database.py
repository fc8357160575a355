"""Unit tests for database module."""
import json
import os
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg2
import pytest


def _mock_connection(rows=None, description=None):
    mock_conn = MagicMock()
    mock_cursor = MagicMock()
    mock_cursor.fetchall.return_value = rows or []
    mock_cursor.description = description
    mock_conn.cursor.return_value = mock_cursor
    return mock_conn, mock_cursor


class TestConnectionParams:
    """Tests for get_connection_params."""

    def test_from_individual_variables(self, mock_env_vars):
        """Test PG_* variables are used when DATABASE_URL is not set."""
        from Conductor.Core.database import get_connection_params

        params = get_connection_params()

        assert params == {
            "user": "test_user",
            "password": "test_pass",
            "host": "localhost",
            "port": 5432,
            "database": "test_conductor",
        }

    def test_database_url_wins(self, mock_env_vars):
        """Test DATABASE_URL takes precedence."""
        from Conductor.Core.database import get_connection_params

        url = "postgresql://ops:pw@db.internal:6543/conductor"
        with patch.dict(os.environ, {"DATABASE_URL": url}):
            params = get_connection_params()

        assert params["host"] == "db.internal"
        assert params["port"] == 6543
        assert params["database"] == "conductor"
        assert params["user"] == "ops"


class TestConnectDb:
    """Tests for connect_db function."""

    @patch("psycopg2.connect")
    def test_connect_db_success(self, mock_connect, mock_env_vars):
        """Test successful database connection."""
        from Conductor.Core.database import connect_db

        mock_conn = MagicMock()
        mock_connect.return_value = mock_conn

        result = connect_db()

        assert result == mock_conn
        mock_connect.assert_called_once_with(
            user="test_user",
            password="test_pass",
            host="localhost",
            port=5432,
            database="test_conductor",
        )

    @patch("psycopg2.connect")
    def test_connect_db_failure(self, mock_connect, mock_env_vars):
        """Test database connection failure."""
        from Conductor.Core.database import connect_db

        mock_connect.side_effect = psycopg2.Error("Connection failed")

        with pytest.raises(ConnectionError):
            connect_db()


class TestQueryDb:
    """Tests for query_db function."""

    @patch("Conductor.Core.database.connect_db")
    def test_query_db_with_columns(self, mock_connect):
        """Test rows are returned as a JSON list of column maps."""
        from Conductor.Core.database import query_db

        started = datetime(2026, 10, 16, 9, 30, tzinfo=timezone.utc)
        mock_conn, mock_cursor = _mock_connection(
            rows=[(1, "restart-api", started)],
            description=[("execution_id",), ("name",), ("started_at",)],
        )
        mock_connect.return_value = mock_conn

        result = query_db("SELECT * FROM executions WHERE execution_id = %s", (1,))

        assert json.loads(result) == [{
            "execution_id": 1,
            "name": "restart-api",
            "started_at": "2026-10-16T09:30:00+00:00",
        }]
        mock_cursor.execute.assert_called_once_with(
            "SELECT * FROM executions WHERE execution_id = %s", (1,)
        )
        mock_conn.commit.assert_called_once()
        mock_cursor.close.assert_called_once()
        mock_conn.close.assert_called_once()

    @patch("Conductor.Core.database.connect_db")
    def test_query_db_without_columns(self, mock_connect):
        """Test query returning raw rows."""
        from Conductor.Core.database import query_db

        mock_conn, _ = _mock_connection(rows=[(1, "test")], description=[("a",), ("b",)])
        mock_connect.return_value = mock_conn

        result = query_db("SELECT * FROM test", show_columns=False)

        assert result == [(1, "test")]

    @patch("Conductor.Core.database.connect_db")
    def test_statement_without_result_set(self, mock_connect):
        """Test an UPDATE without RETURNING yields an empty JSON list."""
        from Conductor.Core.database import query_db

        mock_conn, mock_cursor = _mock_connection(description=None)
        mock_connect.return_value = mock_conn

        result = query_db("UPDATE executions SET cancel_requested = TRUE")

        assert result == "[]"
        mock_cursor.fetchall.assert_not_called()
        mock_conn.commit.assert_called_once()

    @patch("Conductor.Core.database.connect_db")
    def test_query_db_error_handling(self, mock_connect):
        """Test a connection failure returns None."""
        from Conductor.Core.database import query_db

        mock_connect.side_effect = ConnectionError("Query failed")

        assert query_db("SELECT * FROM test") is None

    @patch("Conductor.Core.database.connect_db")
    def test_query_db_rolls_back_on_error(self, mock_connect):
        """Test a failed statement is rolled back and resources are closed."""
        from Conductor.Core.database import query_db

        mock_conn, mock_cursor = _mock_connection()
        mock_cursor.execute.side_effect = psycopg2.Error("Query failed")
        mock_connect.return_value = mock_conn

        result = query_db("SELECT * FROM test")

        assert result is None
        mock_conn.rollback.assert_called_once()
        mock_conn.commit.assert_not_called()
        mock_cursor.close.assert_called_once()
        mock_conn.close.assert_called_once()


class TestInsertDb:
    """Tests for insert_db function."""

    @patch("Conductor.Core.database.connect_db")
    def test_insert_db_success(self, mock_connect):
        """Test successful insert."""
        from Conductor.Core.database import insert_db

        mock_conn, mock_cursor = _mock_connection()
        mock_connect.return_value = mock_conn

        result = insert_db("INSERT INTO test VALUES (%s)", ("value",))

        assert result is True
        mock_cursor.execute.assert_called_once()
        mock_conn.commit.assert_called_once()
        mock_cursor.close.assert_called_once()
        mock_conn.close.assert_called_once()

    @patch("Conductor.Core.database.connect_db")
    def test_insert_db_failure(self, mock_connect):
        """Test insert failure."""
        from Conductor.Core.database import insert_db

        mock_conn, mock_cursor = _mock_connection()
        mock_cursor.execute.side_effect = psycopg2.Error("Insert failed")
        mock_connect.return_value = mock_conn

        result = insert_db("INSERT INTO test VALUES (%s)", ("value",))

        assert result is False
        mock_conn.rollback.assert_called_once()

    @patch("Conductor.Core.database.connect_db")
    def test_insert_db_parameterized_query(self, mock_connect):
        """Test that parameters are passed to the driver, not interpolated."""
        from Conductor.Core.database import insert_db

        mock_conn, mock_cursor = _mock_connection()
        mock_connect.return_value = mock_conn

        insert_db(
            "INSERT INTO runbooks(name, description) VALUES (%s, %s)",
            ("test'; DROP TABLE runbooks; --", "value"),
        )

        call_args = mock_cursor.execute.call_args
        assert call_args[0][0] == "INSERT INTO runbooks(name, description) VALUES (%s, %s)"
        assert call_args[0][1] == ("test'; DROP TABLE runbooks; --", "value")


class TestToJson:
    """Tests for to_json."""

    def test_wraps_value_for_jsonb(self):
        """Test values are wrapped in psycopg2's Json adapter."""
        from Conductor.Core.database import to_json

        wrapped = to_json({"a": [1, 2]})

        assert isinstance(wrapped, psycopg2.extras.Json)
        assert wrapped.adapted == {"a": [1, 2]}
