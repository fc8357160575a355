"""Database connection and query module for Conductor."""

import psycopg2
import psycopg2.extras
import os
import logging
import json
from typing import Optional, List, Tuple, Union
from urllib.parse import urlparse

import Conductor.Helpers.logSettings as logLevel

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())


def get_connection_params() -> dict:
    """Get database connection parameters from environment."""
    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        parsed = urlparse(database_url)
        return {
            "user": parsed.username,
            "password": parsed.password,
            "host": parsed.hostname,
            "port": parsed.port or 5432,
            "database": parsed.path.lstrip("/"),
        }

    return {
        "user": os.environ["PG_USER"],
        "password": os.environ["PG_PASS"],
        "host": os.environ["DB_HOST"],
        "port": int(os.environ.get("DB_PORT", "5432")),
        "database": os.environ["DB_NAME"],
    }


def connect_db():
    """Create a connection to the PostgreSQL database."""
    params = get_connection_params()
    try:
        conn = psycopg2.connect(**params)
        logger.log(
            level=10,
            msg=f"Connected to {params['host']}:{params['port']}\\{params['database']} "
            f"with user: {params['user']} successfully.",
        )
        return conn
    except psycopg2.Error as e:
        logger.log(
            level=50,
            msg=f"Failed to connect to {params['database']} with supplied credentials. "
            f"Is it running and do you have access? Error: {str(e)}",
        )
        raise ConnectionError(str(e))


def _serialize_rows(cursor, rows) -> str:
    col_names = [elt[0] for elt in cursor.description]
    data = []
    for r in rows:
        d = {}
        for c in range(len(col_names)):
            val = r[c]
            if hasattr(val, "isoformat"):
                val = val.isoformat()
            d[col_names[c]] = val
        data.append(d)
    return json.dumps(data, default=str)


def query_db(
    query: str, params: Optional[Tuple] = None, show_columns: bool = True
) -> Optional[Union[str, List]]:
    """
    Execute a query that returns rows and commit it.

    Used for SELECTs as well as INSERT/UPDATE/DELETE statements with a
    RETURNING clause, which is how the stores perform atomic claims.

    Args:
        query: SQL query with %s placeholders for parameters
        params: Tuple of parameters to safely substitute into query
        show_columns: If True, return JSON string; if False, return raw rows

    Returns:
        JSON string of results (if show_columns=True) or list of tuples.
        None if the query could not be performed.
    """
    client = None
    cur = None
    try:
        client = connect_db()
        cur = client.cursor()
        cur.execute(query, params)
        rows = cur.fetchall() if cur.description else []
        output = _serialize_rows(cur, rows) if show_columns and cur.description else (
            "[]" if show_columns else rows
        )
        client.commit()
        return output
    except (psycopg2.Error, ConnectionError) as e:
        if client:
            client.rollback()
        logger.log(
            level=30, msg=f"Unable to perform query. An Error has occurred: {str(e)}"
        )
        return None
    finally:
        if cur:
            cur.close()
        if client:
            client.close()


def insert_db(query: str, params: Optional[Tuple] = None) -> bool:
    """
    Execute an INSERT/UPDATE/DELETE query.

    Args:
        query: SQL query with %s placeholders for parameters
        params: Tuple of parameters to safely substitute into query

    Returns:
        True on success, False on failure
    """
    client = None
    cur = None
    try:
        client = connect_db()
        cur = client.cursor()
        cur.execute(query, params)
        client.commit()
        return True
    except (psycopg2.Error, ConnectionError) as e:
        if client:
            client.rollback()
        logger.log(level=30, msg=f"Unable to perform insert: {str(e)}")
        return False
    finally:
        if cur:
            cur.close()
        if client:
            client.close()


def to_json(value) -> psycopg2.extras.Json:
    """Wrap a Python value for a JSONB column."""
    return psycopg2.extras.Json(value)
