import logging
import threading
from typing import Any, Dict, List, Optional

import psycopg2.extras

from db_analyst.errors import QueryExecutionError

from ..handlers.base import BaseHandler
from . import queries

logger = logging.getLogger(__name__)


class PgHandler(BaseHandler):
    """PostgreSQL handler implementation.

    Uses a PgConnector to interact with the database. Transactions on the
    shared connection are serialized, since blocks may execute concurrently.
    """

    def __init__(self, connector):
        super().__init__(connector)
        self._lock = threading.Lock()

    def execute_query(self, sql_query, params=None):
        """Execute a read-only statement and return its rows.

        The statement runs inside ``BEGIN TRANSACTION READ ONLY`` with a
        ``RealDictCursor`` so each row comes back as a column-ordered dict.

        Args:
            sql_query (str): The validated SQL statement.
            params (tuple, optional): Parameters for safe parameterization.

        Returns:
            list[dict]: The fetched rows; empty if the statement produced none.

        Raises:
            QueryExecutionError: If no connection is available or the database
                rejects the statement.
        """
        with self._lock:
            return self._run_read_only(sql_query, params)

    def _run_read_only(self, sql_query, params):
        conn = self.connector.get_connection()
        if not conn:
            raise QueryExecutionError("Failed to get database connection")

        final_sql = sql_query
        final_params = params or ()

        # psycopg2 treats bare % as a placeholder marker when params are empty
        if not final_params:
            final_sql = sql_query.replace("%", "%%")

        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cursor:
                cursor.execute("BEGIN TRANSACTION READ ONLY")
                cursor.execute(final_sql, final_params)

                rows: List[Dict[str, Any]] = []
                if cursor.description:
                    rows = [dict(row) for row in cursor.fetchall()]
                cursor.execute("COMMIT")

            logger.info(f"Query returned {len(rows)} row(s)")
            return rows
        except Exception as e:
            logger.error(f"Error executing SQL query: {e}, Original SQL: {sql_query}")
            self._rollback(conn)
            raise QueryExecutionError(f"SQL execution failed: {e}") from e

    def get_schema(self, schema_name, tables=None):
        """Describe the tables of *schema_name* from ``information_schema``.

        Args:
            schema_name (str): The schema to describe (normally ``public``).
            tables (list[str], optional): Only describe these tables.

        Returns:
            str: The metadata listing, or an empty string if the schema has no
                matching tables.

        Raises:
            QueryExecutionError: If the connection or the catalog queries fail.
        """
        conn = self.connector.get_connection()
        if not conn:
            raise QueryExecutionError(
                "Failed to get database connection for schema retrieval"
            )

        try:
            with self._lock, conn.cursor() as cursor:
                cursor.execute(queries.GET_SCHEMA_COLUMNS_QUERY, (schema_name,))
                columns = cursor.fetchall()

                cursor.execute(queries.GET_SCHEMA_PRIMARY_KEYS_QUERY, (schema_name,))
                primary_keys: Dict[str, List[str]] = {}
                for table_name, column_name in cursor.fetchall():
                    primary_keys.setdefault(table_name, []).append(column_name)
            self._rollback(conn)
        except Exception as e:
            logger.error(f"Error fetching schema directly from database: {e}")
            self._rollback(conn)
            raise QueryExecutionError(f"Error fetching schema from database: {e}") from e

        if tables:
            wanted = {t.lower() for t in tables}
            columns = [row for row in columns if str(row[0]).lower() in wanted]

        if not columns:
            logger.warning(f"No columns found in schema '{schema_name}'.")
        return self._format_metadata(schema_name, columns, primary_keys)

    def _rollback(self, conn: Optional[Any]) -> None:
        try:
            if conn is not None and not conn.closed:
                conn.rollback()
        except Exception as e:
            logger.error(f"Rollback failed: {e}")
