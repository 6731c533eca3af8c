import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..base import BaseConnector


class BaseHandler(ABC):
    """Abstract base class for database operation handlers.

    Defines a consistent interface for executing read-only statements and
    retrieving the metadata context given to the LLM, abstracting away the
    specifics of the underlying database type.

    Attributes:
        connector (BaseConnector): Provides the actual connection to the database.
        logger (logging.Logger): Logger instance specific to the handler subclass.
    """

    def __init__(self, connector: BaseConnector):
        """Initialize the handler with a database connector.

        Args:
            connector (BaseConnector): The database connector instance that provides
                access to the database.
        """
        self.connector: BaseConnector = connector
        self.logger: logging.Logger = logging.getLogger(self.__class__.__name__)

    @abstractmethod
    def execute_query(
        self, sql_query: str, params: Optional[tuple] = None
    ) -> List[Dict[str, Any]]:
        """Execute a read-only SQL statement and return its rows.

        Args:
            sql_query (str): The SQL statement to execute. It must already have
                passed validation.
            params (Optional[tuple]): Parameters to bind to the statement.

        Returns:
            List[Dict[str, Any]]: One ordered mapping of column name to value per
                row. An empty list when the statement returned no rows.

        Raises:
            QueryExecutionError: On connection failure or backend rejection.
        """
        pass

    @abstractmethod
    def get_schema(self, schema_name: str, tables: Optional[List[str]] = None) -> str:
        """Describe the tables of *schema_name* as prompt-ready text.

        Args:
            schema_name (str): The schema to describe.
            tables (Optional[List[str]]): Restrict the description to these tables.

        Returns:
            str: Table and column listing, or an empty string if nothing was found.

        Raises:
            QueryExecutionError: If the metadata cannot be read.
        """
        pass

    def _format_metadata(
        self,
        schema_name: str,
        columns: List[tuple],
        primary_keys: Optional[Dict[str, List[str]]] = None,
    ) -> str:
        """Group ``(table, column, data_type, is_nullable)`` rows into a listing.

        Example output::

            Schema: public
              Table: users (Primary Keys: id)
                Columns: id (integer), email (text, nullable)
        """
        if not columns:
            return ""

        primary_keys = primary_keys or {}
        grouped: Dict[str, List[str]] = {}
        for table_name, column_name, data_type, is_nullable in columns:
            nullable = ", nullable" if str(is_nullable).upper() in ("YES", "TRUE") else ""
            grouped.setdefault(table_name, []).append(
                f"{column_name} ({data_type}{nullable})"
            )

        lines = [f"Schema: {schema_name}"]
        for table_name, column_defs in grouped.items():
            pks = primary_keys.get(table_name)
            pk_info = f" (Primary Keys: {', '.join(pks)})" if pks else ""
            lines.append(f"  Table: {table_name}{pk_info}")
            lines.append(f"    Columns: {', '.join(column_defs)}")
        return "\n".join(lines)
