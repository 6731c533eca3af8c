import logging
from typing import Optional

import psycopg2

from db_analyst.conf import AnalystSettings
from db_analyst.constants import DatabaseDialects
from db_analyst.errors import ConfigurationError

from ..base import BaseConnector

logger = logging.getLogger(__name__)


class PgConnector(BaseConnector):
    """Manages a read-only connection to a PostgreSQL database.

    Sessions opened by this connector are marked read-only, so the database
    refuses writes even if a statement slips past text-level validation.

    Attributes:
        connection_string (str): The database connection string.
        connect_timeout (int): Seconds to wait when establishing a connection.
        conn (psycopg2.connection | None): The active connection, or None.
    """

    dialect = DatabaseDialects.POSTGRESQL

    def __init__(self, connection_string: str, connect_timeout: int = 10):
        """Initializes the PgConnector.

        Args:
            connection_string (str): A libpq connection string or URL.
            connect_timeout (int): Connection timeout in seconds.
        """
        super().__init__(connection_string)
        self.connect_timeout = connect_timeout

    @classmethod
    def from_settings(cls, config: AnalystSettings) -> "PgConnector":
        """Build a connector from the resolved ``DATABASE_URL``.

        Raises:
            ConfigurationError: If no PostgreSQL database is configured.
        """
        if not config.database_url:
            raise ConfigurationError(
                "No PostgreSQL database configured. Set DB_ANALYST['DATABASE_URL'] "
                "or a postgresql 'default' entry in DATABASES."
            )
        return cls(config.database_url)

    def connect(self) -> bool:
        """Establishes the connection if it is not already open.

        Returns:
            bool: True if the connection is open, False if connecting failed.
        """
        if self.conn and not self.conn.closed:
            logger.debug("Connection already established.")
            return True
        try:
            logger.info("Connecting to PostgreSQL using the configured connection string.")
            self.conn = psycopg2.connect(
                self.connection_string, connect_timeout=self.connect_timeout
            )
            self.conn.set_session(readonly=True)
            logger.info("Successfully connected to PostgreSQL (read-only session).")
            return True
        except Exception as e:
            logger.error(f"Failed to connect to PostgreSQL: {str(e)}")
            self.conn = None
            return False

    def disconnect(self):
        """Closes the active connection, if any."""
        if not self.conn:
            logger.debug("No active connection to disconnect.")
            return
        try:
            self.conn.close()
            logger.info("Disconnected from PostgreSQL.")
        except Exception as e:
            logger.error(f"Error disconnecting from PostgreSQL: {str(e)}")
        finally:
            self.conn = None

    def get_connection(self) -> Optional["psycopg2.extensions.connection"]:
        """Return the open connection, reconnecting once if it was dropped."""
        if not self.conn or self.conn.closed:
            logger.warning(
                "Connection is closed or not established. Attempting to reconnect."
            )
            if not self.connect():
                return None
        return self.conn
