import logging
from abc import ABC, abstractmethod
from typing import Any, Optional


class BaseConnector(ABC):
    """Abstract base class defining the interface for database connectors.

    A connector owns the lifecycle of one database connection.  Query execution
    and metadata retrieval live in handlers built on top of a connector.

    Attributes:
        connection_string (Optional[str]): The connection string used to connect.
        conn (Optional[Any]): The active database connection object. Managed by subclasses.
        dialect (str): Human-readable SQL dialect name, used in prompts.
        logger (logging.Logger): Logger instance for the connector.
    """

    dialect: str = "SQL"

    def __init__(self, connection_string: Optional[str] = None):
        """Initializes the BaseConnector.

        Args:
            connection_string (Optional[str]): The connection string for the database.
                                               Defaults to None.
        """
        self.connection_string: Optional[str] = connection_string
        self.conn: Optional[Any] = None
        self.logger: logging.Logger = logging.getLogger(__name__)

    @abstractmethod
    def connect(self) -> bool:
        """Establish a connection to the database.

        Returns:
            bool: True if connection is successful, False otherwise.
        """
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Close the database connection and release its resources."""
        pass

    @abstractmethod
    def get_connection(self) -> Optional[Any]:
        """Return the raw database connection object.

        Implementations may transparently re-establish a dropped connection.

        Returns:
            Optional[Any]: The active connection object, or None if not connected.
        """
        pass
