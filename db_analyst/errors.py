"""Exception types raised by the db_analyst application."""


class AnalystError(Exception):
    """Base class for all db_analyst errors."""


class ConfigurationError(AnalystError):
    """Raised when the ``DB_ANALYST`` settings are invalid."""


class QueryValidationError(AnalystError):
    """Raised when a SQL statement is rejected by the safety validator.

    Attributes:
        reason: Human-readable explanation of the rule that failed.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class QueryExecutionError(AnalystError):
    """Raised when the database rejects or fails to run a statement."""
