"""Constants used across the db_analyst application."""


class DatabaseDialects:
    """Defines constants for supported database dialects."""

    POSTGRESQL = "PostgreSQL"
    SQL = "SQL"


# In-band markers the assistant emits inside its replies.
AUTO_EXECUTE_TAG = "[AUTO_EXECUTE]"
RESULT_PLACEHOLDER = "[RESULTADO_DA_QUERY]"

SQL_FENCE_LANGUAGES = ("sql", "postgres", "postgresql")

# Keywords a line may start with and still be considered part of a SQL statement.
SQL_LINE_KEYWORDS = (
    "SELECT",
    "WITH",
    "FROM",
    "JOIN",
    "LEFT",
    "RIGHT",
    "INNER",
    "OUTER",
    "FULL",
    "CROSS",
    "WHERE",
    "GROUP",
    "ORDER",
    "HAVING",
    "LIMIT",
    "OFFSET",
    "UNION",
    "INTERSECT",
    "EXCEPT",
    "ON",
    "AND",
    "OR",
    "AS",
    "CASE",
    "WHEN",
    "THEN",
    "ELSE",
    "END",
    "VALUES",
    "DISTINCT",
)

RUNNABLE_LEADING_KEYWORDS = ("SELECT", "WITH")

DEFAULT_SCHEMA = "public"


class ValidationModes:
    """Names of the built-in query validation policies."""

    STRICT = "strict"
    PERMISSIVE = "permissive"


PERMISSIVE_FORBIDDEN_KEYWORDS = (
    "INSERT",
    "DELETE",
    "UPDATE",
    "DROP",
    "TRUNCATE",
    "ALTER",
    "GRANT",
    "REVOKE",
    "EXEC",
    "EXECUTE",
)

STRICT_FORBIDDEN_KEYWORDS = PERMISSIVE_FORBIDDEN_KEYWORDS + (
    "CREATE",
    "COPY",
    "VACUUM",
    "ANALYZE",
)

PERMISSIVE_LEADING_KEYWORDS = ("SELECT", "CREATE VIEW", "CREATE OR REPLACE VIEW")
STRICT_LEADING_KEYWORDS = ("SELECT",)
