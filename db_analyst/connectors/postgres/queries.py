"""SQL queries for PostgreSQL metadata introspection."""

GET_SCHEMA_COLUMNS_QUERY = """
SELECT
    table_name,
    column_name,
    data_type,
    is_nullable
FROM
    information_schema.columns
WHERE
    table_schema = %s
ORDER BY
    table_name,
    ordinal_position;
"""

GET_SCHEMA_PRIMARY_KEYS_QUERY = """
SELECT
    kcu.table_name,
    kcu.column_name
FROM
    information_schema.table_constraints AS tc
JOIN
    information_schema.key_column_usage AS kcu ON tc.constraint_name = kcu.constraint_name
    AND tc.constraint_schema = kcu.constraint_schema
WHERE
    tc.constraint_type = 'PRIMARY KEY' AND tc.table_schema = %s
ORDER BY
    kcu.table_name,
    kcu.ordinal_position;
"""
