"""
SQL identifier validation.

Table, schema and column names come from the table configuration file and
are validated once at load time; queries are composed with psycopg2.sql.
"""

import re

from psycopg2 import sql

# Strict ASCII-only pattern for SQL identifiers
VALID_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")

# NOTIFY channel names are identifiers too, and are truncated at 63 bytes
MAX_IDENTIFIER_LENGTH = 63


def validate_identifier(identifier: str) -> None:
    """
    Validate a SQL identifier (schema, table or column name).

    Raises:
        ValueError: If the identifier is empty, too long or contains invalid characters
    """
    if not identifier or not isinstance(identifier, str):
        raise ValueError("SQL identifier cannot be empty")

    if len(identifier) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"Invalid SQL identifier: {identifier!r}. "
            f"Longer than {MAX_IDENTIFIER_LENGTH} characters."
        )

    if not VALID_IDENTIFIER.match(identifier):
        raise ValueError(
            f"Invalid SQL identifier: {identifier!r}. "
            "Only ASCII letters, digits, and underscores are allowed, "
            "and must start with a letter or underscore."
        )


def validate_integer_param(value: int, param_name: str, min_value: int = 0) -> None:
    """
    Validate an integer setting.

    Raises:
        ValueError: If the value is not an integer or is below min_value
    """
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"Invalid {param_name}: {value!r}. Must be an integer.")

    if value < min_value:
        raise ValueError(f"Invalid {param_name}: {value}. Must be >= {min_value}.")


def qualified_table(schema: str, table: str) -> sql.Composed:
    """Return "schema"."table" as a composable SQL fragment."""
    return sql.SQL(".").join([sql.Identifier(schema), sql.Identifier(table)])


def channel_name(schema: str, table: str) -> str:
    """NOTIFY channel carrying the change events of schema.table."""
    name = f"sync_{schema}_{table}"
    return name[:MAX_IDENTIFIER_LENGTH]
