"""Identifier validation and quoting.

Identifiers (tables, columns, triggers, functions) cannot be bound as
parameters, so every name interpolated into generated SQL must pass the
allow-list pattern first and is then quoted for its dialect here.
"""

import re

from ciphertrail.errors import InvalidIdentifierError, UnsupportedDialectError

MYSQL = "mysql"
POSTGRESQL = "postgresql"
SUPPORTED_DIALECTS = (MYSQL, POSTGRESQL)

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# PostgreSQL truncates at NAMEDATALEN - 1, MySQL rejects beyond 64
MAX_IDENTIFIER_LENGTH = {
    MYSQL: 64,
    POSTGRESQL: 63,
}


def normalize_dialect(dialect: str) -> str:
    """Map user and SQLAlchemy dialect spellings onto the supported names."""
    name = (dialect or "").strip().lower()
    if name in ("postgres", "postgresql", "pg", "psycopg2"):
        return POSTGRESQL
    if name in ("mysql", "mariadb", "pymysql"):
        return MYSQL
    raise UnsupportedDialectError(dialect)


def validate_identifier(name: str, dialect: str = POSTGRESQL) -> str:
    """Return name unchanged if it is safe to interpolate, else raise."""
    if not isinstance(name, str) or not IDENTIFIER_PATTERN.match(name):
        raise InvalidIdentifierError(f"Invalid SQL identifier: {name!r}")
    limit = MAX_IDENTIFIER_LENGTH.get(dialect, 63)
    if len(name) > limit:
        raise InvalidIdentifierError(f"SQL identifier {name!r} exceeds {limit} characters")
    return name


def quote_identifier(dialect: str, name: str) -> str:
    """Validate and quote a single identifier for the dialect."""
    validate_identifier(name, dialect)
    if dialect == MYSQL:
        return f"`{name}`"
    if dialect == POSTGRESQL:
        return f'"{name}"'
    raise UnsupportedDialectError(dialect)


def qualify_identifier(dialect: str, qualifier: str, name: str) -> str:
    """Quote qualifier.name, or just name when there is no qualifier."""
    if not qualifier:
        return quote_identifier(dialect, name)
    return f"{quote_identifier(dialect, qualifier)}.{quote_identifier(dialect, name)}"
