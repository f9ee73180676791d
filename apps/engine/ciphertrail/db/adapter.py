"""Dialect adapters over a caller-owned SQLAlchemy engine.

An adapter exposes the small "execute SQL, get rows" capability the audit
engine needs, plus catalog lookups (tables, columns, triggers) for MySQL and
PostgreSQL. Values are always bound as parameters; identifiers go through
``ciphertrail.db.identifiers``.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy import text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.sql import Executable

from ciphertrail.db.identifiers import (
    MYSQL,
    POSTGRESQL,
    normalize_dialect,
    qualify_identifier,
    quote_identifier,
    validate_identifier,
)
from ciphertrail.errors import UnsupportedDialectError
from ciphertrail.security.naming import is_audit_table_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class SchemaConfig:
    """Where audited tables live: a PostgreSQL schema or a MySQL database."""

    schema: str = "public"
    database: Optional[str] = None


@dataclass(frozen=True)
class OriginalColumn:
    """One column of a source table, as read from the catalog."""

    name: str
    data_type: str
    nullable: bool = True
    ordinal_position: int = 0


class DialectAdapter:
    """Generic adapter: statement execution and identifier quoting."""

    dialect_name: Optional[str] = None

    def __init__(self, engine: Engine, schema_config: Optional[SchemaConfig] = None):
        """Initialize adapter around a caller-owned engine."""
        self.engine = engine
        self.schema_config = schema_config or SchemaConfig()

    @property
    def qualifier(self) -> Optional[str]:
        """Schema (PostgreSQL) or database (MySQL) that holds the tables."""
        return None

    @property
    def schema_translate_map(self) -> Optional[dict]:
        """Translate map for SQLAlchemy models declared without a schema."""
        if self.qualifier:
            return {None: self.qualifier}
        return None

    def quote_ident(self, name: str) -> str:
        """Validate and quote an identifier."""
        validate_identifier(name, self.dialect_name or POSTGRESQL)
        return self.engine.dialect.identifier_preparer.quote_identifier(name)

    def qualify(self, name: str) -> str:
        """Quote name qualified with the adapter's schema/database."""
        if self.qualifier:
            return f"{self.quote_ident(self.qualifier)}.{self.quote_ident(name)}"
        return self.quote_ident(name)

    def with_transaction(self, fn: Callable[[Connection], T]) -> T:
        """Run fn(connection) inside a single transaction."""
        with self.engine.begin() as conn:
            if self.schema_translate_map:
                conn = conn.execution_options(schema_translate_map=self.schema_translate_map)
            return fn(conn)

    def execute(self, statement, params: Optional[dict] = None) -> int:
        """Execute a statement with bound parameters; return affected rows."""
        with self.engine.begin() as conn:
            result = conn.execute(_as_executable(statement), params or {})
            return max(result.rowcount or 0, 0)

    def execute_ddl(self, sql: str) -> None:
        """Execute one DDL statement verbatim (no bind parameter parsing)."""
        logger.debug(f"DDL: {sql.strip().splitlines()[0] if sql.strip() else ''}")
        with self.engine.begin() as conn:
            conn.exec_driver_sql(sql)

    def query(self, statement, params: Optional[dict] = None) -> list[dict]:
        """Run a query and return rows as dictionaries."""
        with self.engine.connect() as conn:
            result = conn.execute(_as_executable(statement), params or {})
            return [dict(row._mapping) for row in result]

    def scalar(self, statement, params: Optional[dict] = None) -> Any:
        """Run a query and return the first column of the first row."""
        with self.engine.connect() as conn:
            return conn.execute(_as_executable(statement), params or {}).scalar()

    # Catalog operations, implemented by the dialect adapters

    def table_exists(self, table_name: str) -> bool:
        raise NotImplementedError

    def get_columns(self, table_name: str) -> list[OriginalColumn]:
        raise NotImplementedError

    def list_tables(self) -> list[str]:
        raise NotImplementedError

    def list_triggers(self, table_name: str) -> list[str]:
        raise NotImplementedError

    def list_audit_tables(self) -> list[str]:
        """Shadow tables present in the catalog, by naming convention."""
        return [name for name in self.list_tables() if is_audit_table_name(name)]

    def count_rows(self, table_name: str) -> int:
        """Exact row count of a table."""
        return int(self.scalar(f"SELECT COUNT(*) FROM {self.qualify(table_name)}") or 0)


class _InformationSchemaAdapter(DialectAdapter):
    """Catalog lookups shared by engines exposing information_schema."""

    column_type_expression = "c.data_type"

    def quote_ident(self, name: str) -> str:
        """Validate and quote an identifier for this dialect."""
        return quote_identifier(self.dialect_name, name)

    def qualify(self, name: str) -> str:
        """Quote name qualified with the adapter's schema/database."""
        return qualify_identifier(self.dialect_name, self.qualifier, name)

    def table_exists(self, table_name: str) -> bool:
        """Check that a base table exists in the schema."""
        count = self.scalar(
            "SELECT COUNT(*) FROM information_schema.tables "
            "WHERE table_schema = :schema AND table_name = :table_name",
            {"schema": self.qualifier, "table_name": table_name},
        )
        return int(count or 0) > 0

    def get_columns(self, table_name: str) -> list[OriginalColumn]:
        """Columns of a table in ordinal order."""
        rows = self.query(
            f"""
            SELECT
                c.column_name AS column_name,
                {self.column_type_expression} AS column_type,
                c.is_nullable AS is_nullable,
                c.ordinal_position AS ordinal_position
            FROM information_schema.columns c
            WHERE c.table_schema = :schema AND c.table_name = :table_name
            ORDER BY c.ordinal_position
            """,
            {"schema": self.qualifier, "table_name": table_name},
        )
        return [
            OriginalColumn(
                name=row["column_name"],
                data_type=str(row["column_type"]),
                nullable=str(row["is_nullable"]).upper() == "YES",
                ordinal_position=int(row["ordinal_position"]),
            )
            for row in rows
        ]

    def list_tables(self) -> list[str]:
        """Base tables of the schema, sorted by name."""
        rows = self.query(
            "SELECT table_name AS table_name FROM information_schema.tables "
            "WHERE table_schema = :schema AND table_type = 'BASE TABLE' "
            "ORDER BY table_name",
            {"schema": self.qualifier},
        )
        return [row["table_name"] for row in rows]

    def list_triggers(self, table_name: str) -> list[str]:
        """Names of the triggers attached to a table."""
        rows = self.query(
            "SELECT DISTINCT trigger_name AS trigger_name FROM information_schema.triggers "
            "WHERE event_object_schema = :schema AND event_object_table = :table_name "
            "ORDER BY trigger_name",
            {"schema": self.qualifier, "table_name": table_name},
        )
        return [row["trigger_name"] for row in rows]


class PostgreSQLAdapter(_InformationSchemaAdapter):
    """Adapter for PostgreSQL (schema-qualified)."""

    dialect_name = POSTGRESQL

    @property
    def qualifier(self) -> str:
        return self.schema_config.schema or "public"


class MySQLAdapter(_InformationSchemaAdapter):
    """Adapter for MySQL (database-qualified)."""

    dialect_name = MYSQL
    column_type_expression = "c.column_type"

    @property
    def qualifier(self) -> Optional[str]:
        return self.schema_config.database or self.engine.url.database


_ADAPTERS = {
    POSTGRESQL: PostgreSQLAdapter,
    MYSQL: MySQLAdapter,
}


def get_adapter(
    dialect: Optional[str],
    engine: Engine,
    schema_config: Optional[SchemaConfig] = None,
) -> DialectAdapter:
    """Build the adapter for a dialect (inferred from the engine when None)."""
    name = normalize_dialect(dialect or engine.dialect.name)
    engine_dialect = engine.dialect.name
    if engine_dialect not in ("postgresql", "mysql", "mariadb"):
        raise UnsupportedDialectError(engine_dialect)
    if normalize_dialect(engine_dialect) != name:
        raise ValueError(f"Engine dialect {engine_dialect!r} does not match requested dialect {dialect!r}")
    return _ADAPTERS[name](engine, schema_config)


def _as_executable(statement):
    if isinstance(statement, Executable):
        return statement
    return text(statement)
