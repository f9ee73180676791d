"""Shadow table and trigger DDL generation for MySQL and PostgreSQL.

Both dialects follow the same logical algorithm:

1. Derive the pseudonym of every source column in ordinal order, then append
   the audit triple (actor, timestamp, operation). This single ordered layout
   is the only source for both the CREATE TABLE column list and every INSERT
   the triggers perform.
2. Render ``CREATE TABLE IF NOT EXISTS`` for the shadow table.
3. Render the shared sealing function (the in-database encryption) and the
   per-table triggers, whose INSERTs wrap NEW.* (INSERT/UPDATE) or OLD.*
   (DELETE) values in the sealing call.

The sealing function only receives the engine secret derived from the key,
never the key itself. See ``ciphertrail.security.encryption`` for the
envelope it produces.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from ciphertrail.db.adapter import OriginalColumn
from ciphertrail.db.identifiers import (
    MYSQL,
    POSTGRESQL,
    normalize_dialect,
    qualify_identifier,
    quote_identifier,
    validate_identifier,
)
from ciphertrail.errors import (
    IntegrityViolationError,
    InvalidIdentifierError,
    NoColumnsError,
    UnsupportedDialectError,
)
from ciphertrail.security.encryption import EncryptionService, get_encryption_service

logger = logging.getLogger(__name__)

# Logical names of the audit triple, in their fixed order
ACTION_USER = "action_user"
ACTION_TIMESTAMP = "action_timestamp"
ACTION_SQL = "action_sql"
AUDIT_TRIPLE = (ACTION_USER, ACTION_TIMESTAMP, ACTION_SQL)

AUDIT_ID_COLUMN = "id_audit_enc"
AUDIT_CREATED_COLUMN = "created_at"

SEAL_FUNCTION = "ciphertrail_seal"
PROBE_PLAINTEXT = "ciphertrail-probe"

OPERATIONS = ("INSERT", "UPDATE", "DELETE")


@dataclass(frozen=True)
class ColumnMapping:
    """Original column name and the pseudonym it is stored under."""

    original_name: str
    encrypted_name: str
    is_audit: bool = False


@dataclass
class AuditPlan:
    """Everything needed to install auditing on one table."""

    dialect: str
    qualifier: Optional[str]
    table_name: str
    audit_table_name: str
    layout: list[ColumnMapping]
    shadow_table_ddl: str
    seal_function_ddl: list[str]
    trigger_ddl: list[str]
    trigger_names: list[str]
    trigger_function_name: Optional[str] = None
    table_columns: list[str] = field(default_factory=list)
    insert_columns: dict[str, list[str]] = field(default_factory=dict)

    @property
    def encrypted_columns(self) -> list[str]:
        return [mapping.encrypted_name for mapping in self.layout]

    @property
    def original_columns(self) -> list[str]:
        return [mapping.original_name for mapping in self.layout]


class SchemaGenerator(ABC):
    """Dialect strategy for audit DDL."""

    dialect: str = ""
    max_identifier_length = 63
    value_column_type = "TEXT"

    def __init__(self, encryption_service: Optional[EncryptionService] = None):
        """Initialize generator."""
        self.encryption = encryption_service or get_encryption_service()

    # Naming

    def quote(self, name: str) -> str:
        return quote_identifier(self.dialect, name)

    def qualify(self, qualifier: Optional[str], name: str) -> str:
        return qualify_identifier(self.dialect, qualifier, name)

    def _derived_name(self, table_name: str, suffix: str) -> str:
        name = f"{table_name}{suffix}"
        try:
            return validate_identifier(name, self.dialect)
        except InvalidIdentifierError:
            raise InvalidIdentifierError(
                f"Table name {table_name!r} is too long to derive {suffix!r} objects "
                f"(limit {self.max_identifier_length} characters)"
            )

    @abstractmethod
    def trigger_names(self, table_name: str) -> list[str]:
        """Names of the triggers installed on a table."""

    def trigger_function_name(self, table_name: str) -> Optional[str]:
        """Name of the per-table trigger function, if the dialect uses one."""
        return None

    @abstractmethod
    def legacy_trigger_names(self, table_name: str) -> list[str]:
        """Every trigger name earlier releases may have left behind."""

    # Layout

    def build_layout(self, columns: list[OriginalColumn], key: str) -> list[ColumnMapping]:
        """Ordered column layout: source columns by ordinal, then the audit triple."""
        ordered = sorted(columns, key=lambda column: column.ordinal_position)
        layout = [
            ColumnMapping(column.name, self.encryption.derive_column_name(column.name, key))
            for column in ordered
        ]
        layout += [
            ColumnMapping(name, self.encryption.derive_column_name(name, key), is_audit=True)
            for name in AUDIT_TRIPLE
        ]
        return layout

    def build_plan(
        self,
        qualifier: Optional[str],
        table_name: str,
        columns: list[OriginalColumn],
        key: str,
    ) -> AuditPlan:
        """Validate inputs and render all DDL for one table.

        Raises before any SQL exists: WeakKeyError, InvalidIdentifierError,
        NoColumnsError, IntegrityViolationError.
        """
        secret = self.encryption.engine_secret(key)
        validate_identifier(table_name, self.dialect)
        if qualifier:
            validate_identifier(qualifier, self.dialect)

        if not columns:
            raise NoColumnsError(f"Table {table_name!r} has no columns to audit")
        for column in columns:
            validate_identifier(column.name, self.dialect)

        audit_columns = [column.name for column in columns if column.name in AUDIT_TRIPLE]
        if audit_columns:
            raise IntegrityViolationError(
                f"Table {table_name!r} has columns that collide with the audit triple: {audit_columns}"
            )

        layout = self.build_layout(columns, key)
        if len(layout) != len(columns) + len(AUDIT_TRIPLE):
            raise IntegrityViolationError(
                f"Column count mismatch for {table_name!r}: {len(columns)} source columns, "
                f"{len(layout)} shadow columns"
            )

        encrypted = [mapping.encrypted_name for mapping in layout]
        if len(set(encrypted)) != len(encrypted):
            raise IntegrityViolationError(f"Pseudonym collision in shadow layout for {table_name!r}")

        audit_table_name = self.encryption.derive_table_name(table_name, key)
        trigger_function = self.trigger_function_name(table_name)
        trigger_names = self.trigger_names(table_name)

        table_columns = list(encrypted)
        insert_columns = {operation: list(encrypted) for operation in OPERATIONS}

        plan = AuditPlan(
            dialect=self.dialect,
            qualifier=qualifier,
            table_name=table_name,
            audit_table_name=audit_table_name,
            layout=layout,
            shadow_table_ddl=self.shadow_table_ddl(qualifier, audit_table_name, table_columns),
            seal_function_ddl=self.seal_function_ddl(qualifier),
            trigger_ddl=self.trigger_ddl(
                qualifier, table_name, audit_table_name, layout, insert_columns, secret.hex()
            ),
            trigger_names=trigger_names,
            trigger_function_name=trigger_function,
            table_columns=table_columns,
            insert_columns=insert_columns,
        )
        self.verify_plan(plan)
        return plan

    def verify_plan(self, plan: AuditPlan) -> None:
        """Check the CREATE TABLE and INSERT column lists line up element for element."""
        if len(plan.table_columns) != len(plan.layout):
            raise IntegrityViolationError(
                f"Shadow table for {plan.table_name!r} declares {len(plan.table_columns)} columns, "
                f"layout has {len(plan.layout)}"
            )
        for operation, columns in plan.insert_columns.items():
            if columns != plan.table_columns:
                raise IntegrityViolationError(
                    f"{operation} trigger column list for {plan.table_name!r} does not match the shadow table"
                )

    # Rendering

    @abstractmethod
    def shadow_table_ddl(self, qualifier: Optional[str], audit_table_name: str, columns: list[str]) -> str:
        """CREATE TABLE IF NOT EXISTS for the shadow table."""

    def add_column_ddl(self, qualifier: Optional[str], audit_table_name: str, column: str) -> str:
        """ALTER TABLE adding one pseudonym column to an existing shadow table."""
        return (
            f"ALTER TABLE {self.qualify(qualifier, audit_table_name)} "
            f"ADD COLUMN {self.quote(column)} {self.value_column_type}"
        )

    @abstractmethod
    def seal_function_ddl(self, qualifier: Optional[str]) -> list[str]:
        """Statements installing the shared sealing function."""

    @abstractmethod
    def trigger_ddl(
        self,
        qualifier: Optional[str],
        table_name: str,
        audit_table_name: str,
        layout: list[ColumnMapping],
        insert_columns: dict[str, list[str]],
        secret_hex: str,
    ) -> list[str]:
        """Drop-then-create statements for the trigger objects."""

    @abstractmethod
    def probe_sql(self, qualifier: Optional[str]) -> str:
        """Query sealing :plain with :secret, used to verify round-trip compatibility."""

    @abstractmethod
    def removal_ddl(self, qualifier: Optional[str], table_name: str, audit_table_names: list[str]) -> list[str]:
        """Best-effort drops for triggers, functions and shadow tables of one table."""

    @abstractmethod
    def drop_seal_function_ddl(self, qualifier: Optional[str]) -> str:
        """Drop the shared sealing function."""

    def drop_table_ddl(self, qualifier: Optional[str], table_name: str) -> str:
        return f"DROP TABLE IF EXISTS {self.qualify(qualifier, table_name)}"

    def legacy_audit_table_name(self, table_name: str) -> Optional[str]:
        """Shadow table name used by releases without name encryption."""
        try:
            return validate_identifier(f"aud_{table_name}", self.dialect)
        except InvalidIdentifierError:
            return None


class PostgreSQLSchemaGenerator(SchemaGenerator):
    """PL/pgSQL triggers backed by pgcrypto."""

    dialect = POSTGRESQL
    max_identifier_length = 63

    def trigger_names(self, table_name: str) -> list[str]:
        return [self._derived_name(table_name, "_audit_trigger")]

    def trigger_function_name(self, table_name: str) -> str:
        return self._derived_name(table_name, "_audit_trigger_func")

    def legacy_trigger_names(self, table_name: str) -> list[str]:
        suffixes = [
            "_audit_trigger",
            "_audit_insert_trigger",
            "_audit_update_trigger",
            "_audit_delete_trigger",
            "_insert_audit_trigger",
            "_update_audit_trigger",
            "_delete_audit_trigger",
        ]
        return _valid_names(table_name, suffixes, self.dialect)

    def shadow_table_ddl(self, qualifier, audit_table_name, columns):
        column_lines = [
            f"{AUDIT_ID_COLUMN} SERIAL PRIMARY KEY",
            f"{AUDIT_CREATED_COLUMN} TIMESTAMP DEFAULT CURRENT_TIMESTAMP",
        ]
        column_lines += [f"{self.quote(name)} {self.value_column_type}" for name in columns]
        body = ",\n    ".join(column_lines)
        return f"CREATE TABLE IF NOT EXISTS {self.qualify(qualifier, audit_table_name)} (\n    {body}\n)"

    def seal_function_ddl(self, qualifier):
        seal = self.qualify(qualifier, SEAL_FUNCTION)
        return [
            "CREATE EXTENSION IF NOT EXISTS pgcrypto",
            f"""CREATE OR REPLACE FUNCTION {seal}(plain TEXT, secret BYTEA)
RETURNS TEXT AS $$
DECLARE
    salt BYTEA;
    iv BYTEA;
    value_key BYTEA;
    body BYTEA;
    tag BYTEA;
BEGIN
    IF plain IS NULL THEN
        RETURN NULL;
    END IF;
    salt := gen_random_bytes(32);
    iv := gen_random_bytes(16);
    value_key := digest(secret || salt, 'sha256');
    body := encrypt_iv(convert_to(plain, 'UTF8'), value_key, iv, 'aes-cbc/pad:pkcs');
    tag := substring(digest(value_key || iv || body, 'sha256') FROM 1 FOR 16);
    RETURN encode(salt, 'hex') || ':' || encode(iv, 'hex') || ':' || encode(tag, 'hex') || ':' || encode(body, 'hex');
END;
$$ LANGUAGE plpgsql VOLATILE""",
        ]

    def _values(self, qualifier, layout, row_ref: str, operation: str) -> list[str]:
        seal = self.qualify(qualifier, SEAL_FUNCTION)
        audit_sources = {
            ACTION_USER: "current_user::TEXT",
            ACTION_TIMESTAMP: "CURRENT_TIMESTAMP::TEXT",
            ACTION_SQL: f"'{operation}'",
        }
        values = []
        for mapping in layout:
            if mapping.is_audit:
                source = audit_sources[mapping.original_name]
            else:
                source = f"{row_ref}.{self.quote(mapping.original_name)}::TEXT"
            values.append(f"{seal}({source}, secret)")
        return values

    def _insert(self, qualifier, audit_table_name, layout, columns, row_ref, operation) -> str:
        column_list = ", ".join(self.quote(name) for name in columns)
        values = ",\n            ".join(self._values(qualifier, layout, row_ref, operation))
        return (
            f"INSERT INTO {self.qualify(qualifier, audit_table_name)} ({column_list})\n"
            f"        VALUES (\n            {values}\n        );"
        )

    def trigger_ddl(self, qualifier, table_name, audit_table_name, layout, insert_columns, secret_hex):
        function = self.qualify(qualifier, self.trigger_function_name(table_name))
        source = self.qualify(qualifier, table_name)
        trigger = self.trigger_names(table_name)[0]

        statements = [
            f"DROP TRIGGER IF EXISTS {self.quote(name)} ON {source}"
            for name in self.legacy_trigger_names(table_name)
        ]
        statements.append(f"DROP FUNCTION IF EXISTS {function}()")

        insert = self._insert(qualifier, audit_table_name, layout, insert_columns["INSERT"], "NEW", "INSERT")
        update = self._insert(qualifier, audit_table_name, layout, insert_columns["UPDATE"], "NEW", "UPDATE")
        delete = self._insert(qualifier, audit_table_name, layout, insert_columns["DELETE"], "OLD", "DELETE")
        statements.append(
            f"""CREATE FUNCTION {function}()
RETURNS TRIGGER AS $$
DECLARE
    secret BYTEA := decode('{secret_hex}', 'hex');
BEGIN
    IF TG_OP = 'INSERT' THEN
        {insert}
        RETURN NEW;
    ELSIF TG_OP = 'UPDATE' THEN
        {update}
        RETURN NEW;
    ELSIF TG_OP = 'DELETE' THEN
        {delete}
        RETURN OLD;
    END IF;
    RETURN NULL;
END;
$$ LANGUAGE plpgsql"""
        )
        statements.append(
            f"CREATE TRIGGER {self.quote(trigger)}\n"
            f"    AFTER INSERT OR UPDATE OR DELETE ON {source}\n"
            f"    FOR EACH ROW EXECUTE FUNCTION {function}()"
        )
        return statements

    def probe_sql(self, qualifier):
        return f"SELECT {self.qualify(qualifier, SEAL_FUNCTION)}(CAST(:plain AS TEXT), :secret)"

    def removal_ddl(self, qualifier, table_name, audit_table_names):
        source = self.qualify(qualifier, table_name)
        statements = [
            f"DROP TRIGGER IF EXISTS {self.quote(name)} ON {source} CASCADE"
            for name in self.legacy_trigger_names(table_name)
        ]
        statements.append(
            f"DROP FUNCTION IF EXISTS {self.qualify(qualifier, self.trigger_function_name(table_name))}() CASCADE"
        )
        statements += [self.drop_table_ddl(qualifier, name) for name in audit_table_names]
        return statements

    def drop_seal_function_ddl(self, qualifier):
        return f"DROP FUNCTION IF EXISTS {self.qualify(qualifier, SEAL_FUNCTION)}(TEXT, BYTEA)"

    def drop_table_ddl(self, qualifier, table_name):
        return f"DROP TABLE IF EXISTS {self.qualify(qualifier, table_name)} CASCADE"


class MySQLSchemaGenerator(SchemaGenerator):
    """Row triggers backed by a stored sealing function."""

    dialect = MYSQL
    max_identifier_length = 64
    value_column_type = "LONGTEXT"

    def trigger_names(self, table_name: str) -> list[str]:
        return [self._derived_name(table_name, f"_{operation.lower()}_audit") for operation in OPERATIONS]

    def legacy_trigger_names(self, table_name: str) -> list[str]:
        suffixes = [f"_{operation.lower()}_audit" for operation in OPERATIONS]
        suffixes += [f"_{operation.lower()}_audit_trigger" for operation in OPERATIONS]
        suffixes += [f"_audit_{operation.lower()}_trigger" for operation in OPERATIONS]
        suffixes.append("_audit_trigger")
        return _valid_names(table_name, suffixes, self.dialect)

    def shadow_table_ddl(self, qualifier, audit_table_name, columns):
        column_lines = [
            f"{AUDIT_ID_COLUMN} BIGINT AUTO_INCREMENT PRIMARY KEY",
            f"{AUDIT_CREATED_COLUMN} TIMESTAMP(6) DEFAULT CURRENT_TIMESTAMP(6)",
        ]
        column_lines += [f"{self.quote(name)} {self.value_column_type}" for name in columns]
        column_lines.append(f"INDEX idx_{audit_table_name}_created ({AUDIT_CREATED_COLUMN})")
        body = ",\n    ".join(column_lines)
        return (
            f"CREATE TABLE IF NOT EXISTS {self.qualify(qualifier, audit_table_name)} (\n    {body}\n)"
            " ENGINE=InnoDB DEFAULT CHARSET=utf8mb4"
        )

    def seal_function_ddl(self, qualifier):
        seal = self.qualify(qualifier, SEAL_FUNCTION)
        return [
            f"DROP FUNCTION IF EXISTS {seal}",
            f"""CREATE FUNCTION {seal}(plain LONGTEXT CHARACTER SET utf8mb4, secret VARBINARY(32))
RETURNS LONGTEXT CHARACTER SET ascii
NOT DETERMINISTIC
READS SQL DATA
BEGIN
    DECLARE salt VARBINARY(32);
    DECLARE iv VARBINARY(16);
    DECLARE value_key VARBINARY(32);
    DECLARE body LONGBLOB;
    DECLARE previous_mode VARCHAR(32);
    IF plain IS NULL THEN
        RETURN NULL;
    END IF;
    SET salt = RANDOM_BYTES(32);
    SET iv = RANDOM_BYTES(16);
    SET value_key = UNHEX(SHA2(CONCAT(secret, salt), 256));
    SET previous_mode = @@SESSION.block_encryption_mode;
    SET @@SESSION.block_encryption_mode = 'aes-256-cbc';
    SET body = AES_ENCRYPT(CONVERT(plain USING utf8mb4), value_key, iv);
    SET @@SESSION.block_encryption_mode = previous_mode;
    RETURN LOWER(CONCAT_WS(':', HEX(salt), HEX(iv), LEFT(SHA2(CONCAT(value_key, iv, body), 256), 32), HEX(body)));
END"""
        ]

    def _values(self, qualifier, layout, row_ref: str, operation: str, secret_hex: str) -> list[str]:
        seal = self.qualify(qualifier, SEAL_FUNCTION)
        secret = f"UNHEX('{secret_hex}')"
        audit_sources = {
            ACTION_USER: "CURRENT_USER()",
            ACTION_TIMESTAMP: "CAST(NOW(6) AS CHAR)",
            ACTION_SQL: f"'{operation}'",
        }
        values = []
        for mapping in layout:
            if mapping.is_audit:
                source = audit_sources[mapping.original_name]
            else:
                source = f"CAST({row_ref}.{self.quote(mapping.original_name)} AS CHAR)"
            values.append(f"{seal}({source}, {secret})")
        return values

    def trigger_ddl(self, qualifier, table_name, audit_table_name, layout, insert_columns, secret_hex):
        source = self.qualify(qualifier, table_name)
        target = self.qualify(qualifier, audit_table_name)

        statements = [
            f"DROP TRIGGER IF EXISTS {self.qualify(qualifier, name)}"
            for name in self.legacy_trigger_names(table_name)
        ]
        for operation, trigger in zip(OPERATIONS, self.trigger_names(table_name)):
            row_ref = "OLD" if operation == "DELETE" else "NEW"
            column_list = ", ".join(self.quote(name) for name in insert_columns[operation])
            values = ",\n        ".join(self._values(qualifier, layout, row_ref, operation, secret_hex))
            statements.append(
                f"CREATE TRIGGER {self.qualify(qualifier, trigger)}\n"
                f"AFTER {operation} ON {source}\n"
                f"FOR EACH ROW\n"
                f"    INSERT INTO {target} ({column_list})\n"
                f"    VALUES (\n        {values}\n    )"
            )
        return statements

    def probe_sql(self, qualifier):
        return f"SELECT {self.qualify(qualifier, SEAL_FUNCTION)}(:plain, :secret)"

    def removal_ddl(self, qualifier, table_name, audit_table_names):
        statements = [
            f"DROP TRIGGER IF EXISTS {self.qualify(qualifier, name)}"
            for name in self.legacy_trigger_names(table_name)
        ]
        legacy_function = _valid_names(table_name, [], self.dialect, prefix="encrypt_audit_data_")
        statements += [f"DROP FUNCTION IF EXISTS {self.qualify(qualifier, name)}" for name in legacy_function]
        statements += [self.drop_table_ddl(qualifier, name) for name in audit_table_names]
        return statements

    def drop_seal_function_ddl(self, qualifier):
        return f"DROP FUNCTION IF EXISTS {self.qualify(qualifier, SEAL_FUNCTION)}"


def _valid_names(table_name: str, suffixes: list[str], dialect: str, prefix: str = "") -> list[str]:
    """prefix+table+suffix for each suffix, skipping names over the dialect limit."""
    names = []
    for suffix in suffixes or [""]:
        try:
            names.append(validate_identifier(f"{prefix}{table_name}{suffix}", dialect))
        except InvalidIdentifierError:
            logger.debug(f"Skipping over-long derived name for {table_name}{suffix}")
    return names


_GENERATORS = {
    POSTGRESQL: PostgreSQLSchemaGenerator,
    MYSQL: MySQLSchemaGenerator,
}


def get_schema_generator(dialect: str, encryption_service: Optional[EncryptionService] = None) -> SchemaGenerator:
    """Get the generator for a dialect."""
    name = normalize_dialect(dialect)
    generator_class = _GENERATORS.get(name)
    if generator_class is None:
        raise UnsupportedDialectError(dialect)
    return generator_class(encryption_service)
