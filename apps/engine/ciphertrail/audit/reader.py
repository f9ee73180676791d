"""Read path: discover shadow tables and reconstruct readable rows."""

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Optional

from ciphertrail.audit.events import SystemAuditLogger
from ciphertrail.audit.mapping import MetadataMappingStore
from ciphertrail.audit.schema import (
    ACTION_SQL,
    AUDIT_CREATED_COLUMN,
    AUDIT_ID_COLUMN,
    OPERATIONS,
    ColumnMapping,
    get_schema_generator,
)
from ciphertrail.db.adapter import DialectAdapter
from ciphertrail.errors import DecryptFailure, InvalidIdentifierError, TableNotFoundError, WeakKeyError
from ciphertrail.security.encryption import EncryptionService, IntegrityReport, get_encryption_service
from ciphertrail.security.naming import is_audit_table_name, is_encrypted_column_name
from ciphertrail.settings import Settings, get_settings
from ciphertrail.utils import metrics

logger = logging.getLogger(__name__)

DECRYPTION_ERROR_MARKER = "[DECRYPTION ERROR]"


@dataclass
class AuditTableInfo:
    audit_table_name: str
    original_table: Optional[str]
    record_count: int

    def to_dict(self) -> dict:
        return {
            "audit_table_name": self.audit_table_name,
            "original_table": self.original_table,
            "record_count": self.record_count,
        }


@dataclass
class EncryptedPage:
    """One page of raw shadow rows."""

    audit_table_name: str
    rows: list[dict]
    columns: list[str]
    total_records: int
    limit: int
    offset: int


@dataclass
class DecryptedPage:
    """One page of reconstructed rows keyed by original column names."""

    audit_table_name: str
    original_table: str
    rows: list[dict]
    original_columns: list[str]
    total_records: int
    limit: int
    offset: int
    errors: list[dict] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


@dataclass
class KeyCheck:
    """Result of checking a candidate key against a shadow table."""

    valid: bool
    message: str
    reason: Optional[str] = None

    def to_dict(self) -> dict:
        return {"valid": self.valid, "message": self.message}


class AuditReader:
    """Queries shadow tables and decrypts them with a caller-supplied key."""

    def __init__(
        self,
        adapter: DialectAdapter,
        settings: Optional[Settings] = None,
        event_logger: Optional[SystemAuditLogger] = None,
        encryption_service: Optional[EncryptionService] = None,
        mapping_store: Optional[MetadataMappingStore] = None,
    ):
        """Initialize audit reader."""
        self.adapter = adapter
        self.settings = settings or get_settings()
        self.encryption = encryption_service or get_encryption_service()
        self.generator = get_schema_generator(adapter.dialect_name, self.encryption)
        self.mappings = mapping_store or MetadataMappingStore(adapter, self.encryption)
        self.event_logger = event_logger or SystemAuditLogger(self.settings)

    def _page_bounds(self, limit: Optional[int], offset: Optional[int]) -> tuple[int, int]:
        if limit is None:
            limit = self.settings.page_size_default
        limit = max(1, min(int(limit), self.settings.page_size_max))
        offset = max(0, int(offset or 0))
        return limit, offset

    def _require_audit_table(self, audit_table_name: str) -> None:
        if not is_audit_table_name(audit_table_name):
            raise InvalidIdentifierError(f"{audit_table_name!r} is not an audit table name")
        if not self.adapter.table_exists(audit_table_name):
            raise TableNotFoundError(f"Audit table {audit_table_name!r} does not exist")

    def _fetch(self, audit_table_name: str, limit: int, offset: int) -> list[dict]:
        return self.adapter.query(
            f"SELECT * FROM {self.adapter.qualify(audit_table_name)} "
            f"ORDER BY {AUDIT_ID_COLUMN} DESC LIMIT :limit OFFSET :offset",
            {"limit": limit, "offset": offset},
        )

    # Discovery

    def resolve_original_table(self, audit_table_name: str, key: Optional[str] = None) -> Optional[str]:
        """Original table of a shadow table, via the mapping store or by re-deriving names."""
        try:
            original = self.mappings.get_original_table(audit_table_name, key)
        except Exception as e:
            logger.warning(f"Mapping lookup failed for {audit_table_name}: {e}")
            original = None
        if original or not key:
            return original

        # No mapping row: the key re-derives the shadow name of the right table
        for table_name in self.adapter.list_tables():
            if is_audit_table_name(table_name):
                continue
            if self.encryption.derive_table_name(table_name, key) == audit_table_name:
                logger.info(f"Resolved {audit_table_name} to {table_name} by name derivation")
                return table_name
        return None

    def list_audit_tables(self, key: Optional[str] = None) -> list[AuditTableInfo]:
        """Shadow tables in the schema with their original table and exact row count."""
        tables = []
        for audit_table_name in self.adapter.list_audit_tables():
            tables.append(
                AuditTableInfo(
                    audit_table_name=audit_table_name,
                    original_table=self.resolve_original_table(audit_table_name, key),
                    record_count=self.adapter.count_rows(audit_table_name),
                )
            )
        return tables

    # Paged reads

    def get_encrypted(
        self,
        audit_table_name: str,
        limit: Optional[int] = None,
        offset: Optional[int] = 0,
        actor: Optional[str] = None,
    ) -> EncryptedPage:
        """Raw page of a shadow table, newest first, no decryption."""
        self._require_audit_table(audit_table_name)
        limit, offset = self._page_bounds(limit, offset)

        rows = self._fetch(audit_table_name, limit, offset)
        columns = [column.name for column in self.adapter.get_columns(audit_table_name)]
        total = self.adapter.count_rows(audit_table_name)

        self.event_logger.log_data_access(audit_table_name, decrypted=False, actor=actor, rows=len(rows))
        return EncryptedPage(
            audit_table_name=audit_table_name,
            rows=rows,
            columns=columns,
            total_records=total,
            limit=limit,
            offset=offset,
        )

    def expected_layout(self, original_table: str, key: str) -> list[ColumnMapping]:
        """Shadow layout re-derived from the current catalog of the original table."""
        if not self.adapter.table_exists(original_table):
            raise TableNotFoundError(f"Original table {original_table!r} no longer exists")
        return self.generator.build_layout(self.adapter.get_columns(original_table), key)

    def get_decrypted(
        self,
        audit_table_name: str,
        key: str,
        limit: Optional[int] = None,
        offset: Optional[int] = 0,
        actor: Optional[str] = None,
    ) -> DecryptedPage:
        """Page of decrypted rows.

        Raises DecryptFailure when the key does not match the shadow table.
        A field that fails to decrypt is replaced by DECRYPTION_ERROR_MARKER
        and reported in ``errors``; the rest of the row is still returned.
        Columns added to the original table after setup read as None.
        """
        started = time.monotonic()
        secret = self.encryption.engine_secret(key)
        self._require_audit_table(audit_table_name)
        limit, offset = self._page_bounds(limit, offset)

        shadow_columns = {column.name for column in self.adapter.get_columns(audit_table_name)}
        if self.encryption.derive_column_name(ACTION_SQL, key) not in shadow_columns:
            metrics.decrypt_attempts.labels(result="failure").inc()
            self.event_logger.log_security_event("invalid_key", audit_table_name, actor=actor)
            raise DecryptFailure("Incorrect encryption key for this audit table")

        original_table = self.resolve_original_table(audit_table_name, key)
        if original_table is None:
            raise TableNotFoundError(
                f"Cannot resolve the original table of {audit_table_name!r}; the key may be incorrect"
            )
        layout = self.expected_layout(original_table, key)

        raw_rows = self._fetch(audit_table_name, limit, offset)
        rows, errors = [], []
        for raw in raw_rows:
            row = {
                AUDIT_ID_COLUMN: raw.get(AUDIT_ID_COLUMN),
                AUDIT_CREATED_COLUMN: raw.get(AUDIT_CREATED_COLUMN),
            }
            for mapping in layout:
                if mapping.encrypted_name not in shadow_columns:
                    row[mapping.original_name] = None
                    continue
                try:
                    row[mapping.original_name] = self.encryption.decrypt(
                        raw[mapping.encrypted_name], key, engine_secret=secret
                    )
                except DecryptFailure as e:
                    row[mapping.original_name] = DECRYPTION_ERROR_MARKER
                    errors.append(
                        {
                            "row_id": raw.get(AUDIT_ID_COLUMN),
                            "column": mapping.original_name,
                            "reason": e.reason,
                            "error": str(e),
                        }
                    )
            rows.append(row)

        metrics.decrypt_attempts.labels(result="partial" if errors else "success").inc()
        if errors:
            logger.warning(f"{len(errors)} field(s) of {audit_table_name} could not be decrypted")

        self.event_logger.log_data_access(
            audit_table_name,
            decrypted=True,
            actor=actor,
            success=not errors,
            duration_ms=(time.monotonic() - started) * 1000,
            rows=len(rows),
            field_errors=len(errors),
        )
        return DecryptedPage(
            audit_table_name=audit_table_name,
            original_table=original_table,
            rows=rows,
            original_columns=[mapping.original_name for mapping in layout],
            total_records=self.adapter.count_rows(audit_table_name),
            limit=limit,
            offset=offset,
            errors=errors,
        )

    # Key checks and reports

    def validate_password(self, audit_table_name: str, key: str, actor: Optional[str] = None) -> KeyCheck:
        """Check a key by decrypting a single field of a single row."""
        try:
            self.encryption.validate_key(key)
        except WeakKeyError as e:
            return KeyCheck(valid=False, message=str(e), reason="weak_key")

        self._require_audit_table(audit_table_name)
        rows = self._fetch(audit_table_name, 1, 0)
        if not rows:
            return KeyCheck(valid=True, message="Audit table has no data yet; the key cannot be verified")

        row = rows[0]
        action_column = self.encryption.derive_column_name(ACTION_SQL, key)
        if action_column not in row:
            check = KeyCheck(valid=False, message="Incorrect encryption key", reason=DecryptFailure.WRONG_KEY)
        else:
            try:
                self.encryption.decrypt(row[action_column], key)
                check = KeyCheck(valid=True, message="Encryption key is valid")
            except DecryptFailure as e:
                if e.is_wrong_key:
                    check = KeyCheck(valid=False, message="Incorrect encryption key", reason=e.reason)
                else:
                    check = KeyCheck(valid=False, message=f"Audit data is corrupted: {e}", reason=e.reason)

        metrics.decrypt_attempts.labels(result="success" if check.valid else "failure").inc()
        if not check.valid:
            self.event_logger.log_security_event(
                "invalid_key", audit_table_name, actor=actor, reason=check.reason
            )
        return check

    def get_statistics(self, audit_table_name: str, key: Optional[str] = None) -> dict:
        """Record count, capture window and, with a key, counts per operation."""
        self._require_audit_table(audit_table_name)
        table = self.adapter.qualify(audit_table_name)
        window = self.adapter.query(
            f"SELECT COUNT(*) AS total, MIN({AUDIT_CREATED_COLUMN}) AS first_record, "
            f"MAX({AUDIT_CREATED_COLUMN}) AS last_record FROM {table}"
        )[0]
        stats = {
            "audit_table_name": audit_table_name,
            "total_records": int(window["total"] or 0),
            "first_record": window["first_record"],
            "last_record": window["last_record"],
        }
        if not key:
            return stats

        secret = self.encryption.engine_secret(key)
        action_column = self.encryption.derive_column_name(ACTION_SQL, key)
        columns = [column.name for column in self.adapter.get_columns(audit_table_name)]
        operations = Counter({operation: 0 for operation in OPERATIONS})
        if action_column in columns:
            values = self.adapter.query(
                f"SELECT {self.adapter.quote_ident(action_column)} AS action FROM {table}"
            )
            for value in values:
                try:
                    operations[self.encryption.decrypt(value["action"], key, engine_secret=secret)] += 1
                except DecryptFailure:
                    operations["unreadable"] += 1
        stats["operations"] = dict(operations)
        return stats

    def verify_integrity(self, audit_table_name: str, key: str, sample_size: int = 100) -> IntegrityReport:
        """Decrypt every encrypted field of the newest sample_size rows."""
        self._require_audit_table(audit_table_name)
        rows = self._fetch(audit_table_name, max(1, sample_size), 0)
        values = [value for row in rows for name, value in row.items() if is_encrypted_column_name(name)]
        report = self.encryption.verify_integrity(values, key)
        logger.info(
            f"Integrity of {audit_table_name}: {report.valid}/{report.valid + report.invalid} fields valid"
        )
        return report
