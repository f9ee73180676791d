"""Metadata mapping store: shadow table name <-> original table name."""

import json
import logging
import threading
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.dialects import mysql, postgresql, sqlite

from ciphertrail.db.adapter import DialectAdapter
from ciphertrail.errors import CipherTrailError, DecryptFailure
from ciphertrail.models import AuditTableMapping, Base
from ciphertrail.security.encryption import EncryptionService, get_encryption_service

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "mysql": mysql.insert,
    "mariadb": mysql.insert,
    "sqlite": sqlite.insert,
}


class MetadataMappingStore:
    """Persists shadow table mappings in ``sys_audit_metadata_enc``."""

    def __init__(self, adapter: DialectAdapter, encryption_service: Optional[EncryptionService] = None):
        """Initialize mapping store."""
        self.adapter = adapter
        self.encryption = encryption_service or get_encryption_service()
        self._table_ready = False
        self._lock = threading.Lock()

    @property
    def table(self):
        return AuditTableMapping.__table__

    def ensure_table(self) -> None:
        """Create the mapping table on first use."""
        if self._table_ready:
            return
        with self._lock:
            if self._table_ready:
                return
            self.adapter.with_transaction(
                lambda conn: Base.metadata.create_all(conn, tables=[self.table], checkfirst=True)
            )
            self._table_ready = True
            logger.debug(f"Mapping table {self.table.name} ready")

    def _document(self, audit_table_name: str, original_table_name: str) -> str:
        return json.dumps(
            {
                "originalTable": original_table_name,
                "auditTable": audit_table_name,
                "encryptedTable": audit_table_name,
                "timestamp": datetime.utcnow().isoformat(),
            },
            sort_keys=True,
        )

    def save_mapping(self, audit_table_name: str, original_table_name: str, key: Optional[str] = None) -> None:
        """Insert or update the mapping for a shadow table.

        With a key, the mapping document is also stored encrypted; if that
        encryption fails the row is saved without it.
        """
        self.ensure_table()

        encrypted_data = None
        if key:
            try:
                encrypted_data = self.encryption.encrypt(
                    self._document(audit_table_name, original_table_name), key
                )
            except CipherTrailError as e:
                logger.warning(f"Could not encrypt mapping document for {audit_table_name}: {e}")

        now = datetime.utcnow()
        dialect_name = self.adapter.engine.dialect.name
        insert = _UPSERT_INSERTS.get(dialect_name)
        if insert is None:
            raise CipherTrailError(f"No upsert support for dialect {dialect_name!r}")

        stmt = insert(self.table).values(
            encrypted_table_name=audit_table_name,
            original_table_name=original_table_name,
            encrypted_name_data=encrypted_data,
            created_at=now,
            updated_at=now,
        )
        if dialect_name in ("mysql", "mariadb"):
            stmt = stmt.on_duplicate_key_update(
                original_table_name=stmt.inserted.original_table_name,
                encrypted_name_data=stmt.inserted.encrypted_name_data,
                updated_at=now,
            )
        else:
            stmt = stmt.on_conflict_do_update(
                index_elements=[self.table.c.encrypted_table_name],
                set_={
                    "original_table_name": stmt.excluded.original_table_name,
                    "encrypted_name_data": stmt.excluded.encrypted_name_data,
                    "updated_at": now,
                },
            )

        self.adapter.with_transaction(lambda conn: conn.execute(stmt))
        logger.info(f"Saved audit mapping {audit_table_name} -> {original_table_name}")

    def _get_row(self, audit_table_name: str):
        self.ensure_table()
        stmt = select(self.table).where(self.table.c.encrypted_table_name == audit_table_name)
        return self.adapter.with_transaction(lambda conn: conn.execute(stmt).mappings().first())

    def get_original_table(self, audit_table_name: str, key: Optional[str] = None) -> Optional[str]:
        """Resolve the original table of a shadow table, or None if unmapped."""
        row = self._get_row(audit_table_name)
        if row is None:
            return None

        if key and row["encrypted_name_data"]:
            try:
                document = json.loads(self.encryption.decrypt(row["encrypted_name_data"], key))
                return document["originalTable"]
            except (DecryptFailure, ValueError, KeyError, TypeError) as e:
                logger.debug(f"Encrypted mapping for {audit_table_name} not readable with this key: {e}")

        return row["original_table_name"]

    def find_by_original(self, original_table_name: str) -> list[str]:
        """Shadow table names mapped to an original table."""
        self.ensure_table()
        stmt = (
            select(self.table.c.encrypted_table_name)
            .where(self.table.c.original_table_name == original_table_name)
            .order_by(self.table.c.encrypted_table_name)
        )
        return self.adapter.with_transaction(lambda conn: list(conn.execute(stmt).scalars()))

    def list_mappings(self) -> list[dict]:
        """All mapping rows, oldest first."""
        self.ensure_table()
        stmt = select(
            self.table.c.encrypted_table_name,
            self.table.c.original_table_name,
            self.table.c.created_at,
            self.table.c.updated_at,
        ).order_by(self.table.c.created_at, self.table.c.id)
        return self.adapter.with_transaction(
            lambda conn: [dict(row) for row in conn.execute(stmt).mappings()]
        )

    def delete_mapping(
        self,
        audit_table_name: Optional[str] = None,
        original_table_name: Optional[str] = None,
    ) -> int:
        """Delete mapping rows by shadow name and/or original name; return rows removed."""
        if audit_table_name is None and original_table_name is None:
            raise ValueError("audit_table_name or original_table_name is required")

        self.ensure_table()
        stmt = delete(self.table)
        if audit_table_name is not None:
            stmt = stmt.where(self.table.c.encrypted_table_name == audit_table_name)
        if original_table_name is not None:
            stmt = stmt.where(self.table.c.original_table_name == original_table_name)

        deleted = self.adapter.with_transaction(lambda conn: conn.execute(stmt).rowcount)
        logger.info(
            f"Deleted {deleted} audit mapping(s) for "
            f"{audit_table_name or original_table_name}"
        )
        return max(deleted or 0, 0)
