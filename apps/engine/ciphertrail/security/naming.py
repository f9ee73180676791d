"""Deterministic pseudonyms for shadow tables and columns.

Both functions are pure: the same (name, key) pair always maps to the same
pseudonym, across processes and releases, so trigger code generated weeks
apart keeps targeting the same shadow schema.
"""

import hashlib
import re

COLUMN_PREFIX = "enc_"
COLUMN_HASH_LENGTH = 12

TABLE_PREFIX = "t"
TABLE_HASH_LENGTH = 32
TABLE_TAG = "aud_"

AUDIT_TABLE_PATTERN = re.compile(r"^t[0-9a-f]{32}$")
ENCRYPTED_COLUMN_PATTERN = re.compile(r"^enc_[0-9a-f]{12}$")


def _sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def derive_column_name(original_name: str, key: str) -> str:
    """Pseudonym for a column: enc_ + first 12 hex chars of SHA-256(name + key)."""
    return COLUMN_PREFIX + _sha256_hex(original_name + key)[:COLUMN_HASH_LENGTH]


def derive_table_name(original_name: str, key: str) -> str:
    """Pseudonym for a shadow table: t + first 32 hex chars of SHA-256("aud_" + name + key)."""
    return TABLE_PREFIX + _sha256_hex(TABLE_TAG + original_name + key)[:TABLE_HASH_LENGTH]


def is_audit_table_name(name: str) -> bool:
    """Check whether a table name follows the shadow table convention."""
    return bool(AUDIT_TABLE_PATTERN.match(name or ""))


def is_encrypted_column_name(name: str) -> bool:
    """Check whether a column name follows the pseudonym convention."""
    return bool(ENCRYPTED_COLUMN_PATTERN.match(name or ""))
