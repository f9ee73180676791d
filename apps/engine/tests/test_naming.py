"""Tests for deterministic pseudonyms."""

import hashlib

from conftest import OTHER_KEY, STRONG_KEY
from ciphertrail.security.naming import (
    derive_column_name,
    derive_table_name,
    is_audit_table_name,
    is_encrypted_column_name,
)


def test_column_name_matches_documented_scheme():
    """Test enc_ + first 12 hex chars of SHA-256(name + key)."""
    expected = "enc_" + hashlib.sha256(("email" + STRONG_KEY).encode()).hexdigest()[:12]
    assert derive_column_name("email", STRONG_KEY) == expected


def test_table_name_matches_documented_scheme():
    """Test t + first 32 hex chars of SHA-256("aud_" + name + key)."""
    expected = "t" + hashlib.sha256(("aud_customers" + STRONG_KEY).encode()).hexdigest()[:32]
    assert derive_table_name("customers", STRONG_KEY) == expected


def test_pseudonyms_are_deterministic():
    """Test that repeated derivations agree."""
    assert derive_column_name("email", STRONG_KEY) == derive_column_name("email", STRONG_KEY)
    assert derive_table_name("customers", STRONG_KEY) == derive_table_name("customers", STRONG_KEY)


def test_different_names_differ():
    """Test that distinct names give distinct pseudonyms."""
    names = ["id", "name", "email", "created_at", "action_user", "action_timestamp", "action_sql"]
    pseudonyms = {derive_column_name(name, STRONG_KEY) for name in names}
    assert len(pseudonyms) == len(names)


def test_different_keys_are_unlinkable():
    """Test that the same name under another key gives another pseudonym."""
    assert derive_column_name("email", STRONG_KEY) != derive_column_name("email", OTHER_KEY)
    assert derive_table_name("customers", STRONG_KEY) != derive_table_name("customers", OTHER_KEY)


def test_naming_patterns():
    """Test the discovery patterns."""
    assert is_audit_table_name(derive_table_name("customers", STRONG_KEY))
    assert is_encrypted_column_name(derive_column_name("email", STRONG_KEY))
    assert not is_audit_table_name("customers")
    assert not is_audit_table_name("t" + "0" * 31)
    assert not is_audit_table_name("T" + "a" * 32)
    assert not is_audit_table_name(None)
    assert not is_encrypted_column_name("email")
