"""Tests for the metadata mapping store."""

import json

import pytest
from sqlalchemy import inspect

from conftest import OTHER_KEY, STRONG_KEY
from ciphertrail.audit.mapping import MetadataMappingStore


@pytest.fixture
def store(sqlite_adapter, encryption):
    """Mapping store over in-memory SQLite."""
    return MetadataMappingStore(sqlite_adapter, encryption)


def test_table_created_lazily(store, sqlite_engine):
    """Test that the mapping table appears on first use only."""
    assert "sys_audit_metadata_enc" not in inspect(sqlite_engine).get_table_names()
    store.list_mappings()
    assert "sys_audit_metadata_enc" in inspect(sqlite_engine).get_table_names()
    # second call is a no-op
    store.ensure_table()


def test_save_and_resolve(store):
    """Test that a saved mapping resolves back to its original table."""
    store.save_mapping("t" + "a" * 32, "customers")
    assert store.get_original_table("t" + "a" * 32) == "customers"
    assert store.get_original_table("t" + "b" * 32) is None


def test_save_is_an_upsert(store):
    """Test that re-setup updates the existing row instead of failing."""
    store.save_mapping("t" + "a" * 32, "customers")
    store.save_mapping("t" + "a" * 32, "clients")

    mappings = store.list_mappings()
    assert len(mappings) == 1
    assert mappings[0]["original_table_name"] == "clients"


def test_encrypted_mapping_document(store, sqlite_adapter, encryption):
    """Test that the doubly-encrypted document is stored and preferred with a key."""
    store.save_mapping("t" + "a" * 32, "customers", STRONG_KEY)

    stored = sqlite_adapter.scalar("SELECT encrypted_name_data FROM sys_audit_metadata_enc")
    assert stored is not None
    assert "customers" not in stored
    document = json.loads(encryption.decrypt(stored, STRONG_KEY))
    assert document["originalTable"] == "customers"
    assert document["encryptedTable"] == "t" + "a" * 32

    assert store.get_original_table("t" + "a" * 32, STRONG_KEY) == "customers"


def test_wrong_key_falls_back_to_plain_column(store):
    """Test that an unreadable document does not hide the mapping."""
    store.save_mapping("t" + "a" * 32, "customers", STRONG_KEY)
    assert store.get_original_table("t" + "a" * 32, OTHER_KEY) == "customers"


def test_encryption_failure_still_saves(store, sqlite_adapter):
    """Test that a key the document cannot be encrypted with is not fatal."""
    store.save_mapping("t" + "a" * 32, "customers", "weak")
    assert sqlite_adapter.scalar("SELECT encrypted_name_data FROM sys_audit_metadata_enc") is None
    assert store.get_original_table("t" + "a" * 32) == "customers"


def test_find_by_original(store):
    """Test reverse lookups."""
    store.save_mapping("t" + "a" * 32, "customers")
    store.save_mapping("t" + "b" * 32, "customers")
    store.save_mapping("t" + "c" * 32, "orders")

    assert store.find_by_original("customers") == ["t" + "a" * 32, "t" + "b" * 32]
    assert store.find_by_original("missing") == []


def test_delete_mapping(store):
    """Test deletion by shadow name and by original name."""
    store.save_mapping("t" + "a" * 32, "customers")
    store.save_mapping("t" + "b" * 32, "customers")
    store.save_mapping("t" + "c" * 32, "orders")

    assert store.delete_mapping(audit_table_name="t" + "c" * 32) == 1
    assert store.delete_mapping(original_table_name="customers") == 2
    assert store.list_mappings() == []
    assert store.delete_mapping(audit_table_name="t" + "c" * 32) == 0


def test_delete_mapping_requires_a_filter(store):
    """Test that an unfiltered delete is refused."""
    with pytest.raises(ValueError):
        store.delete_mapping()
