"""Pytest configuration and fixtures."""

import hashlib
import os
from unittest.mock import MagicMock

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from ciphertrail.audit.scheduler import BatchScheduler
from ciphertrail.db.adapter import DialectAdapter, OriginalColumn
from ciphertrail.security.encryption import EncryptionService
from ciphertrail.settings import Settings

STRONG_KEY = "Sup3r$ecret99"
OTHER_KEY = "Tr0ub4dor&3!"

# Use test database URL from environment or default to SQLite in-memory
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")


def engine_secret_for(key: str) -> bytes:
    """Engine secret as the trigger code receives it."""
    return hashlib.pbkdf2_hmac("sha256", key.encode("utf-8"), b"ciphertrail-engine-v1", 100_000, 32)


def seal_with_secret(plaintext, secret: bytes) -> str:
    """Seal a value the way the in-database sealing function does."""
    if plaintext is None:
        return None
    salt = os.urandom(32)
    iv = os.urandom(16)
    value_key = hashlib.sha256(secret + salt).digest()
    padder = padding.PKCS7(128).padder()
    data = padder.update(str(plaintext).encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(value_key), modes.CBC(iv)).encryptor()
    body = encryptor.update(data) + encryptor.finalize()
    tag = hashlib.sha256(value_key + iv + body).digest()[:16]
    return ":".join(part.hex() for part in (salt, iv, tag, body))


def engine_seal(plaintext, key: str) -> str:
    """Seal a value as a trigger installed with key would."""
    return seal_with_secret(plaintext, engine_secret_for(key))


@pytest.fixture
def key():
    return STRONG_KEY


@pytest.fixture
def other_key():
    return OTHER_KEY


@pytest.fixture
def encryption():
    """Fresh encryption service."""
    return EncryptionService()


@pytest.fixture
def settings():
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        environment="test",
        audit_batch_size=3,
        audit_batch_max_workers=3,
        audit_batch_delay_seconds=0,
        page_size_default=50,
        page_size_max=200,
        system_log_path=None,
    )


@pytest.fixture
def event_logger():
    """Operational event logger double."""
    return MagicMock()


@pytest.fixture
def scheduler():
    """Scheduler that records its pauses instead of sleeping."""
    return BatchScheduler(batch_size=3, max_workers=3, inter_batch_delay=0.5, sleep=MagicMock())


@pytest.fixture
def sqlite_engine():
    """In-memory SQLite engine shared across threads."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def sqlite_adapter(sqlite_engine):
    """Generic adapter over SQLite, enough for the mapping store."""
    return DialectAdapter(sqlite_engine)


@pytest.fixture
def customer_columns():
    """Catalog of customers(id, name, email)."""
    return [
        OriginalColumn("id", "integer", nullable=False, ordinal_position=1),
        OriginalColumn("name", "text", nullable=True, ordinal_position=2),
        OriginalColumn("email", "text", nullable=True, ordinal_position=3),
    ]


@pytest.fixture
def fake_adapter(customer_columns):
    """PostgreSQL adapter double with a working sealing probe."""
    adapter = MagicMock()
    adapter.dialect_name = "postgresql"
    adapter.qualifier = "public"
    adapter.existing_tables = {"customers"}
    adapter.table_exists.side_effect = lambda name: name in adapter.existing_tables
    adapter.get_columns.return_value = customer_columns
    adapter.scalar.side_effect = lambda sql, params=None: seal_with_secret(params["plain"], params["secret"])
    adapter.list_triggers.return_value = ["customers_audit_trigger"]
    adapter.list_audit_tables.return_value = []
    adapter.list_tables.return_value = ["customers"]
    return adapter


@pytest.fixture
def mapping_store():
    """Mapping store double."""
    store = MagicMock()
    store.find_by_original.return_value = []
    store.get_original_table.return_value = None
    store.list_mappings.return_value = []
    store.delete_mapping.return_value = 0
    return store
