"""Encryption service for audit values.

Two envelope profiles share the serialized form ``salt:iv:tag:ciphertext``
(hex, 32/16/16/n bytes):

* application profile: key = PBKDF2-HMAC-SHA256(passphrase, salt, 100k),
  AES-256-GCM, ``tag`` is the GCM authentication tag;
* engine profile, produced by the sealing function installed in the database:
  engine secret E = PBKDF2-HMAC-SHA256(passphrase, fixed salt, 100k),
  k = SHA-256(E || salt), AES-256-CBC with PKCS#7 padding, and
  ``tag`` = SHA-256(k || iv || ciphertext)[:16].

``decrypt`` accepts both, so values written by triggers and values written by
the application are read back through the same call.
"""

import hashlib
import hmac
import logging
import os
from dataclasses import dataclass, field
from typing import Iterable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ciphertrail.errors import DecryptFailure
from ciphertrail.security import keys, naming

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # 256 bits
SALT_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16
PBKDF2_ITERATIONS = 100_000

ENGINE_SECRET_SALT = b"ciphertrail-engine-v1"
ENVELOPE_SEPARATOR = ":"
ENVELOPE_PARTS = 4

# Prefix written by the sealing functions of very old releases when pgcrypto failed
LEGACY_ERROR_PREFIX = "error:"


@dataclass(frozen=True)
class CipherEnvelope:
    """Parsed form of one encrypted scalar."""

    salt: bytes
    iv: bytes
    tag: bytes
    ciphertext: bytes

    def serialize(self) -> str:
        """Render as salt:iv:tag:ciphertext in lowercase hex."""
        return ENVELOPE_SEPARATOR.join(
            part.hex() for part in (self.salt, self.iv, self.tag, self.ciphertext)
        )

    @classmethod
    def parse(cls, text: str) -> "CipherEnvelope":
        """Parse and validate a serialized envelope."""
        if text.startswith(LEGACY_ERROR_PREFIX):
            raise DecryptFailure(
                "Value was produced by a failed in-database encryption; recreate the audit",
                reason=DecryptFailure.MALFORMED,
            )

        parts = text.split(ENVELOPE_SEPARATOR)
        if len(parts) != ENVELOPE_PARTS:
            raise DecryptFailure(
                f"Malformed envelope: expected {ENVELOPE_PARTS} parts, got {len(parts)}",
                reason=DecryptFailure.MALFORMED,
            )

        try:
            salt, iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError:
            raise DecryptFailure("Malformed envelope: components must be hex encoded", reason=DecryptFailure.MALFORMED)

        for name, value, expected in (("salt", salt, SALT_LENGTH), ("iv", iv, IV_LENGTH), ("tag", tag, TAG_LENGTH)):
            if len(value) != expected:
                raise DecryptFailure(
                    f"Malformed envelope: {name} is {len(value)} bytes, expected {expected}",
                    reason=DecryptFailure.MALFORMED,
                )

        return cls(salt=salt, iv=iv, tag=tag, ciphertext=ciphertext)


@dataclass
class IntegrityReport:
    """Outcome of decrypting a batch of envelopes with one key."""

    total: int = 0
    valid: int = 0
    invalid: int = 0
    empty: int = 0
    errors: list[dict] = field(default_factory=list)

    @property
    def integrity_percentage(self) -> int:
        checked = self.valid + self.invalid
        return round(self.valid * 100 / checked) if checked else 0


def derive_key(key: str, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derive the AES-256 key for one application envelope."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(key.encode("utf-8"))


def derive_engine_secret(key: str) -> bytes:
    """Derive the secret embedded in generated trigger code."""
    return derive_key(key, ENGINE_SECRET_SALT)


def engine_value_key(engine_secret: bytes, salt: bytes) -> bytes:
    """Per-value key used by the in-database sealing function."""
    return hashlib.sha256(engine_secret + salt).digest()


def engine_tag(value_key: bytes, iv: bytes, ciphertext: bytes) -> bytes:
    """Integrity tag the in-database sealing function attaches to each value."""
    return hashlib.sha256(value_key + iv + ciphertext).digest()[:TAG_LENGTH]


class EncryptionService:
    """Symmetric encryption, key policy and pseudonym derivation."""

    def validate_key(self, key: str) -> None:
        """Raise WeakKeyError unless the key satisfies the policy."""
        keys.validate_key(key)

    def derive_column_name(self, original_name: str, key: str) -> str:
        """Deterministic pseudonym for a column."""
        return naming.derive_column_name(original_name, key)

    def derive_table_name(self, original_name: str, key: str) -> str:
        """Deterministic pseudonym for a shadow table."""
        return naming.derive_table_name(original_name, key)

    def engine_secret(self, key: str) -> bytes:
        """Validate the key and derive the in-database secret for it."""
        self.validate_key(key)
        return derive_engine_secret(key)

    def generate_secure_key(self, length: int = 16, include_special: bool = True) -> str:
        """Generate a random key that passes validate_key."""
        return keys.generate_secure_key(length, include_special)

    def encrypt(self, plaintext, key: str) -> Optional[str]:
        """Encrypt one value into an application envelope.

        ``None`` stays ``None`` so SQL NULL survives the round trip.
        """
        if plaintext is None:
            return None
        if not isinstance(plaintext, str):
            plaintext = str(plaintext)

        self.validate_key(key)

        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(derive_key(key, salt)).encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext
        envelope = CipherEnvelope(
            salt=salt,
            iv=iv,
            tag=sealed[-TAG_LENGTH:],
            ciphertext=sealed[:-TAG_LENGTH],
        )
        return envelope.serialize()

    def decrypt(self, encrypted, key: str, engine_secret: Optional[bytes] = None) -> Optional[str]:
        """Decrypt an envelope of either profile.

        ``engine_secret`` may be passed by callers decrypting many values with
        the same key; it is derived from ``key`` otherwise.
        Raises DecryptFailure with reason ``malformed`` or ``wrong_key``.
        """
        if encrypted is None:
            return None
        if isinstance(encrypted, (bytes, bytearray, memoryview)):
            encrypted = bytes(encrypted).decode("ascii", errors="replace")
        if not isinstance(encrypted, str):
            encrypted = str(encrypted)

        self.validate_key(key)
        envelope = CipherEnvelope.parse(encrypted.strip())

        if envelope.ciphertext and len(envelope.ciphertext) % IV_LENGTH == 0:
            secret = engine_secret if engine_secret is not None else derive_engine_secret(key)
            value_key = engine_value_key(secret, envelope.salt)
            if hmac.compare_digest(engine_tag(value_key, envelope.iv, envelope.ciphertext), envelope.tag):
                return self._decrypt_engine(envelope, value_key)

        try:
            plaintext = AESGCM(derive_key(key, envelope.salt)).decrypt(
                envelope.iv, envelope.ciphertext + envelope.tag, None
            )
        except InvalidTag:
            raise DecryptFailure("Wrong encryption key or corrupted data")

        return self._decode(plaintext)

    def _decrypt_engine(self, envelope: CipherEnvelope, value_key: bytes) -> str:
        """Decrypt a value sealed inside the database."""
        decryptor = Cipher(algorithms.AES(value_key), modes.CBC(envelope.iv)).decryptor()
        padded = decryptor.update(envelope.ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            plaintext = unpadder.update(padded) + unpadder.finalize()
        except ValueError:
            raise DecryptFailure("Wrong encryption key or corrupted data")
        return self._decode(plaintext)

    @staticmethod
    def _decode(plaintext: bytes) -> str:
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            raise DecryptFailure("Decrypted value is not valid UTF-8; data is corrupted")

    def verify_integrity(self, values: Iterable, key: str) -> IntegrityReport:
        """Decrypt every envelope in values and count the outcomes."""
        secret = self.engine_secret(key)
        report = IntegrityReport()
        for index, value in enumerate(values):
            report.total += 1
            if value is None:
                report.empty += 1
                continue
            try:
                self.decrypt(value, key, engine_secret=secret)
                report.valid += 1
            except DecryptFailure as e:
                report.invalid += 1
                report.errors.append({"index": index, "reason": e.reason, "error": str(e)})

        logger.debug(
            f"Integrity check: {report.valid}/{report.total} valid, {report.invalid} invalid"
        )
        return report


# Global encryption service instance
_encryption_service: Optional[EncryptionService] = None


def get_encryption_service() -> EncryptionService:
    """Get encryption service instance."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service
