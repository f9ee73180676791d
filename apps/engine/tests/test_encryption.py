"""Tests for envelope encryption and decryption."""

import pytest

from conftest import OTHER_KEY, STRONG_KEY, engine_seal
from ciphertrail.errors import DecryptFailure, WeakKeyError
from ciphertrail.security.encryption import (
    IV_LENGTH,
    SALT_LENGTH,
    TAG_LENGTH,
    CipherEnvelope,
    get_encryption_service,
)


class TestApplicationEnvelope:
    """Values encrypted by the application."""

    def test_round_trip(self, encryption):
        """Test that decrypt inverts encrypt."""
        for value in ["a@b.com", "hello world", "ünïcödé ✓", "x" * 5000]:
            assert encryption.decrypt(encryption.encrypt(value, STRONG_KEY), STRONG_KEY) == value

    def test_empty_string_round_trips_to_empty_string(self, encryption):
        """Test that empty string is preserved, not turned into None."""
        envelope = encryption.encrypt("", STRONG_KEY)
        assert envelope is not None
        assert encryption.decrypt(envelope, STRONG_KEY) == ""

    def test_none_round_trips_to_none(self, encryption):
        """Test that SQL NULL semantics survive."""
        assert encryption.encrypt(None, STRONG_KEY) is None
        assert encryption.decrypt(None, STRONG_KEY) is None

    def test_non_string_values_are_stringified(self, encryption):
        """Test that numbers are encrypted as their text form."""
        assert encryption.decrypt(encryption.encrypt(42, STRONG_KEY), STRONG_KEY) == "42"

    def test_envelope_shape(self, encryption):
        """Test that envelopes have 4 hex parts with fixed component lengths."""
        envelope = encryption.encrypt("value", STRONG_KEY)
        parts = envelope.split(":")
        assert len(parts) == 4
        assert len(bytes.fromhex(parts[0])) == SALT_LENGTH
        assert len(bytes.fromhex(parts[1])) == IV_LENGTH
        assert len(bytes.fromhex(parts[2])) == TAG_LENGTH

    def test_fresh_salt_per_value(self, encryption):
        """Test that encrypting the same value twice gives different envelopes."""
        first = encryption.encrypt("same", STRONG_KEY)
        second = encryption.encrypt("same", STRONG_KEY)
        assert first != second
        assert first.split(":")[0] != second.split(":")[0]

    def test_wrong_key_fails(self, encryption):
        """Test that a wrong key raises DecryptFailure, never garbage."""
        envelope = encryption.encrypt("secret data", STRONG_KEY)
        with pytest.raises(DecryptFailure) as exc_info:
            encryption.decrypt(envelope, OTHER_KEY)
        assert exc_info.value.is_wrong_key

    def test_tampered_ciphertext_fails(self, encryption):
        """Test that modified ciphertext does not authenticate."""
        salt, iv, tag, body = encryption.encrypt("secret data", STRONG_KEY).split(":")
        flipped = format(int(body[:2], 16) ^ 0x01, "02x") + body[2:]
        with pytest.raises(DecryptFailure) as exc_info:
            encryption.decrypt(":".join([salt, iv, tag, flipped]), STRONG_KEY)
        assert exc_info.value.reason == DecryptFailure.WRONG_KEY

    def test_weak_key_rejected(self, encryption):
        """Test that encrypt validates the key first."""
        with pytest.raises(WeakKeyError):
            encryption.encrypt("value", "short")


class TestEngineEnvelope:
    """Values sealed inside the database by triggers."""

    def test_engine_sealed_value_decrypts(self, encryption):
        """Test that a trigger-sealed value opens with the same key."""
        assert encryption.decrypt(engine_seal("a@b.com", STRONG_KEY), STRONG_KEY) == "a@b.com"

    def test_engine_sealed_empty_string(self, encryption):
        """Test that an empty value sealed in the database round-trips."""
        assert encryption.decrypt(engine_seal("", STRONG_KEY), STRONG_KEY) == ""

    def test_engine_sealed_unicode(self, encryption):
        """Test that UTF-8 text sealed in the database round-trips."""
        assert encryption.decrypt(engine_seal("Zoë Ålvarez", STRONG_KEY), STRONG_KEY) == "Zoë Ålvarez"

    def test_engine_sealed_wrong_key(self, encryption):
        """Test that a trigger-sealed value does not open with another key."""
        with pytest.raises(DecryptFailure) as exc_info:
            encryption.decrypt(engine_seal("a@b.com", STRONG_KEY), OTHER_KEY)
        assert exc_info.value.is_wrong_key

    def test_engine_tag_mismatch_fails(self, encryption):
        """Test that a corrupted engine tag is not accepted."""
        salt, iv, tag, body = engine_seal("a@b.com", STRONG_KEY).split(":")
        bad_tag = "00" * TAG_LENGTH if tag != "00" * TAG_LENGTH else "11" * TAG_LENGTH
        with pytest.raises(DecryptFailure):
            encryption.decrypt(":".join([salt, iv, bad_tag, body]), STRONG_KEY)

    def test_engine_envelope_shape_matches_application(self, encryption):
        """Test that both profiles share the 4-part envelope shape."""
        envelope = CipherEnvelope.parse(engine_seal("x", STRONG_KEY))
        assert len(envelope.salt) == SALT_LENGTH
        assert len(envelope.iv) == IV_LENGTH
        assert len(envelope.tag) == TAG_LENGTH

    def test_precomputed_engine_secret(self, encryption):
        """Test that callers can pass the engine secret for bulk decryption."""
        secret = encryption.engine_secret(STRONG_KEY)
        envelope = engine_seal("bulk", STRONG_KEY)
        assert encryption.decrypt(envelope, STRONG_KEY, engine_secret=secret) == "bulk"


class TestMalformedEnvelopes:
    """Inputs that are not envelopes at all."""

    @pytest.mark.parametrize(
        "value",
        [
            "not-an-envelope",
            "aa:bb:cc",
            "aa:bb:cc:dd:ee",
            "zz:" + "00" * 16 + ":" + "00" * 16 + ":00",
            "00" * 31 + ":" + "00" * 16 + ":" + "00" * 16 + ":00",
            "00" * 32 + ":" + "00" * 15 + ":" + "00" * 16 + ":00",
        ],
    )
    def test_malformed_reason(self, encryption, value):
        """Test that malformed input is reported as malformed, not as a wrong key."""
        with pytest.raises(DecryptFailure) as exc_info:
            encryption.decrypt(value, STRONG_KEY)
        assert exc_info.value.reason == DecryptFailure.MALFORMED
        assert not exc_info.value.is_wrong_key

    def test_legacy_error_value(self, encryption):
        """Test that values written by a failed legacy sealing function are malformed."""
        with pytest.raises(DecryptFailure) as exc_info:
            encryption.decrypt("error:pgcrypto not available", STRONG_KEY)
        assert exc_info.value.reason == DecryptFailure.MALFORMED

    def test_bytes_input(self, encryption):
        """Test that envelopes read as bytes are accepted."""
        envelope = encryption.encrypt("bytes", STRONG_KEY)
        assert encryption.decrypt(envelope.encode("ascii"), STRONG_KEY) == "bytes"


def test_verify_integrity_counts(encryption):
    """Test that integrity reports count valid, invalid and empty values."""
    values = [
        encryption.encrypt("one", STRONG_KEY),
        engine_seal("two", STRONG_KEY),
        engine_seal("three", OTHER_KEY),
        "garbage",
        None,
    ]
    report = encryption.verify_integrity(values, STRONG_KEY)

    assert report.total == 5
    assert report.valid == 2
    assert report.invalid == 2
    assert report.empty == 1
    assert report.integrity_percentage == 50
    assert {error["reason"] for error in report.errors} == {"wrong_key", "malformed"}


def test_verify_integrity_empty_input(encryption):
    """Test that an empty sample reports zero integrity without dividing by zero."""
    report = encryption.verify_integrity([], STRONG_KEY)
    assert report.total == 0
    assert report.integrity_percentage == 0


def test_global_service_is_shared():
    """Test that the module-level service is created once."""
    assert get_encryption_service() is get_encryption_service()
