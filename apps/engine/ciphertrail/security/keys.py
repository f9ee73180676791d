"""Encryption key policy and secure key generation."""

import re
import secrets
import string

from ciphertrail.errors import WeakKeyError

MIN_KEY_LENGTH = 12
MAX_KEY_LENGTH = 128
MIN_CHARACTER_CLASSES = 2

SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{};':\"\\|,.<>/?"

_CHARACTER_CLASSES = {
    "uppercase": re.compile(r"[A-Z]"),
    "lowercase": re.compile(r"[a-z]"),
    "digit": re.compile(r"[0-9]"),
    "symbol": re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]"),
}

_REPEATED_RUN = re.compile(r"(.)\1{3,}")

WEAK_KEYS = frozenset(
    {
        "password",
        "123456",
        "qwerty",
        "abc123",
        "password123",
        "admin",
        "letmein",
        "welcome",
        "monkey",
        "dragon",
        "12345678",
        "abcdefgh",
        "11111111",
        "00000000",
    }
)

OBVIOUS_SEQUENCES = (
    "123456",
    "654321",
    "987654",
    "abcdef",
    "fedcba",
    "qwerty",
    "asdfgh",
    "zxcvbn",
)


def character_classes(key: str) -> set[str]:
    """Return the names of the character classes present in key."""
    return {name for name, pattern in _CHARACTER_CLASSES.items() if pattern.search(key)}


def validate_key(key: str) -> None:
    """
    Enforce the encryption key policy.

    Raises WeakKeyError describing the first rule the key breaks:
    length between 12 and 128, at least two character classes, not a
    well-known weak password, no run of 4+ identical characters and no
    obvious keyboard/number sequence.
    """
    if not key or not isinstance(key, str):
        raise WeakKeyError("Encryption key must be a non-empty string")

    if len(key) < MIN_KEY_LENGTH:
        raise WeakKeyError(f"Encryption key must be at least {MIN_KEY_LENGTH} characters long")

    if len(key) > MAX_KEY_LENGTH:
        raise WeakKeyError(f"Encryption key cannot exceed {MAX_KEY_LENGTH} characters")

    if len(character_classes(key)) < MIN_CHARACTER_CLASSES:
        raise WeakKeyError(
            "Encryption key must contain at least 2 of: "
            "uppercase letters, lowercase letters, digits and symbols"
        )

    lowered = key.lower()
    if lowered in WEAK_KEYS:
        raise WeakKeyError("Encryption key is too common to be secure")

    if _REPEATED_RUN.search(key):
        raise WeakKeyError("Encryption key must not contain more than 3 repeated consecutive characters")

    for sequence in OBVIOUS_SEQUENCES:
        if sequence in lowered:
            raise WeakKeyError(f"Encryption key must not contain the obvious sequence: {sequence}")


def is_valid_key(key: str) -> bool:
    """Check a key against the policy without raising."""
    try:
        validate_key(key)
    except WeakKeyError:
        return False
    return True


def generate_secure_key(length: int = 16, include_special: bool = True) -> str:
    """Generate a random key that satisfies the key policy."""
    if length < MIN_KEY_LENGTH or length > MAX_KEY_LENGTH:
        raise ValueError(f"Key length must be between {MIN_KEY_LENGTH} and {MAX_KEY_LENGTH}")

    pools = [string.ascii_lowercase, string.ascii_uppercase, string.digits]
    if include_special:
        pools.append(SPECIAL_CHARACTERS)
    alphabet = "".join(pools)

    while True:
        # One character from every pool, the rest from the full alphabet
        chars = [secrets.choice(pool) for pool in pools]
        chars += [secrets.choice(alphabet) for _ in range(length - len(chars))]
        secrets.SystemRandom().shuffle(chars)
        candidate = "".join(chars)
        if is_valid_key(candidate):
            return candidate
