"""Tests for identifier validation and quoting."""

import pytest

from ciphertrail.db.identifiers import (
    MYSQL,
    POSTGRESQL,
    normalize_dialect,
    qualify_identifier,
    quote_identifier,
    validate_identifier,
)
from ciphertrail.errors import InvalidIdentifierError, UnsupportedDialectError


@pytest.mark.parametrize(
    "value, expected",
    [
        ("postgresql", POSTGRESQL),
        ("Postgres", POSTGRESQL),
        ("pg", POSTGRESQL),
        ("mysql", MYSQL),
        ("MariaDB", MYSQL),
    ],
)
def test_normalize_dialect(value, expected):
    """Test accepted dialect spellings."""
    assert normalize_dialect(value) == expected


@pytest.mark.parametrize("value", ["sqlite", "oracle", "", None])
def test_unsupported_dialect(value):
    """Test that other dialects are rejected."""
    with pytest.raises(UnsupportedDialectError):
        normalize_dialect(value)


@pytest.mark.parametrize("name", ["users", "_private", "Order_Items2", "a" * 63])
def test_valid_identifiers(name):
    """Test names that may be interpolated."""
    assert validate_identifier(name, POSTGRESQL) == name


@pytest.mark.parametrize(
    "name",
    ["", "1users", "users; DROP TABLE x", "user-name", 'quo"te', "back`tick", "naïve", "a b"],
)
def test_invalid_identifiers(name):
    """Test that anything outside the allow-list is refused."""
    with pytest.raises(InvalidIdentifierError):
        validate_identifier(name, POSTGRESQL)


def test_identifier_length_limits_per_dialect():
    """Test that PostgreSQL allows 63 characters and MySQL 64."""
    name = "a" * 64
    assert validate_identifier(name, MYSQL) == name
    with pytest.raises(InvalidIdentifierError):
        validate_identifier(name, POSTGRESQL)


def test_quote_and_qualify():
    """Test dialect quoting."""
    assert quote_identifier(POSTGRESQL, "users") == '"users"'
    assert quote_identifier(MYSQL, "users") == "`users`"
    assert qualify_identifier(POSTGRESQL, "public", "users") == '"public"."users"'
    assert qualify_identifier(MYSQL, "shop", "users") == "`shop`.`users`"
    assert qualify_identifier(MYSQL, None, "users") == "`users`"


def test_quote_rejects_injection():
    """Test that quoting validates first."""
    with pytest.raises(InvalidIdentifierError):
        quote_identifier(MYSQL, "users`; DROP TABLE x; --")
