"""Error taxonomy for the audit trail engine."""

from typing import Optional


class CipherTrailError(Exception):
    """Base class for all engine errors."""


class WeakKeyError(CipherTrailError, ValueError):
    """Encryption key failed the strength policy."""


class UnsupportedDialectError(CipherTrailError, ValueError):
    """Dialect other than mysql or postgresql was requested."""

    def __init__(self, dialect: str):
        self.dialect = dialect
        super().__init__(f"Unsupported dialect: {dialect!r} (expected 'mysql' or 'postgresql')")


class InvalidIdentifierError(CipherTrailError, ValueError):
    """Identifier failed the allow-list pattern and cannot be interpolated."""


class NoColumnsError(CipherTrailError, ValueError):
    """Source table exposes no columns to audit."""


class IntegrityViolationError(CipherTrailError):
    """Shadow column layout does not line up with the source columns."""


class TableNotFoundError(CipherTrailError, LookupError):
    """Source or audit table does not exist in the catalog."""


class DecryptFailure(CipherTrailError):
    """Envelope could not be decrypted.

    ``reason`` is ``"wrong_key"`` when the envelope is well formed but does not
    authenticate under the given key (or was tampered with), and
    ``"malformed"`` when the value is not a valid envelope at all.
    """

    WRONG_KEY = "wrong_key"
    MALFORMED = "malformed"

    def __init__(self, message: str, reason: str = WRONG_KEY):
        self.reason = reason
        super().__init__(message)

    @property
    def is_wrong_key(self) -> bool:
        return self.reason == self.WRONG_KEY


class DdlExecutionError(CipherTrailError):
    """A DDL statement failed during a named pipeline step."""

    def __init__(self, step: str, message: str, cause: Optional[BaseException] = None):
        self.step = step
        self.cause = cause
        super().__init__(f"{step}: {message}")
