"""Database models - import all models here for metadata discovery."""

from ciphertrail.models.base import Base
from ciphertrail.models.mapping import AuditTableMapping

__all__ = [
    "Base",
    "AuditTableMapping",
]
