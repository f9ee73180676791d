"""Metadata mapping between shadow tables and their source tables."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text

from ciphertrail.models.base import Base


class AuditTableMapping(Base):
    """encrypted_table_name <-> original_table_name association."""

    __tablename__ = "sys_audit_metadata_enc"

    id = Column(Integer, primary_key=True, autoincrement=True)
    encrypted_table_name = Column(String(255), nullable=False, unique=True, index=True)
    original_table_name = Column(String(255), nullable=False, index=True)
    encrypted_name_data = Column(Text, nullable=True)  # app envelope of the mapping document
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
