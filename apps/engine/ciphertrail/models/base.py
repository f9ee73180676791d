"""Declarative base for engine-owned tables."""

from sqlalchemy.orm import declarative_base

Base = declarative_base()
