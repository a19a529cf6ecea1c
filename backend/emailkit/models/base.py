"""
Declarative base shared by all models.
"""
from datetime import datetime, timezone
import uuid

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def generate_uuid():
    """Generate a UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Current time in UTC."""
    return datetime.now(timezone.utc)
