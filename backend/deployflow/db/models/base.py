"""
SQLAlchemy declarative base and shared helpers for all models.

Convention:
    - Each table lives in its own file under `deployflow/db/models/`
    - Every model file imports `Base` from here
    - The `__init__.py` re-exports all models so `Base.metadata` sees them
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


# ─── Shared helpers ───────────────────────────
def generate_uuid() -> uuid.UUID:
    return uuid.uuid4()


def utcnow() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)
