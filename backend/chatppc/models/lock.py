from __future__ import annotations

from datetime import datetime, timezone

from sqlmodel import Field, SQLModel


class QueueLock(SQLModel, table=True):
    """Named lock row used where the database has no advisory locks."""
    __tablename__ = "queue_locks"

    name: str = Field(primary_key=True)
    owner: str
    locked_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
