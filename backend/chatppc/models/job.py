"""Durable queue tables for AI replies and message tagging."""
from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import Index, text
from sqlmodel import Field, SQLModel


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)
TAGGING_TARGET_KEY = "tagging"


def _active_target_index(table: str) -> Index:
    """At most one non-failed job per (source message, target)."""
    where = text("status != 'failed'")
    return Index(
        f"uq_{table}_active_target",
        "source_message_id",
        "target_key",
        unique=True,
        sqlite_where=where,
        postgresql_where=where,
    )


class QueueJobBase(SQLModel):
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    status: str = Field(default=JobStatus.PENDING.value, index=True)
    source_message_id: str = Field(index=True)
    target_key: str
    username: str
    message: str
    image_urls_json: str = Field(default="[]")
    attempts: int = Field(default=0)
    run_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    locked_at: datetime | None = Field(default=None)
    last_error: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: datetime | None = Field(default=None)
    failed_at: datetime | None = Field(default=None)

    @property
    def image_urls(self) -> list[str]:
        try:
            raw = json.loads(self.image_urls_json or "[]")
        except ValueError:
            return []
        if not isinstance(raw, list):
            return []
        return [item for item in raw if isinstance(item, str)][:4]


class AiJob(QueueJobBase, table=True):
    __tablename__ = "ai_jobs"
    __table_args__ = (_active_target_index("ai_jobs"),)

    provider: str


class TaggingJob(QueueJobBase, table=True):
    __tablename__ = "tagging_jobs"
    __table_args__ = (_active_target_index("tagging_jobs"),)

    target_key: str = Field(default=TAGGING_TARGET_KEY)


class QueueJobRead(BaseModel):
    id: str
    status: str
    source_message_id: str
    target_key: str
    attempts: int
    last_error: str | None
    created_at: datetime
    completed_at: datetime | None
    failed_at: datetime | None

    model_config = {"from_attributes": True}
