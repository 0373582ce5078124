from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlmodel import Field, SQLModel


class BehaviorEventType(str, Enum):
    MESSAGE_CREATED = "MESSAGE_CREATED"
    REACTION_GIVEN = "REACTION_GIVEN"
    REACTION_RECEIVED = "REACTION_RECEIVED"
    POLL_CREATED = "POLL_CREATED"
    POLL_EXTENDED = "POLL_EXTENDED"
    POLL_VOTE_GIVEN = "POLL_VOTE_GIVEN"
    AI_MENTION_SENT = "AI_MENTION_SENT"
    MESSAGE_TAGGING_COMPLETED = "MESSAGE_TAGGING_COMPLETED"
    USERNAME_CHANGED = "USERNAME_CHANGED"


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    username: str = Field(index=True, unique=True)
    member_score_raw: int = Field(default=0)
    member_last_active_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BehaviorEvent(SQLModel, table=True):
    """Append-only activity log; member scores and taste profiles derive from it."""
    __tablename__ = "behavior_events"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    type: str = Field(index=True)
    message_id: str | None = Field(default=None)
    reaction: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)
    expires_at: datetime | None = Field(default=None)


class TasteProfile(SQLModel, table=True):
    __tablename__ = "taste_profiles"

    user_id: str = Field(foreign_key="users.id", primary_key=True)
    payload_json: str = Field(default="{}")
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
