"""Chat message tables touched by the job workers.

Messages are created by the chat layer; the workers add AI replies and polls
and own the tagging columns.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel
from sqlmodel import Field, SQLModel


class MessageType(str, Enum):
    MESSAGE = "message"
    QUESTION = "question"
    ANSWER = "answer"
    VOTING_POLL = "voting_poll"


class TaggingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ReactionType(str, Enum):
    LIKE = "LIKE"
    LOL = "LOL"
    FIRE = "FIRE"
    BASED = "BASED"
    WTF = "WTF"
    BIG_BRAIN = "BIG_BRAIN"


SYSTEM_AUTHOR_NAME = "System"


class ChatMessage(SQLModel, table=True):
    __tablename__ = "chat_messages"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    type: str = Field(default=MessageType.MESSAGE.value)
    content: str
    author_id: str | None = Field(default=None, foreign_key="users.id", index=True)
    author_name: str
    question_message_id: str | None = Field(default=None, index=True)  # Reply parent
    poll_multi_select: bool = Field(default=False)
    tagging_status: str | None = Field(default=None)
    tagging_payload_json: str | None = Field(default=None)
    tagging_error: str | None = Field(default=None)
    tagging_updated_at: datetime | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), index=True)

    @property
    def tagging_payload(self) -> dict[str, Any] | None:
        if not self.tagging_payload_json:
            return None
        try:
            payload = json.loads(self.tagging_payload_json)
        except ValueError:
            return None
        return payload if isinstance(payload, dict) else None


class PollOption(SQLModel, table=True):
    __tablename__ = "poll_options"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    message_id: str = Field(foreign_key="chat_messages.id", index=True)
    label: str
    sort_order: int = Field(default=0)


class MessageReaction(SQLModel, table=True):
    __tablename__ = "message_reactions"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    message_id: str = Field(foreign_key="chat_messages.id", index=True)
    user_id: str = Field(foreign_key="users.id", index=True)
    reaction: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# --- Pydantic schemas ---

class ScoredTagRead(BaseModel):
    tag: str
    score: float


class ReactionCount(BaseModel):
    reaction: str
    count: int


class MessageRead(BaseModel):
    """Message shape published to the realtime transport."""
    id: str
    type: str
    content: str
    author_id: str | None
    author_name: str
    question_message_id: str | None
    created_at: datetime
    poll_options: list[str] = []
    poll_multi_select: bool = False
    tagging_status: str | None = None
    tagging_error: str | None = None
    tagging: dict[str, Any] | None = None
    reactions: list[ReactionCount] = []
