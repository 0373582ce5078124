from __future__ import annotations

from chatppc.models.user import BehaviorEvent, TasteProfile, User  # noqa: F401
from chatppc.models.message import ChatMessage, MessageReaction, PollOption  # noqa: F401
from chatppc.models.job import AiJob, TaggingJob  # noqa: F401
from chatppc.models.lock import QueueLock  # noqa: F401
