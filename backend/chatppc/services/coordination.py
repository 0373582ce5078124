"""Named, non-blocking advisory locks for queue draining.

On PostgreSQL this is a session-scoped ``pg_try_advisory_lock``; the
connection that took the lock is kept open until ``release``. Other
databases get the same contract from a ``queue_locks`` row, which is taken
over once it is older than the stale threshold.
"""

from __future__ import annotations

import logging
import os
import socket
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import delete, insert, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import text

from chatppc.models.lock import QueueLock

logger = logging.getLogger(__name__)

AI_QUEUE_LOCK = "chatppc:ai-queue"
TAGGING_QUEUE_LOCK = "chatppc:tagging-queue"


class AdvisoryLock:
    """Cross-process mutual exclusion keyed by name."""

    __slots__ = ("_engine", "_stale_after", "_owner", "_held", "_guard")

    def __init__(self, engine: Engine, stale_after_seconds: int = 300) -> None:
        self._engine = engine
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._owner = f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"
        self._held: dict[str, Connection | None] = {}
        self._guard = threading.Lock()

    @property
    def _is_postgres(self) -> bool:
        return self._engine.dialect.name == "postgresql"

    def try_acquire(self, name: str) -> bool:
        """Take the lock if nobody holds it. Never waits."""
        with self._guard:
            if name in self._held:
                return False
            acquired = (
                self._try_acquire_postgres(name)
                if self._is_postgres
                else self._try_acquire_row(name)
            )
            if acquired:
                logger.debug("Acquired queue lock %s", name)
            return acquired

    def release(self, name: str) -> None:
        with self._guard:
            if name not in self._held:
                return
            conn = self._held.pop(name)
            if conn is not None:
                try:
                    conn.execute(
                        text("SELECT pg_advisory_unlock(hashtext(:name))"),
                        {"name": name},
                    )
                    conn.commit()
                finally:
                    conn.close()
            else:
                with self._engine.begin() as tx:
                    tx.execute(
                        delete(QueueLock).where(
                            QueueLock.name == name,
                            QueueLock.owner == self._owner,
                        )
                    )
            logger.debug("Released queue lock %s", name)

    @contextmanager
    def hold(self, name: str) -> Iterator[bool]:
        """Context manager yielding whether the lock was acquired."""
        acquired = self.try_acquire(name)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(name)

    def _try_acquire_postgres(self, name: str) -> bool:
        conn = self._engine.connect()
        try:
            acquired = bool(
                conn.execute(
                    text("SELECT pg_try_advisory_lock(hashtext(:name))"),
                    {"name": name},
                ).scalar()
            )
            conn.commit()
        except Exception:
            conn.close()
            raise
        if not acquired:
            conn.close()
            return False
        self._held[name] = conn
        return True

    def _try_acquire_row(self, name: str) -> bool:
        now = datetime.now(timezone.utc)
        try:
            with self._engine.begin() as tx:
                tx.execute(
                    insert(QueueLock).values(name=name, owner=self._owner, locked_at=now)
                )
        except IntegrityError:
            # Held elsewhere; take it over only if the holder looks dead
            with self._engine.begin() as tx:
                result = tx.execute(
                    update(QueueLock)
                    .where(
                        QueueLock.name == name,
                        QueueLock.locked_at < now - self._stale_after,
                    )
                    .values(owner=self._owner, locked_at=now)
                )
            if result.rowcount != 1:
                return False
            logger.warning("Took over stale queue lock %s", name)
        self._held[name] = None
        return True
