"""Server-side session records.

The browser only ever holds an opaque session id (inside the signed session
cookie). What that id means lives here, so a destroyed or expired id can never
be replayed into a user again.
"""
import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class SessionRecord:
    id: str
    user_id: int
    created_at: float
    last_seen: float


class SessionStore(ABC):
    """Interface for session storage backends."""

    @abstractmethod
    def create(self, user_id: int) -> SessionRecord:
        """Start a session for the user and return a snapshot of it."""

    @abstractmethod
    def resolve(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        """Return the live session for the id, touching its activity time."""

    @abstractmethod
    def destroy(self, session_id: Optional[str]) -> None:
        """Forget the id. Unknown ids are ignored."""

    @abstractmethod
    def expire(self) -> int:
        """Drop idle sessions and return how many went."""


class InMemorySessionStore(SessionStore):
    """Process-local store. Everything in it is lost on restart."""

    def __init__(self, ttl_secs: float, clock: Callable[[], float] = time.time) -> None:
        if ttl_secs <= 0:
            raise ValueError("Session TTL must be positive")
        self.ttl_secs = ttl_secs
        self._clock = clock
        self._records: dict[str, SessionRecord] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _is_expired(self, record: SessionRecord, now: float) -> bool:
        return now - record.last_seen >= self.ttl_secs

    def create(self, user_id: int) -> SessionRecord:
        self.expire()
        now = self._clock()
        with self._lock:
            session_id = secrets.token_urlsafe(32)
            while session_id in self._records:
                session_id = secrets.token_urlsafe(32)
            record = SessionRecord(id=session_id, user_id=user_id, created_at=now, last_seen=now)
            self._records[session_id] = record
            return replace(record)

    def resolve(self, session_id: Optional[str]) -> Optional[SessionRecord]:
        if not session_id:
            return None
        now = self._clock()
        with self._lock:
            record = self._records.get(session_id)
            if record is None:
                return None
            if self._is_expired(record, now):
                del self._records[session_id]
                return None
            record.last_seen = now
            return replace(record)

    def destroy(self, session_id: Optional[str]) -> None:
        if not session_id:
            return
        with self._lock:
            self._records.pop(session_id, None)

    def expire(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [sid for sid, record in self._records.items() if self._is_expired(record, now)]
            for sid in stale:
                del self._records[sid]
        if stale:
            logger.info(f"session_expiry: removed={len(stale)}")
        return len(stale)
