"""
Memory Cleanup Manager - bounded side cache of recent messages per visited session.

The session store owns the live log of the active session. This cache keeps
only the last few messages of each session visited during the run, so
browsing many sessions does not grow memory without bound. The backend stays
the durable store.
"""

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from ..models import Message

logger = logging.getLogger(__name__)

CONFIG_KEYS = (
    "max_sessions",
    "max_messages_per_session",
    "max_age_seconds",
    "cleanup_interval_seconds",
)


@dataclass
class TrackedSession:
    """Cached tail of one session's messages."""
    messages: List[Message] = field(default_factory=list)
    created: float = 0.0
    last_accessed: float = 0.0


@dataclass(frozen=True)
class SessionStats:
    message_count: int
    age: float
    last_accessed: float


@dataclass(frozen=True)
class MemoryStats:
    total_sessions: int
    total_messages: int
    oldest_session: float
    newest_session: float


class MemoryCleanupManager:
    """
    Tracks per-session message tails with least-recently-touched eviction.

    Sessions live in an OrderedDict kept in touch order (oldest first), so
    eviction is deterministic for a given sequence of touches.
    """

    def __init__(
        self,
        max_sessions: int = 10,
        max_messages_per_session: int = 10,
        max_age_seconds: float = 24 * 60 * 60,
        cleanup_interval_seconds: float = 5 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the manager.

        Args:
            max_sessions: Capacity before least-recently-touched sessions are evicted
            max_messages_per_session: Retention window K per session
            max_age_seconds: Sessions untouched or created longer ago than this are evicted
            cleanup_interval_seconds: Period of the background sweep
            clock: Monotonic time source in seconds
        """
        self.max_sessions = max_sessions
        self.max_messages_per_session = max_messages_per_session
        self.max_age_seconds = max_age_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self._clock = clock
        self._sessions: "OrderedDict[str, TrackedSession]" = OrderedDict()
        self._active_session_id: Optional[str] = None
        self._sweep_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, config) -> "MemoryCleanupManager":
        return cls(
            max_sessions=config.memory_max_sessions,
            max_messages_per_session=config.memory_max_messages_per_session,
            max_age_seconds=config.memory_max_age_seconds,
            cleanup_interval_seconds=config.memory_cleanup_interval_seconds,
        )

    def _retain(self, messages: Iterable[Message]) -> List[Message]:
        kept = list(messages)[-self.max_messages_per_session:] if self.max_messages_per_session > 0 else []
        return [m.model_copy() for m in kept]

    def _touch(self, session_id: str, entry: TrackedSession) -> None:
        entry.last_accessed = self._clock()
        self._sessions.move_to_end(session_id)

    def set_active_session(self, session_id: Optional[str]) -> None:
        """Mark the session the store is displaying; it is never evicted."""
        self._active_session_id = session_id

    def register_session(self, session_id: str, messages: Iterable[Message] = ()) -> None:
        """Start tracking a session, keeping only its last K messages."""
        now = self._clock()
        self._sessions[session_id] = TrackedSession(
            messages=self._retain(messages), created=now, last_accessed=now
        )
        self._sessions.move_to_end(session_id)

        if len(self._sessions) > self.max_sessions:
            self.cleanup_old_sessions(keep=session_id)

    def update_session(self, session_id: str, messages: Optional[Iterable[Message]] = None) -> None:
        """
        Touch a tracked session and merge new messages into its tail.

        A message whose id is already cached replaces the cached copy in place.
        Untracked sessions are ignored.
        """
        entry = self._sessions.get(session_id)
        if entry is None:
            return

        self._touch(session_id, entry)
        if messages is None:
            return

        positions: Dict[str, int] = {m.id: i for i, m in enumerate(entry.messages)}
        for message in messages:
            if message.id in positions:
                entry.messages[positions[message.id]] = message.model_copy()
            else:
                positions[message.id] = len(entry.messages)
                entry.messages.append(message.model_copy())
        entry.messages = self._retain(entry.messages)

    def unregister_session(self, session_id: str) -> None:
        entry = self._sessions.pop(session_id, None)
        if entry is not None:
            entry.messages.clear()
        if self._active_session_id == session_id:
            self._active_session_id = None

    def is_tracked(self, session_id: str) -> bool:
        return session_id in self._sessions

    def get_cached_messages(self, session_id: str) -> List[Message]:
        entry = self._sessions.get(session_id)
        return [m.model_copy() for m in entry.messages] if entry else []

    def get_session_stats(self, session_id: str) -> Optional[SessionStats]:
        entry = self._sessions.get(session_id)
        if entry is None:
            return None
        return SessionStats(
            message_count=len(entry.messages),
            age=self._clock() - entry.created,
            last_accessed=entry.last_accessed,
        )

    def get_memory_stats(self) -> MemoryStats:
        entries = list(self._sessions.values())
        return MemoryStats(
            total_sessions=len(entries),
            total_messages=sum(len(e.messages) for e in entries),
            oldest_session=min((e.created for e in entries), default=0.0),
            newest_session=max((e.created for e in entries), default=0.0),
        )

    def cleanup_old_sessions(self, keep: Optional[str] = None) -> int:
        """
        Evict expired sessions, then the least recently touched beyond capacity.

        The active session and ``keep`` are never evicted.

        Returns:
            Number of sessions evicted
        """
        now = self._clock()
        protected = {self._active_session_id, keep}
        to_remove: List[str] = []

        for session_id, entry in self._sessions.items():
            if session_id in protected:
                continue
            if (now - entry.created > self.max_age_seconds
                    or now - entry.last_accessed > self.max_age_seconds):
                to_remove.append(session_id)

        excess = len(self._sessions) - len(to_remove) - self.max_sessions
        if excess > 0:
            # OrderedDict order is touch order, oldest first
            for session_id in self._sessions:
                if excess <= 0:
                    break
                if session_id in to_remove or session_id in protected:
                    continue
                to_remove.append(session_id)
                excess -= 1

        for session_id in to_remove:
            self.unregister_session(session_id)

        if to_remove:
            logger.info(
                f"Evicted {len(to_remove)} cached sessions",
                extra={"extra_fields": {"evicted": to_remove, "remaining": len(self._sessions)}}
            )
        return len(to_remove)

    def cleanup_messages(self) -> int:
        """Trim every cached session to the retention window."""
        cleaned = 0
        for entry in self._sessions.values():
            excess = len(entry.messages) - self.max_messages_per_session
            if excess > 0:
                del entry.messages[:excess]
                cleaned += excess
        return cleaned

    def clear_all(self) -> None:
        for entry in self._sessions.values():
            entry.messages.clear()
        self._sessions.clear()

    # Periodic sweep

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def start(self) -> None:
        """Start the periodic sweep on the running event loop."""
        if self.running:
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())
        logger.debug(f"Memory cleanup sweep started (every {self.cleanup_interval_seconds}s)")

    async def stop(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval_seconds)
            try:
                self.cleanup_old_sessions()
                self.cleanup_messages()
            except Exception as e:
                logger.error(f"Memory cleanup sweep failed: {e}", exc_info=True)

    async def update_config(self, **changes) -> None:
        """Change limits; a running sweep restarts with the new interval."""
        for key in changes:
            if key not in CONFIG_KEYS:
                raise ValueError(f"Unknown memory cleanup setting: {key}")
        for key, value in changes.items():
            setattr(self, key, value)
        if self.running:
            await self.stop()
            self.start()
