"""In-memory directory of live sessions with idle expiry."""

from __future__ import annotations

import asyncio
import logging
import random
import threading
import time
from typing import Callable

from .models import Phase
from .security import generate_session_code
from .session import Session


logger = logging.getLogger(__name__)

FINISHED_TTL_SECONDS = 60 * 60
IDLE_TTL_SECONDS = 4 * 60 * 60
SWEEP_INTERVAL_SECONDS = 15 * 60


class SessionRegistry:
    """Thread-safe map of session id to :class:`Session`.

    Sessions are created with a fresh 8-character code and expire through
    :meth:`sweep`: finished games after ``finished_ttl`` seconds without
    activity, any game after ``idle_ttl`` seconds.
    """

    def __init__(
        self,
        finished_ttl: float = FINISHED_TTL_SECONDS,
        idle_ttl: float = IDLE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self.finished_ttl = finished_ttl
        self.idle_ttl = idle_ttl
        self._clock = clock
        self._rng = rng
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def create(self, host_token: str) -> Session:
        with self._lock:
            session_id = generate_session_code()
            while session_id in self._sessions:
                session_id = generate_session_code()
            session = Session(session_id=session_id, host_id=host_token, rng=self._rng, clock=self._clock)
            self._sessions[session_id] = session
        logger.info("Created session %s", session_id)
        return session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def find_by_participant(self, token: str) -> Session | None:
        with self._lock:
            sessions = list(self._sessions.values())
        return next((session for session in sessions if token in session.participants), None)

    def sweep(self, now: float | None = None) -> list[str]:
        """Drop expired sessions and close their participants' streams."""
        now = self._clock() if now is None else now
        expired: list[Session] = []
        with self._lock:
            for session_id, session in list(self._sessions.items()):
                with session.lock:
                    idle = now - session.last_activity_at
                    stale = (session.phase is Phase.FINISHED and idle > self.finished_ttl) or idle > self.idle_ttl
                if stale:
                    expired.append(self._sessions.pop(session_id))
        for session in expired:
            session.close()
        if expired:
            logger.info("Swept %d expired sessions, %d remaining", len(expired), len(self))
        return [session.id for session in expired]

    async def run_sweeper(self, interval: float = SWEEP_INTERVAL_SECONDS) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()

    def close(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
