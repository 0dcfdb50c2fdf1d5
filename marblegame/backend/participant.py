"""Per-player record and the epoch-guarded connection lifecycle."""

from __future__ import annotations

import asyncio
import itertools
import threading
import time
from typing import Any, Callable

from .models import Guess


GRACE_PERIOD_SECONDS = 15
STARTING_MARBLES = 10

# Outbox markers. Anything else placed in the outbox is a rendered payload.
CONNECTION_CHECK = object()
STREAM_CLOSED = object()

_epoch_counter = itertools.count(1)
_epoch_lock = threading.Lock()


def _next_epoch() -> int:
    with _epoch_lock:
        return next(_epoch_counter)


class Participant:
    """One player or spectator inside a session.

    ``connected`` is only ever changed through :meth:`start_new_connection` and
    :meth:`end_connection`. Each physical stream claims an epoch from a global
    counter; a stream may only end the connection it started, so the teardown
    of a superseded stream is a no-op.
    """

    def __init__(
        self,
        token: str,
        display_name: str,
        marble_count: int = STARTING_MARBLES,
        language_tag: str = "en",
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.token = token
        self.display_name = display_name
        self.marble_count = marble_count
        self.language_tag = language_tag
        self.current_guess: Guess | None = None
        self.outbox: asyncio.Queue[Any] = asyncio.Queue()
        self._clock = clock
        self._lock = threading.Lock()
        self._connected = False
        self._connection_epoch = 0
        self._disconnected_at: float | None = None

    def __repr__(self) -> str:
        return (
            f"Participant(token={self.token!r}, name={self.display_name!r}, "
            f"marbles={self.marble_count}, connected={self._connected})"
        )

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def connection_epoch(self) -> int:
        return self._connection_epoch

    @property
    def disconnected_at(self) -> float | None:
        return self._disconnected_at

    @property
    def is_spectator(self) -> bool:
        return self.marble_count <= 0

    @property
    def is_active(self) -> bool:
        return self.marble_count > 0

    @property
    def is_active_and_connected(self) -> bool:
        return self.is_active and self._connected

    def start_new_connection(self) -> int:
        epoch = _next_epoch()
        with self._lock:
            self._connection_epoch = epoch
            self._connected = True
            self._disconnected_at = None
        return epoch

    def end_connection(self, epoch: int) -> bool:
        """Mark the participant disconnected if ``epoch`` is still current.

        Returns True when the call took effect.
        """
        with self._lock:
            if epoch != self._connection_epoch:
                return False
            if self._connected:
                self._connected = False
                self._disconnected_at = self._clock()
            return True

    def is_within_grace_period(self) -> bool:
        if self._connected:
            return True
        disconnected_at = self._disconnected_at
        if disconnected_at is None:
            return True
        return self._clock() - disconnected_at < GRACE_PERIOD_SECONDS

    def grace_period_remaining(self) -> int:
        if self._connected:
            return 0
        disconnected_at = self._disconnected_at
        if disconnected_at is None:
            return 0
        remaining = GRACE_PERIOD_SECONDS - (self._clock() - disconnected_at)
        return int(remaining) if remaining > 0 else 0

    def push(self, payload: Any) -> bool:
        """Queue a payload for the live stream; a no-op while disconnected."""
        if not self._connected:
            return False
        self.outbox.put_nowait(payload)
        return True

    def wake(self) -> None:
        self.outbox.put_nowait(CONNECTION_CHECK)

    def close_stream(self) -> None:
        self.outbox.put_nowait(STREAM_CLOSED)

    def drain(self) -> int:
        """Discard anything queued for a previous connection."""
        dropped = 0
        while True:
            try:
                self.outbox.get_nowait()
            except asyncio.QueueEmpty:
                return dropped
            dropped += 1
