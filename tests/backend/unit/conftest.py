from __future__ import annotations

import random

import pytest

from marblegame.backend.session import Session


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_session(clock: FakeClock):
    """Build a lobby whose tokens are the lowercased names; the first name hosts."""

    def factory(*names: str, seed: int = 0, connected: bool = True) -> Session:
        session = Session(session_id="abcd1234", host_id=names[0].lower(), rng=random.Random(seed), clock=clock)
        for name in names:
            participant = session.add_participant(name.lower(), name)
            if connected:
                participant.start_new_connection()
        return session

    return factory
