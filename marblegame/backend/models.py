"""Value types shared by the session engine and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Phase(str, Enum):
    WAITING = "waiting"
    BETTING = "betting"
    GUESSING = "guessing"
    RESULT = "result"
    FINISHED = "finished"


class Guess(str, Enum):
    EVEN = "even"
    ODD = "odd"

    def matches(self, amount: int) -> bool:
        return (amount % 2 == 0) == (self is Guess.EVEN)


class ErrorCode(str, Enum):
    """Reasons a request against a session is rejected."""

    INVALID_TURN = "INVALID_TURN"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    WRONG_PHASE = "WRONG_PHASE"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"


@dataclass(frozen=True)
class PlayerRef:
    token: str
    name: str


@dataclass(frozen=True)
class RoundResult:
    """Snapshot of a resolved round.

    ``placer_net_loss`` is positive when the placer lost marbles overall and
    negative when the placer gained.
    """

    placer: PlayerRef
    amount: int
    was_even: bool
    winners: tuple[PlayerRef, ...]
    losers: tuple[PlayerRef, ...]
    marbles_per_winner: int
    placer_net_loss: int

    @property
    def winner_tokens(self) -> list[str]:
        return [winner.token for winner in self.winners]

    @property
    def loser_tokens(self) -> list[str]:
        return [loser.token for loser in self.losers]
