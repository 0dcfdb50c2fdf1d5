"""Pure marble accounting helpers used by the session state machine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Sequence


@dataclass(frozen=True)
class Settlement:
    paid_by_placer: int
    paid_per_winner: int
    losses: tuple[int, ...]

    @property
    def collected_by_placer(self) -> int:
        return sum(self.losses)

    @property
    def placer_net_loss(self) -> int:
        return self.paid_by_placer - self.collected_by_placer


def settle_round(
    amount: int,
    placer_marbles: int,
    winner_count: int,
    loser_marbles: Sequence[int],
) -> Settlement:
    """Compute the two-sided settlement of a resolved round.

    Winners split ``amount`` from the placer, floored per winner and capped by
    what the placer holds; when the cap applies the per-winner share is floored
    again, so up to ``winner_count - 1`` marbles leave the game. Every loser
    independently pays the placer ``amount``, capped by their own balance.
    """
    paid_by_placer = 0
    paid_per_winner = 0
    if winner_count > 0:
        owed = (amount // winner_count) * winner_count
        paid_by_placer = min(owed, placer_marbles)
        paid_per_winner = paid_by_placer // winner_count

    losses = tuple(min(amount, marbles) for marbles in loser_marbles)
    return Settlement(
        paid_by_placer=paid_by_placer,
        paid_per_winner=paid_per_winner,
        losses=losses,
    )


def split_evenly(total: int, recipient_count: int) -> list[int]:
    """Split ``total`` into shares; the remainder goes one each to the first recipients."""
    if recipient_count <= 0:
        return []
    base, remainder = divmod(total, recipient_count)
    return [base + (1 if index < remainder else 0) for index in range(recipient_count)]


def next_eligible_index(size: int, start: int, is_eligible: Callable[[int], bool]) -> int:
    """Walk forward from ``start`` (wrapping) to the first eligible position.

    Returns ``start`` unchanged when no position qualifies.
    """
    if size <= 0:
        return 0
    index = start % size
    for _ in range(size):
        if is_eligible(index):
            return index
        index = (index + 1) % size
    return index
